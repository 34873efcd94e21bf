"""
Running the DISA STIG Ansible role via ansible-playbook.

The role itself (tasks, hundreds of variables) is not ours, we only check
it's there, tell the user how much of it is switched on, and assemble
the ansible-playbook command line.
"""

import re
import yaml
from pathlib import Path

from stigkit import util
from stigkit.errors import NotFound, ToolMissing

# role variables toggling individual STIG rules, ie.
#   rhel9STIG_stigrule_257777_Manage: True
_RULE_TOGGLE = re.compile(r'(\w+)_stigrule_([0-9]{6})_Manage')


def check_ansible(runner):
    """Return the ansible-playbook version line, raise ToolMissing if absent."""
    if not runner.which('ansible-playbook'):
        raise ToolMissing(
            'ansible-playbook', "Ansible is not installed, please install it first",
        )
    ret = runner.run('ansible-playbook', '--version')
    version = (ret.stdout or '').partition('\n')[0]
    util.log(f"Ansible found: {version}")
    return version


def check_role(role_dir):
    role_dir = Path(role_dir)
    if not role_dir.is_dir():
        raise NotFound(f"DISA STIG role not found in {role_dir}/", [role_dir])
    util.log(f"DISA STIG role found in {role_dir}")


def rule_toggles(role_dir):
    """
    Return a dict of {rule_number: bool} of the STIG rule toggles in the
    role's defaults/main.yml, ie. {'257777': True}.

    Return an empty dict if the role has no defaults.
    """
    defaults = Path(role_dir) / 'defaults' / 'main.yml'
    if not defaults.exists():
        return {}
    with open(defaults) as f:
        variables = yaml.safe_load(f) or {}
    toggles = {}
    for name, value in variables.items():
        if m := _RULE_TOGGLE.fullmatch(str(name)):
            toggles[m.group(2)] = bool(value)
    return toggles


def playbook_cmd(
    playbook, *, inventory=None, check=False, tags=None, limit=None,
    become=False, ask_become_pass=True, verbose=False,
):
    """
    Assemble ansible-playbook arguments (without ansible-playbook itself).

    'tags' is a comma-separated str or an iterable of tags.
    """
    args = []
    if verbose:
        args.append('-v')
    if become:
        args.append('-b')
    if inventory:
        args += ['-i', str(inventory)]
    args.append(str(playbook))
    if limit:
        args += ['--limit', limit]
    if check:
        args.append('--check')
    if ask_become_pass:
        args.append('--ask-become-pass')
    if tags:
        if not isinstance(tags, str):
            tags = ','.join(tags)
        args += ['--tags', tags]
    return args


def run_playbook(runner, playbook, *, env=None, **kwargs):
    """
    Run ansible-playbook attached to the terminal (it may prompt for the
    become password), return its exit code.

    'kwargs' are passed to playbook_cmd(), 'env' are extra environment
    variables for the playbook.
    """
    args = playbook_cmd(playbook, **kwargs)
    ret = runner.run('ansible-playbook', *args, capture=False, env=env)
    if ret.returncode != 0:
        util.error(f"ansible-playbook failed with exit code {ret.returncode}")
    return ret.returncode
