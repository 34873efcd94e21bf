"""
Configuration of paths and defaults, replacing the variables hardcoded
at the top of each of the original shell scripts.

Values come from (later overrides earlier):
 - DEFAULTS below
 - a YAML file, $STIGKIT_CONFIG or ./stigkit.yaml if it exists
 - STIGKIT_* environment variables (see ENV_OVERRIDES)

The result is a plain SimpleNamespace, ie. config.content_dir.
"""

import os
import types
import yaml
from pathlib import Path

from stigkit import util
from stigkit.versions import OSIdentity
from stigkit.errors import ConfigError

DEFAULTS = {
    # where scap-security-guide installs its datastreams
    'content_dir': '/usr/share/xml/scap/ssg/content',
    # additional directories probed for datastreams, after content_dir
    'search_dirs': ['roles/rhel9STIG/files'],
    # identity of the hosts we harden ('auto' reads /etc/os-release),
    # and what to borrow content from
    'target': 'centos10',
    'fallbacks': ['rhel10', 'rhel9'],
    'profile': 'stig',
    'report_dir': 'oscap-reports',
    'playbook': 'playbook.yml',
    'inventory': 'inventory.yml',
    'role_dir': 'roles/rhel9STIG',
    # packages providing 'oscap' and the datastreams
    'packages': ['openscap-scanner', 'scap-security-guide'],
    # treat 'scan <host>' without --remote as a remote scan (with a warning)
    'implicit_remote': True,
}

ENV_OVERRIDES = {
    'STIGKIT_CONTENT_DIR': 'content_dir',
    'STIGKIT_REPORT_DIR': 'report_dir',
    'STIGKIT_PROFILE': 'profile',
    'STIGKIT_TARGET': 'target',
}


def _config_file():
    path = os.environ.get('STIGKIT_CONFIG')
    if path:
        path = Path(path)
        # variable defined, but path specified does not exist
        if not path.exists():
            raise ConfigError(f"STIGKIT_CONFIG={path} does not exist")
        return path
    local = Path('stigkit.yaml')
    return local if local.exists() else None


def load():
    values = dict(DEFAULTS)

    path = _config_file()
    if path:
        util.log(f"reading configuration from {path}")
        with open(path) as f:
            from_file = yaml.safe_load(f) or {}
        if not isinstance(from_file, dict):
            raise ConfigError(f"{path} must contain a YAML mapping")
        unknown = set(from_file) - set(DEFAULTS)
        if unknown:
            raise ConfigError(f"unknown keys in {path}: {', '.join(sorted(unknown))}")
        values.update(from_file)

    for var, key in ENV_OVERRIDES.items():
        if value := os.environ.get(var):
            values[key] = value

    config = types.SimpleNamespace(**values)
    config.content_dir = Path(config.content_dir)
    config.search_dirs = [Path(x) for x in config.search_dirs]
    config.report_dir = Path(config.report_dir)
    config.role_dir = Path(config.role_dir)
    try:
        if config.target == 'auto':
            config.target = OSIdentity.from_os_release()
        else:
            config.target = OSIdentity.parse(config.target)
        config.fallbacks = [OSIdentity.parse(x) for x in config.fallbacks]
    except (ValueError, KeyError, OSError) as e:
        raise ConfigError(f"invalid target or fallbacks: {e}") from None
    return config
