import os
import shutil
import subprocess
import collections

from stigkit import util
from stigkit.errors import ToolMissing

__all__ = ['subprocess_run', 'ToolResult', 'ToolRunner']


def _format_subprocess_cmd(cmd):
    if isinstance(cmd, (list, tuple)):
        return ' '.join(str(x) for x in cmd)
    else:
        return cmd


def subprocess_run(cmd, *, skip_frames=0, **kwargs):
    """
    A simple wrapper for the real subprocess.run() that logs the command used,
    as called from the function 'skip_frames' levels up.
    """
    util.log(f'running: {_format_subprocess_cmd(cmd)}', skip_frames=skip_frames+1)
    return subprocess.run(cmd, **kwargs)


# stdout/stderr are None when the command was run attached to the terminal
ToolResult = collections.namedtuple('ToolResult', ['returncode', 'stdout', 'stderr'])


class ToolRunner:
    """
    The one place external tools (oscap, dnf, ansible-playbook, ssh, sudo, ...)
    get executed.

    Everything that shells out takes a runner as an argument instead of calling
    subprocess directly, so tests can substitute a fake one recording the
    commands and returning canned results.
    """

    def run(self, cmd, *args, capture=True, env=None, input=None):  # noqa: A002
        """
        Run 'cmd' with 'args', return a ToolResult.

        With 'capture' (default), stdout/stderr are collected as text,
        otherwise they are left on the console, which is what interactive
        tools (ansible-playbook --ask-become-pass) need.

        'env' is a dict of extra environment variables for the command.
        Raise ToolMissing if 'cmd' doesn't exist.
        """
        full_env = None
        if env:
            full_env = os.environ.copy()
            full_env.update(env)
        if capture:
            kwargs = {'stdout': subprocess.PIPE, 'stderr': subprocess.PIPE, 'text': True}
        else:
            kwargs = {}
        try:
            proc = subprocess_run(
                [cmd, *args], env=full_env, input=input, skip_frames=1, **kwargs,
            )
        except FileNotFoundError:
            raise ToolMissing(cmd) from None
        return ToolResult(proc.returncode, proc.stdout, proc.stderr)

    def which(self, name):
        """Return the full path of executable 'name', or None."""
        return shutil.which(name)

    def is_root(self):
        return os.geteuid() == 0
