import os
import sys
import importlib.util
import collections

__all__ = ['EnvironmentCapabilities', 'can_sudo']


def can_sudo(runner):
    """
    Return True if 'runner' can use sudo without a password prompt.
    (Never True for root, which doesn't need it.)
    """
    if runner.is_root() or not runner.which('sudo'):
        return False
    return runner.run('sudo', '-n', 'true').returncode == 0


class EnvironmentCapabilities(collections.namedtuple(
    'EnvironmentCapabilities',
    [
        # bool: the platform can create symbolic links
        'symlinks',
        # bool: an XML parser (expat) is available for structural rewriting
        'structural_parser',
        # bool: line-oriented textual substitution is allowed as a fallback
        'textual_substitution',
        # bool: non-interactive sudo may be used for non-writable directories
        'sudo',
    ],
    defaults=[True, True, True, False],
)):
    """
    What the datastream adapter may rely on when picking a strategy.

    Tests construct this directly, real callers use probe().
    """

    @classmethod
    def probe(cls, runner=None):
        symlinks = hasattr(os, 'symlink') and sys.platform != 'win32'
        # xml.etree.ElementTree is importable even without expat, it only
        # fails on first parse, so look for the C parser module itself
        structural = importlib.util.find_spec('pyexpat') is not None
        sudo = can_sudo(runner) if runner else False
        return cls(
            symlinks=symlinks,
            structural_parser=structural,
            textual_substitution=True,
            sudo=sudo,
        )
