"""
Installing the packages stigkit needs (the scanner, the SSG datastreams)
when they are missing on the local system.
"""

from stigkit import util
from stigkit.errors import ToolMissing


class Provisioner:
    """
    Installs packages via dnf, or yum on older systems, using sudo when not
    running as root.

    Every set of packages is attempted at most once per Provisioner instance,
    a second request for the same set is a no-op returning False, so callers
    can't loop on a broken repository.
    """

    def __init__(self, runner, packages=('openscap-scanner', 'scap-security-guide')):
        self.runner = runner
        self.packages = tuple(packages)
        self._attempted = set()

    def _package_manager(self):
        for name in ['dnf', 'yum']:
            if self.runner.which(name):
                return name
        return None

    def install(self, *packages):
        """
        Install 'packages' (default: the ones given at construction).

        Return True if the package manager succeeded, False if it failed or
        this set was already attempted. Raise ToolMissing if there is no
        package manager at all.
        """
        packages = packages or self.packages
        key = frozenset(packages)
        if key in self._attempted:
            util.log(f"already tried installing {' '.join(packages)}, not retrying")
            return False
        self._attempted.add(key)

        manager = self._package_manager()
        if not manager:
            raise ToolMissing(
                'dnf',
                "cannot install packages, neither dnf nor yum found, please install "
                f"manually: dnf install -y {' '.join(packages)}",
            )

        cmd = [manager, 'install', '-y', *packages]
        if not self.runner.is_root():
            if not self.runner.which('sudo'):
                raise ToolMissing('sudo', "installing packages requires root or sudo")
            cmd = ['sudo', *cmd]

        util.log(f"installing {' '.join(packages)}")
        result = self.runner.run(*cmd, capture=False)
        if result.returncode != 0:
            util.error(f"{manager} failed with exit code {result.returncode}")
            return False
        return True

    def ensure_tool(self, tool, packages=None):
        """
        Return the path of executable 'tool', installing 'packages' first
        if it's missing. Raise ToolMissing if it's still missing afterwards.
        """
        path = self.runner.which(tool)
        if path:
            return path
        util.warning(f"{tool} not found, attempting to install it")
        self.install(*(packages or self.packages))
        path = self.runner.which(tool)
        if not path:
            raise ToolMissing(tool)
        return path
