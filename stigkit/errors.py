"""
Exceptions raised by stigkit; the CLI turns any StigkitError into a logged
error and a non-zero exit code instead of a traceback.
"""


class StigkitError(Exception):
    pass


class NotFound(StigkitError):
    """No source datastream at any known location, even after provisioning."""
    def __init__(self, message, paths=()):
        super().__init__(message)
        self.paths = list(paths)

    def __str__(self):
        base = super().__str__()
        if self.paths:
            probed = ', '.join(str(p) for p in self.paths)
            return f"{base} (probed: {probed})"
        return base


class AdaptationFailed(StigkitError):
    """
    Every adaptation strategy failed; 'attempts' is a list of
    (Strategy, reason) tuples in the order they were tried.
    """
    def __init__(self, attempts):
        self.attempts = list(attempts)
        reasons = '; '.join(f'{strategy.value}: {reason}' for strategy, reason in self.attempts)
        super().__init__(f"all datastream adaptation strategies failed: {reasons}")


class ToolMissing(StigkitError):
    """A required external binary is absent and could not be provisioned."""
    def __init__(self, tool, message=None):
        self.tool = tool
        super().__init__(message or f"required tool not found: {tool}")


class ConnectivityFailed(StigkitError):
    def __init__(self, host):
        self.host = host
        super().__init__(f"cannot connect to {host} via SSH")


class UserAborted(StigkitError):
    pass


class PartialEvaluation(StigkitError):
    """The scanner ran, but returned non-zero; 'outcome' has the details."""
    def __init__(self, outcome):
        self.outcome = outcome
        super().__init__(f"oscap finished with exit code {outcome.returncode}")


class RewriteError(StigkitError):
    pass


class RemoteExecutionFailed(StigkitError):
    pass


class ConfigError(StigkitError):
    pass
