"""Exception taxonomy and process exit codes.

Components raise these at their seams; only :mod:`horizon.__main__` turns
them into an exit status.
"""

from __future__ import annotations

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2


def signal_exit_code(signum: int) -> int:
    """Shell convention for a run that ended because of a signal."""
    return 128 + signum


class HorizonError(Exception):
    """Base for every error the CLI knows how to report."""

    exit_code = EXIT_FAILURE


class ConfigurationError(HorizonError):
    """Bad or missing configuration. Raised before any workload is touched."""

    exit_code = EXIT_CONFIG


class MissingRequiredSecret(ConfigurationError):
    def __init__(self, name: str, hint: str = "") -> None:
        self.name = name
        msg = f"Required credential {name} is not set"
        if hint:
            msg = f"{msg}. {hint}"
        super().__init__(msg)


class EnvironmentFileError(ConfigurationError):
    """The environment descriptor is unreadable or malformed."""


class RuntimeUnavailableError(HorizonError):
    """The container CLI is missing or its daemon is not reachable."""


class BuildError(HorizonError):
    """Image build prerequisites are not met."""


class WorkloadStartError(HorizonError):
    """``docker run`` refused to start the workload."""

    def __init__(self, name: str, stderr: str) -> None:
        self.name = name
        self.stderr = stderr
        super().__init__(f"Failed to start {name}: {stderr.strip() or 'no error output'}")
