from __future__ import annotations


class PlughostError(RuntimeError):
    pass


class ConfigurationError(PlughostError):
    pass


class LoadError(PlughostError):
    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class ExecutionError(PlughostError):
    def __init__(self, message: str, *, artifact_name: str | None = None) -> None:
        super().__init__(message)
        self.artifact_name = artifact_name


class DiscoveryWarning(UserWarning):
    """
    Category for non-fatal discovery problems (bad manifest, missing routes or
    migrations directory). Only ever logged, never raised.
    """
