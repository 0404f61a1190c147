from __future__ import annotations


class EngineError(Exception):
    """Base class for structural errors raised by the engine."""


class OutOfBounds(EngineError, ValueError):
    """Raised when a path escapes its namespace root."""


class ProjectNotFound(EngineError, LookupError):
    """Raised when a project id does not reference an existing project."""


class RunNotFound(EngineError, LookupError):
    """Raised when a run id does not reference an existing run (or belongs to another project)."""


class InvalidTransition(EngineError, ValueError):
    """Raised when a run-status change violates pending -> running -> {completed, failed}."""


class EnvironmentUnreachable(EngineError, RuntimeError):
    """The container engine itself cannot be reached."""


class EnvironmentStartFailed(EngineError, RuntimeError):
    """The execution environment could not be started or never became ready."""


class CommandTimeout(EngineError, RuntimeError):
    """A remote command overran its timeout and was terminated."""


class CommandFailure(EngineError, RuntimeError):
    """A remote command exited non-zero."""


class IOFailure(EngineError, RuntimeError):
    """An artifact read/write/delete failed."""
