"""Exception hierarchy for kubeconverge.

Build errors are raised before any provider call is made. Provider errors
are local to a resource and its dependents. Invariant violations are engine
bugs and are never swallowed.
"""

from __future__ import annotations


class EngineError(Exception):
    """Base class for every error raised by kubeconverge."""


# ---------------------------------------------------------------------------
# Build-time errors
# ---------------------------------------------------------------------------


class BuildError(EngineError):
    """The declared resource set cannot be turned into an executable graph."""


class DuplicateNameError(BuildError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Duplicate resource name: {name!r}")
        self.name = name


class CycleDetectedError(BuildError):
    def __init__(self, cycle: list[str]) -> None:
        super().__init__(f"Dependency cycle detected: {' -> '.join(cycle)}")
        self.cycle = cycle


class DanglingReferenceError(BuildError):
    def __init__(self, consumer: str, missing: str) -> None:
        super().__init__(f"Resource {consumer!r} references unknown resource {missing!r}")
        self.consumer = consumer
        self.missing = missing


class UnknownKindError(BuildError):
    def __init__(self, kinds: list[str]) -> None:
        super().__init__(f"No provider registered for kind(s): {', '.join(sorted(kinds))}")
        self.kinds = kinds


class DeclarationError(EngineError):
    """A declaration document is malformed."""


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------


class ProviderError(EngineError):
    """Raised by a provider adapter when a remote operation fails."""

    def __init__(self, message: str, resource: str = "", status_code: int | None = None) -> None:
        super().__init__(message)
        self.resource = resource
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Retryable failure (rate limiting, timeouts, 5xx)."""


class PermanentProviderError(ProviderError):
    """Non-retryable failure (invalid spec rejected by the remote API)."""


# ---------------------------------------------------------------------------
# Output cells and run-time propagation
# ---------------------------------------------------------------------------


class EngineInvariantError(EngineError):
    """An internal invariant was violated. Always fatal."""


class DoubleResolutionError(EngineInvariantError):
    def __init__(self, label: str, state: str) -> None:
        super().__init__(f"Output {label!r} is already {state}")
        self.label = label
        self.state = state


class UnresolvedOutputError(EngineError):
    def __init__(self, label: str) -> None:
        super().__init__(f"Output {label!r} is not resolved yet")
        self.label = label


class MissingOutputError(EngineError):
    def __init__(self, resource: str, path: str) -> None:
        super().__init__(f"Resource {resource!r} has no output at path {path!r}")
        self.resource = resource
        self.path = path


class DependencyFailedError(EngineError):
    """Raised into the outputs of a resource skipped because a producer failed."""

    def __init__(self, resource: str, caused_by: str) -> None:
        super().__init__(f"Resource {resource!r} skipped: dependency {caused_by!r} failed")
        self.resource = resource
        self.caused_by = caused_by


class RunCancelledError(EngineError):
    def __init__(self, resource: str) -> None:
        super().__init__(f"Resource {resource!r} was not provisioned: run cancelled")
        self.resource = resource
