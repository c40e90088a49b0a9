"""Error taxonomy for datanest pipeline runs.

Every error raised by a pipeline component derives from ``DatanestError``
and carries a stable ``kind`` string.  The orchestrator records ``kind`` in
each ``StepResult`` so the run report can name what went wrong without
holding on to exception objects.

Retry policy by kind:

- ``NetworkError``       retried with backoff when ``retryable`` is set
- ``ChecksumMismatch``   fatal, never retried
- ``TransformError``     fatal, never retried
- ``CacheCorruption``    fatal until the key is purged and rebuilt
- ``RegistryConflict``   fatal unless an override is requested
- ``ConfigurationError`` raised before any step executes
"""

from __future__ import annotations


class DatanestError(RuntimeError):
    """Base class for all datanest errors."""

    kind: str = "DatanestError"


class NetworkError(DatanestError):
    """Raised when a source cannot be retrieved."""

    kind = "NetworkError"

    def __init__(self, message: str, *, source: str = "", retryable: bool = True) -> None:
        super().__init__(message)
        self.source = source
        self.retryable = retryable


class ChecksumMismatch(DatanestError):
    """Raised when fetched bytes do not match the declared checksum."""

    kind = "ChecksumMismatch"

    def __init__(self, source: str, expected: str, actual: str) -> None:
        super().__init__(
            f"Checksum mismatch for {source}: expected {expected}, got {actual}"
        )
        self.source = source
        self.expected = expected
        self.actual = actual


class TransformError(DatanestError):
    """Raised when a transform script fails or its output fails validation."""

    kind = "TransformError"

    def __init__(self, script: str, diagnostic: str) -> None:
        super().__init__(f"{script}: {diagnostic}")
        self.script = script
        self.diagnostic = diagnostic


class CacheCorruption(DatanestError):
    """Raised when a stored blob no longer hashes to its recorded digest."""

    kind = "CacheCorruption"

    def __init__(self, message: str, *, key: str = "", digest: str = "") -> None:
        super().__init__(message)
        self.key = key
        self.digest = digest


class RegistryConflict(DatanestError):
    """Raised when a registration would change an existing version."""

    kind = "RegistryConflict"


class ArtifactNotFound(DatanestError, LookupError):
    """Raised when a (name, version) pair is not registered."""

    kind = "ArtifactNotFound"


class ConfigurationError(DatanestError):
    """Raised for invalid project definitions, before execution starts."""

    kind = "ConfigurationError"


class StepTimeout(DatanestError):
    """Raised when a step exceeds its maximum duration."""

    kind = "StepTimeout"


class RunCancelled(DatanestError):
    """Raised at a checkpoint after the run was cancelled."""

    kind = "RunCancelled"


class InvalidTransition(DatanestError):
    """Raised when a step state transition is not allowed."""

    kind = "InvalidTransition"
