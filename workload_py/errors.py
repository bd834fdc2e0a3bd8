"""
Error taxonomy for Workload-Py.

Every failure the engine reports derives from ``WorkloadError`` so callers can
catch a single type and still branch on the concrete class.
"""

from typing import Optional


class WorkloadError(Exception):
    """Base class for all engine errors."""

    retryable = False

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def __str__(self) -> str:
        if self.detail:
            return f"{self.message} ({self.detail})"
        return self.message


class UnknownWorkloadError(WorkloadError):
    """A workload ID is not declared by any manifest of the generation."""

    def __init__(self, workload_id: str, generation: Optional[str] = None):
        where = f" in generation {generation}" if generation else ""
        super().__init__(f"Workload '{workload_id}' is not recognized{where}")
        self.workload_id = workload_id
        self.generation = generation


class UnknownPackError(WorkloadError):
    """A pack ID has no pack definition in the generation's manifests."""

    def __init__(self, pack_id: str, generation: Optional[str] = None):
        where = f" in generation {generation}" if generation else ""
        super().__init__(f"Pack '{pack_id}' is not declared{where}")
        self.pack_id = pack_id
        self.generation = generation


class FetchError(WorkloadError):
    """Fetching a package artifact failed. The whole operation may be retried."""

    retryable = True


class NotFoundError(FetchError):
    """The requested package does not exist in the feed or offline cache."""


class NetworkError(FetchError):
    """The package feed could not be reached."""


class BackendOperationError(WorkloadError):
    """The installer technology failed to apply or remove a payload."""


class InconsistentStateError(WorkloadError):
    """An invariant over manifests or records does not hold."""


class ManifestConflictError(InconsistentStateError):
    """Two manifests of one generation declare the same workload or pack."""


class ManifestFormatError(InconsistentStateError):
    """A manifest document could not be parsed."""


class WorkloadDependencyError(WorkloadError):
    """An uninstall was rejected because other installed workloads extend it."""


class TransactionCancelledError(WorkloadError):
    """The caller cancelled the transaction before its record was written."""


class InstallationLockError(WorkloadError):
    """Another process holds the installation lock."""

    retryable = True


class InvalidNameError(WorkloadError):
    """A generation or manifest name cannot be used as a single path component."""
