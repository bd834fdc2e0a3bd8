"""
Operation surface for Workload-Py.

``WorkloadInstaller`` wires the stores, the backend and the coordinator for one
installation root and exposes the user-facing operations. Every operation
returns an ``OperationResult``; engine errors are captured in it rather than
raised.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set

from workload_py.config import WorkloadConfig
from workload_py.engine import Backend, select_backend
from workload_py.errors import WorkloadError
from workload_py.fetch import DirectoryPackageFetcher, PackageFetcher
from workload_py.manifest import ConcretePackage, Generation, generation_sort_key
from workload_py.manifest.source import DirectoryManifestSource, ManifestSource
from workload_py.manifest.store import ManifestStore
from workload_py.platform import current_platform
from workload_py.records import InstallationRecordStore
from workload_py.resolver import WorkloadExpander
from workload_py.transaction import (
    CancellationToken,
    TransactionCoordinator,
    TransactionRequest,
    TransactionResult,
)

logger = logging.getLogger("workload.installer")


@dataclass
class OperationResult:
    """Structured outcome of one operation."""

    operation: str
    success: bool
    error: Optional[WorkloadError] = None
    detail: str = ""
    workloads: List[str] = field(default_factory=list)
    installed: Set[ConcretePackage] = field(default_factory=set)
    removed: Set[ConcretePackage] = field(default_factory=set)
    failed_removals: Dict[ConcretePackage, str] = field(default_factory=dict)
    # Set when the operation completed but the collection after it did not.
    collection_error: Optional[WorkloadError] = None

    @property
    def error_type(self) -> Optional[str]:
        return type(self.error).__name__ if self.error else None

    @property
    def collection_error_type(self) -> Optional[str]:
        if self.collection_error is None:
            return None
        return type(self.collection_error).__name__

    def to_dict(self) -> Dict:
        return {
            "operation": self.operation,
            "success": self.success,
            "error": self.error_type,
            "detail": self.detail,
            "workloads": sorted(self.workloads),
            "installed": sorted(str(p) for p in self.installed),
            "removed": sorted(str(p) for p in self.removed),
            "failed_removals": {str(p): r for p, r in self.failed_removals.items()},
            "collection_error": self.collection_error_type,
        }


def _from_transaction(operation: str, tx: TransactionResult) -> OperationResult:
    result = OperationResult(
        operation=operation,
        success=True,
        installed=set(tx.installed),
        detail=", ".join(
            f"{mid} {old} -> {new}" if old is not None else f"{mid} installed at {new}"
            for mid, (old, new) in tx.manifest_updates.items()
        ),
    )
    if tx.collection is not None:
        result.removed = set(tx.collection.removed)
        result.failed_removals = dict(tx.collection.failed)
    if tx.collection_error is not None:
        result.collection_error = tx.collection_error
        message = f"collection failed: {tx.collection_error}"
        result.detail = f"{result.detail}; {message}" if result.detail else message
    return result


def _failure(operation: str, error: WorkloadError) -> OperationResult:
    logger.error(f"{operation} failed: {error}")
    return OperationResult(
        operation=operation, success=False, error=error, detail=str(error)
    )


class WorkloadInstaller:
    """Install, uninstall, update, repair and collect workloads."""

    def __init__(
        self,
        root: Path,
        backend: Optional[Backend] = None,
        fetcher: Optional[PackageFetcher] = None,
        manifest_source: Optional[ManifestSource] = None,
        platform: Optional[str] = None,
        uninstall_policy: str = "reject",
        lock_timeout: float = 30.0,
        offline_cache: Optional[Path] = None,
    ):
        self.root = root
        self.platform = platform or current_platform()
        self.records = InstallationRecordStore(root)
        self.manifests = ManifestStore(root)
        self.fetcher = fetcher or DirectoryPackageFetcher()
        self.backend = backend or select_backend(
            "file", root, self.records, self.manifests, self.fetcher
        )
        self.offline_cache = offline_cache
        self.coordinator = TransactionCoordinator(
            root,
            self.records,
            self.manifests,
            self.backend,
            self.platform,
            manifest_source=manifest_source,
            uninstall_policy=uninstall_policy,
            lock_timeout=lock_timeout,
        )

    @classmethod
    def from_config(cls, config: WorkloadConfig) -> "WorkloadInstaller":
        """Build an installer, selecting the backend from *config*."""
        root = config.install_root
        records = InstallationRecordStore(root)
        manifests = ManifestStore(root)
        fetcher = DirectoryPackageFetcher(config.feed)
        backend = select_backend(
            config.backend,
            root,
            records,
            manifests,
            fetcher,
            native_command=config.native_installer.command,
            native_timeout=config.native_installer.timeout,
        )
        source = DirectoryManifestSource(config.feed) if config.feed else None
        return cls(
            root,
            backend=backend,
            fetcher=fetcher,
            manifest_source=source,
            platform=config.platform,
            uninstall_policy=config.uninstall_policy,
            lock_timeout=config.lock_timeout,
            offline_cache=config.offline_cache,
        )

    def _run(
        self,
        operation: str,
        request: TransactionRequest,
        cancel_token: Optional[CancellationToken],
    ) -> OperationResult:
        try:
            tx = self.coordinator.run(request, cancel_token)
        except WorkloadError as e:
            return _failure(operation, e)
        result = _from_transaction(operation, tx)
        result.workloads = sorted(tx.added_workloads | tx.removed_workloads)
        return result

    def install_workloads(
        self,
        workload_ids: Iterable[str],
        generation: Generation,
        skip_manifest_update: bool = False,
        offline_cache: Optional[Path] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> OperationResult:
        request = TransactionRequest(
            operation="install",
            generation=generation,
            add_workloads=set(workload_ids),
            update_manifests=not skip_manifest_update,
            offline_cache=offline_cache or self.offline_cache,
        )
        return self._run("install", request, cancel_token)

    def uninstall_workloads(
        self,
        workload_ids: Iterable[str],
        generation: Generation,
        cancel_token: Optional[CancellationToken] = None,
    ) -> OperationResult:
        request = TransactionRequest(
            operation="uninstall",
            generation=generation,
            remove_workloads=set(workload_ids),
        )
        return self._run("uninstall", request, cancel_token)

    def previous_generation(self, generation: Generation) -> Optional[Generation]:
        """The nearest registered generation below *generation*."""
        key = generation_sort_key(generation)
        older = [
            g
            for g in self.records.present_generations()
            if generation_sort_key(g) < key
        ]
        return max(older, key=generation_sort_key) if older else None

    def update_workloads(
        self,
        generation: Generation,
        from_previous_generation: bool = False,
        offline_cache: Optional[Path] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> OperationResult:
        add: Set[str] = set()
        if from_previous_generation:
            previous = self.previous_generation(generation)
            if previous is None:
                logger.info(f"No generation older than {generation} is installed")
            else:
                add = self.records.installed_workloads(previous)
                logger.info(
                    f"Carrying {len(add)} workloads over from generation {previous}"
                )
        request = TransactionRequest(
            operation="update",
            generation=generation,
            add_workloads=add,
            update_manifests=True,
            offline_cache=offline_cache or self.offline_cache,
        )
        return self._run("update", request, cancel_token)

    def repair_workloads(
        self,
        generation: Generation,
        offline_cache: Optional[Path] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> OperationResult:
        request = TransactionRequest(
            operation="repair",
            generation=generation,
            reinstall=True,
            offline_cache=offline_cache or self.offline_cache,
        )
        return self._run("repair", request, cancel_token)

    def _collection(
        self, operation: str, collect: Callable[[], object]
    ) -> OperationResult:
        try:
            collection = collect()
        except WorkloadError as e:
            return _failure(operation, e)
        failed = dict(getattr(collection, "failed", {}))
        return OperationResult(
            operation=operation,
            success=not failed,
            removed=set(getattr(collection, "removed", set())),
            failed_removals=failed,
            workloads=sorted(getattr(collection, "dropped_generations", set())),
            detail=(
                f"{len(failed)} packs could not be removed and will be retried"
                if failed
                else ""
            ),
        )

    def collect_garbage(self, dry_run: bool = False) -> OperationResult:
        return self._collection(
            "gc", lambda: self.coordinator.collect_garbage(dry_run=dry_run)
        )

    def retire_generation(self, generation: Generation) -> OperationResult:
        return self._collection(
            "retire", lambda: self.coordinator.retire_generation(generation)
        )

    def list_installed_workloads(self, generation: Generation) -> List[str]:
        """Installed workloads of *generation*. Read-only; takes no lock."""
        return sorted(self.records.installed_workloads(generation))

    def list_installed_packs(self, generation: Generation) -> List[ConcretePackage]:
        return sorted(
            self.backend.list_installed(generation), key=lambda p: (p.id, p.version)
        )

    def list_available_workloads(self, generation: Generation) -> List[str]:
        """Workloads the current manifests offer on this platform."""
        expander = WorkloadExpander(self.manifests.load(generation), self.platform)
        return expander.installable_workloads()

    def generations(self) -> List[Generation]:
        return sorted(self.records.present_generations(), key=generation_sort_key)
