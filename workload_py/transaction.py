"""
Transaction coordinator for Workload-Py.

Sequences one install/uninstall/update/repair operation:

    START -> MANIFESTS_UPDATED -> PACKS_RECONCILED -> RECORD_WRITTEN -> GC_RUN -> DONE

Any failure or cancellation before ``RECORD_WRITTEN`` unwinds the completed
steps in reverse (``ROLLING_BACK -> ROLLED_BACK``). From ``RECORD_WRITTEN`` on
the operation always runs to ``DONE``. A journal file makes an interrupted run
recoverable: the next run rolls it back or forward depending on the last
state it reached.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple

from workload_py.engine import Backend, BackendAction, InstallationUnit
from workload_py.errors import (
    InconsistentStateError,
    TransactionCancelledError,
    UnknownPackError,
    UnknownWorkloadError,
    WorkloadDependencyError,
    WorkloadError,
)
from workload_py.gc import CollectionPlan, CollectionResult, GarbageCollector
from workload_py.journal import JournalEntry, TransactionJournal
from workload_py.lock import installation_lock
from workload_py.manifest import ConcretePackage, Generation, ManifestSet
from workload_py.manifest.source import ManifestSource
from workload_py.manifest.store import ManifestStore
from workload_py.records import InstallationRecordStore
from workload_py.resolver import WorkloadExpander, required_packages

logger = logging.getLogger("workload.transaction")


class TransactionState(Enum):
    """States of one coordinated operation."""

    START = "start"
    MANIFESTS_UPDATED = "manifests-updated"
    PACKS_RECONCILED = "packs-reconciled"
    RECORD_WRITTEN = "record-written"
    GC_RUN = "gc-run"
    DONE = "done"
    ROLLING_BACK = "rolling-back"
    ROLLED_BACK = "rolled-back"


_COMMITTED_STATES = {
    TransactionState.RECORD_WRITTEN.value,
    TransactionState.GC_RUN.value,
    TransactionState.DONE.value,
}


class CancellationToken:
    """Lets another thread ask a running transaction to stop."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class TransactionRequest:
    """What one transaction should change."""

    operation: str
    generation: Generation
    add_workloads: Set[str] = field(default_factory=set)
    remove_workloads: Set[str] = field(default_factory=set)
    update_manifests: bool = False
    reinstall: bool = False
    offline_cache: Optional[Path] = None


@dataclass
class TransactionResult:
    """What a finished transaction did."""

    state: TransactionState
    added_workloads: Set[str] = field(default_factory=set)
    removed_workloads: Set[str] = field(default_factory=set)
    installed: Set[ConcretePackage] = field(default_factory=set)
    released: Set[ConcretePackage] = field(default_factory=set)
    manifest_updates: Dict[str, Tuple[Optional[int], int]] = field(
        default_factory=dict
    )
    collection: Optional[CollectionResult] = None
    collection_error: Optional[WorkloadError] = None


class TransactionCoordinator:
    """Runs operations against one installation root under its exclusive lock."""

    def __init__(
        self,
        root: Path,
        records: InstallationRecordStore,
        manifests: ManifestStore,
        backend: Backend,
        platform: str,
        manifest_source: Optional[ManifestSource] = None,
        uninstall_policy: str = "reject",
        lock_timeout: float = 30.0,
    ):
        self.root = root
        self.records = records
        self.manifests = manifests
        self.backend = backend
        self.platform = platform
        self.manifest_source = manifest_source
        self.uninstall_policy = uninstall_policy
        self.lock_timeout = lock_timeout
        self.journal = TransactionJournal(root)
        self.collector = GarbageCollector(records, manifests, backend, platform)

    # Entry points

    def run(
        self,
        request: TransactionRequest,
        cancel_token: Optional[CancellationToken] = None,
    ) -> TransactionResult:
        """
        Run *request* as one atomic operation.

        Raises:
            WorkloadError: the operation failed and was rolled back
        """
        with installation_lock(self.root, self.lock_timeout):
            self._recover()
            return self._run(request, cancel_token)

    def collect_garbage(self, dry_run: bool = False) -> CollectionResult:
        with installation_lock(self.root, self.lock_timeout):
            self._recover()
            if dry_run:
                plan = self.collector.plan()
                return CollectionResult(
                    removed=set(plan.to_remove),
                    dropped_generations=set(plan.dead_generations),
                )
            return self.collector.collect()

    def plan_garbage(self) -> CollectionPlan:
        return self.collector.plan()

    def retire_generation(self, generation: Generation) -> CollectionResult:
        """Forget a generation that is no longer on the machine and collect."""
        with installation_lock(self.root, self.lock_timeout):
            self._recover()
            logger.info(f"Retiring generation {generation}")
            self.records.unregister_generation(generation)
            return self.collector.collect()

    def recover(self) -> Optional[str]:
        """Finish or undo a transaction interrupted by a crash."""
        with installation_lock(self.root, self.lock_timeout):
            return self._recover()

    # Steps

    def _check_cancel(self, cancel_token: Optional[CancellationToken]) -> None:
        if cancel_token is not None and cancel_token.cancelled:
            raise TransactionCancelledError("The operation was cancelled")

    def _advance(self, entry: JournalEntry, state: TransactionState) -> None:
        entry.state = state.value
        self.journal.write(entry)
        logger.debug(f"Transaction {entry.operation} {entry.generation}: {state.value}")

    def _update_manifests(
        self,
        generation: Generation,
        compensations: List[BackendAction],
        result: TransactionResult,
    ) -> None:
        if self.manifest_source is None:
            logger.debug("No manifest source configured; skipping manifest update")
            return
        for manifest_id in self.manifest_source.manifest_ids(generation):
            version, content = self.manifest_source.get_latest_manifest(
                manifest_id, generation
            )
            installed = self.manifests.installed_version(generation, manifest_id)
            if installed is not None and version <= installed:
                logger.debug(
                    f"Manifest {manifest_id} {installed} is current "
                    f"(feed has {version})"
                )
                continue
            action = self.backend.install_manifest(
                manifest_id, generation, version, content
            )
            action.commit()
            compensations.append(action)
            result.manifest_updates[manifest_id] = (installed, version)
            logger.info(f"Updated manifest {manifest_id}: {installed} -> {version}")

    def _select_workloads(
        self,
        request: TransactionRequest,
        expander: WorkloadExpander,
        installed: Set[str],
    ) -> Tuple[Set[str], Set[str]]:
        add: Set[str] = set()
        for workload_id in sorted(request.add_workloads):
            if not expander.is_installable(workload_id):
                logger.warning(
                    f"Workload {workload_id} is not installable on {self.platform}; "
                    f"skipping"
                )
                continue
            add.add(workload_id)

        remove: Set[str] = set()
        for workload_id in sorted(request.remove_workloads):
            if workload_id not in installed:
                logger.warning(
                    f"Workload {workload_id} is not installed for "
                    f"{request.generation}; skipping"
                )
                continue
            remove.add(workload_id)

        if remove and self.uninstall_policy == "reject":
            remaining = (installed | add) - remove
            for workload_id in sorted(remove):
                if expander.manifests.workload(workload_id) is None:
                    continue
                dependents = expander.dependents(workload_id, remaining)
                if dependents:
                    raise WorkloadDependencyError(
                        f"Workload {workload_id} is still required by "
                        f"{', '.join(dependents)}",
                        "uninstall those workloads first or set "
                        "uninstall_policy: allow",
                    )
        return add, remove

    def _required(
        self, manifest_set: ManifestSet, workloads: Set[str]
    ) -> Set[ConcretePackage]:
        try:
            return required_packages(manifest_set, self.platform, workloads)
        except (UnknownWorkloadError, UnknownPackError) as e:
            raise InconsistentStateError(
                f"Installed workloads of {manifest_set.generation} no longer match "
                f"the manifests",
                str(e),
            ) from e

    def _reconcile_packs(
        self,
        request: TransactionRequest,
        required: Set[ConcretePackage],
        compensations: List[BackendAction],
        result: TransactionResult,
        cancel_token: Optional[CancellationToken],
    ) -> None:
        generation = request.generation
        marked = self.records.packs_for_generation(generation)
        present = self.backend.list_installed(generation)
        to_install = required if request.reinstall else required - present
        to_release = marked - required

        ordered = sorted(to_install, key=lambda p: (p.id, p.version))
        if self.backend.installation_unit is InstallationUnit.WORKLOADS:
            if ordered:
                self._check_cancel(cancel_token)
                action = self.backend.install_batch(
                    ordered, generation, request.offline_cache
                )
                action.commit()
                compensations.append(action)
        else:
            for pkg in ordered:
                self._check_cancel(cancel_token)
                action = self.backend.install(pkg, generation, request.offline_cache)
                action.commit()
                compensations.append(action)
        result.installed = set(ordered)

        for pkg in sorted(to_release, key=lambda p: (p.id, p.version)):
            action = self.backend.uninstall(pkg, generation)
            action.commit()
            compensations.append(action)
        result.released = set(to_release)

    def _unwind(
        self,
        compensations: List[BackendAction],
        undo_steps: List[Callable[[], None]],
    ) -> bool:
        clean = True
        for action in reversed(compensations):
            try:
                action.rollback()
            except (WorkloadError, OSError) as e:
                clean = False
                logger.error(f"Rollback of '{action.description}' failed: {e}")
        for step in reversed(undo_steps):
            try:
                step()
            except OSError as e:
                clean = False
                logger.error(f"Rollback step failed: {e}")
        return clean

    def _run(
        self,
        request: TransactionRequest,
        cancel_token: Optional[CancellationToken],
    ) -> TransactionResult:
        generation = request.generation
        result = TransactionResult(state=TransactionState.START)
        compensations: List[BackendAction] = []
        undo_steps: List[Callable[[], None]] = []

        new_generation = generation not in self.records.present_generations()
        entry = JournalEntry(
            operation=request.operation,
            generation=generation,
            state=TransactionState.START.value,
            previous_manifests=dict(self.manifests.installed_versions(generation)),
            new_generation=new_generation,
        )
        self.journal.write(entry)
        logger.info(f"Starting {request.operation} for generation {generation}")

        try:
            if new_generation:
                self.records.register_generation(generation)
                undo_steps.append(
                    lambda: self.records.unregister_generation(generation)
                )
            self._check_cancel(cancel_token)

            if request.update_manifests:
                self._update_manifests(generation, compensations, result)
            result.state = TransactionState.MANIFESTS_UPDATED
            self._advance(entry, result.state)
            self._check_cancel(cancel_token)

            manifest_set = self.manifests.load(generation)
            expander = WorkloadExpander(manifest_set, self.platform)
            installed = self.records.installed_workloads(generation)
            add, remove = self._select_workloads(request, expander, installed)
            target = (installed | add) - remove
            required = self._required(manifest_set, target)

            self._reconcile_packs(
                request, required, compensations, result, cancel_token
            )
            result.state = TransactionState.PACKS_RECONCILED
            self._advance(entry, result.state)
            self._check_cancel(cancel_token)

            entry.add_workloads = sorted(add)
            entry.remove_workloads = sorted(remove)
            result.state = TransactionState.RECORD_WRITTEN
            self._advance(entry, result.state)
        except BaseException as e:
            result.state = TransactionState.ROLLING_BACK
            logger.error(f"{request.operation} failed, rolling back: {e}")
            if self._unwind(compensations, undo_steps):
                self.journal.clear()
            else:
                logger.error("Rollback was incomplete; the next run will recover")
            result.state = TransactionState.ROLLED_BACK
            raise

        # The journal now carries the decision; the record must be written and
        # collection must run even if the caller cancels.
        self.records.add_workloads(generation, add)
        self.records.remove_workloads(generation, remove)
        result.added_workloads = add
        result.removed_workloads = remove

        result.collection, result.collection_error = self._collect_after_commit()
        result.state = TransactionState.GC_RUN
        self._advance(entry, result.state)

        self.journal.clear()
        result.state = TransactionState.DONE
        logger.info(f"Finished {request.operation} for generation {generation}")
        return result

    def _collect_after_commit(
        self,
    ) -> Tuple[Optional[CollectionResult], Optional[WorkloadError]]:
        """Run the collector once the record is written. Errors are returned."""
        try:
            return self.collector.collect(), None
        except InconsistentStateError as e:
            logger.error(f"Garbage collection found an inconsistent state: {e}")
            return None, e
        except WorkloadError as e:
            logger.warning(f"Garbage collection failed and will be retried: {e}")
            return None, e

    def _recover(self) -> Optional[str]:
        entry = self.journal.read()
        if entry is None:
            return None

        generation = entry.generation
        if entry.state in _COMMITTED_STATES:
            logger.warning(
                f"Completing interrupted {entry.operation} for generation {generation}"
            )
            self.records.add_workloads(generation, entry.add_workloads)
            self.records.remove_workloads(generation, entry.remove_workloads)
            outcome = "rolled-forward"
        else:
            logger.warning(
                f"Undoing interrupted {entry.operation} for generation {generation}"
            )
            current = self.manifests.installed_versions(generation)
            for manifest_id in set(current) | set(entry.previous_manifests):
                self.manifests.set_installed_version(
                    generation, manifest_id, entry.previous_manifests.get(manifest_id)
                )
            if entry.new_generation:
                self.records.unregister_generation(generation)
            outcome = "rolled-back"

        self._collect_after_commit()
        self.journal.clear()
        return outcome
