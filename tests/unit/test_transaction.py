"""
Tests for the transaction coordinator: atomicity, cancellation and recovery.
"""

from pathlib import Path
from typing import Optional
from unittest.mock import patch

import pytest
from conftest import CORE_MANIFEST, GENERATION, write_manifest, write_package

from workload_py.engine import BackendAction
from workload_py.errors import (
    BackendOperationError,
    InstallationLockError,
    TransactionCancelledError,
)
from workload_py.gc import CollectionResult
from workload_py.installer import WorkloadInstaller
from workload_py.journal import JournalEntry
from workload_py.lock import installation_lock
from workload_py.manifest import ConcretePackage
from workload_py.transaction import (
    CancellationToken,
    TransactionRequest,
    TransactionState,
)

P1 = ConcretePackage("P1", "1.0.0")
P2 = ConcretePackage("P2", "2.0.0")
P3 = ConcretePackage("P3", "3.0.0")
P4 = ConcretePackage("P4.linux", "4.0.0")


def snapshot(installer: WorkloadInstaller) -> tuple:
    """Everything a failed transaction must leave untouched."""
    return (
        installer.records.installed_workloads(GENERATION),
        installer.records.pack_markers(),
        installer.backend.installed_payloads(),
        installer.manifests.installed_versions(GENERATION),
    )


def fail_on(installer: WorkloadInstaller, target: ConcretePackage):
    """Patch the backend so that installing *target* fails."""
    real_install = installer.backend.install

    def install(
        pkg: ConcretePackage, generation: str, offline_cache: Optional[Path] = None
    ) -> BackendAction:
        if pkg == target:
            raise BackendOperationError(f"Failed to place {pkg}", "disk full")
        return real_install(pkg, generation, offline_cache)

    return patch.object(installer.backend, "install", side_effect=install)


class TestInstallUninstall:
    def test_install_records_workload_and_packs(
        self, installer: WorkloadInstaller
    ) -> None:
        result = installer.install_workloads(["B"], GENERATION)

        assert result.success
        assert result.installed == {P1, P2}
        assert result.workloads == ["B"]
        assert result.detail == "core installed at 1"
        assert installer.list_installed_workloads(GENERATION) == ["B"]
        assert installer.backend.list_installed(GENERATION) == {P1, P2}
        assert installer.records.present_generations() == {GENERATION}
        assert installer.coordinator.journal.read() is None

    def test_alias_and_abstract_base_resolved(
        self, installer: WorkloadInstaller, root: Path
    ) -> None:
        result = installer.install_workloads(["C"], GENERATION)
        assert result.installed == {P3, P4}
        assert (root / "template-packs" / "P3" / "3.0.0").is_dir()
        assert (root / "packs" / "P4.linux" / "4.0.0").is_dir()

    def test_round_trip_restores_empty_state(
        self, installer: WorkloadInstaller
    ) -> None:
        assert installer.install_workloads(["A", "B", "C"], GENERATION).success
        result = installer.uninstall_workloads(["A", "B", "C"], GENERATION)

        assert result.success
        assert result.removed == {P1, P2, P3, P4}
        assert installer.records.installed_workloads(GENERATION) == set()
        assert installer.records.pack_markers() == {}
        assert installer.backend.installed_payloads() == set()

    def test_reinstall_is_a_no_op(self, installer: WorkloadInstaller) -> None:
        assert installer.install_workloads(["A"], GENERATION).success
        before = snapshot(installer)
        result = installer.install_workloads(["A"], GENERATION)
        assert result.success
        assert result.installed == set()
        assert snapshot(installer) == before

    def test_abstract_workload_is_skipped(self, installer: WorkloadInstaller) -> None:
        result = installer.install_workloads(["base", "mac-only"], GENERATION)
        assert result.success
        assert installer.list_installed_workloads(GENERATION) == []

    def test_unknown_workload_fails_cleanly(
        self, installer: WorkloadInstaller
    ) -> None:
        result = installer.install_workloads(["nope"], GENERATION)
        assert not result.success
        assert result.error_type == "UnknownWorkloadError"
        assert installer.records.present_generations() == set()
        assert installer.manifests.installed_versions(GENERATION) == {}

    def test_uninstall_not_installed_is_skipped(
        self, installer: WorkloadInstaller
    ) -> None:
        assert installer.install_workloads(["A"], GENERATION).success
        result = installer.uninstall_workloads(["C"], GENERATION)
        assert result.success
        assert installer.list_installed_workloads(GENERATION) == ["A"]


class TestRollback:
    def test_backend_failure_leaves_state_unchanged(
        self, installer: WorkloadInstaller
    ) -> None:
        assert installer.install_workloads(["A"], GENERATION).success
        before = snapshot(installer)

        with fail_on(installer, P4):
            result = installer.install_workloads(["C"], GENERATION)

        assert not result.success
        assert result.error_type == "BackendOperationError"
        assert snapshot(installer) == before
        assert installer.coordinator.journal.read() is None

    def test_manifest_update_is_undone(
        self, installer: WorkloadInstaller, feed: Path
    ) -> None:
        assert installer.install_workloads(["A"], GENERATION).success
        write_manifest(feed, "core", 2, CORE_MANIFEST)

        with fail_on(installer, P3):
            result = installer.install_workloads(["C"], GENERATION)

        assert not result.success
        assert installer.manifests.installed_versions(GENERATION) == {"core": 1}
        assert not installer.manifests.version_dir(GENERATION, "core", 2).exists()

    def test_fetch_failure_is_retryable(
        self, installer: WorkloadInstaller, feed: Path
    ) -> None:
        (feed / "packages" / "P2" / "2.0.0" / "payload.txt").unlink()
        (feed / "packages" / "P2" / "2.0.0").rmdir()

        result = installer.install_workloads(["B"], GENERATION)

        assert not result.success
        assert result.error_type == "NotFoundError"
        assert result.error is not None and result.error.retryable
        assert installer.backend.installed_payloads() == set()
        assert installer.records.pack_markers() == {}

    def test_new_generation_is_unregistered(
        self, installer: WorkloadInstaller
    ) -> None:
        with fail_on(installer, P1):
            result = installer.install_workloads(["A"], GENERATION)
        assert not result.success
        assert installer.records.present_generations() == set()


class TestCancellation:
    def test_cancel_before_start(self, installer: WorkloadInstaller) -> None:
        token = CancellationToken()
        token.cancel()
        result = installer.install_workloads(["A"], GENERATION, cancel_token=token)
        assert not result.success
        assert result.error_type == "TransactionCancelledError"
        assert installer.records.present_generations() == set()
        assert installer.backend.installed_payloads() == set()

    def test_cancel_between_packs(self, installer: WorkloadInstaller) -> None:
        token = CancellationToken()
        real_install = installer.backend.install

        def install_then_cancel(
            pkg: ConcretePackage, generation: str, offline_cache: Optional[Path] = None
        ) -> BackendAction:
            action = real_install(pkg, generation, offline_cache)
            token.cancel()
            return action

        with patch.object(
            installer.backend, "install", side_effect=install_then_cancel
        ):
            result = installer.install_workloads(["C"], GENERATION, cancel_token=token)

        assert not result.success
        assert isinstance(result.error, TransactionCancelledError)
        assert installer.backend.installed_payloads() == set()
        assert installer.records.pack_markers() == {}

    def test_cancel_after_record_written_is_ignored(
        self, installer: WorkloadInstaller
    ) -> None:
        assert installer.install_workloads(["A"], GENERATION).success
        token = CancellationToken()
        collector = installer.coordinator.collector
        real_collect = collector.collect

        def cancel_then_collect() -> CollectionResult:
            token.cancel()
            return real_collect()

        request = TransactionRequest("uninstall", GENERATION, remove_workloads={"A"})
        with patch.object(collector, "collect", side_effect=cancel_then_collect):
            result = installer.coordinator.run(request, token)

        assert token.cancelled
        assert result.state is TransactionState.DONE
        assert result.removed_workloads == {"A"}
        assert result.collection is not None
        assert result.collection.removed == {P1}
        assert installer.records.installed_workloads(GENERATION) == set()
        assert installer.backend.installed_payloads() == set()
        assert installer.coordinator.journal.read() is None

    def test_coordinator_reports_rolled_back(
        self, installer: WorkloadInstaller
    ) -> None:
        token = CancellationToken()
        token.cancel()
        request = TransactionRequest("install", GENERATION, add_workloads={"A"})
        with pytest.raises(TransactionCancelledError):
            installer.coordinator.run(request, token)


class TestRecovery:
    def _interrupted(
        self, installer: WorkloadInstaller, state: TransactionState
    ) -> None:
        """Leave the root as if 'install B' crashed after reaching *state*."""
        installer.backend.install(P2, GENERATION).commit()
        installer.coordinator.journal.write(
            JournalEntry(
                operation="install",
                generation=GENERATION,
                state=state.value,
                previous_manifests={"core": 1},
                add_workloads=["B"],
            )
        )

    def test_roll_back_before_record(self, installer: WorkloadInstaller) -> None:
        assert installer.install_workloads(["A"], GENERATION).success
        self._interrupted(installer, TransactionState.PACKS_RECONCILED)

        assert installer.coordinator.recover() == "rolled-back"

        assert installer.list_installed_workloads(GENERATION) == ["A"]
        assert installer.backend.installed_payloads() == {P1}
        assert installer.records.pack_markers() == {P1: {GENERATION}}
        assert installer.coordinator.journal.read() is None

    def test_roll_forward_after_record(self, installer: WorkloadInstaller) -> None:
        assert installer.install_workloads(["A"], GENERATION).success
        self._interrupted(installer, TransactionState.RECORD_WRITTEN)

        assert installer.coordinator.recover() == "rolled-forward"

        assert installer.list_installed_workloads(GENERATION) == ["A", "B"]
        assert installer.backend.installed_payloads() == {P1, P2}
        assert installer.coordinator.journal.read() is None

    def test_roll_back_restores_manifest_pointer(
        self, installer: WorkloadInstaller, feed: Path
    ) -> None:
        assert installer.install_workloads(["A"], GENERATION).success
        content = write_manifest(feed, "core", 2, CORE_MANIFEST)
        installer.backend.install_manifest("core", GENERATION, 2, content).commit()
        self._interrupted(installer, TransactionState.MANIFESTS_UPDATED)

        installer.coordinator.recover()

        assert installer.manifests.installed_versions(GENERATION) == {"core": 1}
        assert not installer.manifests.version_dir(GENERATION, "core", 2).exists()

    def test_next_operation_recovers_first(self, installer: WorkloadInstaller) -> None:
        assert installer.install_workloads(["A"], GENERATION).success
        self._interrupted(installer, TransactionState.RECORD_WRITTEN)

        result = installer.install_workloads(["C"], GENERATION)

        assert result.success
        assert installer.list_installed_workloads(GENERATION) == ["A", "B", "C"]

    def test_nothing_to_recover(self, installer: WorkloadInstaller) -> None:
        assert installer.coordinator.recover() is None


def test_lock_contention(installer: WorkloadInstaller, root: Path) -> None:
    installer.coordinator.lock_timeout = 0.1
    with installation_lock(root, timeout=1.0):
        result = installer.install_workloads(["A"], GENERATION)
    assert not result.success
    assert isinstance(result.error, InstallationLockError)
    assert result.error.retryable


class TestUpdateAndRepair:
    def test_update_moves_to_new_pack_version(
        self, installer: WorkloadInstaller, feed: Path
    ) -> None:
        assert installer.install_workloads(["A"], GENERATION).success
        bumped = dict(CORE_MANIFEST)
        bumped["packs"] = dict(CORE_MANIFEST["packs"])
        bumped["packs"]["P1"] = {"kind": "library", "version": "1.1.0"}
        write_manifest(feed, "core", 2, bumped)
        write_package(feed, "P1", "1.1.0")

        result = installer.update_workloads(GENERATION)

        new_p1 = ConcretePackage("P1", "1.1.0")
        assert result.success
        assert result.installed == {new_p1}
        assert result.removed == {P1}
        assert result.detail == "core 1 -> 2"
        assert installer.backend.installed_payloads() == {new_p1}
        assert installer.manifests.installed_versions(GENERATION) == {"core": 2}
        assert not installer.manifests.version_dir(GENERATION, "core", 1).exists()

    def test_update_from_previous_generation(
        self, installer: WorkloadInstaller, feed: Path
    ) -> None:
        assert installer.install_workloads(["A", "C"], GENERATION).success
        write_manifest(feed, "core", 1, CORE_MANIFEST, generation="9.0.100")

        result = installer.update_workloads("9.0.100", from_previous_generation=True)

        assert result.success
        assert installer.previous_generation("9.0.100") == GENERATION
        assert installer.list_installed_workloads("9.0.100") == ["A", "C"]
        assert installer.generations() == [GENERATION, "9.0.100"]
        # Payloads are shared, not copied.
        assert result.installed == {P1, P3, P4}
        assert installer.backend.installed_payloads() == {P1, P3, P4}

    def test_repair_restores_deleted_payload(
        self, installer: WorkloadInstaller, root: Path
    ) -> None:
        assert installer.install_workloads(["A"], GENERATION).success
        payload = root / "packs" / "P1" / "1.0.0"
        (payload / "payload.txt").unlink()
        payload.rmdir()

        result = installer.repair_workloads(GENERATION)

        assert result.success
        assert (payload / "payload.txt").is_file()
        assert installer.backend.list_installed(GENERATION) == {P1}
