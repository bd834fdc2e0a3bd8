"""
Engine package for Workload-Py.

This module provides the base classes for installer backends. A backend places
and removes pack payloads with one installer technology (plain files, a native
installer command) and exposes each change as a ``BackendAction`` that can be
committed or rolled back.

Payload removal is never done by ``uninstall``: it only drops the generation's
usage marker, and the garbage collector removes payloads that no live
generation requires.
"""

import abc
import logging
import os
import shutil
import tempfile
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional, Set

from workload_py.errors import BackendOperationError
from workload_py.fetch import PackageFetcher
from workload_py.manifest import ConcretePackage, Generation
from workload_py.manifest.store import ManifestStore
from workload_py.records import InstallationRecordStore

logger = logging.getLogger("workload.engine")


class InstallationUnit(Enum):
    """What a backend addresses in one installer call."""

    PACKS = "packs"
    WORKLOADS = "workloads"


class ActionState(Enum):
    """Lifecycle of a single backend action."""

    PENDING = "pending"
    APPLIED = "applied"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled-back"


class BackendAction:
    """
    One reversible change made by a backend.

    ``PENDING -> APPLIED -> COMMITTED`` on success, ``-> ROLLED_BACK`` on abort.
    ``rollback()`` is accepted from ``APPLIED`` and, as the compensating action
    used while a transaction unwinds, from ``COMMITTED``.
    """

    def __init__(self, description: str):
        self.description = description
        self.state = ActionState.PENDING

    def _apply(self) -> None:
        pass

    def _undo(self) -> None:
        pass

    @property
    def completed(self) -> bool:
        return self.state in (ActionState.APPLIED, ActionState.COMMITTED)

    def apply(self) -> "BackendAction":
        if self.state is not ActionState.PENDING:
            raise BackendOperationError(
                f"Cannot apply '{self.description}' in state {self.state.value}"
            )
        try:
            self._apply()
        except BaseException:
            self.state = ActionState.ROLLED_BACK
            raise
        self.state = ActionState.APPLIED
        return self

    def commit(self) -> None:
        if self.state is not ActionState.APPLIED:
            raise BackendOperationError(
                f"Cannot commit '{self.description}' in state {self.state.value}"
            )
        self.state = ActionState.COMMITTED

    def rollback(self) -> None:
        if self.state is ActionState.ROLLED_BACK:
            return
        if self.state is ActionState.PENDING:
            self.state = ActionState.ROLLED_BACK
            return
        logger.debug(f"Rolling back: {self.description}")
        self._undo()
        self.state = ActionState.ROLLED_BACK

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.description!r} {self.state.value}>"


class CompositeAction(BackendAction):
    """Applies child actions in order and undoes them in reverse."""

    def __init__(self, description: str, children: Iterable[BackendAction]):
        super().__init__(description)
        self.children = list(children)

    @classmethod
    def from_applied(
        cls, description: str, children: Iterable[BackendAction]
    ) -> "CompositeAction":
        """Group actions that were already applied one by one."""
        action = cls(description, children)
        action.state = ActionState.APPLIED
        return action

    def _apply(self) -> None:
        applied: List[BackendAction] = []
        try:
            for child in self.children:
                child.apply()
                applied.append(child)
        except BaseException:
            for child in reversed(applied):
                child.rollback()
            raise

    def _undo(self) -> None:
        for child in reversed(self.children):
            child.rollback()

    def commit(self) -> None:
        super().commit()
        for child in self.children:
            if child.state is ActionState.APPLIED:
                child.commit()


class _RemoveMarker(BackendAction):
    def __init__(
        self,
        records: InstallationRecordStore,
        pkg: ConcretePackage,
        generation: Generation,
    ):
        super().__init__(f"uninstall {pkg} for {generation}")
        self.records = records
        self.pkg = pkg
        self.generation = generation
        self.removed = False

    def _apply(self) -> None:
        self.removed = self.records.remove_pack_marker(self.pkg, self.generation)

    def _undo(self) -> None:
        if self.removed:
            self.records.add_pack_marker(self.pkg, self.generation)


def place_tree(source: Path, target: Path, staging_root: Path) -> None:
    """
    Copy *source* to *target* through a staging directory and a single rename.

    Directories are copied, archives are extracted, other files are copied
    into *target*. A crash leaves either nothing at *target* or the complete
    payload.
    """
    staging_root.mkdir(parents=True, exist_ok=True)
    staged = Path(tempfile.mkdtemp(prefix=f"{target.name}.", dir=staging_root))
    try:
        payload = staged / "payload"
        if source.is_dir():
            shutil.copytree(source, payload)
        elif source.name.endswith(".nupkg"):
            shutil.unpack_archive(str(source), str(payload), format="zip")
        elif source.name.endswith((".zip", ".tar.gz", ".tgz")):
            shutil.unpack_archive(str(source), str(payload))
        else:
            payload.mkdir()
            shutil.copy2(source, payload / source.name)
        target.parent.mkdir(parents=True, exist_ok=True)
        os.rename(payload, target)
    except (OSError, shutil.ReadError) as e:
        raise BackendOperationError(
            f"Failed to place {source} at {target}", str(e)
        ) from e
    finally:
        shutil.rmtree(staged, ignore_errors=True)


class _PlaceManifest(BackendAction):
    def __init__(
        self,
        store: ManifestStore,
        staging_root: Path,
        manifest_id: str,
        generation: Generation,
        version: int,
        content_dir: Path,
    ):
        super().__init__(f"install manifest {manifest_id}@{version} for {generation}")
        self.store = store
        self.staging_root = staging_root
        self.manifest_id = manifest_id
        self.generation = generation
        self.version = version
        self.content_dir = content_dir
        self.previous: Optional[int] = None
        self.created = False

    def _apply(self) -> None:
        self.previous = self.store.installed_version(self.generation, self.manifest_id)
        target = self.store.version_dir(self.generation, self.manifest_id, self.version)
        if not target.exists():
            place_tree(self.content_dir, target, self.staging_root)
            self.created = True
        self.store.set_installed_version(
            self.generation, self.manifest_id, self.version
        )

    def _undo(self) -> None:
        self.store.set_installed_version(
            self.generation, self.manifest_id, self.previous
        )
        if self.created:
            self.store.remove_version(self.generation, self.manifest_id, self.version)


class _RemoveManifest(BackendAction):
    def __init__(self, store: ManifestStore, manifest_id: str, generation: Generation):
        super().__init__(f"uninstall manifest {manifest_id} for {generation}")
        self.store = store
        self.manifest_id = manifest_id
        self.generation = generation
        self.previous: Optional[int] = None

    def _apply(self) -> None:
        self.previous = self.store.installed_version(self.generation, self.manifest_id)
        self.store.set_installed_version(self.generation, self.manifest_id, None)

    def _undo(self) -> None:
        self.store.set_installed_version(
            self.generation, self.manifest_id, self.previous
        )


class Backend(abc.ABC):
    """Base class for installer backends."""

    name = "base"
    installation_unit = InstallationUnit.PACKS
    requires_elevation = False

    def __init__(
        self,
        root: Path,
        records: InstallationRecordStore,
        manifests: ManifestStore,
        fetcher: PackageFetcher,
    ):
        self.root = root
        self.records = records
        self.manifests = manifests
        self.fetcher = fetcher
        self.staging_root = root / ".staging"

    @abc.abstractmethod
    def install(
        self,
        pkg: ConcretePackage,
        generation: Generation,
        offline_cache: Optional[Path] = None,
    ) -> BackendAction:
        """
        Place the payload of *pkg* and record *generation*'s usage marker.

        Installing a pack that is already present succeeds without touching
        the payload.

        Returns:
            The action, in state ``APPLIED``

        Raises:
            FetchError: the payload could not be fetched
            BackendOperationError: the payload could not be placed
        """
        pass

    def install_batch(
        self,
        pkgs: Iterable[ConcretePackage],
        generation: Generation,
        offline_cache: Optional[Path] = None,
    ) -> BackendAction:
        """Install several packs as one action. Fails as a whole."""
        ordered = sorted(pkgs, key=lambda p: (p.id, p.version))
        applied: List[BackendAction] = []
        try:
            for pkg in ordered:
                applied.append(self.install(pkg, generation, offline_cache))
        except BaseException:
            for action in reversed(applied):
                action.rollback()
            raise
        return CompositeAction.from_applied(
            f"install {len(applied)} packs for {generation}", applied
        )

    def uninstall(self, pkg: ConcretePackage, generation: Generation) -> BackendAction:
        """Drop *generation*'s usage marker. The payload is left to the collector."""
        return _RemoveMarker(self.records, pkg, generation).apply()

    @abc.abstractmethod
    def remove_payload(self, pkg: ConcretePackage) -> None:
        """
        Physically remove the payload of *pkg*. Only the collector calls this.

        Raises:
            BackendOperationError: the payload could not be removed
        """
        pass

    @abc.abstractmethod
    def installed_payloads(self) -> Set[ConcretePackage]:
        """Every pack payload present, regardless of generation."""
        pass

    def list_installed(self, generation: Generation) -> Set[ConcretePackage]:
        """Packs present on disk and marked as used by *generation*."""
        payloads = self.installed_payloads()
        marked = self.records.packs_for_generation(generation)
        return {p for p in marked if p in payloads}

    def install_manifest(
        self,
        manifest_id: str,
        generation: Generation,
        version: int,
        content_dir: Path,
    ) -> BackendAction:
        """Place a manifest (and companion files) and make it the active version."""
        return _PlaceManifest(
            self.manifests,
            self.staging_root,
            manifest_id,
            generation,
            version,
            content_dir,
        ).apply()

    def uninstall_manifest(
        self, manifest_id: str, generation: Generation
    ) -> BackendAction:
        """Deactivate a manifest. Its files are pruned once the transaction ends."""
        return _RemoveManifest(self.manifests, manifest_id, generation).apply()


def select_backend(
    backend: str,
    root: Path,
    records: InstallationRecordStore,
    manifests: ManifestStore,
    fetcher: PackageFetcher,
    native_command: Optional[List[str]] = None,
    native_timeout: Optional[float] = None,
) -> Backend:
    """
    Pick the backend once, at startup.

    ``auto`` probes for the native installer command on ``PATH`` and falls back
    to plain files.
    """
    from workload_py.engine.files import FileBackend
    from workload_py.engine.native import NativeInstallerBackend

    command = native_command or []
    use_native = backend == "native" or (
        backend == "auto" and bool(command) and shutil.which(command[0]) is not None
    )
    if use_native:
        if not command:
            raise BackendOperationError("The native backend needs an installer command")
        logger.info(f"Using native installer backend ({command[0]})")
        return NativeInstallerBackend(
            root, records, manifests, fetcher, command=command, timeout=native_timeout
        )
    logger.info("Using file backend")
    return FileBackend(root, records, manifests, fetcher)
