"""
File backend for Workload-Py.

Places pack payloads as plain files under the installation root:

    packs/<id>/<version>/             runtime assets, build tools, libraries, tools
    template-packs/<id>/<version>/    template archives, kept unextracted

Payload directories are keyed by ``(id, version)`` only and are never modified
once placed; generations share them. ``uninstall`` only drops the usage
marker, and the garbage collector removes payloads.
"""

import logging
import shutil
from pathlib import Path
from typing import Optional, Set

from workload_py.engine import Backend, BackendAction, place_tree
from workload_py.errors import BackendOperationError
from workload_py.manifest import ConcretePackage, Generation, PackKind

logger = logging.getLogger("workload.engine.files")


class _InstallPack(BackendAction):
    def __init__(
        self,
        backend: "FileBackend",
        pkg: ConcretePackage,
        generation: Generation,
        source: Optional[Path],
    ):
        super().__init__(f"install {pkg} for {generation}")
        self.backend = backend
        self.pkg = pkg
        self.generation = generation
        self.source = source
        self.placed_payload = False
        self.added_marker = False

    def _apply(self) -> None:
        target = self.backend.payload_path(self.pkg)
        if not target.exists():
            if self.source is None:
                raise BackendOperationError(f"No payload was fetched for {self.pkg}")
            place_tree(self.source, target, self.backend.staging_root)
            self.placed_payload = True
            logger.info(f"Installed {self.pkg} at {target}")
        else:
            logger.debug(f"{self.pkg} is already installed at {target}")
        try:
            self.added_marker = self.backend.records.add_pack_marker(
                self.pkg, self.generation
            )
        except OSError as e:
            self._undo()
            raise BackendOperationError(
                f"Failed to record usage of {self.pkg}", str(e)
            ) from e

    def _undo(self) -> None:
        if self.added_marker:
            self.backend.records.remove_pack_marker(self.pkg, self.generation)
            self.added_marker = False
        if self.placed_payload:
            self.backend.remove_payload(self.pkg)
            self.placed_payload = False


class FileBackend(Backend):
    """Backend that copies payloads into the installation root."""

    name = "file"

    @property
    def packs_dir(self) -> Path:
        return self.root / "packs"

    @property
    def template_packs_dir(self) -> Path:
        return self.root / "template-packs"

    def payload_path(self, pkg: ConcretePackage) -> Path:
        if pkg.kind is PackKind.TEMPLATE:
            return self.template_packs_dir / pkg.id / pkg.version
        return self.packs_dir / pkg.id / pkg.version

    def install(
        self,
        pkg: ConcretePackage,
        generation: Generation,
        offline_cache: Optional[Path] = None,
    ) -> BackendAction:
        source = None
        if not self.payload_path(pkg).exists():
            source = self.fetcher.fetch(pkg.id, pkg.version, offline_cache)
        return _InstallPack(self, pkg, generation, source).apply()

    def remove_payload(self, pkg: ConcretePackage) -> None:
        removed = False
        for base in (self.packs_dir, self.template_packs_dir):
            target = base / pkg.id / pkg.version
            if not target.exists():
                continue
            try:
                shutil.rmtree(target)
            except OSError as e:
                raise BackendOperationError(f"Failed to remove {pkg}", str(e)) from e
            removed = True
            id_dir = target.parent
            if id_dir.is_dir() and not any(id_dir.iterdir()):
                id_dir.rmdir()
        if removed:
            logger.info(f"Removed payload of {pkg}")

    def installed_payloads(self) -> Set[ConcretePackage]:
        result: Set[ConcretePackage] = set()
        for base, kind in (
            (self.packs_dir, PackKind.LIBRARY),
            (self.template_packs_dir, PackKind.TEMPLATE),
        ):
            if not base.is_dir():
                continue
            for id_dir in base.iterdir():
                if not id_dir.is_dir():
                    continue
                for version_dir in id_dir.iterdir():
                    if version_dir.is_dir():
                        result.add(ConcretePackage(id_dir.name, version_dir.name, kind))
        return result
