"""
Installation record store for Workload-Py.

Records are kept as one file per addressable element under
``<root>/metadata`` so that adding or removing a single workload record or
pack usage marker never rewrites the rest of the ledger:

    metadata/generations/<generation>
    metadata/workloads/<generation>/installed/<workload_id>
    metadata/packs/<pack_id>/<pack_version>/<generation>
"""

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Dict, Iterable, Set

import orjson

from workload_py.errors import InconsistentStateError
from workload_py.manifest import (
    ConcretePackage,
    Generation,
    PackKind,
    check_generation,
)

logger = logging.getLogger("workload.records")


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write *data* to *path* so that readers see either the old or new content."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _prune_empty_dirs(path: Path, stop: Path) -> None:
    """Remove empty parents of *path* up to (not including) *stop*."""
    current = path
    while current != stop and stop in current.parents:
        try:
            current.rmdir()
        except OSError:
            return
        current = current.parent


class InstallationRecordStore:
    """Durable ledger of installed workloads and pack usage markers."""

    def __init__(self, root: Path):
        self.root = root
        self.metadata = root / "metadata"

    @property
    def _generations_dir(self) -> Path:
        return self.metadata / "generations"

    @property
    def _workloads_dir(self) -> Path:
        return self.metadata / "workloads"

    @property
    def _packs_dir(self) -> Path:
        return self.metadata / "packs"

    # Generation registry

    def register_generation(self, generation: Generation) -> None:
        marker = self._generations_dir / check_generation(generation)
        if not marker.exists():
            logger.debug(f"Registering generation {generation}")
            atomic_write_bytes(marker, b"")

    def unregister_generation(self, generation: Generation) -> None:
        (self._generations_dir / check_generation(generation)).unlink(missing_ok=True)

    def present_generations(self) -> Set[Generation]:
        """Generations currently present on the machine."""
        if not self._generations_dir.is_dir():
            return set()
        return {
            p.name
            for p in self._generations_dir.iterdir()
            if p.is_file() and not p.name.startswith(".")
        }

    def known_generations(self) -> Set[Generation]:
        """Every generation referenced by a registry entry, record or marker."""
        known = set(self.present_generations())
        if self._workloads_dir.is_dir():
            known.update(p.name for p in self._workloads_dir.iterdir() if p.is_dir())
        for generations in self.pack_markers().values():
            known.update(generations)
        return known

    # Workload records

    def _installed_dir(self, generation: Generation) -> Path:
        return self._workloads_dir / check_generation(generation) / "installed"

    def installed_workloads(self, generation: Generation) -> Set[str]:
        installed = self._installed_dir(generation)
        if not installed.is_dir():
            return set()
        return {
            p.name
            for p in installed.iterdir()
            if p.is_file() and not p.name.startswith(".")
        }

    def add_workloads(
        self, generation: Generation, workload_ids: Iterable[str]
    ) -> None:
        for workload_id in workload_ids:
            marker = self._installed_dir(generation) / workload_id
            if not marker.exists():
                atomic_write_bytes(marker, b"")
                logger.debug(f"Recorded workload {workload_id} for {generation}")

    def remove_workloads(
        self, generation: Generation, workload_ids: Iterable[str]
    ) -> None:
        for workload_id in workload_ids:
            (self._installed_dir(generation) / workload_id).unlink(missing_ok=True)
            logger.debug(f"Removed workload record {workload_id} for {generation}")

    # Pack usage markers

    def _marker_path(self, pkg: ConcretePackage, generation: Generation) -> Path:
        return self._packs_dir / pkg.id / pkg.version / check_generation(generation)

    def has_pack_marker(self, pkg: ConcretePackage, generation: Generation) -> bool:
        return self._marker_path(pkg, generation).is_file()

    def add_pack_marker(self, pkg: ConcretePackage, generation: Generation) -> bool:
        """Write the usage marker. Returns False when it already existed."""
        marker = self._marker_path(pkg, generation)
        if marker.is_file():
            return False
        data = {"id": pkg.id, "version": pkg.version, "kind": pkg.kind.value}
        atomic_write_bytes(marker, orjson.dumps(data))
        return True

    def remove_pack_marker(self, pkg: ConcretePackage, generation: Generation) -> bool:
        """Remove the usage marker. Returns False when there was none."""
        marker = self._marker_path(pkg, generation)
        if not marker.is_file():
            return False
        marker.unlink()
        _prune_empty_dirs(marker.parent, self._packs_dir)
        return True

    def _read_marker(self, path: Path, pack_id: str, version: str) -> ConcretePackage:
        try:
            data = orjson.loads(path.read_bytes())
            kind = PackKind(data.get("kind", PackKind.LIBRARY.value))
        except (OSError, orjson.JSONDecodeError, ValueError) as e:
            raise InconsistentStateError(
                f"Pack usage marker {path} is unreadable", str(e)
            ) from e
        return ConcretePackage(pack_id, version, kind)

    def pack_markers(self) -> Dict[ConcretePackage, Set[Generation]]:
        """Map every marked pack to the generations holding a marker for it."""
        result: Dict[ConcretePackage, Set[Generation]] = {}
        if not self._packs_dir.is_dir():
            return result
        for id_dir in sorted(self._packs_dir.iterdir()):
            if not id_dir.is_dir():
                continue
            for version_dir in sorted(id_dir.iterdir()):
                if not version_dir.is_dir():
                    continue
                for marker in sorted(version_dir.iterdir()):
                    if not marker.is_file() or marker.name.startswith("."):
                        continue
                    pkg = self._read_marker(marker, id_dir.name, version_dir.name)
                    result.setdefault(pkg, set()).add(marker.name)
        return result

    def packs_for_generation(self, generation: Generation) -> Set[ConcretePackage]:
        return {
            pkg
            for pkg, generations in self.pack_markers().items()
            if generation in generations
        }

    def drop_generation(self, generation: Generation) -> None:
        """Delete every record and usage marker held by *generation*."""
        check_generation(generation)
        logger.info(f"Dropping all records for generation {generation}")
        for pkg in self.packs_for_generation(generation):
            self.remove_pack_marker(pkg, generation)
        workloads_dir = self._workloads_dir / generation
        if workloads_dir.exists():
            shutil.rmtree(workloads_dir)
        self.unregister_generation(generation)
