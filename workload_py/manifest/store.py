"""
Installed manifests, per generation.

Layout under the installation root:

    manifests/<generation>/<manifest_id>/<version>/WorkloadManifest.json
    manifests/<generation>/<manifest_id>/installed.json

``installed.json`` names the active version. Reading never touches anything
but already-placed files.
"""

import logging
import shutil
from pathlib import Path
from typing import Dict, Optional, Set

import orjson

from workload_py.errors import ManifestFormatError
from workload_py.manifest import (
    Generation,
    Manifest,
    ManifestSet,
    check_generation,
)
from workload_py.records import atomic_write_bytes

logger = logging.getLogger("workload.manifest.store")

POINTER_FILE_NAME = "installed.json"


class ManifestStore:
    """Read side of the installed manifests, plus the layout helpers backends use."""

    def __init__(self, root: Path):
        self.root = root / "manifests"

    def generation_dir(self, generation: Generation) -> Path:
        return self.root / check_generation(generation)

    def manifest_dir(self, generation: Generation, manifest_id: str) -> Path:
        return self.generation_dir(generation) / manifest_id

    def version_dir(
        self, generation: Generation, manifest_id: str, version: int
    ) -> Path:
        return self.manifest_dir(generation, manifest_id) / str(version)

    def generations(self) -> Set[Generation]:
        if not self.root.is_dir():
            return set()
        return {p.name for p in self.root.iterdir() if p.is_dir()}

    def manifest_ids(self, generation: Generation) -> Set[str]:
        """Manifests with any files in *generation*, active or not."""
        gen_dir = self.generation_dir(generation)
        if not gen_dir.is_dir():
            return set()
        return {p.name for p in gen_dir.iterdir() if p.is_dir()}

    def installed_version(
        self, generation: Generation, manifest_id: str
    ) -> Optional[int]:
        pointer = self.manifest_dir(generation, manifest_id) / POINTER_FILE_NAME
        if not pointer.is_file():
            return None
        try:
            return int(orjson.loads(pointer.read_bytes())["version"])
        except (OSError, orjson.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise ManifestFormatError(
                f"Installed version pointer {pointer} is unreadable", str(e)
            ) from e

    def installed_versions(self, generation: Generation) -> Dict[str, int]:
        versions: Dict[str, int] = {}
        gen_dir = self.generation_dir(generation)
        if not gen_dir.is_dir():
            return versions
        for manifest_dir in sorted(gen_dir.iterdir()):
            if not manifest_dir.is_dir():
                continue
            version = self.installed_version(generation, manifest_dir.name)
            if version is not None:
                versions[manifest_dir.name] = version
        return versions

    def set_installed_version(
        self, generation: Generation, manifest_id: str, version: Optional[int]
    ) -> None:
        """Atomically switch the active version; ``None`` removes the pointer."""
        pointer = self.manifest_dir(generation, manifest_id) / POINTER_FILE_NAME
        if version is None:
            pointer.unlink(missing_ok=True)
            return
        atomic_write_bytes(pointer, orjson.dumps({"version": version}))

    def remove_version(
        self, generation: Generation, manifest_id: str, version: int
    ) -> None:
        target = self.version_dir(generation, manifest_id, version)
        if target.exists():
            shutil.rmtree(target)

    def prune(self, generation: Generation, manifest_id: str) -> None:
        """Delete versions other than the active one; drop empty directories."""
        manifest_dir = self.manifest_dir(generation, manifest_id)
        if not manifest_dir.is_dir():
            return
        active = self.installed_version(generation, manifest_id)
        for child in manifest_dir.iterdir():
            if child.is_dir() and child.name != str(active):
                shutil.rmtree(child)
        if active is None and not any(manifest_dir.iterdir()):
            manifest_dir.rmdir()
        gen_dir = self.generation_dir(generation)
        if gen_dir.is_dir() and not any(gen_dir.iterdir()):
            gen_dir.rmdir()

    def load(self, generation: Generation) -> ManifestSet:
        """Return the current manifests of *generation*."""
        manifests = []
        for manifest_id, version in self.installed_versions(generation).items():
            path = self.version_dir(generation, manifest_id, version)
            manifest = Manifest.from_file(manifest_id, generation, path)
            if manifest.version != version:
                raise ManifestFormatError(
                    f"Manifest {manifest_id} at {path} declares version "
                    f"{manifest.version}, expected {version}"
                )
            manifests.append(manifest)
        logger.debug(f"Loaded {len(manifests)} manifests for generation {generation}")
        return ManifestSet(generation, manifests)
