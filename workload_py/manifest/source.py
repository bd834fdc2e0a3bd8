"""
Manifest source collaborator.

The engine asks a ``ManifestSource`` for the latest version of each manifest of
a generation. ``DirectoryManifestSource`` serves them from a feed directory:

    <feed>/manifests/<generation>/<manifest_id>/<version>/WorkloadManifest.json
"""

import abc
import logging
from pathlib import Path
from typing import List, Optional, Tuple

from workload_py.errors import NetworkError, NotFoundError
from workload_py.manifest import MANIFEST_FILE_NAME, Generation

logger = logging.getLogger("workload.manifest.source")


class ManifestSource(abc.ABC):
    """Where newer manifests come from."""

    @abc.abstractmethod
    def manifest_ids(self, generation: Generation) -> List[str]:
        """List the manifests published for *generation*."""
        pass

    @abc.abstractmethod
    def get_latest_manifest(
        self, manifest_id: str, generation: Generation
    ) -> Tuple[int, Path]:
        """
        Return the newest published version of a manifest.

        Returns:
            Tuple of (version, directory holding the manifest and companion files)
        """
        pass


class DirectoryManifestSource(ManifestSource):
    """Serves manifests from a local or mounted feed directory."""

    def __init__(self, feed_root: Path):
        self.feed_root = feed_root

    def _generation_dir(self, generation: Generation) -> Path:
        if not self.feed_root.is_dir():
            raise NetworkError(f"Manifest feed {self.feed_root} is not reachable")
        return self.feed_root / "manifests" / generation

    def manifest_ids(self, generation: Generation) -> List[str]:
        gen_dir = self._generation_dir(generation)
        if not gen_dir.is_dir():
            logger.debug(f"No manifests published for generation {generation}")
            return []
        return sorted(p.name for p in gen_dir.iterdir() if p.is_dir())

    def _latest_version(self, manifest_dir: Path) -> Optional[int]:
        versions = [
            int(p.name)
            for p in manifest_dir.iterdir()
            if p.is_dir() and p.name.isdigit() and (p / MANIFEST_FILE_NAME).is_file()
        ]
        return max(versions) if versions else None

    def get_latest_manifest(
        self, manifest_id: str, generation: Generation
    ) -> Tuple[int, Path]:
        manifest_dir = self._generation_dir(generation) / manifest_id
        version = self._latest_version(manifest_dir) if manifest_dir.is_dir() else None
        if version is None:
            raise NotFoundError(
                f"Manifest {manifest_id} is not published for generation {generation}"
            )
        return version, manifest_dir / str(version)
