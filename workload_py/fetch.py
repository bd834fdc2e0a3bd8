"""
Package-fetch collaborator.

Given a concrete package ID and version, a ``PackageFetcher`` returns a local
path holding the payload: either a directory or an archive. The reference
``DirectoryPackageFetcher`` reads a feed directory laid out as

    <feed>/packages/<id>/<version>/            (directory payload)
    <feed>/packages/<id>.<version>.zip         (archive payload)

and consults an offline cache with the same layout first.
"""

import abc
import logging
from pathlib import Path
from typing import Optional

from workload_py.errors import NetworkError, NotFoundError

logger = logging.getLogger("workload.fetch")

ARCHIVE_SUFFIXES = (".zip", ".nupkg", ".tar.gz", ".tgz")


class PackageFetcher(abc.ABC):
    """Source of package payloads."""

    @abc.abstractmethod
    def fetch(
        self, package_id: str, version: str, offline_cache: Optional[Path] = None
    ) -> Path:
        """
        Return a local path to the payload of ``package_id@version``.

        Raises:
            NotFoundError: the package is not available
            NetworkError: the feed could not be reached
        """
        pass


def _lookup(base: Path, package_id: str, version: str) -> Optional[Path]:
    directory = base / package_id / version
    if directory.is_dir():
        return directory
    for suffix in ARCHIVE_SUFFIXES:
        archive = base / f"{package_id}.{version}{suffix}"
        if archive.is_file():
            return archive
    return None


class DirectoryPackageFetcher(PackageFetcher):
    """Fetches payloads from a feed directory and an optional offline cache."""

    def __init__(self, feed_root: Optional[Path] = None):
        self.feed_root = feed_root

    def fetch(
        self, package_id: str, version: str, offline_cache: Optional[Path] = None
    ) -> Path:
        if offline_cache is not None:
            cached = _lookup(offline_cache, package_id, version)
            if cached is not None:
                logger.debug(f"Using {package_id}@{version} from offline cache")
                return cached
            if self.feed_root is None:
                raise NotFoundError(
                    f"Package {package_id}@{version} is not in the offline cache",
                    str(offline_cache),
                )

        if self.feed_root is None:
            raise NetworkError("No package feed is configured")
        if not self.feed_root.is_dir():
            raise NetworkError(f"Package feed {self.feed_root} is not reachable")

        found = _lookup(self.feed_root / "packages", package_id, version)
        if found is None:
            raise NotFoundError(
                f"Package {package_id}@{version} was not found", str(self.feed_root)
            )
        logger.debug(f"Fetched {package_id}@{version} from {found}")
        return found
