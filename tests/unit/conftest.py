"""
Shared fixtures: a feed directory with one manifest and its packages.
"""

from pathlib import Path
from typing import Any, Dict, Optional

import orjson
import pytest

from workload_py.fetch import DirectoryPackageFetcher
from workload_py.installer import WorkloadInstaller
from workload_py.manifest import MANIFEST_FILE_NAME, Manifest, ManifestSet
from workload_py.manifest.source import DirectoryManifestSource

GENERATION = "8.0.100"
PLATFORM = "linux-x64"

CORE_MANIFEST: Dict[str, Any] = {
    "version": 1,
    "workloads": {
        "A": {"description": "Workload A", "packs": ["P1"]},
        "B": {"description": "Workload B", "packs": ["P2"], "extends": ["A"]},
        "C": {"description": "Workload C", "packs": ["P3"], "extends": ["base"]},
        "base": {"abstract": True, "packs": ["P4"]},
        "mac-only": {"packs": ["P5"], "platforms": ["osx-arm64"]},
    },
    "packs": {
        "P1": {"kind": "library", "version": "1.0.0"},
        "P2": {"kind": "library", "version": "2.0.0"},
        "P3": {"kind": "template", "version": "3.0.0"},
        "P4": {
            "kind": "runtime-asset",
            "version": "4.0.0",
            "alias-to": {"linux-x64": "P4.linux", "any": "P4.any"},
        },
        "P5": {"kind": "build-tool", "version": "5.0.0"},
    },
}


def write_manifest(
    feed: Path,
    manifest_id: str,
    version: int,
    data: Dict[str, Any],
    generation: str = GENERATION,
) -> Path:
    """Publish a manifest version in *feed*."""
    target = feed / "manifests" / generation / manifest_id / str(version)
    target.mkdir(parents=True, exist_ok=True)
    document = dict(data, version=version)
    (target / MANIFEST_FILE_NAME).write_bytes(orjson.dumps(document))
    return target


def write_package(feed: Path, pack_id: str, version: str) -> Path:
    """Publish a package payload directory in *feed*."""
    target = feed / "packages" / pack_id / version
    target.mkdir(parents=True, exist_ok=True)
    (target / "payload.txt").write_text(f"{pack_id} {version}\n")
    return target


def make_manifest_set(
    data: Dict[str, Any], manifest_id: str = "core", generation: str = GENERATION
) -> ManifestSet:
    return ManifestSet(generation, [Manifest.from_dict(manifest_id, generation, data)])


def make_installer(
    root: Path, feed: Optional[Path], uninstall_policy: str = "reject"
) -> WorkloadInstaller:
    return WorkloadInstaller(
        root,
        fetcher=DirectoryPackageFetcher(feed),
        manifest_source=DirectoryManifestSource(feed) if feed else None,
        platform=PLATFORM,
        uninstall_policy=uninstall_policy,
        lock_timeout=1.0,
    )


@pytest.fixture
def feed(tmp_path: Path) -> Path:
    """A feed with the core manifest and every package it can resolve to."""
    feed = tmp_path / "feed"
    write_manifest(feed, "core", 1, CORE_MANIFEST)
    for pack_id, version in [
        ("P1", "1.0.0"),
        ("P2", "2.0.0"),
        ("P3", "3.0.0"),
        ("P4.linux", "4.0.0"),
    ]:
        write_package(feed, pack_id, version)
    return feed


@pytest.fixture
def root(tmp_path: Path) -> Path:
    return tmp_path / "root"


@pytest.fixture
def installer(root: Path, feed: Path) -> WorkloadInstaller:
    return make_installer(root, feed)


@pytest.fixture
def core_manifests() -> ManifestSet:
    return make_manifest_set(CORE_MANIFEST)
