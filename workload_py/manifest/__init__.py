"""
Manifest model for Workload-Py.

A manifest is a versioned document that declares workloads and packs for one
generation (feature band). This package holds the in-memory model and the JSON
parsing; ``store`` reads installed manifests and ``source`` fetches newer ones.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

import orjson

from workload_py.errors import (
    InvalidNameError,
    ManifestConflictError,
    ManifestFormatError,
)

logger = logging.getLogger("workload.manifest")

MANIFEST_FILE_NAME = "WorkloadManifest.json"

Generation = str


def generation_sort_key(generation: Generation) -> Tuple[Tuple[int, Any], ...]:
    """Sort key comparing dotted numeric parts numerically (``8.0.100 < 10.0.100``)."""
    parts = re.split(r"[.\-]", generation)
    return tuple((0, int(p)) if p.isdigit() else (1, p) for p in parts)


def is_safe_name(name: Any) -> bool:
    """True when *name* can be used as one path component under the root."""
    return (
        isinstance(name, str)
        and name not in ("", ".")
        and ".." not in name
        and "/" not in name
        and "\\" not in name
    )


def check_generation(generation: Generation) -> Generation:
    if not is_safe_name(generation):
        raise InvalidNameError(f"Invalid generation name {generation!r}")
    return generation


class PackKind(Enum):
    """Kinds of packs a manifest can declare."""

    RUNTIME_ASSET = "runtime-asset"
    BUILD_TOOL = "build-tool"
    LIBRARY = "library"
    TEMPLATE = "template"
    STANDALONE_TOOL = "standalone-tool"


@dataclass(frozen=True)
class PackRef:
    """A pack required by a workload, before alias resolution."""

    id: str
    version: str


@dataclass(frozen=True)
class ConcretePackage:
    """The unit a backend installs. Identity is ``(id, version)``."""

    id: str
    version: str
    kind: PackKind = field(default=PackKind.LIBRARY, compare=False)

    def __str__(self) -> str:
        return f"{self.id}@{self.version}"


@dataclass(frozen=True)
class PackDef:
    """A pack declaration."""

    id: str
    kind: PackKind
    version: str
    alias_to: Mapping[str, str] = field(default_factory=dict, compare=False)

    @property
    def ref(self) -> PackRef:
        return PackRef(self.id, self.version)


@dataclass(frozen=True)
class WorkloadDef:
    """A workload declaration."""

    id: str
    abstract: bool = False
    packs: FrozenSet[str] = frozenset()
    extends: FrozenSet[str] = frozenset()
    platforms: Optional[FrozenSet[str]] = None
    description: str = ""

    def supports(self, platform: str) -> bool:
        """Return True when the platform filter admits *platform*."""
        return self.platforms is None or platform in self.platforms


@dataclass
class Manifest:
    """One versioned manifest of a generation."""

    manifest_id: str
    generation: Generation
    version: int
    workloads: Dict[str, WorkloadDef] = field(default_factory=dict)
    packs: Dict[str, PackDef] = field(default_factory=dict)

    @classmethod
    def from_dict(
        cls, manifest_id: str, generation: Generation, data: Dict[str, Any]
    ) -> "Manifest":
        """Build a ``Manifest`` from its parsed JSON document."""
        if not is_safe_name(manifest_id):
            raise ManifestFormatError(
                f"Invalid manifest ID {manifest_id!r}", generation
            )
        if not isinstance(data, dict):
            raise ManifestFormatError(
                f"Manifest {manifest_id} is not a JSON object", generation
            )
        try:
            version = int(data["version"])
        except (KeyError, TypeError, ValueError) as e:
            raise ManifestFormatError(
                f"Manifest {manifest_id} has no integer version", str(e)
            ) from e

        packs: Dict[str, PackDef] = {}
        for pack_id, entry in (data.get("packs") or {}).items():
            packs[pack_id] = _parse_pack(manifest_id, pack_id, entry)

        workloads: Dict[str, WorkloadDef] = {}
        for workload_id, entry in (data.get("workloads") or {}).items():
            workloads[workload_id] = _parse_workload(manifest_id, workload_id, entry)

        return cls(
            manifest_id=manifest_id,
            generation=generation,
            version=version,
            workloads=workloads,
            packs=packs,
        )

    @classmethod
    def from_file(
        cls, manifest_id: str, generation: Generation, path: Path
    ) -> "Manifest":
        """Read ``WorkloadManifest.json`` (or the directory holding it)."""
        if path.is_dir():
            path = path / MANIFEST_FILE_NAME
        try:
            data = orjson.loads(path.read_bytes())
        except OSError as e:
            raise ManifestFormatError(
                f"Cannot read manifest {manifest_id} at {path}", str(e)
            ) from e
        except orjson.JSONDecodeError as e:
            raise ManifestFormatError(
                f"Manifest {manifest_id} at {path} is not valid JSON", str(e)
            ) from e
        return cls.from_dict(manifest_id, generation, data)


def _check_name(manifest_id: str, what: str, name: Any) -> None:
    if not is_safe_name(name):
        raise ManifestFormatError(f"{what} in {manifest_id} is invalid: {name!r}")


def _parse_pack(manifest_id: str, pack_id: str, entry: Any) -> PackDef:
    _check_name(manifest_id, "Pack ID", pack_id)
    if not isinstance(entry, dict):
        raise ManifestFormatError(f"Pack {pack_id} in {manifest_id} is not an object")
    try:
        kind = PackKind(entry.get("kind", PackKind.LIBRARY.value))
    except ValueError as e:
        raise ManifestFormatError(
            f"Pack {pack_id} in {manifest_id} has unknown kind {entry.get('kind')!r}"
        ) from e
    if "version" not in entry:
        raise ManifestFormatError(f"Pack {pack_id} in {manifest_id} has no version")
    _check_name(manifest_id, f"Version of pack {pack_id}", str(entry["version"]))
    alias_to = entry.get("alias-to") or {}
    if not isinstance(alias_to, dict):
        raise ManifestFormatError(f"Pack {pack_id} in {manifest_id} has bad alias-to")
    for target in alias_to.values():
        _check_name(manifest_id, f"Alias target of pack {pack_id}", target)
    return PackDef(
        id=pack_id, kind=kind, version=str(entry["version"]), alias_to=dict(alias_to)
    )


def _parse_workload(manifest_id: str, workload_id: str, entry: Any) -> WorkloadDef:
    _check_name(manifest_id, "Workload ID", workload_id)
    if not isinstance(entry, dict):
        raise ManifestFormatError(
            f"Workload {workload_id} in {manifest_id} is not an object"
        )
    for pack_id in entry.get("packs") or ():
        _check_name(manifest_id, f"Pack of workload {workload_id}", pack_id)
    platforms = entry.get("platforms")
    return WorkloadDef(
        id=workload_id,
        abstract=bool(entry.get("abstract", False)),
        packs=frozenset(entry.get("packs") or ()),
        extends=frozenset(entry.get("extends") or ()),
        platforms=frozenset(platforms) if platforms is not None else None,
        description=entry.get("description", ""),
    )


class ManifestSet:
    """All current manifests of one generation, indexed by workload and pack ID.

    Construction enforces that a workload or pack ID is declared by at most one
    manifest of the generation.
    """

    def __init__(self, generation: Generation, manifests: Iterable[Manifest] = ()):
        self.generation = generation
        self.manifests: Dict[str, Manifest] = {}
        self._workloads: Dict[str, Tuple[WorkloadDef, str]] = {}
        self._packs: Dict[str, Tuple[PackDef, str]] = {}

        for manifest in sorted(manifests, key=lambda m: m.manifest_id):
            self._add(manifest)

    def _add(self, manifest: Manifest) -> None:
        self.manifests[manifest.manifest_id] = manifest
        for workload_id, workload in manifest.workloads.items():
            if workload_id in self._workloads:
                owner = self._workloads[workload_id][1]
                raise ManifestConflictError(
                    f"Workload '{workload_id}' is declared by both "
                    f"{owner} and {manifest.manifest_id}",
                    self.generation,
                )
            self._workloads[workload_id] = (workload, manifest.manifest_id)
        for pack_id, pack in manifest.packs.items():
            if pack_id in self._packs:
                owner = self._packs[pack_id][1]
                raise ManifestConflictError(
                    f"Pack '{pack_id}' is declared by both "
                    f"{owner} and {manifest.manifest_id}",
                    self.generation,
                )
            self._packs[pack_id] = (pack, manifest.manifest_id)

    def workload(self, workload_id: str) -> Optional[WorkloadDef]:
        entry = self._workloads.get(workload_id)
        return entry[0] if entry else None

    def pack(self, pack_id: str) -> Optional[PackDef]:
        entry = self._packs.get(pack_id)
        return entry[0] if entry else None

    def workload_owner(self, workload_id: str) -> Optional[str]:
        """Return the manifest ID declaring *workload_id*."""
        entry = self._workloads.get(workload_id)
        return entry[1] if entry else None

    def workload_ids(self) -> List[str]:
        return sorted(self._workloads)

    def versions(self) -> Dict[str, int]:
        return {mid: m.version for mid, m in self.manifests.items()}

    def __len__(self) -> int:
        return len(self.manifests)
