"""
Workload expansion and pack alias resolution.

Both are pure functions of a ``ManifestSet`` and a platform string: they never
read the disk and never mutate their inputs.
"""

import logging
from collections import deque
from typing import Deque, Iterable, List, Set

from workload_py.errors import UnknownPackError, UnknownWorkloadError
from workload_py.manifest import ConcretePackage, ManifestSet, PackRef, WorkloadDef
from workload_py.platform import ANY_PLATFORM

logger = logging.getLogger("workload.resolver")


class WorkloadExpander:
    """Flattens workloads into the deduplicated set of packs they require."""

    def __init__(self, manifests: ManifestSet, platform: str):
        self.manifests = manifests
        self.platform = platform

    def _require_workload(self, workload_id: str) -> WorkloadDef:
        workload = self.manifests.workload(workload_id)
        if workload is None:
            raise UnknownWorkloadError(workload_id, self.manifests.generation)
        return workload

    def expand(self, workload_ids: Iterable[str]) -> Set[PackRef]:
        """
        Return the packs required by *workload_ids* and everything they extend.

        Traversal is breadth-first over ``extends``. A workload reached more
        than once, including through a cycle, contributes its packs once.
        Workloads whose platform filter excludes the host contribute nothing
        and their ``extends`` edges are not followed.

        Raises:
            UnknownWorkloadError: an input ID or an ``extends`` target is unknown
            UnknownPackError: a workload references an undeclared pack
        """
        requested = set(workload_ids)
        for workload_id in requested:
            self._require_workload(workload_id)

        queue: Deque[str] = deque(sorted(requested))
        visited: Set[str] = set()
        refs: Set[PackRef] = set()

        while queue:
            workload_id = queue.popleft()
            if workload_id in visited:
                continue
            visited.add(workload_id)

            workload = self._require_workload(workload_id)
            if not workload.supports(self.platform):
                logger.debug(
                    f"Skipping workload {workload_id}: not supported on {self.platform}"
                )
                continue

            for pack_id in workload.packs:
                pack = self.manifests.pack(pack_id)
                if pack is None:
                    raise UnknownPackError(pack_id, self.manifests.generation)
                refs.add(pack.ref)

            queue.extend(sorted(workload.extends - visited))

        return refs

    def extended_by(self, workload_id: str) -> Set[str]:
        """Return every workload reachable from *workload_id* through ``extends``."""
        start = self._require_workload(workload_id)
        queue: Deque[str] = deque(start.extends)
        reached: Set[str] = set()
        while queue:
            current = queue.popleft()
            if current in reached:
                continue
            reached.add(current)
            workload = self.manifests.workload(current)
            if workload is not None:
                queue.extend(workload.extends - reached)
        reached.discard(workload_id)
        return reached

    def dependents(self, workload_id: str, installed: Iterable[str]) -> List[str]:
        """Installed workloads, other than *workload_id*, that extend it."""
        result = []
        for other in sorted(set(installed) - {workload_id}):
            if self.manifests.workload(other) is None:
                continue
            if workload_id in self.extended_by(other):
                result.append(other)
        return result

    def is_installable(self, workload_id: str) -> bool:
        """Non-abstract and expanding to at least one pack on this platform."""
        workload = self._require_workload(workload_id)
        if workload.abstract or not workload.supports(self.platform):
            return False
        return bool(self.expand([workload_id]))

    def installable_workloads(self) -> List[str]:
        return [w for w in self.manifests.workload_ids() if self.is_installable(w)]


class AliasResolver:
    """Maps logical pack references to the concrete package for a platform."""

    def __init__(self, manifests: ManifestSet, platform: str):
        self.manifests = manifests
        self.platform = platform

    def resolve(self, ref: PackRef) -> ConcretePackage:
        """
        Resolve *ref* to the package to fetch and install.

        An ``alias-to`` entry for the platform, or else the ``any`` entry,
        replaces the ID and keeps the pack's version. Resolution is single-hop:
        the alias target is never looked up again.

        Raises:
            UnknownPackError: *ref* has no pack definition
        """
        pack = self.manifests.pack(ref.id)
        if pack is None:
            raise UnknownPackError(ref.id, self.manifests.generation)

        target = pack.alias_to.get(self.platform) or pack.alias_to.get(ANY_PLATFORM)
        if target:
            return ConcretePackage(target, pack.version, pack.kind)
        return ConcretePackage(ref.id, ref.version, pack.kind)

    def resolve_all(self, refs: Iterable[PackRef]) -> Set[ConcretePackage]:
        return {self.resolve(ref) for ref in refs}


def required_packages(
    manifests: ManifestSet, platform: str, workload_ids: Iterable[str]
) -> Set[ConcretePackage]:
    """Expand *workload_ids* and resolve every resulting pack."""
    refs = WorkloadExpander(manifests, platform).expand(workload_ids)
    return AliasResolver(manifests, platform).resolve_all(refs)
