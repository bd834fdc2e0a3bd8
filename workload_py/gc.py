"""
Garbage collection of pack payloads for Workload-Py.

This module decides which installed packs are no longer required by any live
generation and removes them through the backend. Reference counts are never
cached: every run re-expands each live generation's installed workloads
against that generation's current manifests.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Set

from workload_py.engine import Backend
from workload_py.errors import (
    BackendOperationError,
    InconsistentStateError,
    UnknownPackError,
    UnknownWorkloadError,
)
from workload_py.manifest import ConcretePackage, Generation, generation_sort_key
from workload_py.manifest.store import ManifestStore
from workload_py.records import InstallationRecordStore
from workload_py.resolver import required_packages

logger = logging.getLogger("workload.gc")


@dataclass
class CollectionPlan:
    """What a collection run would do."""

    live_generations: Set[Generation] = field(default_factory=set)
    dead_generations: Set[Generation] = field(default_factory=set)
    required: Dict[Generation, Set[ConcretePackage]] = field(default_factory=dict)
    stale_markers: Dict[ConcretePackage, Set[Generation]] = field(default_factory=dict)
    missing_markers: Dict[ConcretePackage, Set[Generation]] = field(
        default_factory=dict
    )
    to_remove: Set[ConcretePackage] = field(default_factory=set)

    @property
    def to_keep(self) -> Set[ConcretePackage]:
        kept: Set[ConcretePackage] = set()
        for packs in self.required.values():
            kept |= packs
        return kept


@dataclass
class CollectionResult:
    """Outcome of a collection run."""

    removed: Set[ConcretePackage] = field(default_factory=set)
    failed: Dict[ConcretePackage, str] = field(default_factory=dict)
    dropped_generations: Set[Generation] = field(default_factory=set)

    @property
    def success(self) -> bool:
        return not self.failed


class GarbageCollector:
    """Removes packs that no live generation requires."""

    def __init__(
        self,
        records: InstallationRecordStore,
        manifests: ManifestStore,
        backend: Backend,
        platform: str,
    ):
        self.records = records
        self.manifests = manifests
        self.backend = backend
        self.platform = platform

    def required_for(self, generation: Generation) -> Set[ConcretePackage]:
        """
        Recompute the packs *generation* requires from its record and manifests.

        Raises:
            InconsistentStateError: the record names a workload or pack that
                the generation's manifests do not declare
        """
        manifest_set = self.manifests.load(generation)
        installed = self.records.installed_workloads(generation)
        try:
            return required_packages(manifest_set, self.platform, installed)
        except (UnknownWorkloadError, UnknownPackError) as e:
            raise InconsistentStateError(
                f"Installation record of generation {generation} does not match "
                f"its manifests",
                str(e),
            ) from e

    def plan(
        self, generations: Optional[Iterable[Generation]] = None
    ) -> CollectionPlan:
        """
        Compute the collection without changing anything.

        Args:
            generations: Generations present on the machine. Defaults to the
                generations registered in the record store.
        """
        live = (
            set(generations)
            if generations is not None
            else self.records.present_generations()
        )
        known = self.records.known_generations() | self.manifests.generations()

        plan = CollectionPlan(live_generations=live, dead_generations=known - live)
        for generation in sorted(live, key=generation_sort_key):
            plan.required[generation] = self.required_for(generation)

        markers = self.records.pack_markers()
        for pkg, holders in markers.items():
            stale = {g for g in holders if g in live and pkg not in plan.required[g]}
            if stale:
                plan.stale_markers[pkg] = stale

        payloads = self.backend.installed_payloads()
        for generation, packs in plan.required.items():
            for pkg in packs:
                if pkg in payloads and generation not in markers.get(pkg, set()):
                    plan.missing_markers.setdefault(pkg, set()).add(generation)

        keep = plan.to_keep
        plan.to_remove = {p for p in payloads if p not in keep}

        logger.info(
            f"Collection plan: keeping {len(keep)} packs, removing "
            f"{len(plan.to_remove)}, dropping {len(plan.dead_generations)} generations"
        )
        return plan

    def _drop_generation(self, generation: Generation) -> None:
        for manifest_id in self.manifests.installed_versions(generation):
            self.backend.uninstall_manifest(manifest_id, generation).commit()
        for manifest_id in self.manifests.manifest_ids(generation):
            self.manifests.prune(generation, manifest_id)
        self.records.drop_generation(generation)

    def collect(
        self, generations: Optional[Iterable[Generation]] = None
    ) -> CollectionResult:
        """
        Drop dead generations and remove every pack no live generation requires.

        A pack whose removal fails is reported in ``failed`` and left for the
        next run; the rest are still removed.
        """
        plan = self.plan(generations)
        result = CollectionResult()

        for generation in sorted(plan.dead_generations, key=generation_sort_key):
            self._drop_generation(generation)
            result.dropped_generations.add(generation)

        for generation in plan.live_generations:
            for manifest_id in self.manifests.manifest_ids(generation):
                self.manifests.prune(generation, manifest_id)

        for pkg, holders in plan.stale_markers.items():
            for generation in holders:
                self.records.remove_pack_marker(pkg, generation)
                logger.debug(f"Removed stale usage marker of {pkg} for {generation}")

        for pkg, holders in plan.missing_markers.items():
            for generation in holders:
                self.records.add_pack_marker(pkg, generation)
                logger.debug(f"Restored usage marker of {pkg} for {generation}")

        for pkg in sorted(plan.to_remove, key=lambda p: (p.id, p.version)):
            try:
                self.backend.remove_payload(pkg)
            except BackendOperationError as e:
                logger.warning(f"Could not remove {pkg}, will retry next run: {e}")
                result.failed[pkg] = str(e)
                continue
            result.removed.add(pkg)

        logger.info(
            f"Garbage collection removed {len(result.removed)} packs"
            + (f", {len(result.failed)} failed" if result.failed else "")
        )
        return result
