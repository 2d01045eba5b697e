"""
Orphan sweep: observed entities with no desired counterpart are deleted.

Steps are swept first, keyed the same way the snapshot was exported (guid or
composite). Plugin types are swept afterwards by type name; a type is left in
place when one of its steps could not be removed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Set

from . import store as rs
from .identity import identity_key
from .model import PluginStep, norm_type_name
from .observed import ReferenceLookups
from .report import RunReport
from .store import RecordStore, StoreError


@dataclass
class SweepResult:
    deleted: int = 0
    failed: int = 0
    skipped: int = 0


class OrphanSweep:
    def __init__(
        self,
        store: RecordStore,
        lookups: ReferenceLookups,
        report: RunReport,
        *,
        mode: str = "guid",
        dry_run: bool = False,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self.store = store
        self.lookups = lookups
        self.report = report
        self.mode = mode
        self.dry_run = dry_run
        self.log = logger or logging.getLogger("ps.orphans")
        # type ids that still own steps after the step sweep
        self._occupied_types: Set[str] = set()

    def find_orphan_steps(self, desired: Iterable[PluginStep], observed: Iterable[PluginStep]) -> List[PluginStep]:
        wanted: Set[str] = {identity_key(s, self.mode) for s in desired}
        return [s for s in observed if identity_key(s, self.mode) not in wanted]

    def sweep_steps(self, desired: Iterable[PluginStep], observed: Iterable[PluginStep]) -> SweepResult:
        result = SweepResult()
        observed = list(observed)
        orphans = self.find_orphan_steps(desired, observed)
        orphan_ids = {s.id for s in orphans}
        self._occupied_types = {s.plugin_type_id for s in observed if s.id not in orphan_ids}
        self.log.info("Orphan sweep: %s step(s) to remove", len(orphans))
        for step in orphans:
            subject = step.label()
            if self.dry_run:
                self.report.warning("orphan", subject, "would delete orphan step")
                result.skipped += 1
                continue
            try:
                self.store.delete(rs.STEP, step.id)
            except StoreError as exc:
                result.failed += 1
                self._occupied_types.add(step.plugin_type_id)
                self.report.failure("orphan", subject, f"delete failed: {exc}")
                continue
            result.deleted += 1
            self.report.fix("orphan", subject, "deleted orphan step")
        return result

    def sweep_types(self, desired_type_names: Iterable[str]) -> SweepResult:
        """Delete plugin types of the bound assembly whose name is not desired."""
        result = SweepResult()
        keep = {norm_type_name(n) for n in desired_type_names}
        for ptype in list(self.lookups.plugin_types()):
            if norm_type_name(ptype.name) in keep:
                continue
            if ptype.id in self._occupied_types:
                result.skipped += 1
                self.report.warning("orphan", ptype.name, "type kept: it still owns registered steps")
                continue
            if self.dry_run:
                result.skipped += 1
                self.report.warning("orphan", ptype.name, "would delete orphan plugin type")
                continue
            try:
                self.store.delete(rs.PLUGIN_TYPE, ptype.id)
            except StoreError as exc:
                result.failed += 1
                self.report.failure("orphan", ptype.name, f"type delete failed: {exc}")
                continue
            self.lookups.forget_type(ptype.id)
            result.deleted += 1
            self.report.fix("orphan", ptype.name, "deleted orphan plugin type")
        return result

    def run(self, desired: List[PluginStep], observed: List[PluginStep], desired_type_names: Iterable[str]) -> SweepResult:
        steps = self.sweep_steps(desired, observed)
        types = self.sweep_types(desired_type_names)
        total = SweepResult(
            deleted=steps.deleted + types.deleted,
            failed=steps.failed + types.failed,
            skipped=steps.skipped + types.skipped,
        )
        self.log.info("Orphan sweep done: deleted=%s failed=%s skipped=%s", total.deleted, total.failed, total.skipped)
        return total
