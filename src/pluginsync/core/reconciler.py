"""
Reconciler: executes a ReconcilePlan against a RecordStore.

Lifecycle per decision:
  MISSING             resolve references -> create step -> create images -> set state
  IMMUTABLE_CONFLICT  no write; failure (manual recreation)
  AMBIGUOUS           no write; failure
  MUTABLE_DRIFT       one update with every drifted field -> image deletes -> image creates
  MATCH               no write; success

Entity-level isolation: a failing call is recorded in the run report and the
next decision is processed. Nothing is retried and nothing is rolled back.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from . import store as rs
from .diff_engine import FieldDelta, ImageAction, ReconcilePlan, StepDecision
from .enums import State
from .identity import GUID
from .model import PluginStep
from .observed import ReferenceLookups, ReferenceResolutionError, image_to_record, mutable_step_fields
from .report import RunReport
from .store import RecordStore, StoreError

AREA = "step"

# logical field -> store field
_STORE_FIELDS = {
    "name": "name",
    "description": "description",
    "configuration": "configuration",
    "filteringAttributes": "filtering_attributes",
    "rank": "rank",
    "mode": "mode",
    "stage": "stage",
    "asyncAutoDelete": "async_auto_delete",
    "runAsUser": "impersonating_user_id",
}


class Reconciler:
    def __init__(
        self,
        store: RecordStore,
        lookups: ReferenceLookups,
        report: RunReport,
        *,
        mode: str = GUID,
        dry_run: bool = False,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self.store = store
        self.lookups = lookups
        self.report = report
        self.mode = mode
        self.dry_run = dry_run
        self.log = logger or logging.getLogger("ps.reconciler")

    def execute(self, plan: ReconcilePlan) -> RunReport:
        self.log.info("Executing plan: %s (dry_run=%s)", plan.counts(), self.dry_run)
        for decision in plan.decisions:
            subject = decision.label
            for msg in decision.warnings:
                self.report.warning(AREA, subject, msg)
            try:
                if decision.op == "MISSING":
                    self._create(decision)
                elif decision.op == "MUTABLE_DRIFT":
                    self._update(decision)
                elif decision.op == "IMMUTABLE_CONFLICT":
                    details = "; ".join(d.describe() for d in decision.immutable_deltas)
                    self.report.failure(AREA, subject, f"{details}; delete and recreate the step manually")
                elif decision.op == "AMBIGUOUS":
                    self.report.failure(AREA, subject, decision.reason)
                else:
                    self.report.success(AREA, subject, "in sync")
            except (ReferenceResolutionError, StoreError) as exc:
                self.report.failure(AREA, subject, f"{decision.op.lower()} failed: {exc}")
            except Exception as exc:
                self.log.exception("Unexpected error on step '%s'", subject)
                self.report.failure(AREA, subject, f"unexpected error: {exc}")
        return self.report

    # ----- create -----
    def _resolve_create_fields(self, step: PluginStep) -> Dict[str, Any]:
        message_id = self.lookups.message_id(step.message)
        if not message_id:
            raise ReferenceResolutionError(f"Message '{step.message}' not found")

        filter_id = None
        if step.primary_entity:
            filter_id = self.lookups.filter_id(message_id, step.primary_entity)
            if not filter_id:
                raise ReferenceResolutionError(
                    f"No message filter for '{step.message}' on entity '{step.primary_entity}'"
                )

        type_id = self.lookups.plugin_type_id(step.plugin_type_name)
        if not type_id:
            raise ReferenceResolutionError(f"Plugin type '{step.plugin_type_name}' not found in target assembly")

        user_id = self.lookups.require_user_id(step.run_as)

        fields = mutable_step_fields(step, user_id)
        fields.update(
            {
                "plugin_type_id": type_id,
                "message_id": message_id,
                "message_filter_id": filter_id,
            }
        )
        if self.mode == GUID and step.id:
            fields["id"] = step.id
        return fields

    def _create(self, decision: StepDecision) -> None:
        step = decision.desired
        subject = decision.label
        fields = self._resolve_create_fields(step)

        if self.dry_run:
            self.report.warning(AREA, subject, f"would create step with {len(step.images)} image(s)")
            return

        step_id = self.store.create(rs.STEP, fields)
        self.report.fix(AREA, subject, f"created missing step ({step.message} {step.primary_entity or 'any'})")

        for image in step.images:
            self._apply_image(step_id, ImageAction("CREATE", image), subject)

        if step.state is State.DISABLED:
            try:
                self.store.set_state(rs.STEP, step_id, State.DISABLED.value)
                self.report.fix(AREA, subject, "disabled step")
            except StoreError as exc:
                self.report.failure(AREA, subject, f"could not disable step: {exc}")

    # ----- update -----
    def _update_fields(self, deltas: List[FieldDelta], step: PluginStep) -> Dict[str, Any]:
        full = mutable_step_fields(step, None)
        fields: Dict[str, Any] = {}
        for d in deltas:
            if d.field == "state":
                continue
            key = _STORE_FIELDS[d.field]
            if d.field == "runAsUser":
                fields[key] = self.lookups.require_user_id(step.run_as)
            else:
                fields[key] = full[key]
        return fields

    def _update(self, decision: StepDecision) -> None:
        step = decision.desired
        observed = decision.observed
        subject = decision.label
        if observed is None:
            raise ValueError(f"Drift decision for '{subject}' carries no observed step")

        for d in decision.field_deltas:
            self.report.warning(AREA, subject, d.describe())

        fields = self._update_fields(decision.field_deltas, step)
        state_drift = "state" in decision.drifted_fields()

        if self.dry_run:
            if fields or state_drift:
                self.report.warning(AREA, subject, "would update " + ", ".join(decision.drifted_fields()))
            for action in decision.image_actions:
                self.report.warning(AREA, subject, f"would {action.op.lower()} image '{action.image.name}'")
            return

        if fields:
            self.store.update(rs.STEP, observed.id, fields)
            self.report.fix(AREA, subject, "updated " + ", ".join(d.field for d in decision.field_deltas if d.field != "state"))
        if state_drift:
            self.store.set_state(rs.STEP, observed.id, step.state.value)
            self.report.fix(AREA, subject, f"set state to {step.state.label}")

        deletes = [a for a in decision.image_actions if a.op in ("DELETE", "RECREATE")]
        creates = [a for a in decision.image_actions if a.op == "CREATE"]
        for action in deletes:
            self._apply_image(observed.id, action, subject)
        for action in creates:
            self._apply_image(observed.id, action, subject)

    # ----- images -----
    def _apply_image(self, step_id: str, action: ImageAction, subject: str) -> None:
        name = action.image.name
        try:
            if action.op == "DELETE":
                self.store.delete(rs.IMAGE, action.target_id)
                self.report.fix(AREA, subject, f"deleted image '{name}'")
            elif action.op == "RECREATE":
                self.store.delete(rs.IMAGE, action.target_id)
                self.store.create(rs.IMAGE, image_to_record(action.image, step_id, with_id=self.mode == GUID))
                self.report.fix(AREA, subject, f"recreated image '{name}' ({action.reason})")
            else:
                self.store.create(rs.IMAGE, image_to_record(action.image, step_id, with_id=self.mode == GUID))
                self.report.fix(AREA, subject, f"created missing image '{name}'")
        except StoreError as exc:
            self.report.failure(AREA, subject, f"image '{name}' {action.op.lower()} failed: {exc}")
