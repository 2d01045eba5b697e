"""
Observed state: reads the target environment through a RecordStore and
converts its records into typed entities (and back into write payloads).

`ReferenceLookups` caches id/name resolution for messages, message filters,
plugin types and users for the duration of one run.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from . import store as rs
from .desired import SetupError
from .enums import ImageType, Mode, Stage, State
from .model import (
    PluginAssembly,
    PluginStep,
    PluginType,
    RunAsUser,
    StepImage,
    norm_attributes,
    norm_entity,
    norm_guid,
    norm_text,
    norm_type_name,
    to_bool,
)
from .store import Record, RecordStore


class ReferenceResolutionError(Exception):
    """A foreign reference (message, filter, type, user) could not be resolved."""


# =========================
# Reference lookups
# =========================

class ReferenceLookups:
    """Per-run cache over the reference kinds the engine needs to resolve."""

    def __init__(self, store: RecordStore, assembly: Optional[PluginAssembly] = None) -> None:
        self.store = store
        self.assembly = assembly
        self._message_ids: Dict[str, Optional[str]] = {}
        self._message_names: Dict[str, str] = {}
        self._filters: Dict[str, List[Record]] = {}
        self._filter_entities: Dict[str, str] = {}
        self._types: Optional[List[PluginType]] = None
        self._users: Dict[Tuple[str, str], Optional[str]] = {}

    # ----- messages -----
    def message_id(self, name: str) -> Optional[str]:
        key = norm_text(name).lower()
        if key not in self._message_ids:
            rec = self.store.find_by_name(rs.MESSAGE, norm_text(name))
            self._message_ids[key] = norm_guid(rec["id"]) if rec else None
            if rec:
                self._message_names[norm_guid(rec["id"])] = norm_text(rec.get("name"))
        return self._message_ids[key]

    def message_name(self, message_id: Any) -> str:
        mid = norm_guid(message_id)
        if not mid:
            return ""
        if mid not in self._message_names:
            rec = self.store.find_by_id(rs.MESSAGE, mid)
            self._message_names[mid] = norm_text(rec.get("name")) if rec else ""
        return self._message_names[mid]

    # ----- message filters -----
    def filter_id(self, message_id: str, entity: str) -> Optional[str]:
        mid = norm_guid(message_id)
        if mid not in self._filters:
            self._filters[mid] = self.store.find_children(mid, rs.MESSAGE_FILTER)
        wanted = norm_entity(entity)
        for rec in self._filters[mid]:
            if norm_entity(rec.get("primary_entity")) == wanted:
                return norm_guid(rec["id"])
        return None

    def filter_entity(self, filter_id: Any) -> str:
        fid = norm_guid(filter_id)
        if not fid:
            return ""
        if fid not in self._filter_entities:
            rec = self.store.find_by_id(rs.MESSAGE_FILTER, fid)
            self._filter_entities[fid] = norm_entity(rec.get("primary_entity")) if rec else ""
        return self._filter_entities[fid]

    # ----- plugin types -----
    def plugin_types(self) -> List[PluginType]:
        if self._types is None:
            if self.assembly is None:
                raise ReferenceResolutionError("No target assembly bound to the lookups")
            self._types = [type_from_record(r) for r in self.store.find_children(self.assembly.id, rs.PLUGIN_TYPE)]
        return self._types

    def plugin_type_id(self, type_name: str) -> Optional[str]:
        wanted = norm_type_name(type_name)
        for t in self.plugin_types():
            if norm_type_name(t.name) == wanted:
                return t.id
        return None

    def forget_type(self, type_id: str) -> None:
        if self._types is not None:
            self._types = [t for t in self._types if t.id != type_id]

    # ----- users -----
    def user_id(self, run_as: RunAsUser) -> Optional[str]:
        """Resolve the impersonation target; None means the calling user or not found."""
        if run_as.is_calling_user:
            return None
        key = (run_as.application_id, run_as.user_id)
        if key not in self._users:
            found: Optional[str] = None
            if run_as.application_id:
                recs = self.store.find_where(rs.USER, "application_id", run_as.application_id)
                if not recs:
                    # Some stores keep the application id in upper case
                    recs = self.store.find_where(rs.USER, "application_id", run_as.application_id.upper())
                found = norm_guid(recs[0]["id"]) if recs else None
            else:
                rec = self.store.find_by_id(rs.USER, run_as.user_id)
                found = norm_guid(rec["id"]) if rec else None
            self._users[key] = found
        return self._users[key]

    def require_user_id(self, run_as: RunAsUser) -> Optional[str]:
        if run_as.is_calling_user:
            return None
        uid = self.user_id(run_as)
        if not uid:
            raise ReferenceResolutionError(f"Run-as {run_as.describe()} not found")
        return uid


# =========================
# Record <-> entity conversion
# =========================

def type_from_record(rec: Record) -> PluginType:
    return PluginType(
        id=norm_guid(rec.get("id")),
        name=norm_text(rec.get("name")),
        assembly_id=norm_guid(rec.get("assembly_id")),
    )


def image_from_record(rec: Record) -> StepImage:
    return StepImage(
        id=norm_guid(rec.get("id")),
        name=norm_text(rec.get("name")),
        entity_alias=norm_text(rec.get("entity_alias")) or norm_text(rec.get("name")),
        image_type=ImageType.parse(rec.get("image_type", 0)),
        message_property_name=norm_text(rec.get("message_property_name")) or "Id",
        attributes=norm_attributes(rec.get("attributes")),
    )


def image_to_record(image: StepImage, step_id: str, *, with_id: bool = False) -> Record:
    fields: Record = {
        "name": image.name,
        "entity_alias": image.entity_alias or image.name,
        "image_type": image.image_type.value,
        "message_property_name": image.message_property_name or "Id",
        "attributes": ",".join(norm_attributes(image.attributes)),
        "step_id": step_id,
    }
    if with_id and image.id:
        fields["id"] = image.id
    return fields


def step_from_record(rec: Record, plugin_type: PluginType, lookups: ReferenceLookups, images: List[StepImage]) -> PluginStep:
    user_id = norm_guid(rec.get("impersonating_user_id"))
    return PluginStep(
        id=norm_guid(rec.get("id")),
        name=norm_text(rec.get("name")),
        description=norm_text(rec.get("description")),
        configuration=norm_text(rec.get("configuration")),
        plugin_type_name=plugin_type.name,
        plugin_type_id=plugin_type.id,
        message=lookups.message_name(rec.get("message_id")),
        primary_entity=lookups.filter_entity(rec.get("message_filter_id")),
        stage=Stage.parse(rec.get("stage", Stage.POST_OPERATION.value)),
        mode=Mode.parse(rec.get("mode", Mode.SYNCHRONOUS.value)),
        state=State.parse(rec.get("state", State.ENABLED.value)),
        rank=int(rec.get("rank") or 0),
        filtering_attributes=norm_attributes(rec.get("filtering_attributes")),
        async_auto_delete=to_bool(rec.get("async_auto_delete", False)),
        run_as=RunAsUser(user_id=user_id),
        impersonating_user_id=user_id,
        images=images,
    )


def mutable_step_fields(step: PluginStep, user_id: Optional[str]) -> Record:
    """Store payload for every mutable field of `step`."""
    return {
        "name": step.name,
        "description": step.description,
        "configuration": step.configuration,
        "filtering_attributes": ",".join(step.filtering_attributes),
        "rank": step.rank,
        "mode": step.mode.value,
        "stage": step.stage.value,
        "async_auto_delete": step.effective_async_auto_delete,
        "impersonating_user_id": user_id or None,
    }


# =========================
# Reading the target
# =========================

def find_target_assembly(store: RecordStore, name: str, *, expected_version: str = "") -> PluginAssembly:
    """Return the assembly or raise SetupError when missing / version mismatch."""
    rec = store.find_by_name(rs.ASSEMBLY, name)
    if not rec:
        raise SetupError(f"Target assembly '{name}' not found")
    assembly = PluginAssembly(id=norm_guid(rec.get("id")), name=norm_text(rec.get("name")), version=norm_text(rec.get("version")))
    if expected_version and assembly.version != expected_version:
        raise SetupError(
            f"Target assembly '{name}' is version {assembly.version or '?'}, snapshot expects {expected_version}"
        )
    return assembly


def load_observed_steps(
    store: RecordStore,
    lookups: ReferenceLookups,
    *,
    logger: Optional[logging.LoggerAdapter] = None,
) -> List[PluginStep]:
    """Read every step (with images) registered under the bound assembly's types."""
    log = logger or logging.getLogger("ps.observed")
    steps: List[PluginStep] = []
    for ptype in lookups.plugin_types():
        for rec in store.find_children(ptype.id, rs.STEP):
            try:
                images = [image_from_record(i) for i in store.find_children(norm_guid(rec.get("id")), rs.IMAGE)]
                steps.append(step_from_record(rec, ptype, lookups, images))
            except ValueError as exc:
                # unreadable observed data aborts the run, the step is never skipped
                raise SetupError(f"Observed step {rec.get('id')} on {ptype.name} is unreadable: {exc}") from exc
    log.debug("Observed %s step(s) across %s type(s)", len(steps), len(lookups.plugin_types()))
    return steps
