"""
Desired-State Loader.

Parses the JSON snapshot produced by `export` into typed entities and
validates it at the boundary. Anything wrong with the document is a
DesiredStateError, which aborts the run before any reconciliation.

Document shape:
  {
    "metadata": {"assemblyName": ..., "assemblyVersion": ..., "totalSteps": N,
                 "identityMode": "guid" | "composite"},
    "pluginTypes": [...],          # optional
    "steps": [ {step}, ... ]
  }
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .enums import EnumParseError, ImageType, Mode, Stage, State
from .model import (
    PluginStep,
    RunAsUser,
    StepImage,
    norm_attributes,
    norm_entity,
    norm_guid,
    norm_text,
    to_bool,
)

IDENTITY_MODES = ("guid", "composite")


class SetupError(Exception):
    """Fatal pre-flight error: the run must stop before touching the target."""


class DesiredStateError(SetupError):
    """The snapshot file is missing, unparsable or structurally invalid."""


@dataclass
class SnapshotMetadata:
    assembly_name: str
    assembly_version: str = ""
    total_steps: int = 0
    identity_mode: str = "guid"
    exported_at: str = ""


@dataclass
class DesiredState:
    metadata: SnapshotMetadata
    steps: List[PluginStep]
    plugin_types: List[str] = field(default_factory=list)

    def type_names(self) -> List[str]:
        """Plugin type names the target should keep, in first-seen order."""
        names = list(self.plugin_types) + [s.plugin_type_name for s in self.steps]
        return list(dict.fromkeys(n for n in names if n))


# =========================
# Parsing
# =========================

def _enum(cls, value: Any, default, where: str):
    if value in (None, ""):
        return default
    try:
        return cls.parse(value)
    except EnumParseError as exc:
        raise DesiredStateError(f"{where}: {exc}") from exc


def _int(value: Any, default: int, where: str) -> int:
    if value in (None, ""):
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise DesiredStateError(f"{where}: expected an integer, got {value!r}") from exc


def parse_image(raw: Dict[str, Any], where: str) -> StepImage:
    if not isinstance(raw, dict):
        raise DesiredStateError(f"{where}: image must be an object")
    name = norm_text(raw.get("name"))
    if not name:
        raise DesiredStateError(f"{where}: image is missing 'name'")
    return StepImage(
        name=name,
        entity_alias=norm_text(raw.get("entityAlias")) or name,
        image_type=_enum(ImageType, raw.get("imageType"), ImageType.PRE_IMAGE, f"{where}.{name}"),
        message_property_name=norm_text(raw.get("messagePropertyName")) or "Id",
        attributes=norm_attributes(raw.get("attributes")),
        id=norm_guid(raw.get("id")),
    )


def parse_step(raw: Dict[str, Any], index: int) -> PluginStep:
    where = f"steps[{index}]"
    if not isinstance(raw, dict):
        raise DesiredStateError(f"{where}: step must be an object")

    for required in ("pluginTypeName", "message"):
        if not norm_text(raw.get(required)):
            raise DesiredStateError(f"{where}: missing '{required}'")

    try:
        run_as = RunAsUser.parse(raw.get("runAsUser"))
    except ValueError as exc:
        raise DesiredStateError(f"{where}: {exc}") from exc

    images = [parse_image(img, f"{where}.images[{i}]") for i, img in enumerate(raw.get("images") or [])]
    seen = set()
    for img in images:
        if img.name in seen:
            raise DesiredStateError(f"{where}: duplicate image name '{img.name}'")
        seen.add(img.name)

    return PluginStep(
        id=norm_guid(raw.get("id")),
        name=norm_text(raw.get("name")),
        description=norm_text(raw.get("description")),
        configuration=norm_text(raw.get("configuration")),
        plugin_type_name=norm_text(raw.get("pluginTypeName")),
        plugin_type_id=norm_guid(raw.get("pluginTypeId")),
        primary_entity=norm_entity(raw.get("primaryEntity")),
        message=norm_text(raw.get("message")),
        stage=_enum(Stage, raw.get("stage"), Stage.POST_OPERATION, f"{where}.stage"),
        mode=_enum(Mode, raw.get("mode"), Mode.SYNCHRONOUS, f"{where}.mode"),
        state=_enum(State, raw.get("state"), State.ENABLED, f"{where}.state"),
        rank=_int(raw.get("rank"), 1, f"{where}.rank"),
        filtering_attributes=norm_attributes(raw.get("filteringAttributes")),
        async_auto_delete=to_bool(raw.get("asyncAutoDelete", False)),
        run_as=run_as,
        images=images,
    )


def parse_snapshot(doc: Any) -> DesiredState:
    """Validate a decoded snapshot document and return the typed desired state."""
    if not isinstance(doc, dict):
        raise DesiredStateError("Snapshot top level must be an object")

    meta_raw = doc.get("metadata")
    if not isinstance(meta_raw, dict):
        raise DesiredStateError("Snapshot is missing the 'metadata' block")
    assembly_name = norm_text(meta_raw.get("assemblyName"))
    if not assembly_name:
        raise DesiredStateError("metadata.assemblyName is required")

    mode = norm_text(meta_raw.get("identityMode")).lower() or "guid"
    if mode not in IDENTITY_MODES:
        raise DesiredStateError(f"metadata.identityMode must be one of {IDENTITY_MODES}, got {mode!r}")

    steps_raw = doc.get("steps")
    if not isinstance(steps_raw, list):
        raise DesiredStateError("Snapshot 'steps' must be a list")
    steps = [parse_step(s, i) for i, s in enumerate(steps_raw)]

    total = _int(meta_raw.get("totalSteps"), len(steps), "metadata.totalSteps")
    if total != len(steps):
        raise DesiredStateError(f"metadata.totalSteps={total} but the snapshot holds {len(steps)} step(s)")

    ids = [s.id for s in steps if s.id]
    dupes = sorted({i for i in ids if ids.count(i) > 1})
    if dupes:
        raise DesiredStateError(f"Duplicate step id(s): {', '.join(dupes)}")
    if mode == "guid" and len(ids) != len(steps):
        raise DesiredStateError("identityMode 'guid' requires an 'id' on every step")

    types_raw = doc.get("pluginTypes") or []
    if not isinstance(types_raw, list):
        raise DesiredStateError("'pluginTypes' must be a list of type names")

    metadata = SnapshotMetadata(
        assembly_name=assembly_name,
        assembly_version=norm_text(meta_raw.get("assemblyVersion")),
        total_steps=total,
        identity_mode=mode,
        exported_at=norm_text(meta_raw.get("exportedAt")),
    )
    return DesiredState(metadata=metadata, steps=steps, plugin_types=[norm_text(t) for t in types_raw if norm_text(t)])


def load_desired_state(path: str, *, identity_mode: Optional[str] = None) -> DesiredState:
    """
    Read and parse a snapshot file.

    `identity_mode` overrides the mode recorded in the snapshot metadata.
    """
    p = Path(path)
    if not p.is_file():
        raise DesiredStateError(f"Snapshot file not found: {path}")
    try:
        with p.open("r", encoding="utf-8-sig") as f:
            doc = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        raise DesiredStateError(f"Cannot parse snapshot {path}: {exc}") from exc

    if identity_mode and isinstance(doc, dict) and isinstance(doc.get("metadata"), dict):
        doc["metadata"] = {**doc["metadata"], "identityMode": identity_mode}
    return parse_snapshot(doc)
