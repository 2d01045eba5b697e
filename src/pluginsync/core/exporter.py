"""
Snapshot exporter: reads the plugin registration of one assembly through the
RecordStore and renders it as the desired-state JSON document that `sync`
consumes.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .identity import GUID
from .model import PluginStep, StepImage
from .observed import ReferenceLookups, find_target_assembly, load_observed_steps
from .store import USER, RecordStore


def image_to_dict(image: StepImage) -> Dict[str, Any]:
    return {
        "id": image.id,
        "name": image.name,
        "entityAlias": image.entity_alias,
        "imageType": image.image_type.label,
        "messagePropertyName": image.message_property_name,
        "attributes": list(image.attributes),
    }


def step_to_dict(step: PluginStep, run_as: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    return {
        "id": step.id,
        "name": step.name,
        "description": step.description,
        "configuration": step.configuration,
        "pluginTypeName": step.plugin_type_name,
        "pluginTypeId": step.plugin_type_id,
        "primaryEntity": step.primary_entity or "none",
        "message": step.message,
        "stage": step.stage.label,
        "mode": step.mode.label,
        "state": step.state.label,
        "rank": step.rank,
        "asyncAutoDelete": step.effective_async_auto_delete,
        "filteringAttributes": ",".join(step.filtering_attributes),
        "runAsUser": run_as,
        "images": [image_to_dict(i) for i in step.images],
    }


def _run_as_for_export(store: RecordStore, user_id: str) -> Optional[Dict[str, str]]:
    """Prefer the portable application id of an impersonated application user."""
    if not user_id:
        return None
    rec = store.find_by_id(USER, user_id)
    app_id = str((rec or {}).get("application_id") or "").lower()
    if app_id:
        return {"applicationId": app_id}
    return {"userId": user_id}


def export_snapshot(
    store: RecordStore,
    assembly_name: str,
    *,
    identity_mode: str = GUID,
    logger: Optional[logging.LoggerAdapter] = None,
) -> Dict[str, Any]:
    """Build the snapshot document for `assembly_name`."""
    log = logger or logging.getLogger("ps.exporter")
    assembly = find_target_assembly(store, assembly_name)
    lookups = ReferenceLookups(store, assembly)
    steps = load_observed_steps(store, lookups, logger=logger)
    steps.sort(key=lambda s: (s.plugin_type_name, s.message, s.primary_entity, s.stage.value, s.rank, s.name))

    step_docs: List[Dict[str, Any]] = [
        step_to_dict(s, _run_as_for_export(store, s.impersonating_user_id)) for s in steps
    ]
    doc = {
        "metadata": {
            "assemblyName": assembly.name,
            "assemblyVersion": assembly.version,
            "totalSteps": len(step_docs),
            "identityMode": identity_mode,
            "exportedAt": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        },
        "pluginTypes": [t.name for t in lookups.plugin_types()],
        "steps": step_docs,
    }
    log.info("Exported %s step(s) from assembly %s %s", len(step_docs), assembly.name, assembly.version)
    return doc


def write_snapshot(doc: Dict[str, Any], path: str) -> Path:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(doc, indent=2, ensure_ascii=False), encoding="utf-8")
    return p
