"""Builders for a small target environment and matching snapshot documents."""

import json
from pathlib import Path

from pluginsync.core.enums import ImageType, Mode, Stage, State
from pluginsync.core.model import PluginStep, StepImage
from pluginsync.core.observed import ReferenceLookups, find_target_assembly
from pluginsync.core.store import InMemoryRecordStore

ASSEMBLY = "Akoya.Plugins"
VERSION = "4.2.0.0"
GRANT_TYPE = "Akoya.Plugins.GrantRequestPlugin"
PAYMENT_TYPE = "Akoya.Plugins.PaymentPlugin"

ASSEMBLY_ID = "aaaaaaaa-0000-0000-0000-000000000001"
GRANT_TYPE_ID = "bbbbbbbb-0000-0000-0000-000000000001"
PAYMENT_TYPE_ID = "bbbbbbbb-0000-0000-0000-000000000002"
MSG_CREATE = "cccccccc-0000-0000-0000-000000000001"
MSG_UPDATE = "cccccccc-0000-0000-0000-000000000002"
MSG_DELETE = "cccccccc-0000-0000-0000-000000000003"
FILTER_CREATE_REQUEST = "dddddddd-0000-0000-0000-000000000001"
FILTER_UPDATE_REQUEST = "dddddddd-0000-0000-0000-000000000002"
FILTER_UPDATE_PAYMENT = "dddddddd-0000-0000-0000-000000000003"
APP_USER_ID = "eeeeeeee-0000-0000-0000-000000000001"
APP_ID = "ffffffff-0000-0000-0000-000000000001"

STEP_ID = "99999999-0000-0000-0000-000000000001"
IMAGE_ID = "88888888-0000-0000-0000-000000000001"
STEP_NAME = "GrantRequest: Update of akoya_request"


def environment_records(steps=(), images=()):
    return {
        "plugin_assembly": [{"id": ASSEMBLY_ID, "name": ASSEMBLY, "version": VERSION}],
        "plugin_type": [
            {"id": GRANT_TYPE_ID, "name": GRANT_TYPE, "assembly_id": ASSEMBLY_ID},
            {"id": PAYMENT_TYPE_ID, "name": PAYMENT_TYPE, "assembly_id": ASSEMBLY_ID},
        ],
        "message": [
            {"id": MSG_CREATE, "name": "Create"},
            {"id": MSG_UPDATE, "name": "Update"},
            {"id": MSG_DELETE, "name": "Delete"},
        ],
        "message_filter": [
            {"id": FILTER_CREATE_REQUEST, "message_id": MSG_CREATE, "primary_entity": "akoya_request"},
            {"id": FILTER_UPDATE_REQUEST, "message_id": MSG_UPDATE, "primary_entity": "akoya_request"},
            {"id": FILTER_UPDATE_PAYMENT, "message_id": MSG_UPDATE, "primary_entity": "akoya_payment"},
        ],
        "system_user": [{"id": APP_USER_ID, "name": "Akoya Integration", "application_id": APP_ID}],
        "plugin_step": list(steps),
        "step_image": list(images),
        "web_resource": [],
    }


def step_record(**overrides):
    """Stored form of the default step (Update of akoya_request, post-operation)."""
    rec = {
        "id": STEP_ID,
        "name": STEP_NAME,
        "plugin_type_id": GRANT_TYPE_ID,
        "message_id": MSG_UPDATE,
        "message_filter_id": FILTER_UPDATE_REQUEST,
        "stage": 40,
        "mode": 0,
        "state": 0,
        "rank": 1,
        "description": "",
        "configuration": "",
        "filtering_attributes": "akoya_status",
        "async_auto_delete": False,
        "impersonating_user_id": None,
    }
    rec.update(overrides)
    return rec


def image_record(step_id=STEP_ID, **overrides):
    rec = {
        "id": IMAGE_ID,
        "step_id": step_id,
        "name": "PreImage",
        "entity_alias": "PreImage",
        "image_type": 0,
        "message_property_name": "Id",
        "attributes": "akoya_status",
    }
    rec.update(overrides)
    return rec


def image_doc(**overrides):
    doc = {
        "name": "PreImage",
        "entityAlias": "PreImage",
        "imageType": "PreImage",
        "messagePropertyName": "Id",
        "attributes": ["akoya_status"],
    }
    doc.update(overrides)
    return doc


def step_doc(**overrides):
    """Snapshot form of the default step; matches step_record() + image_record()."""
    doc = {
        "id": STEP_ID,
        "name": STEP_NAME,
        "description": "",
        "configuration": "",
        "pluginTypeName": GRANT_TYPE,
        "primaryEntity": "akoya_request",
        "message": "Update",
        "stage": "Post-operation",
        "mode": "Synchronous",
        "state": "Enabled",
        "rank": 1,
        "asyncAutoDelete": False,
        "filteringAttributes": "akoya_status",
        "runAsUser": None,
        "images": [image_doc()],
    }
    doc.update(overrides)
    return doc


def snapshot_doc(steps, *, mode="guid", plugin_types=None, version=VERSION):
    return {
        "metadata": {
            "assemblyName": ASSEMBLY,
            "assemblyVersion": version,
            "totalSteps": len(steps),
            "identityMode": mode,
            "exportedAt": "2026-01-05T08:00:00Z",
        },
        "pluginTypes": [GRANT_TYPE] if plugin_types is None else plugin_types,
        "steps": list(steps),
    }


def write_json(path, doc):
    Path(path).write_text(json.dumps(doc, indent=2), encoding="utf-8")
    return str(path)


def make_step(**overrides):
    fields = dict(
        id=STEP_ID,
        name=STEP_NAME,
        plugin_type_name=GRANT_TYPE,
        message="Update",
        primary_entity="akoya_request",
        stage=Stage.POST_OPERATION,
        mode=Mode.SYNCHRONOUS,
        state=State.ENABLED,
        rank=1,
        filtering_attributes=("akoya_status",),
        images=[StepImage(name="PreImage", entity_alias="PreImage", image_type=ImageType.PRE_IMAGE, attributes=("akoya_status",))],
    )
    fields.update(overrides)
    return PluginStep(**fields)


def bind(store):
    """ReferenceLookups bound to the test assembly."""
    return ReferenceLookups(store, find_target_assembly(store, ASSEMBLY))


def memory_store(steps=(), images=()):
    return InMemoryRecordStore(environment_records(steps, images))
