import json

import pytest

from pluginsync.core.desired import SetupError, load_desired_state
from pluginsync.core.diff_engine import reconcile_plan
from pluginsync.core.exporter import export_snapshot, write_snapshot
from pluginsync.core.observed import load_observed_steps

from factories import (
    APP_ID,
    APP_USER_ID,
    ASSEMBLY,
    GRANT_TYPE,
    MSG_CREATE,
    PAYMENT_TYPE,
    PAYMENT_TYPE_ID,
    VERSION,
    bind,
    image_record,
    memory_store,
    step_record,
)


def _store():
    payment = step_record(
        id="99999999-0000-0000-0000-000000000002",
        name="Payment: Create",
        plugin_type_id=PAYMENT_TYPE_ID,
        message_id=MSG_CREATE,
        message_filter_id=None,
        mode=1,
        async_auto_delete=True,
        filtering_attributes="",
        impersonating_user_id=APP_USER_ID,
    )
    return memory_store([step_record(), payment], [image_record()])


def test_export_document_shape():
    doc = export_snapshot(_store(), ASSEMBLY)

    meta = doc["metadata"]
    assert meta["assemblyName"] == ASSEMBLY and meta["assemblyVersion"] == VERSION
    assert meta["totalSteps"] == 2 and meta["identityMode"] == "guid"
    assert doc["pluginTypes"] == [GRANT_TYPE, PAYMENT_TYPE]

    grant, payment = doc["steps"]
    assert grant["stage"] == "Post-operation" and grant["mode"] == "Synchronous"
    assert grant["primaryEntity"] == "akoya_request"
    assert grant["runAsUser"] is None
    assert grant["images"][0]["imageType"] == "PreImage"
    assert grant["images"][0]["attributes"] == ["akoya_status"]

    assert payment["primaryEntity"] == "none"
    assert payment["asyncAutoDelete"] is True
    assert payment["runAsUser"] == {"applicationId": APP_ID}


def test_exported_snapshot_matches_its_source(tmp_path):
    store = _store()
    path = write_snapshot(export_snapshot(store, ASSEMBLY), str(tmp_path / "out" / "steps.json"))

    desired = load_desired_state(str(path))
    lookups = bind(store)
    plan = reconcile_plan(desired.steps, load_observed_steps(store, lookups), resolve_user=lookups.user_id)

    assert plan.counts() == {"MATCH": 2}
    assert json.loads(path.read_text(encoding="utf-8"))["metadata"]["totalSteps"] == 2


def test_composite_export_is_recorded_in_metadata():
    doc = export_snapshot(_store(), ASSEMBLY, identity_mode="composite")
    assert doc["metadata"]["identityMode"] == "composite"


def test_unknown_assembly():
    with pytest.raises(SetupError, match="not found"):
        export_snapshot(memory_store(), "Akoya.Missing")


def test_image_without_alias_round_trips_as_match(tmp_path):
    store = memory_store([step_record()], [image_record(entity_alias="")])
    path = write_snapshot(export_snapshot(store, ASSEMBLY), str(tmp_path / "steps.json"))

    desired = load_desired_state(str(path))
    assert desired.steps[0].images[0].entity_alias == "PreImage"
    lookups = bind(store)
    plan = reconcile_plan(desired.steps, load_observed_steps(store, lookups), resolve_user=lookups.user_id)

    assert plan.counts() == {"MATCH": 1}


def test_unreadable_observed_step_is_a_setup_error():
    store = memory_store([step_record(stage=30)])
    with pytest.raises(SetupError, match="Unknown Stage code: 30"):
        load_observed_steps(store, bind(store))
