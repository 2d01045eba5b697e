import json

import pytest

from pluginsync.core.desired import DesiredStateError, SetupError, load_desired_state, parse_snapshot
from pluginsync.core.enums import ImageType, Mode, Stage, State

from factories import APP_ID, GRANT_TYPE, PAYMENT_TYPE, image_doc, snapshot_doc, step_doc, write_json


def test_loads_typed_steps(tmp_path):
    doc = snapshot_doc(
        [
            step_doc(),
            step_doc(
                id="{99999999-0000-0000-0000-0000000000AB}",
                name="Payment: Create",
                pluginTypeName=PAYMENT_TYPE,
                message="Create",
                primaryEntity="none",
                stage=20,
                mode="Asynchronous",
                state="Disabled",
                asyncAutoDelete=True,
                runAsUser={"applicationId": APP_ID.upper()},
                images=[],
            ),
        ]
    )
    state = load_desired_state(write_json(tmp_path / "snap.json", doc))

    assert state.metadata.assembly_name == "Akoya.Plugins"
    assert state.metadata.identity_mode == "guid"
    assert len(state.steps) == 2

    first, second = state.steps
    assert first.stage is Stage.POST_OPERATION
    assert first.images[0].image_type is ImageType.PRE_IMAGE
    assert first.filtering_attributes == ("akoya_status",)

    assert second.id == "99999999-0000-0000-0000-0000000000ab"
    assert second.primary_entity == ""
    assert second.stage is Stage.PRE_OPERATION
    assert second.mode is Mode.ASYNCHRONOUS
    assert second.state is State.DISABLED
    assert second.effective_async_auto_delete is True
    assert second.run_as.application_id == APP_ID


def test_defaults_for_optional_fields():
    doc = snapshot_doc(
        [{"id": "1", "pluginTypeName": GRANT_TYPE, "message": "Create", "images": [{"name": "Target"}]}]
    )
    step = parse_snapshot(doc).steps[0]
    assert step.stage is Stage.POST_OPERATION
    assert step.mode is Mode.SYNCHRONOUS
    assert step.state is State.ENABLED
    assert step.rank == 1
    assert step.run_as.is_calling_user
    img = step.images[0]
    assert img.entity_alias == "Target" and img.message_property_name == "Id"


def test_reads_utf8_bom(tmp_path):
    path = tmp_path / "bom.json"
    path.write_bytes(b"\xef\xbb\xbf" + json.dumps(snapshot_doc([step_doc()])).encode("utf-8"))
    assert len(load_desired_state(str(path)).steps) == 1


def test_missing_and_unparsable_files(tmp_path):
    with pytest.raises(DesiredStateError, match="not found"):
        load_desired_state(str(tmp_path / "nope.json"))

    bad = tmp_path / "bad.json"
    bad.write_text("{not json", encoding="utf-8")
    with pytest.raises(DesiredStateError, match="Cannot parse"):
        load_desired_state(str(bad))


@pytest.mark.parametrize(
    "mutate, message",
    [
        (lambda d: d["metadata"].update(totalSteps=5), "totalSteps=5"),
        (lambda d: d["metadata"].pop("assemblyName"), "assemblyName"),
        (lambda d: d["metadata"].update(identityMode="name"), "identityMode"),
        (lambda d: d["steps"][0].pop("id"), "requires an 'id'"),
        (lambda d: d["steps"][0].pop("pluginTypeName"), "pluginTypeName"),
        (lambda d: d["steps"][0].update(stage="Post-commit"), "stage"),
        (lambda d: d["steps"][0].update(rank="first"), "rank"),
        (lambda d: d["steps"][0].update(images=[image_doc(), image_doc()]), "duplicate image"),
        (lambda d: d.update(steps={"a": 1}), "must be a list"),
        (lambda d: d.update(pluginTypes="Akoya.Plugins.X"), "pluginTypes"),
    ],
)
def test_structural_errors(mutate, message):
    doc = snapshot_doc([step_doc()])
    mutate(doc)
    with pytest.raises(DesiredStateError, match=message):
        parse_snapshot(doc)


def test_duplicate_step_ids_rejected():
    doc = snapshot_doc([step_doc(), step_doc(name="copy")])
    with pytest.raises(DesiredStateError, match="Duplicate step id"):
        parse_snapshot(doc)


def test_identity_mode_override_allows_steps_without_ids(tmp_path):
    doc = snapshot_doc([step_doc(id=None)])
    path = write_json(tmp_path / "snap.json", doc)

    with pytest.raises(SetupError):
        load_desired_state(path)

    state = load_desired_state(path, identity_mode="composite")
    assert state.metadata.identity_mode == "composite"
    assert state.steps[0].id == ""


def test_type_names_include_step_types():
    doc = snapshot_doc([step_doc(), step_doc(id="2", pluginTypeName=PAYMENT_TYPE)], plugin_types=["Akoya.Plugins.Extra"])
    assert parse_snapshot(doc).type_names() == ["Akoya.Plugins.Extra", GRANT_TYPE, PAYMENT_TYPE]
