import base64
import json

from pluginsync.cli import main
from pluginsync.core.desired import load_desired_state

from factories import (
    ASSEMBLY,
    PAYMENT_TYPE,
    STEP_ID,
    environment_records,
    image_record,
    snapshot_doc,
    step_doc,
    step_record,
    write_json,
)


def _setup(tmp_path, monkeypatch, steps=None, records=None, **snapshot_kw):
    monkeypatch.chdir(tmp_path)
    store_file = write_json(tmp_path / "target.json", records or environment_records())
    snapshot = write_json(tmp_path / "plugin-steps.json", snapshot_doc(steps or [step_doc()], **snapshot_kw))
    return store_file, snapshot


def _common(store_file):
    return ["--store-file", store_file, "--logs-dir", "logs", "--console-level", "CRITICAL"]


def test_sync_creates_then_reports_in_sync(tmp_path, monkeypatch, capsys):
    store_file, snapshot = _setup(tmp_path, monkeypatch)

    rc = main(["sync", "--snapshot", snapshot, *_common(store_file)])
    out = capsys.readouterr().out
    assert rc == 0
    assert "created missing step" in out
    assert out.strip().splitlines()[-1] == "SUCCESSES=0 | FIXES=2 | WARNINGS=0 | FAILURES=0"

    saved = json.loads((tmp_path / "target.json").read_text(encoding="utf-8"))
    assert [s["id"] for s in saved["plugin_step"]] == [STEP_ID]

    rc = main(["sync", "--snapshot", snapshot, *_common(store_file)])
    out = capsys.readouterr().out
    assert rc == 0
    assert "in sync" in out
    assert out.strip().splitlines()[-1] == "SUCCESSES=1 | FIXES=0 | WARNINGS=0 | FAILURES=0"


def test_dry_run_does_not_touch_the_store_file(tmp_path, monkeypatch, capsys):
    store_file, snapshot = _setup(tmp_path, monkeypatch)
    before = (tmp_path / "target.json").read_text(encoding="utf-8")

    rc = main(["sync", "--snapshot", snapshot, "--dry-run", *_common(store_file)])

    assert rc == 0
    assert "would create step" in capsys.readouterr().out
    assert (tmp_path / "target.json").read_text(encoding="utf-8") == before


def test_failures_set_exit_code_and_report_file(tmp_path, monkeypatch, capsys):
    steps = [step_doc(message="Assign"), step_doc(id="99999999-0000-0000-0000-000000000002", rank=2)]
    store_file, snapshot = _setup(tmp_path, monkeypatch, steps=steps)

    rc = main(["sync", "--snapshot", snapshot, "--report-file", "out/report.json", "--format", "json", *_common(store_file)])

    assert rc == 1
    printed = json.loads(capsys.readouterr().out)
    assert printed["counts"]["failure"] == 1
    report = json.loads((tmp_path / "out" / "report.json").read_text(encoding="utf-8"))
    assert "Message 'Assign' not found" in report["failures"][0]
    assert report["counts"]["fix"] == 2


def test_setup_errors_exit_1(tmp_path, monkeypatch, capsys):
    store_file, _ = _setup(tmp_path, monkeypatch)

    assert main(["sync", "--snapshot", "missing.json", *_common(store_file)]) == 1
    captured = capsys.readouterr()
    assert "Snapshot file not found" in captured.err
    assert captured.out.strip() == "SUCCESSES=0 | FIXES=0 | WARNINGS=0 | FAILURES=1"

    _, old = _setup(tmp_path, monkeypatch, version="4.1.0.0")
    assert main(["sync", "--snapshot", old, *_common(store_file)]) == 1
    assert "snapshot expects 4.1.0.0" in capsys.readouterr().err

    assert main(["sync", "--snapshot", old, "--skip-version-check", *_common(store_file)]) == 0


def test_missing_store_configuration(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    assert main(["sync", "--snapshot", "plugin-steps.json", "--logs-dir", "logs"]) == 1
    assert "Configuration error" in capsys.readouterr().err


def test_delete_orphans(tmp_path, monkeypatch, capsys):
    records = environment_records(
        [step_record(), step_record(id="99999999-0000-0000-0000-00000000000c", name="Stale", rank=9)],
        [image_record()],
    )
    store_file, snapshot = _setup(tmp_path, monkeypatch, records=records)

    rc = main(["sync", "--snapshot", snapshot, "--delete-orphans", *_common(store_file)])

    out = capsys.readouterr().out
    assert rc == 0
    assert "deleted orphan step" in out and "deleted orphan plugin type" in out
    saved = json.loads((tmp_path / "target.json").read_text(encoding="utf-8"))
    assert [s["name"] for s in saved["plugin_step"]] == ["GrantRequest: Update of akoya_request"]
    assert PAYMENT_TYPE not in [t["name"] for t in saved["plugin_type"]]


def test_export_writes_a_loadable_snapshot(tmp_path, monkeypatch, capsys):
    records = environment_records([step_record()], [image_record()])
    store_file, _ = _setup(tmp_path, monkeypatch, records=records)

    rc = main(["export", "--assembly", ASSEMBLY, "--output", "export/steps.json", *_common(store_file)])

    assert rc == 0
    assert "Exported 1 step(s)" in capsys.readouterr().out
    state = load_desired_state(str(tmp_path / "export" / "steps.json"))
    assert state.steps[0].id == STEP_ID
    assert state.plugin_types == ["Akoya.Plugins.GrantRequestPlugin", PAYMENT_TYPE]


def test_export_requires_assembly(tmp_path, monkeypatch, capsys):
    store_file, _ = _setup(tmp_path, monkeypatch)
    assert main(["export", *_common(store_file)]) == 1
    assert "--assembly is required" in capsys.readouterr().err


def test_webresources_command(tmp_path, monkeypatch, capsys):
    records = environment_records()
    records["web_resource"] = [
        {
            "id": "77777777-0000-0000-0000-000000000001",
            "name": "akoya_/form.js",
            "web_resource_type": 3,
            "content": base64.b64encode(b"old();\n").decode("ascii"),
        }
    ]
    store_file, _ = _setup(tmp_path, monkeypatch, records=records)
    root = tmp_path / "webresources"
    root.mkdir()
    (root / "form.js").write_text("init();\n", encoding="utf-8")

    rc = main(["webresources", "--root", str(root), "--prefix", "akoya_/", *_common(store_file)])

    assert rc == 0
    assert "content updated after removing unmanaged layers" in capsys.readouterr().out
    saved = json.loads((tmp_path / "target.json").read_text(encoding="utf-8"))
    assert base64.b64decode(saved["web_resource"][0]["content"]) == b"init();\n"

    assert main(["webresources", "--root", str(tmp_path / "nope"), *_common(store_file)]) == 1


def test_unreadable_observed_step_aborts_with_summary(tmp_path, monkeypatch, capsys):
    records = environment_records([step_record(stage=30)])
    store_file, snapshot = _setup(tmp_path, monkeypatch, records=records)

    assert main(["sync", "--snapshot", snapshot, *_common(store_file)]) == 1
    captured = capsys.readouterr()
    assert "Unknown Stage code: 30" in captured.err
    assert captured.out.strip() == "SUCCESSES=0 | FIXES=0 | WARNINGS=0 | FAILURES=1"


def test_malformed_config_file(tmp_path, monkeypatch, capsys):
    store_file, snapshot = _setup(tmp_path, monkeypatch)
    (tmp_path / "bad.yml").write_text("sync: [unclosed\n", encoding="utf-8")

    assert main(["sync", "--config", "bad.yml", "--snapshot", snapshot, *_common(store_file)]) == 1
    assert "Configuration error: Invalid YAML" in capsys.readouterr().err
