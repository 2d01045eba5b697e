import json

from pluginsync.core.report import RunReport, print_report


def _report():
    r = RunReport()
    r.success("step", "A", "in sync")
    r.fix("step", "B", "updated rank")
    r.fix("step", "B", "created missing image 'PostImage'")
    r.warning("step", "B", "rank differs (desired=2, observed=1)")
    return r


def test_summary_and_exit_code():
    r = _report()
    assert r.summary_line() == "SUCCESSES=1 | FIXES=2 | WARNINGS=1 | FAILURES=0"
    assert r.ok and r.exit_code() == 0

    r.failure("orphan", "C", "delete failed: locked")
    assert r.exit_code() == 1
    assert r.failures == ["C: delete failed: locked"]


def test_warnings_alone_do_not_fail_the_run():
    r = RunReport()
    r.warning("step", "X", "Step 'X' on Update has no PreImage")
    assert r.exit_code() == 0


def test_json_report_file(tmp_path):
    path = _report().write_json(str(tmp_path / "reports" / "run.json"))
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["counts"] == {"success": 1, "fix": 2, "warning": 1, "failure": 0}
    assert data["fixes"] == ["B: updated rank", "B: created missing image 'PostImage'"]
    assert data["entries"][0] == {"bucket": "SUCCESS", "area": "step", "subject": "A", "message": "in sync"}


def test_table_output_ends_with_summary(capsys):
    print_report(_report(), "table")
    lines = capsys.readouterr().out.strip().splitlines()
    assert lines[0].startswith("| bucket")
    assert any("created missing image 'PostImage'" in line for line in lines)
    assert lines[-1] == "SUCCESSES=1 | FIXES=2 | WARNINGS=1 | FAILURES=0"


def test_json_output(capsys):
    print_report(_report(), "json")
    data = json.loads(capsys.readouterr().out)
    assert data["successes"] == ["A: in sync"]
