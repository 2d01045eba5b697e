"""
Command-line interface for pluginsync.

Usage (examples):
  - Export the registration of an assembly into a snapshot:
      psync export --assembly Akoya.Plugins --output ./plugin-steps.json \
        --base-url https://gateway.example/api --token ***

  - Reconcile a target environment against a snapshot (plan only):
      psync sync --snapshot ./plugin-steps.json --base-url ... --dry-run

  - Reconcile, then remove orphaned steps/types:
      psync sync --snapshot ./plugin-steps.json --base-url ... --delete-orphans

  - Validate HTML/JS web resources against local files:
      psync webresources --root ./webresources --base-url ...

Exit code: 0 when the run report holds no failure, 1 otherwise (including
any setup error such as a missing snapshot or target assembly).
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Any, Dict, Iterable, Optional

from .core.config import AppConfig, load_config
from .core.desired import SetupError, load_desired_state
from .core.diff_engine import reconcile_plan
from .core.exporter import export_snapshot, write_snapshot
from .core.http_store import HttpRecordStore
from .core.logging_setup import build_logger
from .core.model import RunAsUser
from .core.observed import ReferenceLookups, find_target_assembly, load_observed_steps
from .core.orphans import OrphanSweep
from .core.reconciler import Reconciler
from .core.report import EXIT_FAILURE, EXIT_OK, RunReport, print_report
from .core.store import InMemoryRecordStore, RecordStore, StoreError
from .core.webresources import WebResourceValidator, discover_web_resources


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", default=None, help="YAML config file (default: ./pluginsync.yml and friends)")
    p.add_argument("--dry-run", action="store_true", default=None, help="Plan only, no writes")
    p.add_argument("--format", default="table", choices=["table", "json"], help="Report output format")

    # Store
    p.add_argument("--base-url", default=None, help="Record store gateway base URL")
    p.add_argument("--token", default=None, help="Record store API token")
    p.add_argument("--verify-tls", default=None, choices=["true", "false"], help="Verify TLS (https)")
    p.add_argument("--timeout-sec", type=int, default=None, help="HTTP timeout seconds")
    p.add_argument("--retries", type=int, default=None, help="HTTP retries (5xx/network)")
    p.add_argument("--store-file", default=None, help="Use a JSON record dump instead of the HTTP gateway")

    # Logging
    p.add_argument("--logs-dir", default=None, help="Logs base directory")
    p.add_argument("--console-level", default=None, help="Console log level (INFO..CRITICAL)")
    p.add_argument("--file-level", default=None, help="File log level (DEBUG..CRITICAL)")


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="psync", description="Plugin step registration export and reconciliation")
    sub = p.add_subparsers(dest="cmd", required=True)

    e = sub.add_parser("export", help="Export an assembly's plugin steps to a JSON snapshot")
    _add_common(e)
    e.add_argument("--assembly", default=None, help="Plugin assembly name")
    e.add_argument("--output", default=None, help="Snapshot file to write")
    e.add_argument("--identity-mode", default=None, choices=["guid", "composite"], help="Identity recorded in the snapshot")

    s = sub.add_parser("sync", help="Reconcile plugin steps against a snapshot")
    _add_common(s)
    s.add_argument("--snapshot", default=None, help="Desired-state snapshot (JSON)")
    s.add_argument("--assembly", default=None, help="Target assembly name (default: from snapshot)")
    s.add_argument("--identity-mode", default=None, choices=["guid", "composite"], help="Override the snapshot identity mode")
    s.add_argument("--skip-version-check", action="store_true", help="Do not require the snapshot assembly version")
    s.add_argument("--delete-orphans", action="store_true", default=None, help="Delete steps/types absent from the snapshot")
    s.add_argument("--report-file", default=None, help="Write the run report as JSON")

    w = sub.add_parser("webresources", help="Validate HTML/JS web resources against local files")
    _add_common(w)
    w.add_argument("--root", default=None, help="Local web resource root directory")
    w.add_argument("--prefix", default=None, help="Name prefix prepended to relative paths")
    w.add_argument("--pattern", action="append", default=None, help="Inclusion glob (repeatable)")
    w.add_argument("--report-file", default=None, help="Write the run report as JSON")

    return p


def _config_from_args(args: argparse.Namespace) -> AppConfig:
    overrides: Dict[str, Any] = {
        "app": {"dry_run": args.dry_run},
        "store": {
            "base_url": args.base_url,
            "token": args.token,
            "verify_tls": args.verify_tls,
            "timeout_sec": args.timeout_sec,
            "retries": args.retries,
            "file": args.store_file,
        },
        "logging": {
            "base_dir": args.logs_dir,
            "console_level": args.console_level,
            "file_level": args.file_level,
        },
    }
    if args.cmd in ("export", "sync"):
        overrides["sync"] = {"assembly_name": args.assembly, "identity_mode": args.identity_mode}
    if args.cmd == "sync":
        overrides["sync"].update(
            {
                "snapshot_path": args.snapshot,
                "delete_orphans": args.delete_orphans,
                "check_version": False if args.skip_version_check else None,
            }
        )
    if args.cmd == "webresources":
        overrides["webresources"] = {"root": args.root, "prefix": args.prefix, "patterns": args.pattern}

    if args.config:
        return load_config(overrides, files=(args.config,))
    return load_config(overrides)


def _build_store(cfg: AppConfig, logger: logging.LoggerAdapter) -> RecordStore:
    if cfg.store.file:
        return InMemoryRecordStore.load(cfg.store.file)
    if not cfg.store.base_url:
        raise SetupError("No record store configured: set store.base_url or store.file")
    return HttpRecordStore(
        cfg.store.base_url,
        cfg.store.token,
        verify_tls=bool(cfg.store.verify_tls),
        timeout_sec=int(cfg.store.timeout_sec),
        retries=int(cfg.store.retries),
        logger=logger,
    )


def _persist_store(cfg: AppConfig, store: RecordStore) -> None:
    if cfg.store.file and not cfg.app.dry_run and isinstance(store, InMemoryRecordStore):
        store.save(cfg.store.file)


def _finish(report: RunReport, args: argparse.Namespace, logger: logging.LoggerAdapter) -> int:
    print_report(report, args.format)
    if getattr(args, "report_file", None):
        path = report.write_json(args.report_file)
        logger.info("Run report written to %s", path)
    logger.info("Summary: %s", report.summary_line())
    return report.exit_code()


# ----------------------- commands ----------------------------

def _export_cmd(args: argparse.Namespace, cfg: AppConfig, logger: logging.LoggerAdapter) -> int:
    assembly = cfg.sync.assembly_name
    if not assembly:
        raise SetupError("--assembly is required for export")
    store = _build_store(cfg, logger)
    doc = export_snapshot(store, assembly, identity_mode=cfg.sync.identity_mode or "guid", logger=logger)
    output = args.output or cfg.sync.snapshot_path
    path = write_snapshot(doc, output)
    print(f"Exported {doc['metadata']['totalSteps']} step(s) to {path}")
    return EXIT_OK


def _sync_cmd(args: argparse.Namespace, cfg: AppConfig, logger: logging.LoggerAdapter) -> int:
    desired = load_desired_state(cfg.sync.snapshot_path, identity_mode=cfg.sync.identity_mode or None)
    mode = desired.metadata.identity_mode
    store = _build_store(cfg, logger)

    assembly_name = cfg.sync.assembly_name or desired.metadata.assembly_name
    expected = desired.metadata.assembly_version if cfg.sync.check_version else ""
    assembly = find_target_assembly(store, assembly_name, expected_version=expected)
    logger.info(
        "Reconciling %s step(s) against %s %s (mode=%s, dry_run=%s)",
        len(desired.steps), assembly.name, assembly.version, mode, cfg.app.dry_run,
    )

    lookups = ReferenceLookups(store, assembly)
    observed = load_observed_steps(store, lookups, logger=logger)

    def resolve_user(run_as: RunAsUser) -> Optional[str]:
        try:
            return lookups.user_id(run_as)
        except StoreError as exc:
            logger.warning("User lookup for %s failed: %s", run_as.describe(), exc)
            return None

    plan = reconcile_plan(desired.steps, observed, mode=mode, resolve_user=resolve_user)
    logger.info("Plan: %s", plan.counts())

    report = RunReport(logger)
    Reconciler(store, lookups, report, mode=mode, dry_run=cfg.app.dry_run, logger=logger).execute(plan)

    if cfg.sync.delete_orphans:
        OrphanSweep(store, lookups, report, mode=mode, dry_run=cfg.app.dry_run, logger=logger).run(
            desired.steps, observed, desired.type_names()
        )

    _persist_store(cfg, store)
    return _finish(report, args, logger)


def _webresources_cmd(args: argparse.Namespace, cfg: AppConfig, logger: logging.LoggerAdapter) -> int:
    try:
        resources = discover_web_resources(cfg.webresources.root, cfg.webresources.patterns, prefix=cfg.webresources.prefix)
    except FileNotFoundError as exc:
        raise SetupError(str(exc)) from exc
    logger.info("Validating %s web resource(s) from %s", len(resources), cfg.webresources.root)

    store = _build_store(cfg, logger)
    report = RunReport(logger)
    WebResourceValidator(store, report, dry_run=cfg.app.dry_run, logger=logger).validate(resources)

    _persist_store(cfg, store)
    return _finish(report, args, logger)


_COMMANDS = {
    "export": _export_cmd,
    "sync": _sync_cmd,
    "webresources": _webresources_cmd,
}


def main(argv: Iterable[str] | None = None) -> int:
    parser = _build_arg_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        cfg = _config_from_args(args)
    except ValueError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_FAILURE

    logger = build_logger(
        run_id=cfg.run_id,
        action=args.cmd,
        base_dir=cfg.logging.base_dir,
        console_level=cfg.logging.console_level,
        file_level=cfg.logging.file_level,
        extra={"assembly": cfg.sync.assembly_name},
    )
    logger.info("Starting psync %s (dry_run=%s)", args.cmd, cfg.app.dry_run)

    try:
        return _COMMANDS[args.cmd](args, cfg, logger)
    except SetupError as exc:
        return _abort(args, logger, "Setup error", exc)
    except StoreError as exc:
        return _abort(args, logger, "Record store error", exc)


def _abort(args: argparse.Namespace, logger: logging.LoggerAdapter, what: str, exc: Exception) -> int:
    """Fatal pre-flight error: record it, print the summary and exit 1."""
    report = RunReport(logger)
    report.failure("setup", args.cmd, f"{what}: {exc}")
    print(f"{what}: {exc}", file=sys.stderr)
    print(report.summary_line())
    return EXIT_FAILURE


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
