"""
Logging for pluginsync runs.

Every run writes to three sinks:
  stderr (INFO by default),
  <base_dir>/app.log rotated at UTC midnight (DEBUG by default),
  <base_dir>/YYYY-MM-DD/<action>_<run_id>.log for the run alone.

Records carry run/action/assembly context, timestamps are UTC ISO-8601 and
bearer tokens, passwords, api keys and client secrets are redacted.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import re
import sys
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

_FORMAT = (
    "%(asctime)s | %(levelname)-8s | %(name)s | "
    "run=%(run_id)s action=%(action)s assembly=%(assembly)s | %(message)s"
)
_CONTEXT_FIELDS = ("run_id", "action", "assembly")
_REDACTED = r"\1***REDACTED***"


class MaskSecretsFilter(logging.Filter):
    """Rewrite message and string args so credentials never reach a sink."""

    _rules = (
        re.compile(r"(Authorization:\s*Bearer\s+)([A-Za-z0-9._~+/=-]+)", re.IGNORECASE),
        re.compile(r"(api[_-]?key\s*[=:]\s*)([A-Za-z0-9._-]+)", re.IGNORECASE),
        re.compile(r"(client[_-]?secret\s*[=:]\s*)([^,\s]+)", re.IGNORECASE),
        re.compile(r"(password\s*[=:]\s*)([^,\s]+)", re.IGNORECASE),
        re.compile(r"(\btoken\s*[=:]\s*)([A-Za-z0-9._-]+)", re.IGNORECASE),
    )

    @classmethod
    def scrub(cls, text: str) -> str:
        for rule in cls._rules:
            text = rule.sub(_REDACTED, text)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self.scrub(record.msg)
        args = record.args
        if isinstance(args, dict):
            record.args = {k: self.scrub(str(v)) for k, v in args.items()}
        elif isinstance(args, tuple) and args:
            record.args = tuple(self.scrub(a) if isinstance(a, str) else a for a in args)
        return True


class _ContextDefaults(logging.Filter):
    """Records logged outside the adapter still satisfy the format."""

    def filter(self, record: logging.LogRecord) -> bool:
        for attr in _CONTEXT_FIELDS:
            if not hasattr(record, attr):
                setattr(record, attr, "-")
        return True


def _formatter() -> logging.Formatter:
    fmt = logging.Formatter(fmt=_FORMAT, datefmt="%Y-%m-%dT%H:%M:%SZ")
    fmt.converter = time.gmtime  # type: ignore[attr-defined]
    return fmt


def _attach(logger: logging.Logger, handler: logging.Handler, level: str, fallback: int) -> None:
    handler.setLevel(getattr(logging, str(level).upper(), fallback))
    handler.setFormatter(_formatter())
    handler.addFilter(MaskSecretsFilter())
    handler.addFilter(_ContextDefaults())
    logger.addHandler(handler)


def _drop(logger: logging.Logger, handlers: List[logging.Handler]) -> None:
    for h in handlers:
        logger.removeHandler(h)
        h.close()


def _console(base: logging.Logger, level: str) -> None:
    # pytest swaps sys.stderr between tests, so the stream handler is rebuilt each call
    _drop(base, [h for h in base.handlers if type(h) is logging.StreamHandler])
    _attach(base, logging.StreamHandler(stream=sys.stderr), level, logging.INFO)


def _app_log(base: logging.Logger, base_dir: str, level: str) -> None:
    os.makedirs(base_dir, exist_ok=True)
    target = os.path.abspath(os.path.join(base_dir, "app.log"))
    rotating = [h for h in base.handlers if isinstance(h, logging.handlers.TimedRotatingFileHandler)]
    stale = [h for h in rotating if os.path.abspath(h.baseFilename) != target]
    _drop(base, stale)
    if len(stale) < len(rotating):
        return
    handler = logging.handlers.TimedRotatingFileHandler(
        target, when="midnight", backupCount=14, encoding="utf-8", utc=True
    )
    _attach(base, handler, level, logging.DEBUG)


def _run_log(child: logging.Logger, base_dir: str, action: str, run_id: str, level: str) -> None:
    if any(isinstance(h, logging.FileHandler) for h in child.handlers):
        return
    day_dir = os.path.join(base_dir, datetime.now(timezone.utc).strftime("%Y-%m-%d"))
    os.makedirs(day_dir, exist_ok=True)
    path = os.path.join(day_dir, f"{action}_{run_id}.log")
    _attach(child, logging.FileHandler(path, encoding="utf-8"), level, logging.DEBUG)


def build_logger(
    *,
    name: str = "ps",
    run_id: str,
    action: str,
    base_dir: str = "logs",
    console_level: str = "INFO",
    file_level: str = "DEBUG",
    extra: Optional[Dict[str, Any]] = None,
) -> logging.LoggerAdapter:
    """
    Return a LoggerAdapter bound to this run.

    The `<name>` logger owns the console and app.log handlers. The
    `<name>.<action>.<run_id>` child owns the per-run file and propagates to
    its parent. Calling again with the same names reuses the handlers.
    """
    base = logging.getLogger(name)
    base.setLevel(logging.DEBUG)
    base.propagate = False
    _console(base, console_level)
    _app_log(base, base_dir, file_level)

    child = logging.getLogger(f"{name}.{action}.{run_id}")
    child.setLevel(logging.DEBUG)
    child.propagate = True
    _run_log(child, base_dir, action, run_id, file_level)

    context = {"run_id": run_id, "action": action, "assembly": (extra or {}).get("assembly") or "-"}
    adapter = logging.LoggerAdapter(child, context)
    adapter.debug("Logger initialised")
    return adapter
