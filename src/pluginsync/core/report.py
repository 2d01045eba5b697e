"""
Run-scoped report aggregator and its renderers (table or JSON).

One RunReport is created per run and passed by reference through the
reconciler, orphan sweep and web-resource validation. The process exit status
is derived from it: failure iff the failures bucket is non-empty.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

SUCCESS = "SUCCESS"
FIX = "FIX"
WARNING = "WARNING"
FAILURE = "FAILURE"

BUCKETS = (SUCCESS, FIX, WARNING, FAILURE)

EXIT_OK = 0
EXIT_FAILURE = 1


@dataclass(frozen=True)
class ReportEntry:
    bucket: str
    area: str
    subject: str
    message: str


class RunReport:
    """Accumulates successes, fixes, warnings and failures for one run."""

    def __init__(self, logger: Optional[logging.LoggerAdapter] = None) -> None:
        self.entries: List[ReportEntry] = []
        self.log = logger or logging.getLogger("ps.report")

    def _add(self, bucket: str, area: str, subject: str, message: str, level: int) -> ReportEntry:
        entry = ReportEntry(bucket, area, subject, message)
        self.entries.append(entry)
        self.log.log(level, "[%s] %s %s: %s", bucket, area, subject, message)
        return entry

    def success(self, area: str, subject: str, message: str = "OK") -> ReportEntry:
        return self._add(SUCCESS, area, subject, message, logging.INFO)

    def fix(self, area: str, subject: str, message: str) -> ReportEntry:
        return self._add(FIX, area, subject, message, logging.INFO)

    def warning(self, area: str, subject: str, message: str) -> ReportEntry:
        return self._add(WARNING, area, subject, message, logging.WARNING)

    def failure(self, area: str, subject: str, message: str) -> ReportEntry:
        return self._add(FAILURE, area, subject, message, logging.ERROR)

    # ----- views -----
    def _messages(self, bucket: str) -> List[str]:
        return [f"{e.subject}: {e.message}" for e in self.entries if e.bucket == bucket]

    @property
    def successes(self) -> List[str]:
        return self._messages(SUCCESS)

    @property
    def fixes(self) -> List[str]:
        return self._messages(FIX)

    @property
    def warnings(self) -> List[str]:
        return self._messages(WARNING)

    @property
    def failures(self) -> List[str]:
        return self._messages(FAILURE)

    def counts(self) -> Dict[str, int]:
        out = {b: 0 for b in BUCKETS}
        for e in self.entries:
            out[e.bucket] += 1
        return out

    @property
    def ok(self) -> bool:
        return not any(e.bucket == FAILURE for e in self.entries)

    def exit_code(self) -> int:
        return EXIT_OK if self.ok else EXIT_FAILURE

    def summary_line(self) -> str:
        c = self.counts()
        return (
            f"SUCCESSES={c[SUCCESS]} | FIXES={c[FIX]} | "
            f"WARNINGS={c[WARNING]} | FAILURES={c[FAILURE]}"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "counts": {k.lower(): v for k, v in self.counts().items()},
            "successes": self.successes,
            "fixes": self.fixes,
            "warnings": self.warnings,
            "failures": self.failures,
            "entries": [asdict(e) for e in self.entries],
        }

    def write_json(self, path: str) -> Path:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")
        return p


def print_report(report: RunReport, fmt: str = "table") -> None:
    """Render the report entries as a compact table or as JSON, then the summary line."""
    if fmt == "json":
        print(json.dumps(report.to_dict(), indent=2))
        return

    cols = ["bucket", "area", "subject", "message"]
    rows = [asdict(e) for e in report.entries]

    def _fmt(v: Any, col: str) -> str:
        s = "" if v is None else str(v)
        if col == "message" and len(s) > 120:
            return s[:117] + "..."
        return s or "-"

    if rows:
        widths = {c: len(c) for c in cols}
        for r in rows:
            for c in cols:
                widths[c] = max(widths[c], len(_fmt(r.get(c), c)))
        print("| " + " | ".join(c.ljust(widths[c]) for c in cols) + " |")
        print("| " + " | ".join("-" * widths[c] for c in cols) + " |")
        for r in rows:
            print("| " + " | ".join(_fmt(r.get(c), c).ljust(widths[c]) for c in cols) + " |")
    print(report.summary_line())
