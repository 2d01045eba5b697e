"""
Web-resource validation (HTML / JavaScript).

Local files under a root directory are the desired content. Each one is
checked against the deployed web resource of the same name; differing
content is pushed after stripping unmanaged layers, which would otherwise
keep masking the update.
"""

from __future__ import annotations

import base64
import binascii
import fnmatch
import logging
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from . import store as rs
from .enums import EnumParseError, WebResourceType
from .model import WebResource, norm_guid
from .report import RunReport
from .store import RecordStore, StoreError

AREA = "webresource"
DEFAULT_PATTERNS = ("*.html", "*.htm", "*.js")

_BOM = b"\xef\xbb\xbf"


def _comparable(content: bytes) -> bytes:
    """Ignore a UTF-8 BOM and CRLF/LF differences."""
    if content.startswith(_BOM):
        content = content[len(_BOM):]
    return content.replace(b"\r\n", b"\n")


def discover_web_resources(root: str, patterns: Sequence[str] = DEFAULT_PATTERNS, *, prefix: str = "") -> List[WebResource]:
    """
    Collect files under `root` whose relative path (or file name) matches one
    of `patterns`. The web resource name is `prefix` + the POSIX relative path.
    """
    base = Path(root)
    if not base.is_dir():
        raise FileNotFoundError(f"Web resource root not found: {root}")

    found: List[WebResource] = []
    for path in sorted(p for p in base.rglob("*") if p.is_file()):
        rel = path.relative_to(base).as_posix()
        if not any(fnmatch.fnmatch(rel, pat) or fnmatch.fnmatch(path.name, pat) for pat in patterns):
            continue
        try:
            rtype = WebResourceType.from_extension(path.name)
        except EnumParseError:
            continue
        found.append(WebResource(name=f"{prefix}{rel}", content=path.read_bytes(), resource_type=rtype))
    return found


def decode_content(value: Optional[str]) -> bytes:
    if not value:
        return b""
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise StoreError(f"Deployed content is not valid base64: {exc}", kind=rs.WEB_RESOURCE) from exc


class WebResourceValidator:
    def __init__(
        self,
        store: RecordStore,
        report: RunReport,
        *,
        dry_run: bool = False,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self.store = store
        self.report = report
        self.dry_run = dry_run
        self.log = logger or logging.getLogger("ps.webresources")

    def validate(self, resources: Iterable[WebResource]) -> RunReport:
        for res in resources:
            try:
                self._validate_one(res)
            except StoreError as exc:
                self.report.failure(AREA, res.name, f"store error: {exc}")
        return self.report

    def _validate_one(self, res: WebResource) -> None:
        rec = self.store.find_by_name(rs.WEB_RESOURCE, res.name)
        if not rec:
            self.report.failure(AREA, res.name, "not deployed in target environment")
            return

        try:
            deployed_type = WebResourceType.parse(rec.get("web_resource_type"))
        except EnumParseError:
            deployed_type = None
        if deployed_type is not res.resource_type:
            shown = deployed_type.label if deployed_type else rec.get("web_resource_type")
            self.report.failure(
                AREA, res.name, f"type is {shown}, expected {res.resource_type.label}; recreate it manually"
            )
            return

        if _comparable(decode_content(rec.get("content"))) == _comparable(res.content):
            self.report.success(AREA, res.name, "content matches")
            return

        if self.dry_run:
            self.report.warning(AREA, res.name, "content differs; would strip unmanaged layers and update")
            return

        record_id = norm_guid(rec.get("id"))
        self.store.remove_unmanaged_layers(rs.WEB_RESOURCE, record_id)
        self.store.update(rs.WEB_RESOURCE, record_id, {"content": base64.b64encode(res.content).decode("ascii")})
        self.report.fix(AREA, res.name, "content updated after removing unmanaged layers")
