"""
HttpRecordStore: RecordStore over a JSON REST gateway.

The gateway exposes one collection per entity kind:

  GET    {base}/{kind}?name=...            -> list (find_by_name, first item)
  GET    {base}/{kind}?{field}=...         -> list (find_children / find_where)
  GET    {base}/{kind}/{id}                -> object, 404 when absent
  POST   {base}/{kind}                     -> {"id": ...}
  PATCH  {base}/{kind}/{id}                -> update / set_state
  DELETE {base}/{kind}/{id}
  POST   {base}/{kind}/{id}/remove-unmanaged-layers

Reads (GET) retry transport errors and 5xx with exponential backoff; 4xx are
not retried. Writes are sent once.
Every failure surfaces as StoreError.
"""

from __future__ import annotations

import json
import logging
import time
import warnings
from typing import Any, Dict, List, Optional, Union

import requests
import urllib3

from .store import Record, RecordStore, StoreError, parent_field

JSON = Union[Dict[str, Any], List[Any]]

_REDACT_KEYS = {"token", "authorization", "password", "content"}


def _short_json(obj: Any, limit: int = 300) -> str:
    try:
        s = json.dumps(_redact(obj), ensure_ascii=False) if isinstance(obj, (dict, list)) else str(obj)
        return s[:limit]
    except (TypeError, ValueError):
        return f"<unserializable:{type(obj).__name__}>"


def _redact(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {k: ("***REDACTED***" if str(k).lower() in _REDACT_KEYS else _redact(v)) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_redact(x) for x in obj]
    return obj


class HttpRecordStore(RecordStore):
    """JSON-first HTTP implementation of the RecordStore capability."""

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        verify_tls: bool = True,
        timeout_sec: int = 30,
        retries: int = 3,
        backoff_base_sec: float = 0.2,
        session: Optional[requests.Session] = None,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self.base_url = base_url.rstrip("/")
        self.verify_tls = bool(verify_tls)
        self.timeout = float(timeout_sec)
        self.retries = max(0, int(retries))
        self.backoff = float(backoff_base_sec)
        self.log = logger or logging.getLogger("ps.http")

        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Accept": "application/json",
                "Content-Type": "application/json",
                "User-Agent": "pluginsync/HttpRecordStore",
            }
        )
        if not self.verify_tls:
            warnings.filterwarnings("ignore", category=urllib3.exceptions.InsecureRequestWarning)

    # ------------- low-level -------------

    def _url(self, *parts: str) -> str:
        return "/".join([self.base_url] + [str(p).strip("/") for p in parts])

    def _request(
        self,
        method: str,
        kind: str,
        *parts: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        allow_404: bool = False,
    ) -> Optional[JSON]:
        url = self._url(kind, *parts)
        # writes are not idempotent: one attempt, failure goes to the report
        attempts = self.retries + 1 if method == "GET" else 1
        for attempt in range(attempts):
            start = time.time()
            try:
                resp = self.session.request(
                    method=method,
                    url=url,
                    params=params,
                    json=body,
                    timeout=self.timeout,
                    verify=self.verify_tls,
                )
            except requests.RequestException as exc:
                self.log.warning("%s %s failed: %s", method, url, exc)
                if attempt < attempts - 1:
                    self._sleep_backoff(attempt)
                    continue
                raise StoreError(f"{method} {url} failed: {exc}", kind=kind) from exc

            elapsed = (time.time() - start) * 1000
            self.log.debug("%s %s -> %s in %.1fms", method, url, resp.status_code, elapsed)

            if resp.status_code == 404 and allow_404:
                return None
            if resp.status_code >= 500 and attempt < attempts - 1:
                self.log.warning("%s %s -> %s, retrying", method, url, resp.status_code)
                self._sleep_backoff(attempt)
                continue
            if resp.status_code >= 400:
                snippet = resp.text[:200]
                self.log.error("%s %s -> %s: %s", method, url, resp.status_code, snippet)
                raise StoreError(f"{method} {url} -> {resp.status_code}: {snippet}", kind=kind, status=resp.status_code)

            if not resp.content:
                return {}
            try:
                return resp.json()
            except ValueError as exc:
                raise StoreError(f"Non-JSON response from {method} {url}", kind=kind, status=resp.status_code) from exc

        raise StoreError(f"{method} {url} exhausted retries", kind=kind)  # pragma: no cover

    def _sleep_backoff(self, attempt: int) -> None:
        time.sleep(self.backoff * (2 ** attempt))

    @staticmethod
    def _items(payload: Optional[JSON], kind: str) -> List[Record]:
        if isinstance(payload, list):
            return [i for i in payload if isinstance(i, dict)]
        if isinstance(payload, dict) and isinstance(payload.get("items"), list):
            return [i for i in payload["items"] if isinstance(i, dict)]
        raise StoreError(f"List endpoint for '{kind}' must return a JSON list or an object with 'items'", kind=kind)

    # ------------- reads -------------

    def find_by_name(self, kind: str, name: str) -> Optional[Record]:
        items = self._items(self._request("GET", kind, params={"name": name}), kind)
        for it in items:
            if it.get("name") == name:
                return it
        return None

    def find_by_id(self, kind: str, record_id: str) -> Optional[Record]:
        found = self._request("GET", kind, record_id, allow_404=True)
        return found if isinstance(found, dict) and found else None

    def find_children(self, parent_id: str, kind: str) -> List[Record]:
        return self._items(self._request("GET", kind, params={parent_field(kind): parent_id}), kind)

    def find_where(self, kind: str, field: str, value: Any) -> List[Record]:
        return self._items(self._request("GET", kind, params={field: value}), kind)

    # ------------- writes -------------

    def create(self, kind: str, fields: Record) -> str:
        self.log.debug("create %s %s", kind, _short_json(fields))
        resp = self._request("POST", kind, body=fields)
        new_id = resp.get("id") if isinstance(resp, dict) else None
        if not new_id:
            raise StoreError(f"Create {kind} returned no id", kind=kind)
        return str(new_id)

    def update(self, kind: str, record_id: str, fields: Record) -> None:
        self.log.debug("update %s %s %s", kind, record_id, _short_json(fields))
        self._request("PATCH", kind, record_id, body=fields)

    def delete(self, kind: str, record_id: str) -> None:
        self._request("DELETE", kind, record_id)

    def set_state(self, kind: str, record_id: str, state: int) -> None:
        self._request("PATCH", kind, record_id, body={"state": int(state)})

    def remove_unmanaged_layers(self, kind: str, record_id: str) -> None:
        self._request("POST", kind, record_id, "remove-unmanaged-layers")
