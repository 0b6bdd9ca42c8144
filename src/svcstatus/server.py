#!/usr/bin/env python3
"""
Read-only HTTP query API

This module provides:
- start_status_server: serves a StatusQuery over HTTP from a daemon thread
- StatusRegistryClient: thin HTTP client matching the query API shape

Routes (all GET, JSON):
    /services               filtered list (type, source, status, after, before, liveness)
    /services/alive         records whose heartbeat is within the threshold
    /services/summary       counts by liveness and by service type
    /services/<id>          one record, 404 when unknown
"""

import json
import logging
import threading
import urllib.error
import urllib.parse
import urllib.request
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, List, Optional

from .detector import Liveness
from .query import ClassifiedStatus, StatusQuery
from .registry.errors import StoreUnavailable
from .registry.models import RecordFilter, ServiceStatus

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8471


def _parse_timestamp(name: str, value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    try:
        ts = datetime.fromisoformat(value)
    except ValueError:
        raise ValueError(f"{name} must be an ISO-8601 timestamp, got {value!r}") from None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _parse_filter(qs: Dict[str, List[str]]) -> RecordFilter:
    status = qs.get("status", [None])[0]
    if status is not None and status not in {s.value for s in ServiceStatus}:
        raise ValueError(f"unknown status {status!r}")
    return RecordFilter(
        service_type=qs.get("type", [None])[0],
        source_id=qs.get("source", [None])[0],
        status=status,
        heartbeat_after=_parse_timestamp("after", qs.get("after", [None])[0]),
        heartbeat_before=_parse_timestamp("before", qs.get("before", [None])[0]),
    )


def _parse_liveness(value: Optional[str]) -> Optional[Liveness]:
    if value is None:
        return None
    try:
        return Liveness(value)
    except ValueError:
        raise ValueError(f"unknown liveness {value!r}") from None


def _make_handler(query: StatusQuery):
    """Create a handler class bound to the given query instance."""

    class StatusHTTPHandler(BaseHTTPRequestHandler):

        def log_message(self, format, *args):
            logger.debug("%s - %s", self.address_string(), format % args)

        def _json_response(self, data: Any, status: int = 200):
            body = json.dumps(data).encode()
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def do_GET(self):
            parsed = urllib.parse.urlparse(self.path)
            path = parsed.path.rstrip("/")
            qs = urllib.parse.parse_qs(parsed.query)
            try:
                self._route(path, qs)
            except ValueError as e:
                self._json_response({"error": str(e)}, status=400)
            except StoreUnavailable as e:
                logger.warning("Query %s failed: %s", self.path, e)
                self._json_response({"error": "store unavailable"}, status=503)

        def _route(self, path: str, qs: Dict[str, List[str]]):
            if path == "/services":
                statuses = query.list(
                    filter=_parse_filter(qs),
                    liveness=_parse_liveness(qs.get("liveness", [None])[0]),
                )
                self._json_response([s.to_dict() for s in statuses])

            elif path == "/services/alive":
                statuses = query.list(filter=_parse_filter(qs), liveness=Liveness.ALIVE)
                self._json_response([s.to_dict() for s in statuses])

            elif path == "/services/summary":
                self._json_response(query.summary())

            elif path.startswith("/services/"):
                record_id = urllib.parse.unquote(path[len("/services/"):])
                status = query.get(record_id)
                if status:
                    self._json_response(status.to_dict())
                else:
                    self._json_response({"error": "not found"}, status=404)

            else:
                self._json_response({"error": "not found"}, status=404)

    return StatusHTTPHandler


def start_status_server(
    query: StatusQuery,
    host: str = "0.0.0.0",
    port: int = DEFAULT_PORT,
) -> ThreadingHTTPServer:
    """Start a ThreadingHTTPServer in a daemon thread and return the server."""
    handler = _make_handler(query)
    server = ThreadingHTTPServer((host, port), handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    logger.info("Status API listening on %s:%d", *server.server_address[:2])
    return server


# ---------------------------------------------------------------------------
# HTTP client (used by dashboards and orchestrators)
# ---------------------------------------------------------------------------

class StatusRegistryClient:
    """Thin HTTP client for the status query API.

    An unknown id comes back as None; an unreachable server or store raises
    StoreUnavailable.
    """

    def __init__(self, host: str = "localhost", port: int = DEFAULT_PORT, timeout: float = 10):
        self._base = f"http://{host}:{port}"
        self._timeout = timeout
        self._opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))

    def _get(self, path: str, params: Optional[Dict[str, str]] = None) -> Any:
        qs = urllib.parse.urlencode({k: v for k, v in (params or {}).items() if v is not None})
        url = f"{self._base}{path}?{qs}" if qs else f"{self._base}{path}"
        try:
            with self._opener.open(url, timeout=self._timeout) as resp:
                return json.loads(resp.read().decode())
        except urllib.error.HTTPError as e:
            if e.code == 404:
                return None
            detail = _error_detail(e)
            if e.code == 400:
                raise ValueError(detail) from e
            raise StoreUnavailable(f"{url}: HTTP {e.code} {detail}") from e
        except (urllib.error.URLError, OSError) as e:
            raise StoreUnavailable(f"{url}: {getattr(e, 'reason', e)}") from e

    def get_service(self, record_id: str) -> Optional[ClassifiedStatus]:
        data = self._get(f"/services/{urllib.parse.quote(record_id, safe='')}")
        if data is None:
            return None
        return ClassifiedStatus.from_dict(data)

    def list_services(
        self,
        service_type: Optional[str] = None,
        source_id: Optional[str] = None,
        status: Optional[str] = None,
        heartbeat_after: Optional[datetime] = None,
        heartbeat_before: Optional[datetime] = None,
        liveness: Optional[str] = None,
    ) -> List[ClassifiedStatus]:
        params = {
            "type": service_type,
            "source": source_id,
            "status": status,
            "after": heartbeat_after.isoformat() if heartbeat_after else None,
            "before": heartbeat_before.isoformat() if heartbeat_before else None,
            "liveness": liveness,
        }
        data = self._get("/services", params)
        return [ClassifiedStatus.from_dict(d) for d in data or []]

    def get_alive_services(self, service_type: Optional[str] = None) -> List[ClassifiedStatus]:
        data = self._get("/services/alive", {"type": service_type})
        return [ClassifiedStatus.from_dict(d) for d in data or []]

    def get_summary(self) -> Dict[str, Any]:
        return self._get("/services/summary") or {}


def _error_detail(e: urllib.error.HTTPError) -> str:
    try:
        return json.loads(e.read().decode()).get("error", e.reason)
    except (ValueError, OSError):
        return str(e.reason)
