"""
Status client: pushes sync progress, results and logs to a status server.

Two classes:
  StatusClient      : HTTP client for league_sync.status_server
  NullStatusClient  : no-op drop-in when status_server_url is not set

Usage:
    from league_sync.status_client import build_status_client
    client = build_status_client(config)

    client.post_progress(job_id, progress.to_dict())
    client.post_result(result.to_dict())

Every call is fire-and-forget. A status server that is down must never
affect a sync run, so failures are logged and a safe default is returned.
"""

import logging
import os
import time

import requests as _requests

from league_sync.utils import get_worker_id

logger = logging.getLogger("league_sync")


class StatusClient:
    """
    Client for the HTTP status server.

    Retry policy: 1 automatic retry on ConnectionError/Timeout with 2s backoff.
    Graceful degradation: if the server is unreachable after the retry,
    return the caller's default.
    """

    enabled = True

    _TIMEOUT = 10       # seconds per HTTP request
    _RETRY_BACKOFF = 2  # seconds to wait before retry

    def __init__(self, server_url: str):
        self._base = server_url.rstrip("/")
        self._worker_id = get_worker_id()

    @property
    def worker_id(self) -> str:
        return self._worker_id

    # ── Internal helpers ──────────────────────────────────────────────────

    def _request(self, method: str, path: str, *, default=None, **kwargs):
        """
        Send one request and return the decoded JSON body.

        Connection failures and timeouts get one retry; any other request
        error, or a second failure, returns `default`.
        """
        url = f"{self._base}{path}"
        send = _requests.get if method == "GET" else _requests.post
        for attempt in (1, 2):
            try:
                resp = send(url, timeout=self._TIMEOUT, **kwargs)
                resp.raise_for_status()
                return resp.json()
            except (_requests.ConnectionError, _requests.Timeout) as exc:
                if attempt == 2:
                    logger.debug(f"  [status] {method} {path} unreachable after retry: {exc}")
                    return default
                logger.debug(f"  [status] {method} {path} failed ({exc}); retrying in {self._RETRY_BACKOFF}s")
                time.sleep(self._RETRY_BACKOFF)
            except _requests.RequestException as exc:
                logger.debug(f"  [status] {method} {path} rejected: {exc}")
                return default
            except ValueError as exc:
                logger.debug(f"  [status] {method} {path} returned invalid JSON: {exc}")
                return default
        return default

    def _post(self, path: str, body: dict, *, default=None):
        return self._request("POST", path, json=body, default=default)

    def _acknowledged(self, path: str, body: dict) -> bool:
        resp = self._post(path, {"worker": self._worker_id, **body})
        return bool(isinstance(resp, dict) and resp.get("ok"))

    # ── Sync reporting ────────────────────────────────────────────────────

    def health(self) -> dict:
        resp = self._request("GET", "/health", default={})
        return resp if isinstance(resp, dict) else {}

    def post_progress(self, job_id: str, progress: dict) -> bool:
        return self._acknowledged("/progress", {"job_id": job_id, "progress": progress})

    def post_result(self, result: dict) -> bool:
        return self._acknowledged("/results", {"result": result})

    def post_summary(self, summary: dict) -> bool:
        return self._acknowledged("/summary", {"summary": summary})

    def post_error(self, error: dict) -> bool:
        return self._acknowledged("/errors", {"error": error})

    # ── Remote monitoring ─────────────────────────────────────────────────

    def send_logs(self, entries: list) -> None:
        if entries:
            self._acknowledged("/logs", {"entries": entries})

    def upload_diagnostic(self, file_path: str, label: str = "") -> bool:
        """Upload a screenshot or HTML dump as multipart form data. False on failure."""
        try:
            with open(file_path, "rb") as f:
                resp = self._request(
                    "POST",
                    "/diagnostics",
                    files={"file": (os.path.basename(file_path), f)},
                    data={"worker": self._worker_id, "label": label},
                )
        except OSError as exc:
            logger.debug(f"  [status] cannot read diagnostic {file_path}: {exc}")
            return False
        return bool(isinstance(resp, dict) and resp.get("ok"))

    def send_heartbeat(self, status: str = "running", **extra) -> dict:
        """Ping the server. Returns its response, or {"ok": False}."""
        resp = self._post("/heartbeat", {"worker": self._worker_id, "status": status, **extra})
        return resp if isinstance(resp, dict) else {"ok": False}


# ═════════════════════════════════════════════════════════════════════════
#  NullStatusClient: no-op drop-in when no status server is configured
# ═════════════════════════════════════════════════════════════════════════

class NullStatusClient:
    """
    Drop-in client that does nothing.

    All call sites can unconditionally report without if/else guards.
    """

    enabled = False
    worker_id = ""

    def health(self) -> dict:
        return {}

    def post_progress(self, job_id: str, progress: dict) -> bool:
        return False

    def post_result(self, result: dict) -> bool:
        return False

    def post_summary(self, summary: dict) -> bool:
        return False

    def post_error(self, error: dict) -> bool:
        return False

    def send_logs(self, entries: list) -> None:
        pass

    def upload_diagnostic(self, file_path: str, label: str = "") -> bool:
        return False

    def send_heartbeat(self, status: str = "running", **extra) -> dict:
        return {"ok": False}


def build_status_client(config: dict) -> "StatusClient | NullStatusClient":
    """
    Build the status client from config.

    status_server_url unset -> NullStatusClient (zero overhead)
    status_server_url set   -> StatusClient, health-checked once
    """
    server_url = config.get("status_server_url")
    if not server_url:
        logger.info("Status server: disabled")
        return NullStatusClient()

    client = StatusClient(server_url)
    health = client.health()
    if health.get("status") == "ok":
        logger.info(f"Status server: {server_url} (uptime {health.get('uptime', 0)}s)")
    else:
        logger.warning(f"Status server {server_url} is not responding; reporting is best-effort")
    return client
