"""
HTTP Status Server: live view of league sync runs.

A lightweight Flask server that sync workers report to through
league_sync.status_client. Keeps everything in memory: the latest progress
per job, final results, the last run summary, worker heartbeats, uploaded
diagnostics and a rolling log buffer. Browsers can follow along over
server-sent events.

Usage:
    python -m league_sync.status_server [OPTIONS]

Options:
    --host TEXT   Bind address (default: 0.0.0.0)
    --port INT    Bind port (default: 8099)
"""

import argparse
import collections
import json
import logging
import os
import queue
import threading
import time

from flask import Flask, Response, jsonify, request as flask_request, send_from_directory
from werkzeug.utils import secure_filename

LOG_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "logs")
LOG_BUFFER_SIZE = 5000
DIAGNOSTICS_LIMIT = 500
ONLINE_AFTER = 60     # seconds since last heartbeat
STALE_AFTER = 300


def _build_logger() -> logging.Logger:
    os.makedirs(LOG_DIR, exist_ok=True)
    server_logger = logging.getLogger("status_server")
    server_logger.setLevel(logging.DEBUG)
    if server_logger.handlers:
        return server_logger

    console = logging.StreamHandler()
    console.setLevel(logging.INFO)
    console.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)-8s %(message)s", datefmt="%H:%M:%S"))

    logfile = logging.FileHandler(os.path.join(LOG_DIR, "status_server.log"), encoding="utf-8")
    logfile.setLevel(logging.DEBUG)
    logfile.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)-8s %(message)s"))

    server_logger.addHandler(console)
    server_logger.addHandler(logfile)
    return server_logger


logger = _build_logger()

# ── In-memory state ──────────────────────────────────────────────────────
_lock = threading.Lock()   # guards everything below
_start_time = time.time()

_progress: dict[str, dict] = {}                  # job_id → latest progress payload
_results: dict[str, dict] = {}                   # job_id → latest SyncResult payload
_errors: collections.deque = collections.deque(maxlen=500)
_summary: dict = {}                              # last run summary
_log_buffer: collections.deque = collections.deque(maxlen=LOG_BUFFER_SIZE)
_diagnostics: collections.deque = collections.deque(maxlen=DIAGNOSTICS_LIMIT)  # oldest first
_sse_subscribers: list[queue.Queue] = []
_workers: dict[str, dict] = {}                   # worker → last heartbeat body + last_seen

_REMOTE_DIAG_DIR = os.path.join(LOG_DIR, "remote_diagnostics")

app = Flask(__name__)
logging.getLogger("werkzeug").setLevel(logging.WARNING)


def _broadcast(event: str, payload: dict) -> None:
    """Push an event to every SSE subscriber. Caller holds _lock."""
    for subscriber in _sse_subscribers:
        try:
            subscriber.put_nowait((event, payload))
        except queue.Full:
            pass  # slow subscriber drops events


def _body() -> dict:
    return flask_request.get_json(silent=True) or {}


# ═══════════════════════════════════════════════════════════════════════════
#  Sync reporting
# ═══════════════════════════════════════════════════════════════════════════

@app.route("/health")
def health():
    return jsonify({"status": "ok", "uptime": int(time.time() - _start_time)})


@app.route("/progress", methods=["POST"])
def progress():
    """
    Record the latest progress of one job.

    Body: {"worker": "...", "job_id": "...", "progress": {stage, progress, message, ...}}
    """
    body = _body()
    job_id = body.get("job_id")
    update = body.get("progress")
    if not job_id or not isinstance(update, dict):
        return jsonify({"ok": False, "error": "job_id and progress are required"}), 400

    entry = {**update, "job_id": job_id, "worker": body.get("worker", "unknown"), "received_at": time.time()}
    with _lock:
        _progress[job_id] = entry
        _broadcast("progress", entry)

    logger.debug(f"PROGRESS  {job_id}  {update.get('stage')}  {update.get('progress')}%")
    return jsonify({"ok": True})


@app.route("/results", methods=["GET", "POST"])
def results():
    """
    POST: record a final SyncResult. Body: {"worker": "...", "result": {...}}
    GET:  all recorded results, keyed by job id.
    """
    if flask_request.method == "GET":
        with _lock:
            return jsonify(dict(_results))

    body = _body()
    result = body.get("result")
    if not isinstance(result, dict) or not result.get("job_id"):
        return jsonify({"ok": False, "error": "result with job_id is required"}), 400

    entry = {**result, "worker": body.get("worker", "unknown")}
    with _lock:
        _results[result["job_id"]] = entry
        _broadcast("result", entry)

    outcome = "OK" if result.get("success") else "FAILED"
    logger.info(f"RESULT    {result['job_id']}  {outcome}  ({result.get('duration', 0)}s)")
    return jsonify({"ok": True})


@app.route("/errors", methods=["POST"])
def errors():
    """Record a job-level error. Body: {"worker": "...", "error": {...}}"""
    body = _body()
    error = body.get("error") or {}
    entry = {**error, "worker": body.get("worker", "unknown"), "received_at": time.time()}
    with _lock:
        _errors.append(entry)
        _broadcast("error", entry)
    logger.warning(f"ERROR     {error.get('job_id', '-')}  {error.get('kind', '')}  {error.get('message', '')}")
    return jsonify({"ok": True})


@app.route("/summary", methods=["GET", "POST"])
def summary():
    """
    POST: record the summary of a finished run.
          Body: {"worker": "...", "summary": {"total": N, "succeeded": [...], "failed": [...]}}
    GET:  the last recorded run summary.
    """
    global _summary
    if flask_request.method == "GET":
        with _lock:
            return jsonify(dict(_summary))

    body = _body()
    run_summary = body.get("summary")
    if not isinstance(run_summary, dict):
        return jsonify({"ok": False, "error": "summary is required"}), 400
    with _lock:
        _summary = {**run_summary, "worker": body.get("worker", "unknown"), "finished_at": time.time()}
        _broadcast("summary", _summary)
    logger.info(f"SUMMARY   {len(run_summary.get('succeeded', []))}/{run_summary.get('total', 0)} succeeded")
    return jsonify({"ok": True})


@app.route("/status")
def status():
    """
    One-call overview for dashboards.

    Query: ?job_id=ID (optional) returns just that job's progress and result.
    """
    job_id = flask_request.args.get("job_id")
    with _lock:
        if job_id:
            if job_id not in _progress and job_id not in _results:
                return jsonify({"error": "unknown job"}), 404
            return jsonify({"progress": _progress.get(job_id), "result": _results.get(job_id)})

        succeeded = sum(1 for r in _results.values() if r.get("success"))
        return jsonify({
            "uptime": int(time.time() - _start_time),
            "jobs": dict(_progress),
            "results": {"total": len(_results), "succeeded": succeeded, "failed": len(_results) - succeeded},
            "errors": list(_errors)[-20:],
            "summary": dict(_summary),
        })


@app.route("/reset", methods=["POST"])
def reset():
    """Forget all sync data: progress, results, errors, summary and buffered logs."""
    global _summary
    with _lock:
        _progress.clear()
        _results.clear()
        _errors.clear()
        _log_buffer.clear()
        _summary = {}

    logger.info("STATE RESET: all sync data cleared")
    return jsonify({"ok": True})


# ═══════════════════════════════════════════════════════════════════════════
#  Logs and live events
# ═══════════════════════════════════════════════════════════════════════════

@app.route("/logs", methods=["POST"])
def receive_logs():
    """
    Append a batch of worker log entries to the rolling buffer.

    Body: {"worker": "...", "entries": [{"ts": "...", "level": "...", "message": "..."}, ...]}
    """
    body = _body()
    worker = body.get("worker", "unknown")
    batch = [{**entry, "worker": worker} for entry in body.get("entries", []) if isinstance(entry, dict)]

    with _lock:
        _log_buffer.extend(batch)
        for entry in batch:
            _broadcast("log", entry)

    return jsonify({"ok": True, "stored": len(batch)})


@app.route("/logs/history")
def log_history():
    """
    Most recent log entries, oldest first.

    Query: ?n=200 &worker=HOST &level=WARNING (all optional; level is a minimum)
    """
    limit = flask_request.args.get("n", 200, type=int)
    worker = flask_request.args.get("worker")
    level = flask_request.args.get("level")
    min_level = logging.getLevelName(level.upper()) if level else 0
    if not isinstance(min_level, int):
        return jsonify({"error": f"unknown level: {level}"}), 400

    with _lock:
        entries = sorted(_log_buffer, key=lambda e: e.get("ts", ""))

    if worker:
        entries = [e for e in entries if e.get("worker") == worker]
    if min_level:
        entries = [e for e in entries if logging.getLevelName(e.get("level", "INFO")) >= min_level]
    return jsonify({"entries": entries[-limit:] if limit > 0 else []})


@app.route("/events/stream")
def event_stream():
    """
    SSE endpoint: progress, result, summary, error and log events as they arrive.

    Query: ?types=progress,result (optional filter)
    """
    wanted = {t for t in flask_request.args.get("types", "").split(",") if t}
    subscriber = queue.Queue(maxsize=500)
    with _lock:
        _sse_subscribers.append(subscriber)

    def _generate():
        try:
            while True:
                try:
                    event, payload = subscriber.get(timeout=30)
                except queue.Empty:
                    yield ": keepalive\n\n"
                    continue
                if not wanted or event in wanted:
                    yield f"event: {event}\ndata: {json.dumps(payload)}\n\n"
        finally:
            with _lock:
                if subscriber in _sse_subscribers:
                    _sse_subscribers.remove(subscriber)

    return Response(_generate(), mimetype="text/event-stream",
                    headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"})


# ═══════════════════════════════════════════════════════════════════════════
#  Diagnostics
# ═══════════════════════════════════════════════════════════════════════════

@app.route("/diagnostics", methods=["GET", "POST"])
def diagnostics():
    """
    POST: store a failure artifact (screenshot or HTML dump).
          multipart/form-data: fields 'worker', 'label'; file 'file'.
    GET:  upload records, newest first. Query: ?label=error-JOB (optional)
    """
    if flask_request.method == "GET":
        label = flask_request.args.get("label")
        with _lock:
            records = [r for r in reversed(_diagnostics) if not label or r["label"] == label]
        return jsonify({"diagnostics": records})

    upload = flask_request.files.get("file")
    if upload is None or not upload.filename:
        return jsonify({"ok": False, "error": "missing file"}), 400

    worker = flask_request.form.get("worker", "unknown")
    label = flask_request.form.get("label", "")
    name = secure_filename(f"{worker}_{upload.filename}") or f"upload_{int(time.time())}"
    os.makedirs(_REMOTE_DIAG_DIR, exist_ok=True)
    upload.save(os.path.join(_REMOTE_DIAG_DIR, name))

    record = {"name": name, "worker": worker, "label": label, "received_at": time.time()}
    with _lock:
        _diagnostics.append(record)
        _broadcast("diagnostic", record)

    logger.info(f"DIAGNOSTIC  {label or name}  from {worker}")
    return jsonify({"ok": True, "name": name})


@app.route("/diagnostics/<name>")
def serve_diagnostic(name):
    return send_from_directory(_REMOTE_DIAG_DIR, name)


# ═══════════════════════════════════════════════════════════════════════════
#  Worker heartbeats
# ═══════════════════════════════════════════════════════════════════════════

def _connection(age: float) -> str:
    if age < ONLINE_AFTER:
        return "online"
    if age < STALE_AFTER:
        return "stale"
    return "offline"


@app.route("/heartbeat", methods=["POST"])
def heartbeat():
    """Body: {"worker": "...", "status": "running", "current_job": "...", ...}"""
    body = _body()
    worker = body.get("worker", "unknown")
    with _lock:
        _workers[worker] = {**body, "last_seen": time.time()}
    return jsonify({"ok": True})


@app.route("/workers")
def workers_list():
    """Known workers with their last heartbeat and online/stale/offline state."""
    now = time.time()
    with _lock:
        snapshot = {worker: dict(info) for worker, info in _workers.items()}

    for info in snapshot.values():
        age = now - info.get("last_seen", 0)
        info["connection"] = _connection(age)
        info["last_seen_ago"] = int(age)
    return jsonify(snapshot)


def main():
    global _start_time

    parser = argparse.ArgumentParser(description="HTTP status server for league sync workers")
    parser.add_argument("--host", default="0.0.0.0", help="Bind address (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8099, help="Bind port (default: 8099)")
    args = parser.parse_args()

    _start_time = time.time()
    logger.info(f"Status server listening on {args.host}:{args.port} (diagnostics: {_REMOTE_DIAG_DIR})")
    app.run(host=args.host, port=args.port, threaded=True, use_reloader=False)


if __name__ == "__main__":
    main()
