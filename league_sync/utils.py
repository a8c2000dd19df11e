"""
Utility functions: config loading, logging setup, and helpers.

  - setup_logging()      : console + per-run file log for the "league_sync" logger
  - RemoteLogHandler     : buffered log shipping to the status server
  - load_config()        : config.yaml with safe defaults and validation
  - scaled_timeout()     : operation timeouts scaled by timeout_multiplier
  - artifact_path()      : timestamped, filesystem-safe diagnostic file names
"""

import os
import re
import logging
import socket
import threading
import yaml
from datetime import datetime


ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
LOG_DIR = os.path.join(ROOT_DIR, "logs")
SCREENSHOT_DIR = os.path.join(LOG_DIR, "screenshots")
HTMLDUMP_DIR   = os.path.join(LOG_DIR, "htmldumps")

LOGGER_NAME = "league_sync"


def get_worker_id() -> str:
    """Return a stable machine identifier (hostname) for worker identity."""
    return socket.gethostname()


def setup_logging(level: int = logging.INFO) -> logging.Logger:
    """Configure and return the project logger."""
    os.makedirs(LOG_DIR, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = os.path.join(LOG_DIR, f"run_{timestamp}.log")

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)

    # Prevent duplicate handlers on repeated calls
    if logger.handlers:
        return logger

    ch = logging.StreamHandler()
    ch.setLevel(level)
    ch.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)-8s %(message)s", datefmt="%H:%M:%S"))

    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"))

    logger.addHandler(ch)
    logger.addHandler(fh)

    logger.info(f"Log file: {log_file}")
    return logger


# ── Remote Log Handler ───────────────────────────────────────────────────

class RemoteLogHandler(logging.Handler):
    """
    Buffers league_sync log records and ships them to the status server in
    batches from a background thread: every `flush_interval` seconds, or as
    soon as `flush_threshold` records are waiting. emit() never sends, so
    logging from the event loop does not block on the network.

    A batch the server does not take is put back at the front of the
    buffer, which is capped at twice the threshold. The local log file is
    never affected.
    """

    def __init__(self, client, *, flush_interval: int = 5, flush_threshold: int = 50):
        super().__init__(level=logging.DEBUG)
        self._client = client
        self._pending: list[dict] = []
        self._pending_lock = threading.Lock()
        self._interval = flush_interval
        self._threshold = flush_threshold
        self._stopped = threading.Event()
        self._wake = threading.Event()
        self._shipper = threading.Thread(target=self._ship_periodically, daemon=True, name="log-shipper")
        self._shipper.start()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = {
                "ts": datetime.fromtimestamp(record.created).isoformat(sep=" ", timespec="seconds"),
                "level": record.levelname,
                "logger": record.name,
                "message": record.getMessage(),
            }
        except Exception:
            self.handleError(record)
            return
        with self._pending_lock:
            self._pending.append(entry)
            full = len(self._pending) >= self._threshold
        if full:
            self._wake.set()

    def _ship_periodically(self) -> None:
        while not self._stopped.is_set():
            self._wake.wait(self._interval)
            self._wake.clear()
            self.flush()

    def flush(self) -> None:
        with self._pending_lock:
            batch, self._pending = self._pending, []
        if not batch:
            return
        try:
            self._client.send_logs(batch)
        except Exception:
            with self._pending_lock:
                room = max(0, self._threshold * 2 - len(self._pending))
                self._pending[:0] = batch[:room]

    def close(self) -> None:
        """Stop the shipping thread and send whatever is still buffered."""
        self._stopped.set()
        self._wake.set()
        self._shipper.join(timeout=self._interval)
        self.flush()
        super().close()


# ── Configuration ────────────────────────────────────────────────────────

def _require_number(config: dict, key: str, minimum: float) -> None:
    value = config[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < minimum:
        raise ValueError(f"{key} must be a number >= {minimum}, got: {value!r}")


def _require_int(config: dict, key: str, minimum: int) -> None:
    value = config[key]
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise ValueError(f"{key} must be int >= {minimum}, got: {value!r}")


def _validate_jobs(jobs) -> None:
    if not isinstance(jobs, list) or not jobs:
        raise ValueError("Config key 'jobs' must be a non-empty list of job records")

    seen = set()
    for index, job in enumerate(jobs):
        if not isinstance(job, dict):
            raise ValueError(f"jobs[{index}] must be a mapping, got: {job!r}")
        for key in ("id", "url"):
            if not job.get(key):
                raise ValueError(f"jobs[{index}] is missing required key '{key}'")
        if job["id"] in seen:
            raise ValueError(f"Duplicate job id: '{job['id']}'")
        seen.add(job["id"])

        priority = job.get("priority", index + 1)
        if isinstance(priority, bool) or not isinstance(priority, int):
            raise ValueError(f"jobs[{index}].priority must be an int, got: {priority!r}")

        creds = job.get("credentials")
        if creds is not None and (not isinstance(creds, dict) or not creds.get("username")):
            raise ValueError(f"jobs[{index}].credentials must provide a username")


def _validate_stuck_rules(rules) -> None:
    if not isinstance(rules, list):
        raise ValueError(f"stuck_rules must be a list, got: {rules!r}")
    for index, rule in enumerate(rules):
        if not isinstance(rule, dict) or not rule.get("pattern") or not rule.get("reason"):
            raise ValueError(f"stuck_rules[{index}] needs both 'pattern' and 'reason'")
        try:
            re.compile(rule["pattern"])
        except re.error as exc:
            raise ValueError(f"stuck_rules[{index}] has an invalid pattern: {exc}") from exc


def apply_defaults(config: dict) -> dict:
    """Fill in every optional key and validate types. Mutates and returns config."""
    # Driver / browser
    driver = config.setdefault("driver", "playwright")
    if driver not in ("playwright", "none"):
        raise ValueError(f"Invalid driver '{driver}'. Must be 'playwright' or 'none'.")
    config.setdefault("headless", False)
    config.setdefault("login_url", "https://fantasy.nfl.com/login")
    config.setdefault("home_url", "https://fantasy.nfl.com")

    # Retry executor
    config.setdefault("retry_attempts", 3)
    config.setdefault("operation_timeout_ms", 30_000)
    config.setdefault("backoff_base_ms", 1000)
    config.setdefault("timeout_multiplier", 1.0)
    _require_int(config, "retry_attempts", 1)
    _require_int(config, "operation_timeout_ms", 1)
    _require_number(config, "backoff_base_ms", 0)
    _require_number(config, "timeout_multiplier", 0.1)

    # Capability probing
    config.setdefault("min_capabilities", 3)
    _require_int(config, "min_capabilities", 0)

    # Authentication polling
    config.setdefault("auth_poll_attempts", 15)
    config.setdefault("optimistic_auth", True)
    _require_int(config, "auth_poll_attempts", 0)

    # Pacing and recovery delays (seconds)
    for key, default in (
        ("auth_poll_interval", 2.0),
        ("auth_settle_delay", 2.0),
        ("members_settle_delay", 2.0),
        ("member_pacing_delay", 0.5),
        ("job_pacing_delay", 2.0),
        ("recovery_reload_delay", 3.0),
        ("recovery_wait_delay", 2.0),
    ):
        config.setdefault(key, default)
        _require_number(config, key, 0)

    config.setdefault("fallback_team_count", 12)
    _require_int(config, "fallback_team_count", 1)

    config.setdefault("enable_screenshots", True)
    config.setdefault("retry_failed_jobs", False)

    config.setdefault("stuck_rules", [])
    _validate_stuck_rules(config["stuck_rules"])

    # Remote monitoring (only active when status_server_url is set)
    config.setdefault("status_server_url", None)
    config.setdefault("remote_logging", True)
    config.setdefault("heartbeat_interval", 30)
    config.setdefault("log_flush_interval", 5)
    config.setdefault("log_flush_threshold", 50)
    _require_int(config, "heartbeat_interval", 5)
    _require_int(config, "log_flush_interval", 1)
    _require_int(config, "log_flush_threshold", 1)

    return config


def load_config(config_path: str = None) -> dict:
    """Load and validate config.yaml, applying safe defaults for optional keys."""
    if config_path is None:
        config_path = os.path.join(ROOT_DIR, "config.yaml")

    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}

    if not isinstance(config, dict):
        raise ValueError(f"Config file must contain a mapping: {config_path}")

    if "jobs" not in config or config["jobs"] is None:
        raise ValueError("Missing required config key: 'jobs'")
    _validate_jobs(config["jobs"])

    return apply_defaults(config)


def get_session_path() -> str:
    """Return the path to the browser storage-state file."""
    return os.path.join(ROOT_DIR, "session.json")


def scaled_timeout(base_ms: int, config: dict) -> int:
    """
    Scale an operation timeout by config's timeout_multiplier, rounded up
    to the nearest 100ms.

        scaled_timeout(30_000, {"timeout_multiplier": 1.5}) -> 45_000
    """
    multiplier = config.get("timeout_multiplier", 1.0)
    scaled = int(base_ms * multiplier)
    return ((scaled + 99) // 100) * 100


def artifact_path(directory: str, label: str, ext: str) -> str:
    """Build a timestamped, filesystem-safe path for a diagnostic file."""
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    safe_label = re.sub(r"[^\w\-]", "_", label)[:80]
    os.makedirs(directory, exist_ok=True)
    return os.path.join(directory, f"{timestamp}_{safe_label}.{ext}")
