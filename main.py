"""
League Sync: pull fantasy league data through a scripted browser session.

Usage:
    python main.py
    python main.py --config path/to/config.yaml
    python main.py --job home-league --job work-league --headless
"""

import argparse
import asyncio
import logging
import signal
import sys
import threading
import time

from league_sync.coordinator import MultiJobCoordinator
from league_sync.driver import open_driver
from league_sync.models import jobs_from_config
from league_sync.progress import HTTPProgressListener, LoggingListener, ProgressReporter
from league_sync.status_client import build_status_client
from league_sync.utils import LOGGER_NAME, RemoteLogHandler, load_config, setup_logging


# ── Remote Monitoring Helpers ────────────────────────────────────────────

def _setup_remote_monitoring(logger, config: dict, client, reporter: ProgressReporter, state: dict):
    """
    Wire remote logging, progress forwarding and heartbeat for a StatusClient.

    Does nothing when no status server is configured. Background threads are
    daemonic and die with the process. Returns the HTTPProgressListener so
    it can be drained before exit, or None.
    """
    if not client.enabled:
        return None

    # ── Remote log handler ───────────────────────────────────────────
    if config.get("remote_logging", True):
        handler = RemoteLogHandler(
            client,
            flush_interval=config.get("log_flush_interval", 5),
            flush_threshold=config.get("log_flush_threshold", 50),
        )
        logging.getLogger(LOGGER_NAME).addHandler(handler)
        state["log_handler"] = handler
        logger.info("Remote log handler attached")

    # ── Progress forwarding ──────────────────────────────────────────
    listener = HTTPProgressListener(client)
    reporter.subscribe(listener)

    # ── Heartbeat timer ──────────────────────────────────────────────
    interval = config.get("heartbeat_interval", 30)

    def _heartbeat_loop():
        while True:
            coordinator = state.get("coordinator")
            extra = {"current_job": coordinator.current_job_id if coordinator else None}
            client.send_heartbeat("running", **extra)
            time.sleep(interval)

    threading.Thread(target=_heartbeat_loop, daemon=True, name="heartbeat").start()
    logger.info(f"Heartbeat timer started (every {interval}s)")
    return listener


def _install_cancel_handler(logger, coordinator: MultiJobCoordinator) -> None:
    """Ctrl+C cancels the run cooperatively; a second Ctrl+C exits at once."""
    loop = asyncio.get_running_loop()

    def _on_sigint():
        if coordinator.cancelled:
            logger.warning("Second Ctrl+C: exiting immediately")
            raise SystemExit(1)
        print("\n⚠ Ctrl+C pressed. Finishing the current step, then stopping...")
        coordinator.cancel("Sync cancelled by user (Ctrl+C)")

    try:
        loop.add_signal_handler(signal.SIGINT, _on_sigint)
    except NotImplementedError:
        # Windows event loops have no signal handler support
        signal.signal(signal.SIGINT, lambda *_: loop.call_soon_threadsafe(_on_sigint))


def _print_summary(logger, coordinator: MultiJobCoordinator) -> None:
    summary = coordinator.summary()
    logger.info("\n" + "=" * 60)
    logger.info(f"  SYNC SUMMARY: {len(summary['succeeded'])}/{summary['total']} league(s) synced")
    logger.info("=" * 60)
    for result in coordinator.results:
        if result.success:
            data = result.data
            detail = f"{len(data.members)} teams" if data else ""
            if result.fallbacks:
                detail += f", placeholders: {', '.join(result.fallbacks)}"
            logger.info(f"  ✅ {result.job_id:<24} {result.duration:6.1f}s  {detail}")
        else:
            logger.info(f"  ❌ {result.job_id:<24} {result.duration:6.1f}s  {'; '.join(result.errors)}")
    logger.info("=" * 60)


async def run(logger, config: dict, jobs: list, *, retry_failed: bool) -> int:
    """Sync `jobs` and return the process exit code."""
    client = build_status_client(config)
    reporter = ProgressReporter()
    reporter.subscribe(LoggingListener())

    state: dict = {}
    http_listener = _setup_remote_monitoring(logger, config, client, reporter, state)

    try:
        async with open_driver(config, status_client=client if client.enabled else None) as driver:
            coordinator = MultiJobCoordinator(driver, config, reporter=reporter)
            state["coordinator"] = coordinator
            _install_cancel_handler(logger, coordinator)

            await coordinator.run_all(jobs)

            if retry_failed and coordinator.summary()["failed"] and not coordinator.cancelled:
                logger.info("Retrying failed league(s) once...")
                await coordinator.retry_failed()
                reporter.all_complete(coordinator.results)

            _print_summary(logger, coordinator)
            return 0 if not coordinator.summary()["failed"] else 1
    finally:
        if http_listener is not None:
            http_listener.close()
        handler = state.get("log_handler")
        if handler is not None:
            logging.getLogger(LOGGER_NAME).removeHandler(handler)
            handler.close()


def main():
    # ── Parse arguments ──────────────────────────────────────────────
    parser = argparse.ArgumentParser(
        description="Sync fantasy league data through a scripted browser session"
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to config.yaml (default: ./config.yaml)"
    )
    parser.add_argument(
        "--job", "-j",
        action="append",
        dest="job_ids",
        metavar="ID",
        help="Only sync this job id (repeatable)"
    )
    parser.add_argument("--headless", action="store_true", help="Run the browser headless")
    parser.add_argument("--no-retry", action="store_true", help="Do not retry failed jobs after the batch")
    args = parser.parse_args()

    # ── Setup ────────────────────────────────────────────────────────
    logger = setup_logging()
    try:
        config = load_config(args.config)
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    if args.headless:
        config["headless"] = True

    jobs = jobs_from_config(config)
    if args.job_ids:
        known = {job.id for job in jobs}
        unknown = [job_id for job_id in args.job_ids if job_id not in known]
        if unknown:
            parser.error(f"unknown job id(s): {', '.join(unknown)}")
        jobs = [job for job in jobs if job.id in args.job_ids]

    retry_failed = config["retry_failed_jobs"] and not args.no_retry

    logger.info("Configuration loaded:")
    logger.info(f"  Driver:           {config['driver']}")
    logger.info(f"  Headless:         {config['headless']}")
    logger.info(f"  Leagues:          {', '.join(job.id for job in sorted(jobs, key=lambda j: j.priority))}")
    logger.info(f"  Retry attempts:   {config['retry_attempts']} x {config['operation_timeout_ms']}ms")
    logger.info(f"  Optimistic auth:  {config['optimistic_auth']}")
    logger.info(f"  Retry failed:     {retry_failed}")
    logger.info(f"  Status server:    {config['status_server_url'] or 'disabled'}")

    exit_code = asyncio.run(run(logger, config, jobs, retry_failed=retry_failed))
    logger.info("Goodbye!")
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
