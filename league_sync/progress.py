"""
Progress reporting: relays per-job stage/percentage/message updates to
subscribers.

Subscribers implement any subset of SyncListener. Each receives its own
copy of the live SyncProgress, so nothing a subscriber does can reach the
pipeline's record. A subscriber that raises is logged and skipped; the
other subscribers and the run carry on.
"""

import logging
import queue
import threading

from league_sync.models import SyncProgress, SyncResult

logger = logging.getLogger("league_sync")


class SyncListener:
    """No-op base; override the hooks you need."""

    def on_progress(self, job_id: str, progress: SyncProgress) -> None:
        pass

    def on_job_complete(self, result: SyncResult) -> None:
        pass

    def on_all_complete(self, results: list) -> None:
        pass

    def on_error(self, error: Exception) -> None:
        pass


class ProgressReporter:

    def __init__(self):
        self._listeners: list = []

    def subscribe(self, listener):
        """Register `listener`. Returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def publish_progress(self, job_id: str, progress: SyncProgress) -> None:
        for listener in list(self._listeners):
            self._dispatch(listener, "on_progress", job_id, progress.snapshot())

    def job_complete(self, result: SyncResult) -> None:
        for listener in list(self._listeners):
            self._dispatch(listener, "on_job_complete", result)

    def all_complete(self, results: list) -> None:
        for listener in list(self._listeners):
            self._dispatch(listener, "on_all_complete", list(results))

    def error(self, error: Exception) -> None:
        for listener in list(self._listeners):
            self._dispatch(listener, "on_error", error)

    @staticmethod
    def _dispatch(listener, hook: str, *args) -> None:
        callback = getattr(listener, hook, None)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as exc:
            logger.warning(f"Progress listener {type(listener).__name__}.{hook} raised: {exc}")


# ── Listeners ────────────────────────────────────────────────────────────

class LoggingListener(SyncListener):
    """Writes every update to the league_sync log."""

    def on_progress(self, job_id, progress):
        logger.info(f"  [{job_id}] {progress.stage.value:<22} {progress.progress:5.1f}%  {progress.message}")

    def on_job_complete(self, result):
        if result.success:
            suffix = f" (fallbacks: {', '.join(result.fallbacks)})" if result.fallbacks else ""
            logger.info(f"✅ [{result.job_id}] synced in {result.duration:.1f}s{suffix}")
        else:
            logger.error(f"❌ [{result.job_id}] failed after {result.duration:.1f}s: {'; '.join(result.errors)}")

    def on_all_complete(self, results):
        ok = sum(1 for r in results if r.success)
        logger.info(f"All jobs finished: {ok}/{len(results)} succeeded")

    def on_error(self, error):
        logger.error(f"Sync error: {error!r}")


class HTTPProgressListener(SyncListener):
    """
    Forwards reporter events to a StatusClient.

    HTTP calls run on a daemon thread fed by a queue, so the event loop
    never waits on the network. close() drains what is queued.
    """

    _STOP = object()

    def __init__(self, client, *, maxsize: int = 1000):
        self._client = client
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._thread = threading.Thread(target=self._worker, daemon=True, name="status-sender")
        self._thread.start()

    def on_progress(self, job_id, progress):
        self._enqueue(self._client.post_progress, job_id, progress.to_dict())

    def on_job_complete(self, result):
        self._enqueue(self._client.post_result, result.to_dict())

    def on_all_complete(self, results):
        ok = [r.job_id for r in results if r.success]
        failed = [r.job_id for r in results if not r.success]
        self._enqueue(self._client.post_summary, {"total": len(results), "succeeded": ok, "failed": failed})

    def on_error(self, error):
        payload = error.to_dict() if hasattr(error, "to_dict") else {"message": str(error)}
        self._enqueue(self._client.post_error, payload)

    def _enqueue(self, fn, *args) -> None:
        try:
            self._queue.put_nowait((fn, args))
        except queue.Full:
            logger.debug("  [status] send queue full, dropping update")

    def _worker(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is self._STOP:
                    return
                fn, args = item
                try:
                    fn(*args)
                except Exception as exc:
                    logger.debug(f"  [status] {getattr(fn, '__name__', fn)} failed: {exc}")
            finally:
                self._queue.task_done()

    def close(self, timeout: float = 10.0) -> None:
        self._queue.put(self._STOP)
        self._thread.join(timeout)
