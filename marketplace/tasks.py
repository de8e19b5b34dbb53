"""Background task queue for fire-and-forget side effects.

Order confirmation emails and similar follow-ups must never block or fail
the request that triggered them. Jobs are queued here and executed by a
single daemon worker thread inside an app context, with a bounded number
of attempts. Every failed attempt is logged with the job's name and args.

In testing (TASKS_EAGER=True) jobs run inline so results are deterministic.
"""

import logging
import queue
import threading
import time
from contextlib import nullcontext

from flask import current_app, has_app_context

logger = logging.getLogger(__name__)


class TaskQueue:
    def __init__(self, app=None):
        self.app = None
        self._queue = queue.Queue()
        self._worker = None
        self._lock = threading.Lock()
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        app.config.setdefault("TASKS_EAGER", False)
        app.config.setdefault("TASK_MAX_ATTEMPTS", 3)
        app.config.setdefault("TASK_RETRY_DELAY_SECONDS", 2)
        self.app = app
        app.extensions["task_queue"] = self

    def submit(self, name, func, *args, **kwargs):
        """Queue func(*args, **kwargs) for background execution.

        Returns immediately. Failures are logged, never raised to the caller.
        """
        job = (name, func, args, kwargs)
        if self.app.config["TASKS_EAGER"]:
            self._run(job)
            return
        self._ensure_worker()
        self._queue.put(job)

    def _ensure_worker(self):
        with self._lock:
            if self._worker is None or not self._worker.is_alive():
                self._worker = threading.Thread(
                    target=self._work, name="task-queue", daemon=True
                )
                self._worker.start()

    def _work(self):
        while True:
            job = self._queue.get()
            try:
                self._run(job)
            finally:
                self._queue.task_done()

    def _run(self, job):
        name, func, args, kwargs = job
        max_attempts = self.app.config["TASK_MAX_ATTEMPTS"]
        delay = self.app.config["TASK_RETRY_DELAY_SECONDS"]

        for attempt in range(1, max_attempts + 1):
            with self._context():
                try:
                    func(*args, **kwargs)
                    return
                except Exception as e:
                    logger.error(
                        f"Task {name} failed (attempt {attempt}/{max_attempts}) "
                        f"args={args}: {e}",
                        exc_info=attempt == max_attempts,
                    )
            if attempt < max_attempts and not self.app.config["TASKS_EAGER"]:
                time.sleep(delay * attempt)

        logger.error(f"Task {name} gave up after {max_attempts} attempts args={args}")

    def _context(self):
        # Eager jobs reuse the caller's app context (and its session).
        if has_app_context() and current_app._get_current_object() is self.app:
            return nullcontext()
        return self.app.app_context()

    def join(self):
        """Block until every queued job has run. Used by the CLI and tests."""
        self._queue.join()
