"""
Bounded-retry push of published snapshots to a downstream admin API.

Jobs run on a daemon worker thread. A job that still fails after
``max_retries`` attempts is logged and dropped; the pipeline never waits on
the downstream service except through an explicit ``drain``.
"""
from __future__ import annotations

import queue
import threading
import time
from typing import Any, Dict, Optional

import httpx

from src.utils.logger import logger
from src.utils.retry import RetryExhaustedError, retry_call


class PushQueue:
    def __init__(
        self,
        url: str,
        token: Optional[str] = None,
        max_retries: int = 3,
        backoff: float = 1.0,
        timeout: float = 15.0,
        client: Optional[httpx.Client] = None,
        sleep=time.sleep,
    ):
        self.url = url
        self.token = token
        self.max_retries = max(1, int(max_retries))
        self.backoff = backoff
        self.client = client or httpx.Client(timeout=timeout)
        self._sleep = sleep
        self._jobs: "queue.Queue[Optional[Dict[str, Any]]]" = queue.Queue()
        self._worker: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self.delivered = 0
        self.dropped = 0

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _post(self, payload: Dict[str, Any]) -> None:
        response = self.client.post(self.url, json=payload, headers=self._headers())
        response.raise_for_status()

    def _deliver(self, payload: Dict[str, Any]) -> None:
        try:
            retry_call(
                self._post, payload,
                attempts=self.max_retries,
                backoff=self.backoff,
                retry_on=(httpx.HTTPError,),
                name="downstream.push",
                sleep=self._sleep,
            )
            self.delivered += 1
        except RetryExhaustedError as e:
            self.dropped += 1
            logger.error("PushQueue: dropping push to %s: %s", self.url, e)

    def _run(self) -> None:
        while True:
            payload = self._jobs.get()
            try:
                if payload is None:
                    return
                self._deliver(payload)
            finally:
                self._jobs.task_done()

    def _ensure_worker(self) -> None:
        with self._lock:
            if self._worker is None or not self._worker.is_alive():
                self._worker = threading.Thread(target=self._run, name="push-queue", daemon=True)
                self._worker.start()

    def submit(self, payload: Dict[str, Any]) -> None:
        """Queue a payload; returns immediately."""
        self._ensure_worker()
        self._jobs.put(payload)

    def drain(self, timeout: float = 30.0) -> bool:
        """
        Wait up to ``timeout`` seconds for queued pushes to finish.

        Returns:
            True if the queue emptied in time
        """
        deadline = time.monotonic() + timeout
        while self._jobs.unfinished_tasks:
            if time.monotonic() >= deadline:
                logger.warning("PushQueue: %d push(es) still pending after %.1fs",
                               self._jobs.unfinished_tasks, timeout)
                return False
            time.sleep(0.05)
        return True

    def close(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            self._jobs.put(None)
            self._worker.join(timeout=5)
        self.client.close()
