from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from queue import Full, Queue
from threading import Lock, Thread
from typing import Protocol

logger = logging.getLogger("uvicorn.error")


class UsageRecorder(Protocol):
    def record(self, model_id: str, input_tokens: int, output_tokens: int) -> None: ...


class JsonlUsageRecorder:
    def __init__(
        self,
        path: str | Path,
        enabled: bool = True,
        max_queue_size: int = 8192,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self._lock = Lock()
        self._queue: Queue[str | None] | None = None
        self._worker: Thread | None = None
        self._dropped_records = 0
        if self.enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._queue = Queue(maxsize=max_queue_size)
            self._worker = Thread(
                target=self._drain_queue, name="usage-recorder", daemon=True
            )
            self._worker.start()

    def record(self, model_id: str, input_tokens: int, output_tokens: int) -> None:
        queue = self._queue
        if not self.enabled or queue is None:
            return
        line = json.dumps(
            {
                "ts": int(time.time()),
                "model": model_id,
                "input_tokens": int(input_tokens),
                "output_tokens": int(output_tokens),
            },
            ensure_ascii=True,
            separators=(",", ":"),
        )
        try:
            queue.put_nowait(line)
        except Full:
            with self._lock:
                self._dropped_records += 1

    def close(self) -> None:
        queue = self._queue
        worker = self._worker
        if queue is None or worker is None:
            return
        queue.put(None)
        worker.join(timeout=2.0)
        with self._lock:
            dropped = self._dropped_records
            self._dropped_records = 0
        if dropped:
            logger.warning("usage_records_dropped count=%d", dropped)

    def _drain_queue(self) -> None:
        queue = self._queue
        if queue is None:
            return
        try:
            handle = self.path.open("a", encoding="utf-8")
        except OSError as exc:
            logger.warning("usage_log_unwritable path=%s error=%s", self.path, exc)
            handle = None
        while True:
            item = queue.get()
            if item is None:
                queue.task_done()
                break
            if handle is not None:
                handle.write(item + "\n")
                handle.flush()
            queue.task_done()
        if handle is not None:
            handle.close()
