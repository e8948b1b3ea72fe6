from __future__ import annotations

import json
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from pathlib import Path
from queue import Full, Queue
from threading import Lock, Thread
from typing import Any, Literal

SyncResult = Literal["success", "failure"]


@dataclass(slots=True)
class SyncLogEntry:
    provider_id: str
    provider_name: str
    model: str | None
    result: SyncResult
    message: str = ""
    created_at: float = field(default_factory=time.time)


@dataclass(slots=True)
class RequestLogEntry:
    method: str
    path: str
    status: int
    duration_ms: float
    model: str | None = None
    ip: str | None = None
    created_at: float = field(default_factory=time.time)


@dataclass(slots=True)
class _UsageCounter:
    requests: int = 0
    successes: int = 0
    failures: int = 0


class JsonlUsageLog:
    """Usage sink: JSONL records from a writer thread plus in-memory aggregates."""

    def __init__(
        self,
        path: str,
        enabled: bool = True,
        max_queue_size: int = 8192,
        recent_entries: int = 200,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self._lock = Lock()
        self._queue: Queue[str | None] | None = None
        self._worker: Thread | None = None
        self._dropped_records = 0
        self._counters: dict[str, int] = {}
        self._usage_by_model: dict[str, _UsageCounter] = {}
        self._usage_by_provider: dict[str, _UsageCounter] = {}
        self._recent_sync: deque[SyncLogEntry] = deque(maxlen=max(1, recent_entries))
        self._recent_requests: deque[RequestLogEntry] = deque(
            maxlen=max(1, recent_entries)
        )
        if self.enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._queue = Queue(maxsize=max_queue_size)
            self._worker = Thread(
                target=self._drain_queue, name="gateway-usage-writer", daemon=True
            )
            self._worker.start()

    def log(self, event: dict[str, Any]) -> None:
        if not self.enabled:
            return

        record = {"ts": int(time.time()), **event}
        line = json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)
        queue = self._queue
        if queue is None:
            return
        try:
            queue.put_nowait(line)
        except Full:
            with self._lock:
                self._dropped_records += 1

    def log_sync_event(
        self,
        *,
        provider_id: str,
        provider_name: str,
        model: str | None,
        result: SyncResult,
        message: str = "",
    ) -> SyncLogEntry:
        entry = SyncLogEntry(
            provider_id=provider_id,
            provider_name=provider_name,
            model=model,
            result=result,
            message=message,
        )
        self._recent_sync.append(entry)
        self.log({"event": "sync", **asdict(entry)})
        return entry

    def log_request(
        self,
        *,
        method: str,
        path: str,
        status: int,
        duration_ms: float,
        model: str | None = None,
        ip: str | None = None,
    ) -> RequestLogEntry:
        entry = RequestLogEntry(
            method=method,
            path=path,
            status=status,
            duration_ms=round(duration_ms, 3),
            model=model,
            ip=ip,
        )
        self._recent_requests.append(entry)
        self.log({"event": "request", **asdict(entry)})
        return entry

    def increment(self, counter: str, amount: int = 1) -> int:
        value = self._counters.get(counter, 0) + amount
        self._counters[counter] = value
        return value

    def counter(self, name: str) -> int:
        return self._counters.get(name, 0)

    def record_usage(self, *, model: str, provider_id: str, success: bool) -> None:
        for bucket, key in (
            (self._usage_by_model, model),
            (self._usage_by_provider, provider_id),
        ):
            usage = bucket.setdefault(key, _UsageCounter())
            usage.requests += 1
            if success:
                usage.successes += 1
            else:
                usage.failures += 1

    def recent_sync_events(
        self,
        limit: int = 50,
        *,
        provider_name: str | None = None,
        model: str | None = None,
        result: SyncResult | None = None,
    ) -> list[SyncLogEntry]:
        """Newest first. ``provider_name`` matches case-insensitive substrings."""
        needle = provider_name.lower() if provider_name else None
        matched: list[SyncLogEntry] = []
        for entry in reversed(self._recent_sync):
            if len(matched) >= limit:
                break
            if needle is not None and needle not in entry.provider_name.lower():
                continue
            if model is not None and entry.model != model:
                continue
            if result is not None and entry.result != result:
                continue
            matched.append(entry)
        return matched

    def recent_requests(
        self,
        limit: int = 50,
        *,
        method: str | None = None,
        path: str | None = None,
        model: str | None = None,
        status: int | None = None,
    ) -> list[RequestLogEntry]:
        """Newest first. ``path`` matches substrings; the rest match exactly."""
        matched: list[RequestLogEntry] = []
        for entry in reversed(self._recent_requests):
            if len(matched) >= limit:
                break
            if method is not None and entry.method.upper() != method.upper():
                continue
            if path is not None and path not in entry.path:
                continue
            if model is not None and entry.model != model:
                continue
            if status is not None and entry.status != status:
                continue
            matched.append(entry)
        return matched

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            dropped = self._dropped_records
        return {
            "counters": dict(sorted(self._counters.items())),
            "usage_by_model": {
                key: asdict(value) for key, value in sorted(self._usage_by_model.items())
            },
            "usage_by_provider": {
                key: asdict(value)
                for key, value in sorted(self._usage_by_provider.items())
            },
            "dropped_records": dropped,
        }

    def close(self) -> None:
        if not self.enabled:
            return None
        queue = self._queue
        worker = self._worker
        if queue is None or worker is None:
            return None
        queue.put(None)
        worker.join(timeout=2.0)
        return None

    def _drain_queue(self) -> None:
        queue = self._queue
        if queue is None:
            return
        with self.path.open("a", encoding="utf-8") as handle:
            while True:
                item = queue.get()
                if item is None:
                    queue.task_done()
                    break
                handle.write(item + "\n")
                handle.flush()
                queue.task_done()
            dropped = 0
            with self._lock:
                dropped = self._dropped_records
                self._dropped_records = 0
            if dropped > 0:
                fallback_record = {
                    "ts": int(time.time()),
                    "event": "usage_log_dropped_records",
                    "dropped_count": dropped,
                }
                handle.write(
                    json.dumps(
                        fallback_record,
                        ensure_ascii=True,
                        separators=(",", ":"),
                        default=str,
                    )
                    + "\n"
                )
                handle.flush()
