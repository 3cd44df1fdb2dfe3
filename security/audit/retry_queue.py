"""
Durable retry queue and retry policy for audit delivery.

When a sink keeps failing, the emitter parks the event here. An event
written to the queue (fsync'd) counts as accepted: the governing request
may complete, and `drain` redelivers it later. Delivery is at-least-once;
sinks can deduplicate on `event_id`.

An event that still fails after `max_redeliveries` drains is moved to the
dead-letter file (`<queue>.dead`) and reported at error level, so a
permanently rejected event cannot hold the queue forever.

Classes:
  - RetryPolicy: attempt limit, exponential backoff and optional deadline
  - AuditRetryQueue: JSON Lines spool file
"""

import json
import os
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Union

from loguru import logger

from security.audit.event_logger import AuditEvent

ATTEMPTS_KEY = "redelivery_attempts"


class RetryPolicy:
    """
    Immediate retry policy for sink appends.

    - max_attempts: total attempts, including the first one
    - base_delay: delay before the second attempt, doubled afterwards
    """

    def __init__(self, max_attempts: int = 3, base_delay: float = 0.05):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts

    def get_delay(self, attempt: int) -> float:
        return self.base_delay * (2 ** (attempt - 1))

    def run(
        self,
        func: Callable[[], None],
        sleep: Callable[[float], None] = time.sleep,
        deadline: Optional[float] = None,
    ) -> None:
        """
        Call `func` until it succeeds or attempts run out; re-raises the last error.

        Args:
            deadline: `time.monotonic()` value after which no further attempt starts
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                func()
                return
            except Exception as e:
                if not self.should_retry(attempt):
                    raise
                delay = self.get_delay(attempt)
                if deadline is not None and time.monotonic() + delay >= deadline:
                    logger.debug(f"Audit append attempt {attempt} failed ({e}); deadline reached")
                    raise
                logger.debug(f"Audit append attempt {attempt} failed ({e}); retrying in {delay:.3f}s")
                if delay > 0:
                    sleep(delay)


class AuditRetryQueue:
    """JSON Lines spool of events waiting for redelivery."""

    def __init__(self, path: Union[str, Path], max_redeliveries: int = 10):
        if max_redeliveries < 1:
            raise ValueError("max_redeliveries must be >= 1")
        self.path = Path(path)
        self.dead_letter_path = self.path.with_suffix(self.path.suffix + ".dead")
        self.max_redeliveries = max_redeliveries
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def enqueue(self, event: AuditEvent) -> None:
        with self._lock:
            self._append(self.path, [(event, 0)])
        logger.warning(f"Audit event {event.event_id} ({event.kind.value}) queued for redelivery")

    def pending(self) -> List[AuditEvent]:
        with self._lock:
            return [event for event, _ in self._read(self.path)]

    def dead_letters(self) -> List[AuditEvent]:
        with self._lock:
            return [event for event, _ in self._read(self.dead_letter_path)]

    def __len__(self) -> int:
        return len(self.pending())

    def drain(self, deliver: Callable[[AuditEvent], None]) -> int:
        """
        Redeliver queued events in order.

        Events whose delivery fails stay in the queue with their attempt
        count raised; once it reaches `max_redeliveries` they move to the
        dead-letter file.

        Returns:
            Number of events delivered
        """
        with self._lock:
            entries = self._read(self.path)
            if not entries:
                return 0

            remaining = []
            dead = []
            delivered = 0
            for event, attempts in entries:
                try:
                    deliver(event)
                    delivered += 1
                except Exception as e:
                    attempts += 1
                    if attempts >= self.max_redeliveries:
                        logger.error(
                            f"Audit event {event.event_id} rejected {attempts} times, "
                            f"moved to {self.dead_letter_path}: {e}"
                        )
                        dead.append((event, attempts))
                    else:
                        logger.warning(f"Redelivery of audit event {event.event_id} failed: {e}")
                        remaining.append((event, attempts))

            if dead:
                self._append(self.dead_letter_path, dead)
            self._rewrite(remaining)

        if delivered:
            logger.info(f"Redelivered {delivered} queued audit event(s), {len(remaining)} still pending")
        return delivered

    @staticmethod
    def _line(event: AuditEvent, attempts: int) -> str:
        return json.dumps({**event.to_dict(), ATTEMPTS_KEY: attempts}, default=str) + "\n"

    @staticmethod
    def _read(path: Path) -> List[Tuple[AuditEvent, int]]:
        if not path.exists():
            return []
        entries = []
        with open(path, 'r', encoding='utf-8') as f:
            for line in f:
                if not line.strip():
                    continue
                data = json.loads(line)
                entries.append((AuditEvent.from_dict(data), int(data.get(ATTEMPTS_KEY, 0))))
        return entries

    def _append(self, path: Path, entries: List[Tuple[AuditEvent, int]]) -> None:
        with open(path, 'a', encoding='utf-8') as f:
            for event, attempts in entries:
                f.write(self._line(event, attempts))
            f.flush()
            os.fsync(f.fileno())

    def _rewrite(self, entries: List[Tuple[AuditEvent, int]]) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, 'w', encoding='utf-8') as f:
            for event, attempts in entries:
                f.write(self._line(event, attempts))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)
