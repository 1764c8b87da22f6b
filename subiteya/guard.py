"""
Idempotency and per-account concurrency guard.

Process-local bookkeeping of which videos are executing and how each
publishing account is behaving. Both maps live behind one threading.Lock:
webhook handlers run on the event loop while job bodies run in worker
threads, and both touch the guard.

Nothing here is persisted. After a restart the delivery service retries and
the video row decides what happens next.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"

# Retry hint sent with an account_busy rejection
BUSY_RETRY_AFTER_SECONDS = 30


@dataclass
class ExecutionRecord:
    start_time: float
    status: str
    account_id: Optional[str]
    token: int


@dataclass
class BackoffRecord:
    consecutive_failures: int
    last_failure_time: float


@dataclass(frozen=True)
class GuardDecision:
    allowed: bool
    reason: Optional[str] = None
    retry_after: Optional[int] = None
    token: Optional[int] = None


class ExecutionGuard:
    """
    Tracks executions per video and failures per account.

    Args:
        grace_seconds: Age after which a finished record is evicted and a
            running record is considered stale
        max_concurrent_per_account: Running executions allowed per account
        max_backoff_seconds: Cap of the exponential account backoff
        clock: Monotonic time source (seconds)
    """

    def __init__(
        self,
        grace_seconds: float = 300.0,
        max_concurrent_per_account: int = 3,
        max_backoff_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.grace_seconds = grace_seconds
        self.max_concurrent_per_account = max_concurrent_per_account
        self.max_backoff_seconds = max_backoff_seconds
        self._clock = clock
        self._executions: Dict[str, ExecutionRecord] = {}
        self._backoff: Dict[str, BackoffRecord] = {}
        self._next_token = 0
        self._lock = threading.Lock()

    # ==================== Executions ====================

    def _evict_locked(self, video_id: str, now: float) -> Optional[ExecutionRecord]:
        record = self._executions.get(video_id)
        if record is None:
            return None
        if now - record.start_time >= self.grace_seconds:
            if record.status == RUNNING:
                logger.warning(
                    f"[Guard] Execution of {video_id} has been running for {now - record.start_time:.0f}s, treating as stale"
                )
            del self._executions[video_id]
            return None
        return record

    def is_in_progress(self, video_id: str) -> bool:
        with self._lock:
            record = self._evict_locked(video_id, self._clock())
            return record is not None and record.status == RUNNING

    def mark_start(self, video_id: str, account_id: Optional[str] = None) -> int:
        with self._lock:
            return self._start_locked(video_id, account_id, self._clock())

    def _start_locked(self, video_id: str, account_id: Optional[str], now: float) -> int:
        self._next_token += 1
        self._executions[video_id] = ExecutionRecord(now, RUNNING, account_id, self._next_token)
        return self._next_token

    def mark_end(self, video_id: str, status: str, token: Optional[int] = None) -> None:
        """Close an execution. With a token, only the record that token opened is closed."""
        if status not in (COMPLETED, FAILED):
            raise ValueError(f"Invalid execution status: {status}")
        with self._lock:
            record = self._executions.get(video_id)
            if record is None or (token is not None and record.token != token):
                return
            record.status = status

    def account_concurrent_jobs(self, account_id: str) -> int:
        with self._lock:
            return self._account_running_locked(account_id, self._clock())

    def _account_running_locked(self, account_id: str, now: float) -> int:
        count = 0
        for video_id in list(self._executions):
            record = self._evict_locked(video_id, now)
            if record and record.status == RUNNING and record.account_id == account_id:
                count += 1
        return count

    def running_count(self) -> int:
        with self._lock:
            now = self._clock()
            count = 0
            for video_id in list(self._executions):
                record = self._evict_locked(video_id, now)
                if record is not None and record.status == RUNNING:
                    count += 1
            return count

    # ==================== Account backoff ====================

    def _backoff_remaining_locked(self, account_id: str, now: float) -> float:
        record = self._backoff.get(account_id)
        if record is None or record.consecutive_failures <= 0:
            return 0.0
        delay = min(2 ** record.consecutive_failures, self.max_backoff_seconds)
        return max(0.0, record.last_failure_time + delay - now)

    def backoff_remaining(self, account_id: str) -> float:
        with self._lock:
            return self._backoff_remaining_locked(account_id, self._clock())

    def consecutive_failures(self, account_id: str) -> int:
        with self._lock:
            record = self._backoff.get(account_id)
            return record.consecutive_failures if record else 0

    def record_account_failure(self, account_id: str) -> int:
        with self._lock:
            record = self._backoff.get(account_id)
            failures = (record.consecutive_failures if record else 0) + 1
            self._backoff[account_id] = BackoffRecord(failures, self._clock())
        delay = min(2 ** failures, self.max_backoff_seconds)
        logger.warning(f"[Guard] Account {account_id} failure #{failures}, backing off {delay:.0f}s")
        return failures

    def record_account_success(self, account_id: str) -> None:
        with self._lock:
            if self._backoff.pop(account_id, None) is not None:
                logger.info(f"[Guard] Account {account_id} recovered, backoff cleared")

    # ==================== Admission ====================

    def try_acquire(self, video_id: str, account_id: Optional[str] = None) -> GuardDecision:
        """
        Check and register an execution in one step.

        Account checks (backoff, then concurrency ceiling) only apply when an
        account id is given.
        """
        with self._lock:
            now = self._clock()
            record = self._evict_locked(video_id, now)
            if record is not None and record.status == RUNNING:
                return GuardDecision(False, "already_running")

            if account_id:
                remaining = self._backoff_remaining_locked(account_id, now)
                if remaining > 0:
                    return GuardDecision(False, "account_backoff", retry_after=max(1, math.ceil(remaining)))
                if self._account_running_locked(account_id, now) >= self.max_concurrent_per_account:
                    return GuardDecision(False, "account_busy", retry_after=BUSY_RETRY_AFTER_SECONDS)

            token = self._start_locked(video_id, account_id, now)
            return GuardDecision(True, token=token)
