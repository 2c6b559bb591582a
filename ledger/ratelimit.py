import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import delete, func, select

from .db import RateLimitRow, Storage, utc_now
from .errors import StorageFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Admission:
    allowed: bool
    remaining: int


class RateLimiter:
    """
    Sliding-window admission control shared by every process through the
    record store. One row per admitted hit; rejected hits are not stored.

    Storage errors fail open: the limiter only guards against abuse, the
    money-moving paths never depend on it.
    """

    def __init__(
        self,
        storage: Storage,
        limit: int = 20,
        window_ms: int = 60_000,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.storage = storage
        self.limit = limit
        self.window_ms = window_ms
        self.clock = clock

    def admit(self, identifier: str, limit: Optional[int] = None, window_ms: Optional[int] = None) -> Admission:
        limit = self.limit if limit is None else limit
        window = timedelta(milliseconds=self.window_ms if window_ms is None else window_ms)
        now = self.clock()
        try:
            admission = self._admit(identifier, limit, window, now)
        except StorageFailure:
            logger.warning("rate limiter storage unavailable, admitting request", extra={"key": identifier})
            return Admission(allowed=True, remaining=limit)
        self._prune(identifier, now - 2 * window)
        return admission

    def _admit(self, identifier: str, limit: int, window: timedelta, now: datetime) -> Admission:
        with self.storage.unit_of_work() as s:
            hits = s.execute(
                select(func.count())
                .select_from(RateLimitRow)
                .where(RateLimitRow.key == identifier, RateLimitRow.created_at > now - window)
            ).scalar_one()
            if hits >= limit:
                logger.info("rate limit exceeded", extra={"key": identifier, "hits": hits})
                return Admission(allowed=False, remaining=0)
            s.add(RateLimitRow(key=identifier, created_at=now))
            return Admission(allowed=True, remaining=limit - hits - 1)

    def _prune(self, identifier: str, cutoff: datetime) -> None:
        try:
            with self.storage.unit_of_work() as s:
                s.execute(delete(RateLimitRow).where(RateLimitRow.key == identifier, RateLimitRow.created_at < cutoff))
        except StorageFailure:
            logger.debug("rate limit pruning skipped", extra={"key": identifier})
