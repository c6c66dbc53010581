from __future__ import annotations

import logging
from contextlib import closing
from dataclasses import dataclass
from typing import Callable

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from skillgate.persistence import pg
from skillgate.persistence.models import RateLimitModel
from skillgate.persistence.utils import now_ms

logger = logging.getLogger(__name__)

_INSERT_ATTEMPTS = 3


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: int

    def to_dict(self) -> dict[str, int | bool]:
        return {"allowed": self.allowed, "remaining": self.remaining, "reset_at": self.reset_at}


class RateLimiter:
    """Fixed-window counter persisted in ``rate_limits``.

    Each call runs in its own transaction so the count survives whatever the
    caller does afterwards. The increment is a conditional UPDATE, so
    concurrent hits on one key never lose an update.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        self._session_factory = session_factory or pg.session_factory
        self._clock = clock

    def hit(self, key: str, max_count: int, window_ms: int) -> RateLimitDecision:
        if max_count <= 0:
            return RateLimitDecision(allowed=False, remaining=0, reset_at=self._clock() + window_ms)

        for _ in range(_INSERT_ATTEMPTS):
            now = self._clock()
            with closing(self._session_factory()) as session:
                decision = self._try_hit(session, key, max_count, window_ms, now)
                if decision is not None:
                    session.commit()
                    return decision
                session.add(RateLimitModel(key=key, window_start_ms=now, count=1))
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    logger.debug("rate limit row for %s created concurrently, retrying", key)
                    continue
                return RateLimitDecision(allowed=True, remaining=max_count - 1, reset_at=now + window_ms)
        raise RuntimeError(f"rate limit for {key} could not be recorded")

    @staticmethod
    def _try_hit(
        session: Session, key: str, max_count: int, window_ms: int, now: int
    ) -> RateLimitDecision | None:
        window_floor = now - window_ms
        bumped = session.execute(
            update(RateLimitModel)
            .where(
                RateLimitModel.key == key,
                RateLimitModel.window_start_ms > window_floor,
                RateLimitModel.count < max_count,
            )
            .values(count=RateLimitModel.count + 1)
            .execution_options(synchronize_session=False)
        )
        if bumped.rowcount == 1:
            count, window_start = session.execute(
                select(RateLimitModel.count, RateLimitModel.window_start_ms).where(RateLimitModel.key == key)
            ).one()
            return RateLimitDecision(
                allowed=True, remaining=max(max_count - count, 0), reset_at=window_start + window_ms
            )

        reset = session.execute(
            update(RateLimitModel)
            .where(RateLimitModel.key == key, RateLimitModel.window_start_ms <= window_floor)
            .values(window_start_ms=now, count=1)
            .execution_options(synchronize_session=False)
        )
        if reset.rowcount == 1:
            return RateLimitDecision(allowed=True, remaining=max_count - 1, reset_at=now + window_ms)

        existing = session.execute(
            select(RateLimitModel.window_start_ms).where(RateLimitModel.key == key)
        ).scalar_one_or_none()
        if existing is not None:
            return RateLimitDecision(allowed=False, remaining=0, reset_at=existing + window_ms)
        return None
