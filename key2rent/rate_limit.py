import threading
import time
from collections import defaultdict, deque
from datetime import timedelta

from fastapi import Depends
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from key2rent.config import RATE_LIMIT_BACKEND
from key2rent.database import get_db
from key2rent.models import RateLimitBucket, RateLimitHit, utcnow

STK_PUSH_LIMIT = (5, 60 * 60)        # per user per hour
CALLBACK_LIMIT = (50, 60)            # per source IP per minute


class MemoryRateLimiter:
    """Sliding-window limiter held in process memory; not shared between instances."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._hits = defaultdict(deque)
        self._lock = threading.Lock()

    def allow(self, key: str, limit: int, window_seconds: float) -> bool:
        now = self._clock()
        with self._lock:
            hits = self._hits[key]
            while hits and hits[0] <= now - window_seconds:
                hits.popleft()
            if len(hits) >= limit:
                return False
            hits.append(now)
            return True

    def reset(self):
        with self._lock:
            self._hits.clear()


class DatabaseRateLimiter:
    """Sliding-window limiter whose hits live in the shared database."""

    def __init__(self, db: Session):
        self.db = db

    def _lock(self, key: str, now):
        # Row lock on the bucket until commit, so count-then-insert cannot interleave
        touch = self.db.query(RateLimitBucket).filter(RateLimitBucket.key == key)
        if touch.update({"touched_at": now}, synchronize_session=False):
            return
        try:
            self.db.add(RateLimitBucket(key=key, touched_at=now))
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            touch.update({"touched_at": now}, synchronize_session=False)

    def allow(self, key: str, limit: int, window_seconds: float) -> bool:
        now = utcnow()
        window_start = now - timedelta(seconds=window_seconds)

        self._lock(key, now)

        self.db.query(RateLimitHit).filter(
            RateLimitHit.key == key, RateLimitHit.hit_at <= window_start
        ).delete(synchronize_session=False)

        count = self.db.query(RateLimitHit).filter(RateLimitHit.key == key).count()
        if count >= limit:
            self.db.commit()
            return False

        self.db.add(RateLimitHit(key=key, hit_at=now))
        self.db.commit()
        return True


memory_limiter = MemoryRateLimiter()


def get_rate_limiter(db: Session = Depends(get_db)):
    if RATE_LIMIT_BACKEND == "memory":
        return memory_limiter
    return DatabaseRateLimiter(db)
