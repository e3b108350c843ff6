"""Shared throttle counters (Redis when configured, SQL table otherwise).

Usage:
    ok, info = check_rate_limit(bucket="simple_ip", ident=client_ip, limit=3, window_seconds=60)
    if not ok: raise RateLimitExceeded(...)

Counters are shared by every web and worker process, so increments are
atomic in the backing store: Redis INCR, or a single UPDATE statement.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Optional, Protocol, Tuple

import redis
from flask import current_app
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import RateCounter, _as_aware, _utcnow

logger = logging.getLogger(__name__)

COUNTER_STORE_EXTENSION = "unblocker_counter_store"


@dataclass
class LimitInfo:
    limit: int
    window_seconds: int
    remaining: int
    reset_in: int
    count: int = 0

    def to_headers(self) -> Dict[str, int]:
        """Return a dict suitable for embedding into JSON/details.

        Keys are lower_snake_case to match our API style.
        """
        return {
            'limit': int(self.limit),
            'window_seconds': int(self.window_seconds),
            'remaining': int(self.remaining),
            'reset_in': int(self.reset_in),
        }

    def http_headers(self) -> Dict[str, str]:
        """Return standard-ish X-RateLimit-* headers."""
        return {
            'X-RateLimit-Limit': str(int(self.limit)),
            'X-RateLimit-Remaining': str(int(self.remaining)),
            'X-RateLimit-Reset': str(int(self.reset_in)),
        }


class CounterStore(Protocol):
    def hit(self, key: str, window_seconds: int) -> int: ...

    def get(self, key: str) -> int: ...


class RedisCounterStore:
    def __init__(self, client: "redis.Redis") -> None:
        self.client = client

    def hit(self, key: str, window_seconds: int) -> int:
        pipe = self.client.pipeline()
        pipe.incr(key)
        pipe.ttl(key)
        value, ttl = pipe.execute()
        # INCR creates the key without expiry; set it once.
        if int(ttl) < 0:
            self.client.expire(key, int(window_seconds) + 5)
        return int(value)

    def get(self, key: str) -> int:
        return int(self.client.get(key) or 0)


class SqlCounterStore:
    """Counters in the ``rate_counters`` table."""

    def hit(self, key: str, window_seconds: int) -> int:
        for _ in range(3):
            now = _utcnow()
            stmt = (
                update(RateCounter)
                .where(RateCounter.key == key, RateCounter.expires_at > now)
                .values(count=RateCounter.count + 1)
                .execution_options(synchronize_session=False)
            )
            if db.session.execute(stmt).rowcount:
                value = db.session.execute(select(RateCounter.count).where(RateCounter.key == key)).scalar_one()
                db.session.commit()
                return int(value)

            # only an expired row may be replaced; a live one means another process won the insert
            db.session.execute(
                delete(RateCounter)
                .where(RateCounter.key == key, RateCounter.expires_at <= now)
                .execution_options(synchronize_session=False)
            )
            db.session.add(RateCounter(key=key, count=1, expires_at=now + timedelta(seconds=int(window_seconds))))
            try:
                db.session.commit()
                return 1
            except IntegrityError:
                # another process created the row first; count against it
                db.session.rollback()
        raise RuntimeError(f"Could not increment counter {key}")

    def get(self, key: str) -> int:
        row = db.session.get(RateCounter, key)
        if row is None or _as_aware(row.expires_at) <= _utcnow():
            return 0
        return int(row.count)


def _redis_client() -> Optional["redis.Redis"]:
    url = (current_app.config.get("REDIS_URL") or "").strip()
    if not url:
        return None
    return redis.Redis.from_url(url, decode_responses=True)


def get_counter_store() -> CounterStore:
    store = current_app.extensions.get(COUNTER_STORE_EXTENSION)
    if store is None:
        client = _redis_client()
        store = RedisCounterStore(client) if client is not None else SqlCounterStore()
        current_app.extensions[COUNTER_STORE_EXTENSION] = store
    return store


def check_rate_limit(
    bucket: str,
    ident: str,
    limit: int,
    window_seconds: int,
    store: Optional[CounterStore] = None,
) -> Tuple[bool, LimitInfo]:
    now = int(time.time())
    window_start = (now // window_seconds) * window_seconds
    key = f"rl:{bucket}:{window_start}:{ident}"
    reset_in = max(0, (window_start + window_seconds) - now)

    store = store or get_counter_store()
    count = store.hit(key, window_seconds)
    remaining = max(0, limit - count)
    ok = count <= limit
    return ok, LimitInfo(limit=limit, window_seconds=window_seconds, remaining=remaining, reset_in=reset_in, count=count)
