from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import insert

from unblocker.events import RATE_LIMIT_EXCEEDED, get_event_bus
from unblocker.exceptions import RateLimitExceeded
from unblocker.extensions import db
from unblocker.models import AbuseIncident, IpReputation, RateCounter, _utcnow
from unblocker.security import rate_limit
from unblocker.security.rate_limit import LimitInfo, RedisCounterStore, SqlCounterStore, check_rate_limit
from unblocker.simple_unblock.guard import AbuseGuard, GuardLimits


class _FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.ops = []

    def incr(self, key):
        self.ops.append(("incr", key))

    def ttl(self, key):
        self.ops.append(("ttl", key))

    def execute(self):
        out = []
        for op, key in self.ops:
            if op == "incr":
                self.redis.values[key] = self.redis.values.get(key, 0) + 1
                out.append(self.redis.values[key])
            else:
                out.append(self.redis.ttls.get(key, -1))
        return out


class _FakeRedis:
    def __init__(self):
        self.values = {}
        self.ttls = {}

    def pipeline(self):
        return _FakePipeline(self)

    def expire(self, key, seconds):
        self.ttls[key] = seconds

    def get(self, key):
        value = self.values.get(key)
        return None if value is None else str(value)


def test_sql_counter_store_counts_and_expires(app):
    store = SqlCounterStore()
    assert store.hit("k", 60) == 1
    assert store.hit("k", 60) == 2
    assert store.get("k") == 2
    assert store.get("other") == 0


def test_redis_counter_store_sets_expiry_once():
    redis = _FakeRedis()
    store = RedisCounterStore(redis)

    assert store.hit("k", 60) == 1
    assert redis.ttls["k"] == 65
    redis.ttls["k"] = 30
    assert store.hit("k", 60) == 2
    assert redis.ttls["k"] == 30
    assert store.get("k") == 2


def test_check_rate_limit(app):
    store = SqlCounterStore()
    results = [check_rate_limit("b", "1.2.3.4", 2, 60, store=store) for _ in range(3)]

    assert [ok for ok, _info in results] == [True, True, False]
    info = results[-1][1]
    assert info.count == 3 and info.remaining == 0
    assert 0 <= info.reset_in <= 60


def test_limit_info_headers():
    info = LimitInfo(limit=3, window_seconds=60, remaining=1, reset_in=12)
    assert info.http_headers()["X-RateLimit-Remaining"] == "1"
    assert info.to_headers()["reset_in"] == 12


def test_guard_ip_vector(app):
    guard = AbuseGuard(GuardLimits(ip_per_minute=2), SqlCounterStore())
    guard.check("198.51.100.7", "a@example.com", "example.org")
    guard.check("198.51.100.7", "b@example.com", "example.net")

    with pytest.raises(RateLimitExceeded) as ei:
        guard.check("198.51.100.7", "c@example.com", "example.com")

    assert ei.value.vector == "ip"
    assert ei.value.attempts == 3 and ei.value.max_attempts == 2


def test_guard_email_vector_is_hashed(app):
    published = []
    get_event_bus().subscribe(RATE_LIMIT_EXCEEDED, published.append)
    guard = AbuseGuard(GuardLimits(ip_per_minute=100, email_per_hour=1), SqlCounterStore())
    guard.check("198.51.100.7", "a@example.com", "example.org")

    with pytest.raises(RateLimitExceeded) as ei:
        guard.check("198.51.100.8", "A@example.com ", "example.net")

    assert ei.value.vector == "email"
    assert "@" not in ei.value.identifier
    assert published[0]["vector"] == "email"


def test_guard_subnet_vector(app):
    guard = AbuseGuard(GuardLimits(ip_per_minute=100, subnet_per_hour=2), SqlCounterStore())
    guard.check("198.51.100.1", "a@example.com", "a.org")
    guard.check("198.51.100.2", "b@example.com", "b.org")

    with pytest.raises(RateLimitExceeded) as ei:
        guard.check("198.51.100.3", "c@example.com", "c.org")
    assert ei.value.identifier == "198.51.100.0/24"


def test_rate_limit_creates_incident_and_penalty(app):
    guard = AbuseGuard(GuardLimits(ip_per_minute=1), SqlCounterStore())
    guard.check("198.51.100.7", "a@example.com", "example.org")
    with pytest.raises(RateLimitExceeded):
        guard.check("198.51.100.7", "a@example.com", "example.org")

    incident = AbuseIncident.query.one()
    assert incident.severity == "low"
    assert incident.vector == "ip"
    assert IpReputation.query.filter_by(ip="198.51.100.7").one().reputation_score == 90


def test_sql_counter_keeps_row_created_by_concurrent_writer(app, monkeypatch):
    real_delete = rate_limit.delete
    raced = []

    def delete_after_other_writer(model):
        # another process commits the first hit between our UPDATE and DELETE
        if not raced:
            raced.append(True)
            db.session.execute(insert(RateCounter).values(key="k", count=1, expires_at=_utcnow() + timedelta(seconds=60)))
            db.session.commit()
        return real_delete(model)

    monkeypatch.setattr(rate_limit, "delete", delete_after_other_writer)

    assert SqlCounterStore().hit("k", 60) == 2
    assert SqlCounterStore().get("k") == 2


def test_sql_counter_replaces_expired_row(app):
    db.session.execute(insert(RateCounter).values(key="k", count=7, expires_at=_utcnow() - timedelta(seconds=1)))
    db.session.commit()

    store = SqlCounterStore()
    assert store.hit("k", 60) == 1
    assert store.get("k") == 1
