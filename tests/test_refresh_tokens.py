"""Tests for the refresh token rotation ledger."""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from free2free.service.refresh_tokens import RefreshTokenStore, hash_refresh_token
from free2free.service.tokens import InvalidTokenError
from free2free.storage.errors import ConstraintViolation
from free2free.storage.models import utcnow


@pytest.fixture
def ledger(store):
    return RefreshTokenStore(store)


def test_only_digest_is_stored(ledger, store, fb_user):
    ledger.issue(fb_user.id, "raw-refresh-token", utcnow() + timedelta(days=7))
    assert "raw-refresh-token" not in store.refresh_tokens
    assert hash_refresh_token("raw-refresh-token") in store.refresh_tokens


def test_redeem_returns_owner_once(ledger, fb_user):
    ledger.issue(fb_user.id, "tok-a", utcnow() + timedelta(days=7))
    assert ledger.redeem("tok-a") == fb_user.id
    with pytest.raises(InvalidTokenError):
        ledger.redeem("tok-a")


def test_redeem_unknown_token(ledger):
    with pytest.raises(InvalidTokenError):
        ledger.redeem("never-issued")


def test_redeem_expired_token_consumes_row(ledger, store, fb_user):
    ledger.issue(fb_user.id, "tok-old", utcnow() - timedelta(seconds=1))
    with pytest.raises(InvalidTokenError):
        ledger.redeem("tok-old")
    assert store.refresh_tokens == {}


def test_concurrent_redeem_succeeds_exactly_once(ledger, fb_user):
    ledger.issue(fb_user.id, "tok-race", utcnow() + timedelta(days=7))

    def attempt(_):
        try:
            return ledger.redeem("tok-race")
        except InvalidTokenError:
            return None

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(attempt, range(16)))

    assert results.count(fb_user.id) == 1
    assert results.count(None) == 15


def test_issue_for_unknown_user_fails(ledger):
    with pytest.raises(ConstraintViolation):
        ledger.issue("no-such-user", "tok", utcnow() + timedelta(days=7))


def test_revoke(ledger, fb_user):
    ledger.issue(fb_user.id, "tok-r", utcnow() + timedelta(days=7))
    assert ledger.revoke("tok-r") is True
    assert ledger.revoke("tok-r") is False
    with pytest.raises(InvalidTokenError):
        ledger.redeem("tok-r")


def test_revoke_all_only_touches_one_user(ledger, store, fb_user):
    other = store.create_user("ig-5", "instagram", "other")
    expires = utcnow() + timedelta(days=7)
    ledger.issue(fb_user.id, "a1", expires)
    ledger.issue(fb_user.id, "a2", expires)
    ledger.issue(other.id, "b1", expires)

    assert ledger.revoke_all(fb_user.id) == 2
    assert ledger.redeem("b1") == other.id


def test_sweep_expired(ledger, store, fb_user):
    past = utcnow() - timedelta(minutes=1)
    future = utcnow() + timedelta(days=1)
    for i in range(3):
        ledger.issue(fb_user.id, f"old-{i}", past)
    for i in range(2):
        ledger.issue(fb_user.id, f"live-{i}", future)

    assert ledger.sweep_expired() == 3
    assert len(store.refresh_tokens) == 2
    assert ledger.sweep_expired() == 0
