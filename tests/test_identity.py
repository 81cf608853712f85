"""Tests for mapping provider profiles onto local users."""

import pytest

from free2free.service.errors import ConflictError, ValidationError
from free2free.service.identity import IdentityResolver
from free2free.service.oauth import ExternalProfile


@pytest.fixture
def resolver(store):
    return IdentityResolver(store)


def test_first_login_creates_user(resolver, store):
    profile = ExternalProfile("fb-42", name="Dani", email="dani@example.com")
    user = resolver.resolve("facebook", profile)
    assert user.external_id == "fb-42"
    assert user.external_provider == "facebook"
    assert user.display_name == "Dani"
    assert user.email == "dani@example.com"
    assert user.is_admin is False
    assert len(store.users) == 1


def test_repeat_login_returns_same_user(resolver, store):
    profile = ExternalProfile("fb-42", name="Dani")
    first = resolver.resolve("facebook", profile)
    second = resolver.resolve("facebook", profile)
    assert first.id == second.id
    assert len(store.users) == 1


def test_same_external_id_on_other_provider_is_a_different_user(resolver):
    fb = resolver.resolve("facebook", ExternalProfile("123", name="a"))
    ig = resolver.resolve("instagram", ExternalProfile("123", name="b"))
    assert fb.id != ig.id


def test_profile_changes_are_synced(resolver):
    user = resolver.resolve("facebook", ExternalProfile("fb-42", name="Dani"))
    synced = resolver.resolve(
        "facebook",
        ExternalProfile("fb-42", name="Daniela", avatar_url="https://cdn.example.com/d.png"),
    )
    assert synced.id == user.id
    assert synced.display_name == "Daniela"
    assert synced.avatar_url == "https://cdn.example.com/d.png"


def test_empty_profile_fields_do_not_erase(resolver):
    resolver.resolve("facebook", ExternalProfile("fb-42", name="Dani", email="d@example.com"))
    again = resolver.resolve("facebook", ExternalProfile("fb-42"))
    assert again.display_name == "Dani"
    assert again.email == "d@example.com"


def test_missing_name_falls_back_to_external_id(resolver):
    user = resolver.resolve("instagram", ExternalProfile("ig-9"))
    assert user.display_name == "ig-9"


def test_unsupported_provider(resolver):
    with pytest.raises(ValidationError):
        resolver.resolve("twitter", ExternalProfile("x"))


def test_profile_without_id(resolver):
    with pytest.raises(ValidationError):
        resolver.resolve("facebook", ExternalProfile(""))


def test_concurrent_insert_surfaces_as_conflict(store, monkeypatch):
    store.create_user("fb-42", "facebook", "winner")
    resolver = IdentityResolver(store)
    # Simulate losing the race: the lookup ran before the other insert landed
    monkeypatch.setattr(store, "get_user_by_external", lambda provider, external_id: None)
    with pytest.raises(ConflictError):
        resolver.resolve("facebook", ExternalProfile("fb-42", name="loser"))
