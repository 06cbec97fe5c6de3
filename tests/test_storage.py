from datetime import datetime, timezone

import pytest

from tollgate.storage.errors import ConstraintViolation, ProfileNotFound
from tollgate.storage.memory import MemoryProfileStore
from tollgate.storage.postgres import PostgresProfileStore


@pytest.fixture
def store():
    return MemoryProfileStore()


def test_create_normalizes_email_and_drops_unknown_fields(store):
    profile = store.create_profile(
        "uid-1", " Someone@Example.COM ", first_name="Sam", is_admin=True, occupation=None
    )

    assert profile.email == "someone@example.com"
    assert profile.first_name == "Sam"
    assert profile.occupation is None
    assert not hasattr(profile, "is_admin")
    assert store.get_profile_by_email("SOMEONE@example.com").uid == "uid-1"


def test_duplicate_email_violates_constraint(store):
    store.create_profile("uid-1", "someone@example.com")

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_profile("uid-2", "someone@example.com")

    assert excinfo.value.detail == {"field": "email"}


def test_duplicate_uid_violates_constraint(store):
    store.create_profile("uid-1", "a@example.com")

    with pytest.raises(ConstraintViolation):
        store.create_profile("uid-1", "b@example.com")


def test_pending_change_fields_move_together(store):
    store.create_profile("uid-1", "old@example.com")
    requested_at = datetime(2026, 1, 1, tzinfo=timezone.utc)

    pending = store.set_pending_email_change("uid-1", "New@Example.com", "123456", requested_at)
    assert pending.pending_email == "new@example.com"
    assert pending.email_change_token == "123456"
    assert pending.email_change_requested_at == requested_at
    assert pending.has_pending_email_change

    cleared = store.clear_pending_email_change("uid-1")
    assert cleared.pending_email is None
    assert cleared.email_change_token is None
    assert cleared.email_change_requested_at is None


def test_complete_email_change(store):
    store.create_profile("uid-1", "old@example.com")
    store.set_pending_email_change("uid-1", "new@example.com", "123456", datetime.now(timezone.utc))

    done = store.complete_email_change("uid-1", "new@example.com")

    assert done.email == "new@example.com"
    assert done.email_verified
    assert not done.has_pending_email_change
    assert store.get_profile_by_email("old@example.com") is None


def test_complete_email_change_to_taken_address(store):
    store.create_profile("uid-1", "old@example.com")
    store.create_profile("uid-2", "taken@example.com")

    with pytest.raises(ConstraintViolation):
        store.complete_email_change("uid-1", "taken@example.com")

    assert store.get_profile("uid-1").email == "old@example.com"


def test_updates_to_missing_profile(store):
    with pytest.raises(ProfileNotFound):
        store.clear_pending_email_change("ghost")


def test_public_view_hides_change_code(store):
    store.create_profile("uid-1", "old@example.com")
    profile = store.set_pending_email_change(
        "uid-1", "new@example.com", "123456", datetime.now(timezone.utc)
    )

    public = profile.to_public()

    assert public["pending_email"] == "new@example.com"
    assert "123456" not in public.values()
    assert "email_change_token" not in public


def test_postgres_rows_map_to_profiles():
    row = {
        "uid": "uid-1",
        "email": "a@example.com",
        "first_name": None,
        "last_name": None,
        "visa_type": None,
        "current_location": {"city": "Oslo"},
        "occupation": None,
        "employer": None,
        "timezone": None,
        "email_verified": True,
        "pending_email": None,
        "email_change_token": None,
        "email_change_requested_at": None,
        "created_at": datetime(2026, 1, 1, tzinfo=timezone.utc),
        "updated_at": datetime(2026, 1, 1, tzinfo=timezone.utc),
    }

    profile = PostgresProfileStore._profile_from_row(row)

    assert profile.uid == "uid-1"
    assert profile.current_location == {"city": "Oslo"}
    assert profile.email_verified is True
