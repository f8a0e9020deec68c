import json

import pytest
from cryptography.fernet import Fernet
from fastapi import Response

from idportal.service.secret_store import SecretStore, derive_fernet_key
from idportal.service.session import AuthStage, SessionRecord, SessionStore


@pytest.fixture
def secrets_store():
    return SecretStore.from_secrets("t" * 40, "s" * 40)


@pytest.fixture
def store(secrets_store, clock):
    return SessionStore(secrets_store, idle_timeout=900, secure=False, clock=clock)


@pytest.fixture
def record():
    return SessionRecord(
        subject="alice",
        backend_session_handle="handle-1",
        stage=AuthStage.OTP_CHALLENGE,
        otp_required=True,
        issued_at=1_700_000_000,
    )


def test_seal_and_open(store, record):
    assert store.open(store.seal(record)) == record


def test_idle_timeout(store, record, clock):
    sealed = store.seal(record)
    clock.advance(900)
    assert store.open(sealed) == record
    clock.advance(1)
    assert store.open(sealed) is None


def test_tampered_cookie_rejected(store, record):
    sealed = store.seal(record)
    tampered = sealed[:-5] + ("A" if sealed[-5] != "A" else "B") + sealed[-4:]
    assert store.open(tampered) is None


def test_other_key_rejected(record, clock):
    ours = SessionStore(SecretStore.from_secrets("t" * 40, "a" * 40), clock=clock)
    theirs = SessionStore(SecretStore.from_secrets("t" * 40, "b" * 40), clock=clock)
    assert ours.open(theirs.seal(record)) is None


def test_action_token_key_cannot_open_sessions(record, clock):
    # Same input secret for both roles still gives independent keys
    shared = SecretStore.from_secrets("z" * 40, "z" * 40)
    assert shared.token_key != shared.session_key
    forged = Fernet(shared.token_key).encrypt_at_time(record.to_json().encode(), int(clock()))
    assert SessionStore(shared, clock=clock).open(forged.decode()) is None


def test_unknown_version_rejected(secrets_store, record, clock):
    store = SessionStore(secrets_store, clock=clock)
    data = json.loads(record.to_json())
    data["version"] = 99
    sealed = Fernet(secrets_store.session_key).encrypt_at_time(
        json.dumps(data).encode(), int(clock())
    )
    assert store.open(sealed.decode()) is None


def test_inconsistent_stage_rejected(secrets_store, record, clock):
    store = SessionStore(secrets_store, clock=clock)
    data = json.loads(record.to_json())
    data["authenticated"] = True
    sealed = Fernet(secrets_store.session_key).encrypt_at_time(
        json.dumps(data).encode(), int(clock())
    )
    assert store.open(sealed.decode()) is None


@pytest.mark.parametrize("value", [None, "", "garbage", "é"])
def test_garbage_cookie(store, value):
    assert store.open(value) is None


def test_save_and_clear_set_cookie_attributes(store, record):
    response = Response()
    store.save(response, record)
    header = response.headers["set-cookie"]
    assert header.startswith("idportal-session=")
    assert "HttpOnly" in header
    assert "SameSite=lax" in header
    assert "Max-Age=900" in header

    cleared = Response()
    store.clear(cleared)
    assert 'idportal-session=""' in cleared.headers["set-cookie"]


def test_derived_keys_are_valid_fernet_keys():
    key = derive_fernet_key("q" * 40, b"label")
    Fernet(key)
    assert derive_fernet_key("q" * 40, b"other") != key
