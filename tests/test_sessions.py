# tests/test_sessions.py
from datetime import datetime, timedelta, timezone

import jwt
import pytest

from blogauth.core.clock import parse_iso
from blogauth.core.errors import AuthError, ErrorKind
from blogauth.core.models_user import UserStatus
from blogauth.infra.blob_store import MemoryBlobStore
from blogauth.services.credential_store import CredentialStore
from blogauth.services.sessions import ALGORITHM, TokenService
from conftest import FakeClock, make_active_user


@pytest.fixture
def alice(store):
    return make_active_user(store, "alice")


def test_issue_and_validate(tokens, store, alice):
    pair = tokens.issue(alice, ip="1.2.3.4", user_agent="pytest")
    claims = tokens.validate(pair.access_token)
    assert claims.sub == "alice"
    assert claims.uid == alice.id
    assert claims.admin is False
    assert claims.type == "access"
    assert claims.exp - claims.iat == 15 * 60

    session = store.get_session(claims.sid)
    assert session.active is True
    assert session.username == "alice"
    assert session.ip == "1.2.3.4"
    assert session.refresh_jti is not None


def test_remember_me_extends_session_lifetime(tokens, alice):
    short = tokens.issue(alice)
    long = tokens.issue(alice, remember_me=True)
    short_exp = parse_iso(short.session.expires_at) - parse_iso(short.session.created_at)
    long_exp = parse_iso(long.session.expires_at) - parse_iso(long.session.created_at)
    assert short_exp == timedelta(days=7)
    assert long_exp == timedelta(days=30)


def test_admin_flag_is_carried_in_claims(tokens, store):
    admin = make_active_user(store, "rootadmin", is_admin=True)
    claims = tokens.validate(tokens.issue(admin).access_token)
    assert claims.admin is True


def test_expired_token_is_rejected(store, settings, alice):
    past = datetime.now(timezone.utc) - timedelta(hours=1)
    old_tokens = TokenService(store, settings=settings, clock=lambda: past)
    pair = old_tokens.issue(alice)
    with pytest.raises(AuthError) as ei:
        TokenService(store, settings=settings).validate(pair.access_token)
    assert ei.value.kind is ErrorKind.Expired


def test_tampered_signature_is_rejected_regardless_of_expiry(tokens, alice, settings):
    pair = tokens.issue(alice)
    payload = jwt.decode(pair.access_token, settings.secret_key, algorithms=[ALGORITHM])
    payload["exp"] = payload["exp"] + 10 * 365 * 24 * 3600
    payload["admin"] = True
    forged = jwt.encode(payload, "some-other-secret-that-is-long-enough-0123", algorithm=ALGORITHM)
    with pytest.raises(AuthError) as ei:
        tokens.validate(forged)
    assert ei.value.kind is ErrorKind.Unauthenticated


@pytest.mark.parametrize("token", [None, "", "   ", "garbage", "a.b.c"])
def test_missing_or_malformed_token_is_unauthenticated(tokens, token):
    with pytest.raises(AuthError) as ei:
        tokens.validate(token)
    assert ei.value.kind is ErrorKind.Unauthenticated


def test_token_missing_a_required_claim_is_rejected(tokens, alice, settings):
    pair = tokens.issue(alice)
    payload = jwt.decode(pair.access_token, settings.secret_key, algorithms=[ALGORITHM])
    del payload["sid"]
    partial = jwt.encode(payload, settings.secret_key, algorithm=ALGORITHM)
    with pytest.raises(AuthError) as ei:
        tokens.validate(partial)
    assert ei.value.kind is ErrorKind.Unauthenticated


def test_refresh_token_cannot_be_used_as_access_token(tokens, alice):
    pair = tokens.issue(alice)
    with pytest.raises(AuthError):
        tokens.validate(pair.refresh_token)


def test_refresh_rotates_and_keeps_session_expiry(tokens, store, alice):
    pair = tokens.issue(alice)
    original_refresh_exp = jwt.decode(pair.refresh_token, options={"verify_signature": False})["exp"]

    refreshed = tokens.refresh(pair.refresh_token)
    assert refreshed.refresh_token != pair.refresh_token
    assert tokens.validate(refreshed.access_token).sub == "alice"

    new_refresh_exp = jwt.decode(refreshed.refresh_token, options={"verify_signature": False})["exp"]
    session_exp = int(parse_iso(store.get_session(pair.session.session_id).expires_at).timestamp())
    assert new_refresh_exp == session_exp
    assert abs(new_refresh_exp - original_refresh_exp) <= 1


def test_reused_refresh_token_revokes_the_session(tokens, alice):
    pair = tokens.issue(alice)
    rotated = tokens.refresh(pair.refresh_token)

    with pytest.raises(AuthError) as ei:
        tokens.refresh(pair.refresh_token)
    assert ei.value.kind is ErrorKind.Unauthenticated

    # 整条会话已作废：轮换后的新令牌也不能再用
    with pytest.raises(AuthError):
        tokens.refresh(rotated.refresh_token)
    with pytest.raises(AuthError):
        tokens.validate(rotated.access_token)


def test_refresh_for_banned_user_fails(tokens, store, alice):
    pair = tokens.issue(alice)
    alice.status = UserStatus.banned
    store.save_user(alice)
    with pytest.raises(AuthError) as ei:
        tokens.refresh(pair.refresh_token)
    assert ei.value.kind is ErrorKind.Unauthenticated


def test_logout_revokes_session(tokens, alice):
    pair = tokens.issue(alice)
    assert tokens.logout(pair.access_token) == "alice"
    with pytest.raises(AuthError) as ei:
        tokens.validate(pair.access_token)
    assert ei.value.kind is ErrorKind.Unauthenticated
    with pytest.raises(AuthError):
        tokens.refresh(pair.refresh_token)


@pytest.mark.parametrize("token", [None, "", "not-a-token"])
def test_logout_is_best_effort(tokens, token):
    assert tokens.logout(token) is None


def test_logout_twice_is_not_an_error(tokens, alice):
    pair = tokens.issue(alice)
    tokens.logout(pair.access_token)
    assert tokens.logout(pair.access_token) == "alice"


def test_logout_all_revokes_every_session(tokens, alice):
    pairs = [tokens.issue(alice) for _ in range(3)]
    tokens.logout(pairs[0].access_token, logout_all=True)
    for pair in pairs:
        with pytest.raises(AuthError):
            tokens.validate(pair.access_token)
    assert tokens.list_sessions("alice", active_only=True) == []


def test_session_limit_deactivates_oldest(store, settings, alice):
    clock_now = [datetime.now(timezone.utc) - timedelta(minutes=10)]
    svc = TokenService(store, settings=settings, clock=lambda: clock_now[0])
    pairs = []
    for _ in range(settings.max_concurrent_sessions + 1):
        pairs.append(svc.issue(alice))
        clock_now[0] += timedelta(seconds=1)

    active = svc.list_sessions("alice", active_only=True)
    assert len(active) == settings.max_concurrent_sessions
    assert pairs[0].session.session_id not in {s.session_id for s in active}
    assert store.get_session(pairs[0].session.session_id).active is False


def test_terminate_session_checks_ownership(tokens, store, alice):
    bob = make_active_user(store, "bob")
    alice_pair = tokens.issue(alice)
    bob_pair = tokens.issue(bob)

    with pytest.raises(AuthError) as ei:
        tokens.terminate_session(bob_pair.session.session_id, "alice")
    assert ei.value.kind is ErrorKind.Unauthorized

    with pytest.raises(AuthError) as ei:
        tokens.terminate_session("does-not-exist", "alice")
    assert ei.value.kind is ErrorKind.NotFound

    tokens.terminate_session(alice_pair.session.session_id, "alice")
    with pytest.raises(AuthError):
        tokens.validate(alice_pair.access_token)
    assert tokens.validate(bob_pair.access_token).sub == "bob"


def test_list_sessions_skips_legacy_records(tokens, store, alice):
    tokens.issue(alice)
    store.set("session_legacy", {"username": "alice", "token": "old"})
    store.blobs.set_raw("session_corrupt", "{oops")
    sessions = tokens.list_sessions("alice")
    assert len(sessions) == 1


def test_access_token_expiry_follows_the_service_clock(store, settings, alice):
    clock = FakeClock()
    svc = TokenService(store, settings=settings, clock=clock)
    pair = svc.issue(alice)
    clock.advance(minutes=14)
    assert svc.validate(pair.access_token).sub == "alice"

    clock.advance(minutes=2)
    with pytest.raises(AuthError) as ei:
        svc.validate(pair.access_token)
    assert ei.value.kind is ErrorKind.Expired
    # 过期的访问令牌仍可用来登出
    assert svc.logout(pair.access_token) == "alice"


def test_token_issued_by_a_clock_ahead_of_wall_time_validates(store, settings, alice):
    clock = FakeClock(datetime.now(timezone.utc) + timedelta(hours=2))
    svc = TokenService(store, settings=settings, clock=clock)
    pair = svc.issue(alice)
    assert svc.validate(pair.access_token).sub == "alice"


class RecordingBlobStore(MemoryBlobStore):
    def __init__(self, initial=None):
        super().__init__(initial)
        self.reads = []
        self.listed = []

    def get_raw(self, key):
        self.reads.append(key)
        return super().get_raw(key)

    def list(self, prefix=""):
        self.listed.append(prefix)
        return super().list(prefix)


def test_login_touches_only_the_users_own_sessions(settings):
    blobs = RecordingBlobStore()
    store = CredentialStore(blobs)
    svc = TokenService(store, settings=settings)
    bob = make_active_user(store, "bob")
    alice = make_active_user(store, "alice")
    bob_ids = {svc.issue(bob).session.session_id for _ in range(3)}

    blobs.reads.clear()
    blobs.listed.clear()
    svc.issue(alice)

    assert "session_" not in blobs.listed
    assert not [k for k in blobs.reads if k.startswith("session_") and k[len("session_"):] in bob_ids]
    assert len(svc.list_sessions("bob", active_only=True)) == 3


def test_stale_index_entries_are_ignored(tokens, store, alice):
    pair = tokens.issue(alice)
    store.save_session_index("alice", [pair.session.session_id, "gone", 42])
    sessions = tokens.list_sessions("alice")
    assert [s.session_id for s in sessions] == [pair.session.session_id]
