import asyncio

import pytest

from companion.code_store import InMemoryCodeStore
from companion.errors import ErrorKind, MediatorError
from companion.models import RegistrationCode, Session, SessionStatus, TokenGrant
from companion.session_store import InMemorySessionStore


def _code(clock, code="ABC123", ttl=600):
    return RegistrationCode(
        code=code,
        product_id="prod-1",
        device_serial="dsn-42",
        session_id="s1",
        created_at=clock(),
        expires_at=clock() + ttl,
    )


def _session(clock, sid="s1", nonce="nonce-1", ttl=900):
    return Session(
        session_id=sid,
        state_nonce=nonce,
        product_id="prod-1",
        device_serial="dsn-42",
        created_at=clock(),
        expires_at=clock() + ttl,
    )


# ---------------------------------------------------------------------
# Code store
# ---------------------------------------------------------------------

async def test_code_put_refuses_live_duplicate(clock):
    store = InMemoryCodeStore(clock=clock)
    assert await store.put(_code(clock))
    assert not await store.put(_code(clock))

    clock.advance(601)
    assert await store.put(_code(clock))


async def test_code_mark_consumed_once(clock):
    store = InMemoryCodeStore(clock=clock)
    await store.put(_code(clock))

    rec = await store.mark_consumed("ABC123")
    assert rec.consumed

    with pytest.raises(MediatorError) as exc:
        await store.mark_consumed("ABC123")
    assert exc.value.kind is ErrorKind.ALREADY_CONSUMED


async def test_code_concurrent_consume_single_winner(clock):
    store = InMemoryCodeStore(clock=clock)
    await store.put(_code(clock))

    results = await asyncio.gather(*(store.mark_consumed("ABC123") for _ in range(5)), return_exceptions=True)
    winners = [r for r in results if isinstance(r, RegistrationCode)]
    losers = [r for r in results if isinstance(r, MediatorError)]
    assert len(winners) == 1
    assert all(e.kind is ErrorKind.ALREADY_CONSUMED for e in losers)


async def test_code_expired_is_invisible_before_purge(clock):
    store = InMemoryCodeStore(clock=clock)
    await store.put(_code(clock))
    clock.advance(600)

    with pytest.raises(MediatorError) as exc:
        await store.get("ABC123")
    assert exc.value.kind is ErrorKind.NOT_FOUND

    with pytest.raises(MediatorError) as exc:
        await store.mark_consumed("ABC123")
    assert exc.value.kind is ErrorKind.EXPIRED
    assert len(store) == 1


async def test_code_purge_keeps_consumed_until_expiry(clock):
    store = InMemoryCodeStore(clock=clock)
    await store.put(_code(clock))
    await store.mark_consumed("ABC123")

    assert await store.purge_expired() == 0
    clock.advance(601)
    assert await store.purge_expired() == 1
    assert len(store) == 0


# ---------------------------------------------------------------------
# Session store
# ---------------------------------------------------------------------

async def test_session_get_returns_copy(clock):
    store = InMemorySessionStore(clock=clock)
    await store.put(_session(clock))

    s = await store.get("s1")
    s.status = SessionStatus.FAILED
    assert (await store.get("s1")).status is SessionStatus.PENDING


async def test_session_find_by_nonce(clock):
    store = InMemorySessionStore(clock=clock)
    await store.put(_session(clock))

    assert (await store.find_by_nonce("nonce-1")).session_id == "s1"
    with pytest.raises(MediatorError) as exc:
        await store.find_by_nonce("other")
    assert exc.value.kind is ErrorKind.INVALID_STATE


async def test_session_update_status_applies_transition(clock):
    store = InMemorySessionStore(clock=clock)
    await store.put(_session(clock))

    def authorize(s):
        s.authorize(TokenGrant(access_token="tok1", refresh_token="ref1", expires_in=3600), clock())
        return s

    updated = await store.update_status("s1", authorize)
    assert updated.status is SessionStatus.AUTHORIZED
    assert updated.token_expires_at == clock() + 3600


async def test_session_update_aborted_transition_leaves_record(clock):
    store = InMemorySessionStore(clock=clock)
    await store.put(_session(clock))

    def boom(s):
        s.status = SessionStatus.FAILED
        raise MediatorError(ErrorKind.INVALID_SESSION_STATE, "no")

    with pytest.raises(MediatorError):
        await store.update_status("s1", boom)
    assert (await store.get("s1")).status is SessionStatus.PENDING


async def test_session_terminal_status_is_final(clock):
    store = InMemorySessionStore(clock=clock)
    await store.put(_session(clock))

    def fail(s):
        s.fail("idp_exchange_failed")
        return s

    await store.update_status("s1", fail)

    def reopen(s):
        s.status = SessionStatus.PENDING
        return s

    with pytest.raises(MediatorError) as exc:
        await store.update_status("s1", reopen)
    assert exc.value.kind is ErrorKind.INVALID_SESSION_STATE


async def test_session_expired_update_marks_expired(clock):
    store = InMemorySessionStore(clock=clock)
    await store.put(_session(clock))
    clock.advance(900)

    with pytest.raises(MediatorError) as exc:
        await store.update_status("s1", lambda s: s)
    assert exc.value.kind is ErrorKind.NOT_FOUND
    assert store._sessions["s1"].status is SessionStatus.EXPIRED

    with pytest.raises(MediatorError) as exc:
        await store.get("s1")
    assert exc.value.kind is ErrorKind.NOT_FOUND


async def test_session_purge_drops_nonce_index(clock):
    store = InMemorySessionStore(clock=clock)
    await store.put(_session(clock))
    await store.put(_session(clock, sid="s2", nonce="nonce-2", ttl=5000))
    clock.advance(901)

    assert await store.purge_expired() == 1
    assert len(store) == 1
    assert store.count_by_status() == {"pending": 1}
    with pytest.raises(MediatorError):
        await store.find_by_nonce("nonce-1")
