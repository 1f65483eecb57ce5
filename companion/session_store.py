from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from dataclasses import replace
from typing import Callable, Dict

from .errors import ErrorKind, MediatorError, not_found
from .models import Session, SessionStatus

log = logging.getLogger("companion.store")

Transition = Callable[[Session], Session]


class InMemorySessionStore:
    """
    In-flight and completed authorization sessions for a single instance.

    Readers always get copies; the only way to change a stored session is
    update_status(), which runs the transition under that session's lock.
    """
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._sessions: Dict[str, Session] = {}
        self._by_nonce: Dict[str, str] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._clock = clock

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    async def put(self, session: Session) -> None:
        async with self._lock_for(session.session_id):
            self._sessions[session.session_id] = replace(session)
            self._by_nonce[session.state_nonce] = session.session_id

    async def get(self, session_id: str) -> Session:
        rec = self._sessions.get(session_id)
        if not rec or rec.expired(self._clock()):
            raise not_found()
        return replace(rec)

    async def find_by_nonce(self, nonce: str) -> Session:
        sid = self._by_nonce.get(nonce or "")
        rec = self._sessions.get(sid) if sid else None
        if not rec or rec.expired(self._clock()):
            raise MediatorError(ErrorKind.INVALID_STATE, "The authorization response does not match any pending request.")
        return replace(rec)

    async def update_status(self, session_id: str, transition: Transition) -> Session:
        async with self._lock_for(session_id):
            rec = self._sessions.get(session_id)
            if not rec:
                raise not_found()
            if rec.expired(self._clock()):
                if rec.status is SessionStatus.PENDING:
                    rec.expire()
                    log.info("session expired sid=%s", session_id)
                raise not_found()

            updated = transition(replace(rec))
            if rec.status.terminal and updated.status is not rec.status:
                raise MediatorError(ErrorKind.INVALID_SESSION_STATE, "This authorization request has already completed.")
            self._sessions[session_id] = replace(updated)
            return replace(updated)

    async def purge_expired(self) -> int:
        now = self._clock()
        dead = [sid for sid, rec in self._sessions.items() if rec.expired(now)]
        for sid in dead:
            async with self._lock_for(sid):
                rec = self._sessions.pop(sid, None)
                if rec is None:
                    continue
                if rec.status is SessionStatus.PENDING:
                    rec.expire()
                    log.info("session expired sid=%s", sid)
                self._by_nonce.pop(rec.state_nonce, None)
            self._locks.pop(sid, None)
        if dead:
            log.debug("session purge removed=%s", len(dead))
        return len(dead)

    def count_by_status(self) -> Dict[str, int]:
        counts = Counter(rec.status.value for rec in self._sessions.values())
        return dict(counts)

    def __len__(self) -> int:
        return len(self._sessions)
