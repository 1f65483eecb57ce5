from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from typing import Callable, Dict

from .errors import ErrorKind, MediatorError, not_found
from .models import RegistrationCode

log = logging.getLogger("companion.store")


class InMemoryCodeStore:
    """
    Pending registration codes for a single instance.

    Consumed codes are kept until they expire so that a replayed code keeps
    answering AlreadyConsumed instead of NotFound.
    """
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._codes: Dict[str, RegistrationCode] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def put(self, entry: RegistrationCode) -> bool:
        async with self._lock:
            existing = self._codes.get(entry.code)
            if existing and not existing.expired(self._clock()):
                return False
            self._codes[entry.code] = replace(entry)
            return True

    async def get(self, code: str) -> RegistrationCode:
        async with self._lock:
            rec = self._codes.get(code)
            if not rec or rec.expired(self._clock()):
                raise not_found()
            return replace(rec)

    async def mark_consumed(self, code: str) -> RegistrationCode:
        async with self._lock:
            rec = self._codes.get(code)
            if not rec:
                raise not_found()
            if rec.expired(self._clock()):
                raise MediatorError(ErrorKind.EXPIRED, "This code has expired. Request a new code on your device.")
            if rec.consumed:
                raise MediatorError(ErrorKind.ALREADY_CONSUMED, "This code has already been used.")
            rec.consumed = True
            return replace(rec)

    async def purge_expired(self) -> int:
        async with self._lock:
            now = self._clock()
            dead = [code for code, rec in self._codes.items() if rec.expired(now)]
            for code in dead:
                del self._codes[code]
        if dead:
            log.debug("code purge removed=%s", len(dead))
        return len(dead)

    def __len__(self) -> int:
        return len(self._codes)
