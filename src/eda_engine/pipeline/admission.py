from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Protocol


class AdmissionPolicy(Protocol):
    """Gate around the container-bound part of a pipeline."""

    def slot(self) -> "AsyncSlot": ...


class AsyncSlot(Protocol):
    async def __aenter__(self) -> None: ...

    async def __aexit__(self, *exc: object) -> Optional[bool]: ...


class UnboundedAdmission:
    """Admit every job immediately."""

    @asynccontextmanager
    async def _slot(self) -> AsyncIterator[None]:
        yield

    def slot(self) -> AsyncSlot:
        return self._slot()


class BoundedAdmission:
    """At most `limit` jobs inside the gate at once; the rest wait in arrival order."""

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self.limit = limit
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._active = 0

    @property
    def active(self) -> int:
        return self._active

    @asynccontextmanager
    async def _slot(self) -> AsyncIterator[None]:
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.limit)
        async with self._semaphore:
            self._active += 1
            try:
                yield
            finally:
                self._active -= 1

    def slot(self) -> AsyncSlot:
        return self._slot()


def admission_from_limit(max_concurrent_jobs: Optional[int]) -> AdmissionPolicy:
    if max_concurrent_jobs is None:
        return UnboundedAdmission()
    return BoundedAdmission(max_concurrent_jobs)
