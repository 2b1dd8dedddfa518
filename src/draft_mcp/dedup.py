"""
Idempotency & Dedup Engine
==========================

Keeps retried mutating calls from producing duplicate artifacts.

POST-PENDING-01: add_if_absent is atomic insert-if-absent
INV-PENDING-01:  A token is present at most once
INV-CREATE-02:   admit() releases the token on success, exception and timeout
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import threading
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

from contracts import ArtifactStore, DraftMCPError, PendingStore
from src.draft_mcp.compose import make_stable_id, normalize_stable_id, sanitize_token

logger = logging.getLogger("draft-mcp.dedup")


def normalize_payload(payload: str) -> str:
    """CRLF/CR to LF, trailing whitespace per line dropped, blank edges trimmed."""
    text = (payload or "").replace("\r\n", "\n").replace("\r", "\n")
    return "\n".join(line.rstrip() for line in text.split("\n")).strip("\n")


def derive_token(
    kind: str, payload: str, *, target: str | None = None, idempotency_key: str | None = None
) -> str:
    """
    Token for one logical request.

    A caller key wins when it survives sanitizing. Otherwise the token is
    "{kind}-" plus 16 hex chars of SHA-256 over kind, target and the
    normalized payload, so equal requests map to equal tokens.
    """
    if idempotency_key:
        token = sanitize_token(idempotency_key)
        if token:
            return token
    material = "\x1f".join([kind, normalize_stable_id(target), normalize_payload(payload)])
    digest = hashlib.sha256(material.encode("utf-8")).hexdigest()[:16]
    return f"{kind}-{digest}"


class InMemoryPendingStore:
    """Process-wide pending set plus last resolved id per token."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: set[str] = set()
        self._results: dict[str, str] = {}

    def add_if_absent(self, token: str) -> bool:
        with self._lock:
            if token in self._pending:
                return False
            self._pending.add(token)
            return True

    def discard(self, token: str) -> None:
        with self._lock:
            self._pending.discard(token)

    def contains(self, token: str) -> bool:
        with self._lock:
            return token in self._pending

    def record_result(self, token: str, stable_id: str) -> None:
        with self._lock:
            self._results[token] = stable_id

    def recorded_result(self, token: str) -> str | None:
        with self._lock:
            return self._results.get(token)


@dataclass(frozen=True)
class Admission:
    token: str
    admitted: bool


class DedupEngine:
    """begin / exists / end over an injected PendingStore."""

    def __init__(
        self,
        store: ArtifactStore,
        pending: PendingStore | None = None,
        *,
        domain: str = "localhost",
        pending_wait_seconds: float = 10.0,
    ) -> None:
        self._store = store
        self.pending = pending if pending is not None else InMemoryPendingStore()
        self._domain = domain
        self.pending_wait_seconds = pending_wait_seconds
        self._settled: dict[str, asyncio.Event] = {}

    def stable_id_for(self, token: str) -> str:
        """Synthetic stable id embedding the token."""
        return make_stable_id(token, self._domain)

    def begin(self, token: str) -> Admission:
        admitted = self.pending.add_if_absent(token)
        if admitted:
            self._settled[token] = asyncio.Event()
        else:
            logger.info("Token %s already pending", token)
        return Admission(token=token, admitted=admitted)

    def end(self, token: str) -> None:
        self.pending.discard(token)
        event = self._settled.pop(token, None)
        if event is not None:
            event.set()

    def record(self, token: str, resolved_id: str) -> None:
        self.pending.record_result(token, normalize_stable_id(resolved_id))

    @asynccontextmanager
    async def admit(self, token: str) -> AsyncIterator[Admission]:
        admission = self.begin(token)
        try:
            yield admission
        finally:
            if admission.admitted:
                self.end(token)

    async def wait_settled(self, token: str, timeout: float | None = None) -> str | None:
        """Wait for an in-flight attempt on token, then return its recorded id."""
        event = self._settled.get(token)
        if event is not None:
            wait = self.pending_wait_seconds if timeout is None else timeout
            try:
                await asyncio.wait_for(event.wait(), timeout=max(wait, 0))
            except asyncio.TimeoutError:
                logger.info("Token %s still pending after %.1fs", token, wait)
        return self.pending.recorded_result(token)

    async def exists(self, token: str, folder: str) -> str | None:
        """
        Stable id of an artifact already produced for token, or None.

        Store lookup failures count as "not found".
        """
        recorded = self.pending.recorded_result(token)
        candidates = [recorded] if recorded else []
        synthetic = self.stable_id_for(token)
        if synthetic not in candidates:
            candidates.append(synthetic)

        for stable_id in candidates:
            try:
                found = await self._store.find(folder, stable_id)
            except (DraftMCPError, OSError) as e:
                logger.warning("Existence check for %s failed: %s", stable_id, e.__class__.__name__)
                continue
            if found is not None:
                return found.stable_id
        return None
