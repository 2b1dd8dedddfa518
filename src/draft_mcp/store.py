"""
IMAP Artifact Store
===================

Async adapter over EmailIMAPClient. The blocking client runs in a worker
thread behind one asyncio.Lock, so the process holds a single serialized
connection (INV-GLOBAL-05).

IMAP has no after-save notification channel: subscribe_saves returns None
and completion falls back to receipts (APPENDUID) and scanning.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, TypeVar

from imapclient.exceptions import IMAPClientError

from contracts import (
    ArtifactSummary,
    BackendUnavailableError,
    ConnectionStatus,
    DraftContent,
    DraftHeaders,
    FolderInfo,
    SaveEvent,
    SaveReceipt,
)
from src.draft_mcp.compose import (
    extract_body,
    extract_headers,
    normalize_stable_id,
    render_draft,
)
from src.draft_mcp.imap_client import EmailIMAPClient

logger = logging.getLogger("draft-mcp.store")

T = TypeVar("T")


class ImapArtifactStore:
    """ArtifactStore backed by a single IMAP connection."""

    def __init__(self, client: EmailIMAPClient, *, search_folder: str = "INBOX") -> None:
        self._client = client
        self._lock = asyncio.Lock()
        self._search_folder = search_folder

    @property
    def client(self) -> EmailIMAPClient:
        return self._client

    async def _call(self, func: Callable[..., T], *args: Any) -> T:
        async with self._lock:
            try:
                return await asyncio.to_thread(func, *args)
            except (IMAPClientError, OSError) as e:
                raise BackendUnavailableError(f"IMAP call failed: {e}") from e

    async def list_folders(self) -> list[FolderInfo]:
        return await self._call(self._client.list_folders)

    async def list_recent(self, folder: str, limit: int) -> list[ArtifactSummary]:
        items = await self._call(self._client.list_recent, folder, limit)
        logger.debug("Listed %d recent items in %s", len(items), folder)
        return items

    async def list_unread(self, folder: str, limit: int) -> list[ArtifactSummary]:
        return await self._call(self._client.list_unread, folder, limit)

    async def search(
        self, query: str, folder: str | None = None, limit: int = 50
    ) -> list[ArtifactSummary]:
        return await self._call(self._client.search, folder or self._search_folder, query, limit)

    async def find(self, folder: str, stable_id: str) -> ArtifactSummary | None:
        return await self._call(self._client.find, folder, normalize_stable_id(stable_id))

    async def fetch_raw(self, folder: str, stable_id: str) -> bytes:
        return await self._call(self._client.fetch_raw, folder, normalize_stable_id(stable_id))

    async def delete(self, folder: str, stable_id: str) -> None:
        await self._call(self._client.delete, folder, normalize_stable_id(stable_id))
        logger.info("Deleted %s from %s", stable_id, folder)

    async def set_read(self, folder: str, stable_id: str, read: bool) -> None:
        await self._call(self._client.set_read, folder, normalize_stable_id(stable_id), read)

    async def move(self, folder: str, stable_id: str, destination: str) -> None:
        await self._call(self._client.move, folder, normalize_stable_id(stable_id), destination)
        logger.info("Moved %s from %s to %s", stable_id, folder, destination)

    async def append(self, folder: str, message: bytes) -> int | None:
        return await self._call(self._client.append_draft, folder, message)

    async def open_compose(
        self, folder: str, *, target_stable_id: str | None = None
    ) -> ImapComposeSession:
        session = ImapComposeSession(self, folder, target_stable_id=target_stable_id)
        if target_stable_id:
            await session.load()
        return session

    def subscribe_saves(self, folder: str) -> asyncio.Queue[SaveEvent] | None:
        return None

    def unsubscribe_saves(self, folder: str, queue: asyncio.Queue[SaveEvent]) -> None:
        return None

    def status(self) -> ConnectionStatus:
        return self._client.get_status()


class ImapComposeSession:
    """
    Compose surface for IMAP: editing happens locally, save APPENDs a new
    message. A revised draft is therefore always a new artifact and the
    caller reconciles the original.
    """

    def __init__(
        self, store: ImapArtifactStore, folder: str, *, target_stable_id: str | None = None
    ) -> None:
        self._store = store
        self._folder = folder
        self._target = normalize_stable_id(target_stable_id) or None
        self._content = DraftContent(headers=DraftHeaders(), body="")
        self._closed = False

    async def load(self) -> None:
        raw = await self._store.fetch_raw(self._folder, self._target)
        body = extract_body(raw)
        self._content = DraftContent(
            headers=extract_headers(raw),
            body=body.editable(),
            is_html=body.is_html,
            message_id=self._target,
        )

    async def current_content(self) -> DraftContent:
        return self._content

    async def set_content(self, content: DraftContent) -> None:
        self._content = content

    async def save(self) -> SaveReceipt | None:
        uid = await self._store.append(self._folder, render_draft(self._content))
        if uid is None:
            logger.debug("APPEND to %s returned no APPENDUID", self._folder)
            return None
        return SaveReceipt(stable_id=self._content.message_id, backend_id=uid)

    async def close(self) -> None:
        self._closed = True
