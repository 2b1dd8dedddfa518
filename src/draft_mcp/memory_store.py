"""
In-Memory Artifact Store
========================

Process-local backend for local runs and tests. MemoryBackendBehavior
switches on each way a real save can be weakly observable: no receipt,
delayed visibility, rewritten ids, mis-keyed events, in-place revision,
failing delete.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from contracts import (
    ArtifactSummary,
    BackendUnavailableError,
    ConnectionStatus,
    DraftContent,
    DraftHeaders,
    EmailProtocol,
    FolderInfo,
    FolderNotFoundError,
    MessageNotFoundError,
    SaveEvent,
    SaveReceipt,
)
from src.draft_mcp.compose import (
    decode_header_value,
    extract_body,
    extract_headers,
    normalize_stable_id,
    parse_message,
    render_draft,
)


@dataclass
class MemoryBackendBehavior:
    """Knobs for simulating an unreliable save entry point."""

    return_receipts: bool = True
    emit_events: bool = False
    event_stable_id_override: str | None = None
    visibility_delay: int = 0  # listings before a saved item shows up in them
    honor_message_id: bool = True
    revise_in_place: bool = False
    fail_save: bool = False
    fail_delete: bool = False
    save_latency: float = 0.0


@dataclass
class _StoredArtifact:
    stable_id: str
    uid: int
    raw: bytes
    date: datetime
    read: bool = False
    visible_from: int = 0


@dataclass
class _Folder:
    name: str
    uidvalidity: int
    items: dict[int, _StoredArtifact] = field(default_factory=dict)


class InMemoryArtifactStore:
    """ArtifactStore keeping RFC822 sources in dicts."""

    def __init__(
        self,
        folders: tuple[str, ...] = ("INBOX", "Drafts"),
        *,
        behavior: MemoryBackendBehavior | None = None,
        domain: str = "memory.invalid",
    ) -> None:
        self.behavior = behavior or MemoryBackendBehavior()
        self._domain = domain
        self._folders = {
            name: _Folder(name=name, uidvalidity=index + 1) for index, name in enumerate(folders)
        }
        self._uids = itertools.count(1)
        self._clock = datetime(2024, 1, 1, 9, 0, 0)
        self._list_calls = 0
        self._subscribers: dict[str, list[asyncio.Queue[SaveEvent]]] = {}
        self._started = time.monotonic()
        self.save_count = 0
        self.list_limits: list[int] = []
        self.deleted: list[str] = []
        self.saved: list[DraftContent] = []

    # -- seeding / inspection -------------------------------------------------

    def add_message(self, folder: str, raw: bytes, *, read: bool = False) -> ArtifactSummary:
        """Insert a message as if it had been delivered; visible immediately."""
        msg = parse_message(raw)
        uid = next(self._uids)
        stable_id = normalize_stable_id(msg.get("Message-ID")) or f"{uid}@{self._domain}"
        artifact = _StoredArtifact(
            stable_id=stable_id, uid=uid, raw=raw, date=self._tick(), read=read
        )
        self._folder(folder).items[uid] = artifact
        return self._summary(folder, artifact)

    def add_draft(self, folder: str, content: DraftContent) -> ArtifactSummary:
        return self.add_message(folder, render_draft(content), read=True)

    def all_items(self, folder: str) -> list[ArtifactSummary]:
        """Every stored item regardless of visibility, most recent first."""
        items = sorted(self._folder(folder).items.values(), key=lambda a: a.uid, reverse=True)
        return [self._summary(folder, a) for a in items]

    def raw_of(self, folder: str, stable_id: str) -> bytes:
        return self._lookup(folder, stable_id).raw

    # -- ArtifactStore --------------------------------------------------------

    async def list_folders(self) -> list[FolderInfo]:
        return [
            FolderInfo(
                name=f.name,
                message_count=len(f.items),
                unread_count=sum(1 for a in f.items.values() if not a.read),
                uidvalidity=f.uidvalidity,
            )
            for f in self._folders.values()
        ]

    async def list_recent(self, folder: str, limit: int) -> list[ArtifactSummary]:
        self._list_calls += 1
        self.list_limits.append(limit)
        visible = [a for a in self._folder(folder).items.values() if self._visible(a)]
        visible.sort(key=lambda a: a.uid, reverse=True)
        return [self._summary(folder, a) for a in visible[: max(limit, 0)]]

    async def list_unread(self, folder: str, limit: int) -> list[ArtifactSummary]:
        unread = [a for a in self._folder(folder).items.values() if not a.read and self._visible(a)]
        unread.sort(key=lambda a: a.uid, reverse=True)
        return [self._summary(folder, a) for a in unread[: max(limit, 0)]]

    async def search(
        self, query: str, folder: str | None = None, limit: int = 50
    ) -> list[ArtifactSummary]:
        needle = (query or "").lower()
        folders = [self._folder(folder)] if folder else list(self._folders.values())
        hits = []
        for f in folders:
            for artifact in f.items.values():
                if not self._visible(artifact):
                    continue
                msg = parse_message(artifact.raw)
                haystack = " ".join(
                    [
                        decode_header_value(msg.get("Subject")),
                        decode_header_value(msg.get("From")),
                        extract_body(artifact.raw).searchable(),
                    ]
                ).lower()
                if needle in haystack:
                    hits.append((f.name, artifact))
        hits.sort(key=lambda pair: pair[1].uid, reverse=True)
        return [self._summary(name, a) for name, a in hits[:limit]]

    async def find(self, folder: str, stable_id: str) -> ArtifactSummary | None:
        try:
            artifact = self._lookup(folder, stable_id)
        except MessageNotFoundError:
            return None
        return self._summary(folder, artifact)

    async def fetch_raw(self, folder: str, stable_id: str) -> bytes:
        return self._lookup(folder, stable_id).raw

    async def delete(self, folder: str, stable_id: str) -> None:
        if self.behavior.fail_delete:
            raise BackendUnavailableError("delete rejected by backend")
        artifact = self._lookup(folder, stable_id)
        del self._folder(folder).items[artifact.uid]
        self.deleted.append(artifact.stable_id)

    async def set_read(self, folder: str, stable_id: str, read: bool) -> None:
        self._lookup(folder, stable_id).read = read

    async def move(self, folder: str, stable_id: str, destination: str) -> None:
        target = self._folder(destination)
        artifact = self._lookup(folder, stable_id)
        del self._folder(folder).items[artifact.uid]
        # A moved message gets a new UID in its new folder, as on IMAP
        artifact.uid = next(self._uids)
        target.items[artifact.uid] = artifact

    async def open_compose(
        self, folder: str, *, target_stable_id: str | None = None
    ) -> MemoryComposeSession:
        content = DraftContent(headers=DraftHeaders(), body="")
        if target_stable_id:
            artifact = self._lookup(folder, target_stable_id)
            body = extract_body(artifact.raw)
            content = DraftContent(
                headers=extract_headers(artifact.raw),
                body=body.editable(),
                is_html=body.is_html,
                message_id=artifact.stable_id,
            )
        else:
            self._folder(folder)
        return MemoryComposeSession(
            self, folder, content, target_stable_id=normalize_stable_id(target_stable_id) or None
        )

    def subscribe_saves(self, folder: str) -> asyncio.Queue[SaveEvent] | None:
        if not self.behavior.emit_events:
            return None
        queue: asyncio.Queue[SaveEvent] = asyncio.Queue()
        self._subscribers.setdefault(folder, []).append(queue)
        return queue

    def unsubscribe_saves(self, folder: str, queue: asyncio.Queue[SaveEvent]) -> None:
        queues = self._subscribers.get(folder, [])
        if queue in queues:
            queues.remove(queue)

    def status(self) -> ConnectionStatus:
        return ConnectionStatus(
            connected=True,
            protocol=EmailProtocol.MEMORY,
            server="memory",
            uptime_seconds=int(time.monotonic() - self._started),
        )

    # -- save path ------------------------------------------------------------

    async def _save(self, folder: str, content: DraftContent, target: str | None) -> SaveReceipt | None:
        behavior = self.behavior
        if behavior.save_latency > 0:
            await asyncio.sleep(behavior.save_latency)
        if behavior.fail_save:
            raise BackendUnavailableError("save rejected by backend")
        self.saved.append(content)

        f = self._folder(folder)
        visible_from = self._list_calls + behavior.visibility_delay

        if behavior.revise_in_place and target:
            old = self._lookup(folder, target)
            del f.items[old.uid]
            stable_id = old.stable_id
        elif behavior.honor_message_id and content.message_id:
            stable_id = normalize_stable_id(content.message_id)
        else:
            stable_id = f"mem-{self.save_count + 1}-{next(self._uids)}@{self._domain}"

        uid = next(self._uids)
        stored = DraftContent(
            headers=content.headers,
            body=content.body,
            is_html=content.is_html,
            message_id=stable_id,
        )
        f.items[uid] = _StoredArtifact(
            stable_id=stable_id,
            uid=uid,
            raw=render_draft(stored, when=self._clock),
            date=self._tick(),
            read=True,
            visible_from=visible_from,
        )
        self.save_count += 1

        if behavior.emit_events:
            event = SaveEvent(folder=folder, stable_id=behavior.event_stable_id_override or stable_id)
            for queue in self._subscribers.get(folder, []):
                queue.put_nowait(event)

        if not behavior.return_receipts:
            return None
        return SaveReceipt(stable_id=stable_id, backend_id=uid)

    # -- helpers --------------------------------------------------------------

    def _folder(self, name: str) -> _Folder:
        try:
            return self._folders[name]
        except KeyError:
            raise FolderNotFoundError(f"Folder not found: {name}") from None

    def _visible(self, artifact: _StoredArtifact) -> bool:
        return self._list_calls >= artifact.visible_from

    def _lookup(self, folder: str, stable_id: str) -> _StoredArtifact:
        wanted = normalize_stable_id(stable_id)
        # Direct lookups see everything; only listings lag behind saves
        matches = [a for a in self._folder(folder).items.values() if a.stable_id == wanted]
        if not matches:
            raise MessageNotFoundError(f"Message not found: {stable_id}")
        return max(matches, key=lambda a: a.uid)

    def _tick(self) -> datetime:
        self._clock += timedelta(minutes=1)
        return self._clock

    def _summary(self, folder: str, artifact: _StoredArtifact) -> ArtifactSummary:
        msg = parse_message(artifact.raw)
        return ArtifactSummary(
            stable_id=artifact.stable_id,
            backend_id=artifact.uid,
            folder=folder,
            subject=decode_header_value(msg.get("Subject")),
            author=decode_header_value(msg.get("From")),
            recipients=decode_header_value(msg.get("To")),
            date=artifact.date,
            read=artifact.read,
        )


class MemoryComposeSession:
    """Compose session whose save is routed through the store's behavior."""

    def __init__(
        self,
        store: InMemoryArtifactStore,
        folder: str,
        content: DraftContent,
        *,
        target_stable_id: str | None = None,
    ) -> None:
        self._store = store
        self._folder = folder
        self._content = content
        self._target = target_stable_id
        self.closed = False

    async def current_content(self) -> DraftContent:
        return self._content

    async def set_content(self, content: DraftContent) -> None:
        self._content = content

    async def save(self) -> SaveReceipt | None:
        return await self._store._save(self._folder, self._content, self._target)

    async def close(self) -> None:
        self.closed = True
