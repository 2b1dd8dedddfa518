"""
IMAP Client Wrapper
===================

Synchronous IMAP access for the draft store. Every call here blocks; the
async store runs them in a worker thread one at a time (INV-GLOBAL-05).

CONSTITUTIONAL INVARIANTS:
- INV-GLOBAL-02: No send capability
- INV-GLOBAL-04: No logging of message bodies or raw sources
- Listing and fetching never set \\Seen (BODY.PEEK, readonly select)
"""

from __future__ import annotations

import email
import email.utils
import re
from datetime import datetime
from typing import TYPE_CHECKING

from imapclient import IMAPClient

from contracts import (
    ArtifactSummary,
    AuthFailedError,
    ConnectionFailedError,
    ConnectionStatus,
    EmailProtocol,
    FolderInfo,
    FolderNotFoundError,
    MessageNotFoundError,
    NotConnectedError,
)
from src.draft_mcp.compose import decode_header_value, normalize_stable_id

if TYPE_CHECKING:
    from src.draft_mcp.credentials import Credentials

SUMMARY_HEADERS = "MESSAGE-ID SUBJECT FROM TO DATE"
MESSAGE_ID_FIELD = "BODY.PEEK[HEADER.FIELDS (MESSAGE-ID)]"
RECENT_UID_WINDOW = 50
DRAFT_FLAGS = (b"\\Draft", b"\\Seen")

_APPENDUID_RE = re.compile(rb"APPENDUID\s+(\d+)\s+(\d+)", re.IGNORECASE)


class EmailIMAPClient:
    """
    Draft-capable IMAP client.

    This class intentionally does NOT implement:
    - send/reply/forward (INV-GLOBAL-02)
    """

    def __init__(self) -> None:
        self._client: IMAPClient | None = None
        self._server: str = ""
        self._connected: bool = False
        self._start_time: datetime | None = None

    @property
    def connected(self) -> bool:
        """Check if connected to server."""
        return self._connected and self._client is not None

    def connect(self, credentials: Credentials) -> None:
        """
        Connect and authenticate to IMAP server.

        POST: IMAP connection established and authenticated
        """
        try:
            self._client = IMAPClient(
                credentials.server,
                port=credentials.port,
                ssl=credentials.use_ssl,
            )
            self._server = credentials.server
        except Exception as e:
            raise ConnectionFailedError(f"Failed to connect: {e}") from e

        try:
            self._client.login(credentials.username, credentials.password)
            self._connected = True
            self._start_time = datetime.now()
        except Exception as e:
            self._client = None
            raise AuthFailedError(f"Authentication failed: {e}") from e

    def disconnect(self) -> None:
        """Disconnect from server."""
        if self._client:
            try:
                self._client.logout()
            except Exception:
                pass
            finally:
                self._client = None
                self._connected = False

    def _require_connection(self) -> IMAPClient:
        """Ensure connected, raise NotConnectedError if not."""
        if not self._connected or self._client is None:
            raise NotConnectedError("Not connected to mail server")
        return self._client

    def _select(self, folder: str, *, readonly: bool) -> dict:
        client = self._require_connection()
        try:
            return client.select_folder(folder, readonly=readonly)
        except Exception as e:
            raise FolderNotFoundError(f"Folder not found: {folder}") from e

    def get_status(self) -> ConnectionStatus:
        """Honest connection state; never raises."""
        uptime = 0
        if self._start_time and self._connected:
            uptime = int((datetime.now() - self._start_time).total_seconds())

        return ConnectionStatus(
            connected=self._connected,
            protocol=EmailProtocol.IMAP,
            server=self._server,
            uptime_seconds=uptime,
        )

    def list_folders(self) -> list[FolderInfo]:
        """List all mailbox folders with counts. No server state modified."""
        client = self._require_connection()

        folders = []
        for _flags, _delimiter, name in client.list_folders():
            try:
                status = client.folder_status(name, ["MESSAGES", "UNSEEN", "UIDVALIDITY"])
                folders.append(
                    FolderInfo(
                        name=name,
                        message_count=status.get(b"MESSAGES", 0),
                        unread_count=status.get(b"UNSEEN", 0),
                        uidvalidity=status.get(b"UIDVALIDITY", 0),
                    )
                )
            except Exception:
                # Skip folders we can't access
                continue

        return folders

    def list_recent(self, folder: str, limit: int) -> list[ArtifactSummary]:
        """
        Headers of the `limit` highest UIDs in folder, most recent first.

        Only header fields are fetched; bodies never leave the server here.
        """
        client = self._require_connection()
        selected = self._select(folder, readonly=True)

        if limit <= 0:
            return []
        uids = self._recent_uids(client, selected, limit)
        if not uids:
            return []
        return self._summaries(client, folder, uids)

    def _recent_uids(self, client: IMAPClient, selected: dict, limit: int) -> list[int]:
        """
        Highest `limit` UIDs, searched in a window below UIDNEXT that widens
        until it holds enough. Repeated scans never search the whole folder
        while recent items are dense.
        """
        if selected.get(b"EXISTS") == 0:
            return []
        uidnext = selected.get(b"UIDNEXT")
        if not uidnext:
            return sorted(client.search(["ALL"]))[-limit:]

        window = max(limit * 2, RECENT_UID_WINDOW)
        while True:
            low = max(int(uidnext) - window, 1)
            uids = sorted(client.search(["UID", f"{low}:*"]))
            if len(uids) >= limit or low == 1:
                return uids[-limit:]
            window *= 4

    def list_unread(self, folder: str, limit: int) -> list[ArtifactSummary]:
        """Headers of the `limit` most recent messages without \\Seen."""
        client = self._require_connection()
        self._select(folder, readonly=True)

        uids = sorted(client.search(["UNSEEN"]))
        if limit <= 0 or not uids:
            return []
        return self._summaries(client, folder, uids[-limit:])

    def search(self, folder: str, query: str, limit: int) -> list[ArtifactSummary]:
        """Full-text search in one folder, most recent first."""
        client = self._require_connection()
        self._select(folder, readonly=True)

        uids = sorted(client.search(["TEXT", query], charset="UTF-8"))
        if not uids:
            return []
        return self._summaries(client, folder, uids[-limit:])

    def find_uid(self, folder: str, stable_id: str) -> int | None:
        """UID of the artifact whose Message-ID is exactly stable_id, or None."""
        client = self._require_connection()
        self._select(folder, readonly=True)

        wanted = normalize_stable_id(stable_id)
        if not wanted:
            return None
        uids = client.search(["HEADER", "Message-ID", wanted])
        if not uids:
            return None

        # HEADER search matches substrings; confirm against the header itself
        fetch_data = client.fetch(uids, [MESSAGE_ID_FIELD])
        exact = [uid for uid, data in fetch_data.items() if _message_id(data) == wanted]
        return max(exact) if exact else None

    def find(self, folder: str, stable_id: str) -> ArtifactSummary | None:
        uid = self.find_uid(folder, stable_id)
        if uid is None:
            return None
        summaries = self._summaries(self._require_connection(), folder, [uid])
        return summaries[0] if summaries else None

    def fetch_raw(self, folder: str, stable_id: str) -> bytes:
        """Full RFC822 source without setting \\Seen."""
        uid = self._require_uid(folder, stable_id)
        client = self._require_connection()
        data = client.fetch([uid], ["BODY.PEEK[]"]).get(uid, {})
        raw = data.get(b"BODY[]")
        if raw is None:
            raise MessageNotFoundError(f"Message not found: {stable_id}")
        return raw

    def append_draft(self, folder: str, message: bytes) -> int | None:
        """
        Append a draft. Returns the new UID when the server reports
        APPENDUID (UIDPLUS), None otherwise.
        """
        client = self._require_connection()
        response = client.append(folder, message, flags=DRAFT_FLAGS)
        return parse_append_uid(response)

    def delete(self, folder: str, stable_id: str) -> None:
        """Flag \\Deleted and expunge exactly that UID."""
        uid = self._require_uid(folder, stable_id)
        client = self._require_connection()
        self._select(folder, readonly=False)
        client.delete_messages([uid])
        client.expunge([uid])

    def set_read(self, folder: str, stable_id: str, read: bool) -> None:
        """Add or remove \\Seen. No other flag is touched."""
        uid = self._require_uid(folder, stable_id)
        client = self._require_connection()
        self._select(folder, readonly=False)
        if read:
            client.add_flags([uid], [b"\\Seen"])
        else:
            client.remove_flags([uid], [b"\\Seen"])

    def move(self, folder: str, stable_id: str, destination: str) -> None:
        """Move exactly that UID; COPY + delete + expunge without the MOVE extension."""
        uid = self._require_uid(folder, stable_id)
        client = self._require_connection()
        if not client.folder_exists(destination):
            raise FolderNotFoundError(f"Folder not found: {destination}")
        self._select(folder, readonly=False)
        if client.has_capability("MOVE"):
            client.move([uid], destination)
        else:
            client.copy([uid], destination)
            client.delete_messages([uid])
            client.expunge([uid])

    def _require_uid(self, folder: str, stable_id: str) -> int:
        uid = self.find_uid(folder, stable_id)
        if uid is None:
            raise MessageNotFoundError(f"Message not found: {stable_id}")
        return uid

    def _summaries(self, client: IMAPClient, folder: str, uids: list[int]) -> list[ArtifactSummary]:
        fetch_data = client.fetch(
            uids, ["FLAGS", "INTERNALDATE", f"BODY.PEEK[HEADER.FIELDS ({SUMMARY_HEADERS})]"]
        )
        summaries = []
        for uid, data in fetch_data.items():
            summary = self._parse_summary(folder, uid, data)
            if summary:
                summaries.append(summary)

        summaries.sort(key=lambda s: (s.date or datetime.min, s.backend_id), reverse=True)
        return summaries

    def _parse_summary(self, folder: str, uid: int, data: dict) -> ArtifactSummary | None:
        """Parse a header-only fetch into ArtifactSummary."""
        header_bytes = _header_bytes(data)
        if header_bytes is None:
            return None

        msg = email.message_from_bytes(header_bytes)
        flags = [f.decode() if isinstance(f, bytes) else f for f in data.get(b"FLAGS", [])]

        date = data.get(b"INTERNALDATE")
        if date is None:
            try:
                date = email.utils.parsedate_to_datetime(msg.get("Date", ""))
            except (TypeError, ValueError):
                date = None
        if date is not None and date.tzinfo is not None:
            date = date.replace(tzinfo=None)

        stable_id = normalize_stable_id(msg.get("Message-ID")) or f"{uid}@unknown"
        return ArtifactSummary(
            stable_id=stable_id,
            backend_id=uid,
            folder=folder,
            subject=decode_header_value(msg.get("Subject")),
            author=decode_header_value(msg.get("From")),
            recipients=decode_header_value(msg.get("To")),
            date=date,
            read="\\Seen" in flags,
        )


def parse_append_uid(response: bytes | str | None) -> int | None:
    """UID from an APPEND response like b'[APPENDUID 1234 56] APPEND completed'."""
    if not response:
        return None
    if isinstance(response, str):
        response = response.encode()
    match = _APPENDUID_RE.search(response)
    return int(match.group(2)) if match else None


def _header_bytes(data: dict) -> bytes | None:
    return next(
        (value for key, value in data.items() if key.startswith(b"BODY[HEADER")), None
    )


def _message_id(data: dict) -> str:
    header_bytes = _header_bytes(data)
    if header_bytes is None:
        return ""
    return normalize_stable_id(email.message_from_bytes(header_bytes).get("Message-ID"))
