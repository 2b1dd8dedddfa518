"""
Draft MCP Server
================

MCP server exposing mail read tools and idempotent draft mutations.

CONSTITUTIONAL INVARIANTS ENFORCED:
- INV-GLOBAL-01: Tool results are structured; errors never escape as bare exceptions
- INV-GLOBAL-02: No send/forward methods exist; drafts only
- INV-GLOBAL-03: Credentials held in memory only
- INV-GLOBAL-04: No logging of message bodies or raw sources
- INV-GLOBAL-05: Single connection per process
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict
from datetime import datetime
from typing import Any, Awaitable, Callable

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from contracts import (
    ArtifactStore,
    ConnectionStatus,
    DraftHeaders,
    DraftMCPError,
    EmailProtocol,
    MutationRequest,
    NotConnectedError,
    OperationKind,
    PendingStore,
    ToolNotFoundError,
)
from src.draft_mcp.compose import (
    extract_body,
    extract_headers,
    normalize_stable_id,
)
from src.draft_mcp.config import Settings, get_settings
from src.draft_mcp.credentials import Credentials, retrieve_credentials
from src.draft_mcp.dedup import DedupEngine, InMemoryPendingStore
from src.draft_mcp.detector import CompletionDetector
from src.draft_mcp.imap_client import EmailIMAPClient
from src.draft_mcp.memory_store import InMemoryArtifactStore
from src.draft_mcp.orchestrator import MutationOrchestrator
from src.draft_mcp.store import ImapArtifactStore
from src.draft_mcp.tools import ToolDescriptor, ToolRegistry

logger = logging.getLogger("draft-mcp")


def serialize_result(result: Any) -> str:
    """Serialize result to JSON string."""

    def default_serializer(obj: Any) -> Any:
        if hasattr(obj, "__dataclass_fields__"):
            return asdict(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if hasattr(obj, "value"):  # Enum
            return obj.value
        raise TypeError(f"Cannot serialize {type(obj)}")

    return json.dumps(result, default=default_serializer, indent=2)


class DraftMCPServer:
    """
    Draft MCP Server - mail reads and confirmed draft mutations for agents.

    This class intentionally does NOT implement (adversarial test targets):
    - send, forward, transmit (INV-GLOBAL-02)
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        store: ArtifactStore | None = None,
        pending: PendingStore | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._settings = settings or get_settings()
        self._pending = pending if pending is not None else InMemoryPendingStore()
        self._sleep = sleep
        self._client: EmailIMAPClient | None = None
        self._store: ArtifactStore | None = None
        self._orchestrator: MutationOrchestrator | None = None
        self.registry = self._build_registry()
        self._server = Server("draft-mcp")
        self._setup_tools()
        if store is not None:
            self.attach_store(store)

    @property
    def drafts_folder(self) -> str:
        return self._settings.mail.drafts_folder

    # -------------------------------------------------------------------------
    # connection lifecycle
    # -------------------------------------------------------------------------

    def connect(self, credentials: Credentials) -> None:
        """
        Initialize the IMAP connection with credentials.

        INV-GLOBAL-05: Single connection per process
        """
        if self._client is not None or self._store is not None:
            raise RuntimeError("Connection already established (INV-GLOBAL-05)")

        client = EmailIMAPClient()
        client.connect(credentials)
        self._client = client
        self.attach_store(
            ImapArtifactStore(client, search_folder=self._settings.mail.inbox_folder),
            from_address=credentials.from_address,
            own_address=credentials.username,
            domain=self._settings.mail.draft_domain or credentials.domain,
        )
        logger.info("Connected to mail server")  # No credentials logged (INV-GLOBAL-03)

    def connect_from_settings(self) -> None:
        """Bootstrap the configured backend."""
        if self._settings.mail.backend == "memory":
            self.attach_store(
                InMemoryArtifactStore(folders=(self._settings.mail.inbox_folder, self.drafts_folder))
            )
            logger.info("Using in-memory backend")
            return
        self.connect(retrieve_credentials(self._settings.mail.account_id))

    def attach_store(
        self,
        store: ArtifactStore,
        *,
        from_address: str = "",
        own_address: str = "",
        domain: str = "",
    ) -> None:
        self._store = store
        dedup = DedupEngine(
            store,
            self._pending,
            domain=domain or self._settings.mail.draft_domain or "localhost",
            pending_wait_seconds=self._settings.mail.pending_wait_seconds,
        )
        detector = CompletionDetector(store, self._settings.detection, sleep=self._sleep)
        self._orchestrator = MutationOrchestrator(
            store, dedup, detector, from_address=from_address, own_address=own_address
        )

    def disconnect(self) -> None:
        """Disconnect and clear client."""
        if self._client:
            self._client.disconnect()
            self._client = None
            logger.info("Disconnected from mail server")
        self._store = None
        self._orchestrator = None

    def _require_store(self) -> ArtifactStore:
        if self._store is None:
            raise NotConnectedError("Not connected to mail server")
        return self._store

    def _require_orchestrator(self) -> MutationOrchestrator:
        if self._orchestrator is None:
            raise NotConnectedError("Not connected to mail server")
        return self._orchestrator

    # -------------------------------------------------------------------------
    # tool registry / MCP transport
    # -------------------------------------------------------------------------

    def _build_registry(self) -> ToolRegistry:
        drafts = self._settings.mail.drafts_folder
        string = {"type": "string"}
        return ToolRegistry(
            [
                ToolDescriptor(
                    name="createDraft",
                    title="Create draft",
                    description="Create a draft in the Drafts folder. Retries with the same "
                    "idempotencyKey (or identical content) never create a second draft.",
                    input_schema={
                        "type": "object",
                        "properties": {
                            "to": {**string, "description": "Recipient address(es)"},
                            "subject": string,
                            "body": {**string, "description": "Draft body (may be empty)"},
                            "cc": {**string, "default": ""},
                            "isHtml": {"type": "boolean", "default": False},
                            "idempotencyKey": {
                                **string,
                                "description": "Stable key to avoid duplicate drafts on retries",
                            },
                            "folder": {**string, "default": drafts},
                        },
                        "required": ["to", "subject", "body"],
                    },
                    handler=self.create_draft,
                ),
                ToolDescriptor(
                    name="replyToMessageDraft",
                    title="Reply draft",
                    description="Create a reply draft for a message, quoting the original "
                    "below the reply by default. Idempotent like createDraft.",
                    input_schema={
                        "type": "object",
                        "properties": {
                            "messageId": {**string, "description": "Message-ID of the original"},
                            "folderPath": {**string, "description": "Folder holding the original"},
                            "body": string,
                            "replyAll": {"type": "boolean", "default": False},
                            "isHtml": {"type": "boolean", "default": False},
                            "idempotencyKey": string,
                            "includeQuotedOriginal": {"type": "boolean", "default": True},
                        },
                        "required": ["messageId", "folderPath", "body"],
                    },
                    handler=self.reply_to_message_draft,
                ),
                ToolDescriptor(
                    name="reviseDraftInPlace",
                    title="Revise draft",
                    description="Replace the top of an existing draft, keeping the quoted "
                    "original below it. Any duplicate left by the save is deleted.",
                    input_schema={
                        "type": "object",
                        "properties": {
                            "stableId": {**string, "description": "Message-ID of the draft"},
                            "folder": {**string, "default": drafts},
                            "newContent": string,
                            "preserveTrailing": {"type": "boolean", "default": True},
                            "closeAfterSave": {"type": "boolean", "default": True},
                            "isHtml": {"type": "boolean", "default": False},
                            "idempotencyKey": string,
                        },
                        "required": ["stableId", "newContent"],
                    },
                    handler=self.revise_draft_in_place,
                ),
                ToolDescriptor(
                    name="searchMessages",
                    title="Search messages",
                    description="Full-text search over subject, sender and body",
                    input_schema={
                        "type": "object",
                        "properties": {
                            "query": string,
                            "folderPath": string,
                            "limit": {"type": "integer", "minimum": 1, "maximum": 100, "default": 50},
                        },
                        "required": ["query"],
                    },
                    handler=self.search_messages,
                ),
                ToolDescriptor(
                    name="listLatestMessages",
                    title="List latest messages",
                    description="Most recent messages of a folder, newest first",
                    input_schema={
                        "type": "object",
                        "properties": {
                            "folderPath": string,
                            "limit": {"type": "integer", "minimum": 1, "maximum": 100, "default": 20},
                        },
                        "required": ["folderPath"],
                    },
                    handler=self.list_latest_messages,
                ),
                ToolDescriptor(
                    name="getMessage",
                    title="Get message",
                    description="Headers and decoded body of one message",
                    input_schema={
                        "type": "object",
                        "properties": {"messageId": string, "folderPath": string},
                        "required": ["messageId", "folderPath"],
                    },
                    handler=self.get_message,
                ),
                ToolDescriptor(
                    name="getRawMessage",
                    title="Get raw message",
                    description="Full RFC822 source of one message",
                    input_schema={
                        "type": "object",
                        "properties": {"messageId": string, "folderPath": string},
                        "required": ["messageId", "folderPath"],
                    },
                    handler=self.get_raw_message,
                ),
                ToolDescriptor(
                    name="deleteMessages",
                    title="Delete messages",
                    description="Delete messages by Message-ID from one folder",
                    input_schema={
                        "type": "object",
                        "properties": {
                            "folderPath": string,
                            "messageIds": {"type": "array", "items": string},
                        },
                        "required": ["folderPath", "messageIds"],
                    },
                    handler=self.delete_messages,
                ),
                ToolDescriptor(
                    name="moveMessages",
                    title="Move messages",
                    description="Move messages by Message-ID from one folder to another "
                    "(e.g. Drafts -> Trash)",
                    input_schema={
                        "type": "object",
                        "properties": {
                            "fromFolderPath": {**string, "description": "Source folder"},
                            "toFolderPath": {**string, "description": "Destination folder"},
                            "messageIds": {"type": "array", "items": string},
                        },
                        "required": ["fromFolderPath", "toFolderPath", "messageIds"],
                    },
                    handler=self.move_messages,
                ),
                ToolDescriptor(
                    name="getLatestUnread",
                    title="Get latest unread",
                    description="Most recent unread message of a folder (defaults to the inbox). "
                    "Read state is not changed.",
                    input_schema={
                        "type": "object",
                        "properties": {"folderPath": string},
                    },
                    handler=self.get_latest_unread,
                ),
                ToolDescriptor(
                    name="getLatestUnreadBatch",
                    title="Get latest unread (batch)",
                    description="Up to N most recent unread messages of a folder, newest first, "
                    "without changing read state",
                    input_schema={
                        "type": "object",
                        "properties": {
                            "folderPath": string,
                            "limit": {"type": "integer", "minimum": 1, "maximum": 50, "default": 10},
                        },
                    },
                    handler=self.get_latest_unread_batch,
                ),
                ToolDescriptor(
                    name="setMessageRead",
                    title="Set read state",
                    description="Set or clear the \\Seen flag of one message",
                    input_schema={
                        "type": "object",
                        "properties": {
                            "messageId": string,
                            "folderPath": string,
                            "read": {"type": "boolean", "default": True},
                        },
                        "required": ["messageId", "folderPath"],
                    },
                    handler=self.set_message_read,
                ),
                ToolDescriptor(
                    name="listFolders",
                    title="List folders",
                    description="List all available mailbox folders",
                    input_schema={"type": "object", "properties": {}},
                    handler=self.list_folders,
                ),
                ToolDescriptor(
                    name="status",
                    title="Connection status",
                    description="Get current connection status",
                    input_schema={"type": "object", "properties": {}},
                    handler=self.status,
                ),
            ]
        )

    def _setup_tools(self) -> None:
        """Register MCP tools."""

        @self._server.list_tools()
        async def list_tools() -> list[Tool]:
            return [
                Tool(
                    name=descriptor["name"],
                    description=descriptor["description"],
                    inputSchema=descriptor["inputSchema"],
                )
                for descriptor in self.registry.listing()
            ]

        @self._server.call_tool()
        async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
            try:
                result = await self.registry.call(name, arguments)
                return [TextContent(type="text", text=serialize_result(result))]
            except ToolNotFoundError:
                return [TextContent(type="text", text=f"Unknown tool: {name}")]
            except DraftMCPError as e:
                return [TextContent(type="text", text=f"Error: {e.__class__.__name__}: {e}")]

    # -------------------------------------------------------------------------
    # mutating tools
    # -------------------------------------------------------------------------

    async def create_draft(self, **arguments: Any) -> dict:
        """
        Create a draft.

        Implements CreateDraftContract.
        INV-CREATE-01: N identical concurrent requests produce one artifact.
        """
        orchestrator = self._require_orchestrator()
        request = MutationRequest(
            operation_kind=OperationKind.CREATE,
            folder=arguments.get("folder") or self.drafts_folder,
            content_payload=arguments["body"],
            idempotency_key=arguments.get("idempotencyKey"),
            headers=DraftHeaders(
                to=arguments["to"],
                subject=arguments["subject"],
                cc=arguments.get("cc") or "",
            ),
            is_html=bool(arguments.get("isHtml", False)),
        )
        # Log operation but NEVER log message content (INV-GLOBAL-04)
        logger.info("createDraft into %s", request.folder)
        outcome = await orchestrator.create_draft(request)
        return outcome.to_create_response()

    async def reply_to_message_draft(self, **arguments: Any) -> dict:
        """Create a reply draft; idempotent like createDraft."""
        orchestrator = self._require_orchestrator()
        logger.info("replyToMessageDraft for %s", arguments["messageId"])
        outcome = await orchestrator.reply_draft(
            message_id=arguments["messageId"],
            source_folder=arguments["folderPath"],
            drafts_folder=self.drafts_folder,
            body=arguments["body"],
            reply_all=bool(arguments.get("replyAll", False)),
            is_html=bool(arguments.get("isHtml", False)),
            idempotency_key=arguments.get("idempotencyKey"),
            include_quoted=bool(arguments.get("includeQuotedOriginal", True)),
        )
        response = outcome.to_create_response()
        response["inReplyTo"] = normalize_stable_id(arguments["messageId"])
        return response

    async def revise_draft_in_place(self, **arguments: Any) -> dict:
        """
        Revise a draft, keeping its quoted tail.

        Implements ReviseDraftContract.
        POST-REVISE-03: A replaced original is deleted or the failure reported.
        """
        orchestrator = self._require_orchestrator()
        request = MutationRequest(
            operation_kind=OperationKind.REVISE,
            folder=arguments.get("folder") or self.drafts_folder,
            content_payload=arguments["newContent"],
            target_stable_id=arguments["stableId"],
            idempotency_key=arguments.get("idempotencyKey"),
            preserve_trailing_content=bool(arguments.get("preserveTrailing", True)),
            is_html=bool(arguments.get("isHtml", False)),
            close_after_save=bool(arguments.get("closeAfterSave", True)),
        )
        logger.info("reviseDraftInPlace %s in %s", request.target_stable_id, request.folder)
        outcome = await orchestrator.revise_draft_in_place(request)
        return outcome.to_revise_response()

    # -------------------------------------------------------------------------
    # read / housekeeping tools
    # -------------------------------------------------------------------------

    async def search_messages(self, *, query: str, folderPath: str | None = None, limit: int = 50) -> dict:
        store = self._require_store()
        logger.info("Searching %s (limit=%d)", folderPath or "all folders", limit)
        return {"messages": await store.search(query, folderPath, limit)}

    async def list_latest_messages(self, *, folderPath: str, limit: int = 20) -> dict:
        store = self._require_store()
        logger.info("Listing latest %d in %s", limit, folderPath)
        return {"folder": folderPath, "messages": await store.list_recent(folderPath, limit)}

    async def get_message(self, *, messageId: str, folderPath: str) -> dict:
        return await self._message_view(self._require_store(), folderPath, messageId)

    async def _message_view(self, store: ArtifactStore, folder: str, message_id: str) -> dict:
        raw = await store.fetch_raw(folder, message_id)
        headers = extract_headers(raw)
        body = extract_body(raw)
        return {
            "messageId": normalize_stable_id(message_id),
            "folder": folder,
            "from": headers.from_addr,
            "to": headers.to,
            "cc": headers.cc,
            "subject": headers.subject,
            "inReplyTo": headers.in_reply_to,
            "bodyText": body.text,
            "bodyHtml": body.html,
        }

    async def get_latest_unread(self, *, folderPath: str | None = None) -> dict:
        """Newest unread message, or an ok notice when there is none."""
        batch = await self.get_latest_unread_batch(folderPath=folderPath, limit=1)
        if not batch["items"]:
            return {
                "ok": True,
                "message": "No unread messages found in folder",
                "folderPath": batch["folderPath"],
            }
        return batch["items"][0]

    async def get_latest_unread_batch(self, *, folderPath: str | None = None, limit: int = 10) -> dict:
        store = self._require_store()
        folder = folderPath or self._settings.mail.inbox_folder
        summaries = await store.list_unread(folder, limit)
        # fetch_raw peeks, so reading the bodies leaves \Seen untouched
        items = [await self._message_view(store, folder, s.stable_id) for s in summaries]
        logger.info("Read %d unread messages from %s", len(items), folder)
        return {"ok": True, "folderPath": folder, "count": len(items), "items": items}

    async def get_raw_message(self, *, messageId: str, folderPath: str) -> dict:
        store = self._require_store()
        raw = await store.fetch_raw(folderPath, messageId)
        return {
            "messageId": normalize_stable_id(messageId),
            "folder": folderPath,
            "raw": raw.decode("utf-8", errors="replace"),
        }

    async def delete_messages(self, *, folderPath: str, messageIds: list[str]) -> dict:
        store = self._require_store()
        deleted: list[str] = []
        failed: list[dict] = []
        for message_id in messageIds:
            try:
                await store.delete(folderPath, message_id)
                deleted.append(normalize_stable_id(message_id))
            except DraftMCPError as e:
                failed.append({"messageId": message_id, "error": e.code, "message": str(e)})
        logger.info("Deleted %d of %d messages in %s", len(deleted), len(messageIds), folderPath)
        return {"folder": folderPath, "deleted": deleted, "failed": failed}

    async def move_messages(
        self, *, fromFolderPath: str, toFolderPath: str, messageIds: list[str]
    ) -> dict:
        store = self._require_store()
        moved: list[str] = []
        failed: list[dict] = []
        for message_id in messageIds:
            try:
                await store.move(fromFolderPath, message_id, toFolderPath)
                moved.append(normalize_stable_id(message_id))
            except DraftMCPError as e:
                failed.append({"messageId": message_id, "error": e.code, "message": str(e)})
        logger.info(
            "Moved %d of %d messages from %s to %s",
            len(moved),
            len(messageIds),
            fromFolderPath,
            toFolderPath,
        )
        return {
            "fromFolder": fromFolderPath,
            "toFolder": toFolderPath,
            "moved": moved,
            "failed": failed,
        }

    async def set_message_read(self, *, messageId: str, folderPath: str, read: bool = True) -> dict:
        store = self._require_store()
        await store.set_read(folderPath, messageId, read)
        return {"messageId": normalize_stable_id(messageId), "folder": folderPath, "read": read}

    async def list_folders(self) -> dict:
        store = self._require_store()
        logger.info("Listing folders")
        return {"folders": await store.list_folders()}

    async def status(self) -> ConnectionStatus:
        """
        Get connection status.

        Always succeeds; honest about connection state.
        """
        if self._store is None:
            return ConnectionStatus(
                connected=False,
                protocol=EmailProtocol.IMAP,
                server="",
                uptime_seconds=0,
            )
        return self._store.status()

    async def run(self) -> None:
        """Run the MCP server over stdio."""
        async with stdio_server() as (read_stream, write_stream):
            await self._server.run(
                read_stream, write_stream, self._server.create_initialization_options()
            )


# Singleton for process lifetime
_server_instance: DraftMCPServer | None = None


def get_server() -> DraftMCPServer:
    """Get or create the server singleton."""
    global _server_instance
    if _server_instance is None:
        _server_instance = DraftMCPServer()
    return _server_instance


def create_server(**kwargs: Any) -> DraftMCPServer:
    """Create a new server instance (for testing)."""
    return DraftMCPServer(**kwargs)
