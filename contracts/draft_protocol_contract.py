"""
Draft Protocol MCP Server Contract
==================================

Mail access MCP server whose mutating tools (create, reply, revise drafts)
run against a backend that gives no reliable confirmation of what a save
actually produced.

This contract defines the behavioral specification for all public interfaces.
Implementation SHALL perform ONLY declared behaviors.

AUTHORITY: This file is the SINGLE authoritative source for draft MCP behavior.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Protocol, runtime_checkable


# =============================================================================
# DOMAIN TYPES
# =============================================================================

class EmailProtocol(Enum):
    """Supported backend protocols."""
    IMAP = "imap"
    MEMORY = "memory"


class OperationKind(Enum):
    """Kind of mutation being confirmed."""
    CREATE = "create"
    REVISE = "revise"


class MutationStatus(Enum):
    """Terminal status of a mutating tool call."""
    CREATED = "created"
    REVISED = "revised"
    ALREADY_PENDING = "already_pending"
    ALREADY_EXISTS = "already_exists"
    UNCONFIRMED = "unconfirmed"
    FAILED = "failed"


@dataclass(frozen=True)
class FolderInfo:
    """Mailbox folder metadata."""
    name: str
    message_count: int
    unread_count: int
    uidvalidity: int


@dataclass(frozen=True)
class ConnectionStatus:
    """Current connection state."""
    connected: bool
    protocol: EmailProtocol
    server: str
    uptime_seconds: int


@dataclass(frozen=True)
class ArtifactSummary:
    """One addressable message/draft as listed by the store."""
    stable_id: str  # Message-ID header, angle brackets stripped
    backend_id: int  # IMAP UID or in-memory key
    folder: str
    subject: str = ""
    author: str = ""
    recipients: str = ""
    date: datetime | None = None
    read: bool = False


@dataclass(frozen=True)
class ArtifactSnapshot:
    """Most-recent items of a folder captured before a mutation."""
    folder: str
    items: tuple[ArtifactSummary, ...]
    captured_at: float

    def contains(self, stable_id: str) -> bool:
        return any(item.stable_id == stable_id for item in self.items)


@dataclass(frozen=True)
class DraftHeaders:
    """Addressing headers for a draft."""
    to: str = ""
    subject: str = ""
    cc: str = ""
    from_addr: str = ""
    in_reply_to: str | None = None
    references: tuple[str, ...] = ()


@dataclass(frozen=True)
class DraftContent:
    """Content handed to a compose session before saving."""
    headers: DraftHeaders
    body: str
    is_html: bool = False
    message_id: str | None = None


@dataclass(frozen=True)
class SaveReceipt:
    """Authoritative metadata returned by a save call."""
    stable_id: str | None
    backend_id: int | None = None


@dataclass(frozen=True)
class SaveEvent:
    """Advisory after-save notification. May be mis-keyed."""
    folder: str
    stable_id: str


@dataclass(frozen=True)
class MutationRequest:
    """A single create/revise request. Owned by the calling invocation."""
    operation_kind: OperationKind
    folder: str
    content_payload: str
    target_stable_id: str | None = None
    idempotency_key: str | None = None
    preserve_trailing_content: bool = False
    headers: DraftHeaders | None = None
    is_html: bool = False
    close_after_save: bool = True
    trailing_content: str = ""


@dataclass(frozen=True)
class Fragment:
    """Expected piece of content looked for in candidate bodies."""
    text: str
    weight: float
    is_marker: bool = False


@dataclass(frozen=True)
class CandidateScore:
    """Score of one candidate inspected during SCAN."""
    stable_id: str
    overlap_score: float
    is_new: bool
    threshold: float
    accepted: bool
    matched: int = 0
    error: str | None = None


@dataclass(frozen=True)
class CompletionResult:
    """Terminal output of one detector run."""
    resolved_id: str | None
    replaced_original: bool = False
    deleted_original: bool = False
    resolution: str = "timeout"  # fast_path | event | scan | timeout
    diagnostics: Mapping[str, Any] = field(default_factory=dict)

    @property
    def timed_out(self) -> bool:
        return self.resolved_id is None


@dataclass(frozen=True)
class MutationOutcome:
    """Structured result of a mutating tool call. Never an exception."""
    ok: bool
    status: MutationStatus
    resolved_id: str | None = None
    original_id: str | None = None
    deleted_original: bool = False
    replaced_original: bool = False
    token: str | None = None
    folder: str = ""
    error: Mapping[str, str] | None = None
    diagnostics: Mapping[str, Any] = field(default_factory=dict)

    def to_create_response(self) -> dict[str, Any]:
        response: dict[str, Any] = {
            "success": self.ok,
            "messageId": self.resolved_id,
            "status": self.status.value,
            "draftsFolder": self.folder,
            "idempotencyToken": self.token,
        }
        if self.error:
            response["error"] = dict(self.error)
        if self.status in (MutationStatus.UNCONFIRMED, MutationStatus.FAILED):
            response["debug"] = dict(self.diagnostics)
        return response

    def to_revise_response(self) -> dict[str, Any]:
        response: dict[str, Any] = {
            "ok": self.ok,
            "replaced": self.replaced_original,
            "oldMessageId": self.original_id,
            "messageId": self.resolved_id,
            "deletedOld": self.deleted_original,
            "status": self.status.value,
            "debug": dict(self.diagnostics),
        }
        if self.error:
            response["error"] = dict(self.error)
        return response


# =============================================================================
# ERROR TYPES
# =============================================================================

class DraftMCPError(Exception):
    """Base error for all draft MCP operations."""
    code: str = "DRAFT_MCP_ERROR"


class BiosecretDeniedError(DraftMCPError):
    """
    ERRORS-STARTUP-01: User cancelled biometric prompt.

    RECOVERY: Fatal. Process must exit. Agent restarts MCP to retry.
    """
    code = "BIOSECRET_DENIED"


class BiosecretNotFoundError(DraftMCPError):
    """
    ERRORS-STARTUP-02: No credentials stored under expected keychain key.

    RECOVERY: Fatal. User must store credentials via biosecret before retry.
    """
    code = "BIOSECRET_NOT_FOUND"


class AuthFailedError(DraftMCPError):
    """
    ERRORS-STARTUP-03: Credentials rejected by mail server.

    RECOVERY: Fatal. User must update stored credentials.
    """
    code = "AUTH_FAILED"


class ConnectionFailedError(DraftMCPError):
    """
    ERRORS-STARTUP-04: Network unreachable or host not found.

    RECOVERY: Fatal. Check network connectivity and retry.
    """
    code = "CONNECTION_FAILED"


class NotConnectedError(DraftMCPError):
    """
    ERRORS-TOOL-01: Startup failed or connection dropped mid-session.

    RECOVERY: Agent must restart MCP process.
    """
    code = "NOT_CONNECTED"


class FolderNotFoundError(DraftMCPError):
    """
    ERRORS-TOOL-02: Specified folder does not exist on server.

    RECOVERY: Agent should call listFolders to get valid folder names.
    """
    code = "FOLDER_NOT_FOUND"


class MessageNotFoundError(DraftMCPError):
    """
    ERRORS-TOOL-03: No message with the given stable id exists in folder.

    RECOVERY: Agent should refresh with listLatestMessages.
    """
    code = "MESSAGE_NOT_FOUND"


class ValidationError(DraftMCPError):
    """
    ERRORS-TOOL-04: Bad or missing request fields. Raised before any
    backend call.

    RECOVERY: Agent must correct arguments.
    """
    code = "VALIDATION_FAILED"


class BackendUnavailableError(DraftMCPError):
    """
    ERRORS-TOOL-05: Store or save entry point unreachable.

    RECOVERY: Retry is safe; mutating tools are idempotent.
    """
    code = "BACKEND_UNAVAILABLE"


class ToolNotFoundError(DraftMCPError):
    """
    ERRORS-RPC-01: Requested tool is not in the registry.
    """
    code = "TOOL_NOT_FOUND"


RECONCILIATION_FAILED = "RECONCILIATION_FAILED"


# =============================================================================
# COLLABORATOR CONTRACTS
# =============================================================================

@runtime_checkable
class ComposeSession(Protocol):
    """
    Mutation entry point: open (done by ArtifactStore.open_compose),
    set content, request save.

    POST-COMPOSE-01: save() returns SaveReceipt when the backend reports the
                     saved artifact, None when it reports nothing
    INV-COMPOSE-01: close() is idempotent and never raises
    """

    async def current_content(self) -> DraftContent:
        ...

    async def set_content(self, content: DraftContent) -> None:
        ...

    async def save(self) -> SaveReceipt | None:
        ...

    async def close(self) -> None:
        ...


@runtime_checkable
class ArtifactStore(Protocol):
    """
    Mail backend seen as folders of addressable artifacts.

    PRE-STORE-01: Backend connected (NOT_CONNECTED otherwise)

    POST-STORE-01: list_recent returns at most `limit` items, most recent first
    POST-STORE-02: find returns None when no artifact carries exactly the
                   stable id; a Message-ID that merely contains it never matches
    POST-STORE-03: subscribe_saves returns None when the backend has no
                   after-save notification channel
    POST-STORE-04: list_unread returns at most `limit` unread items, most
                   recent first, without marking them read

    INV-STORE-01 (Unsynchronized): Store is never assumed locked on the
                 caller's behalf
    INV-STORE-02 (No Content Logging): Bodies never appear in logs

    ERRORS:
    - NOT_CONNECTED
    - FOLDER_NOT_FOUND
    - MESSAGE_NOT_FOUND (fetch_raw, delete, set_read, move, open_compose with target)
    - BACKEND_UNAVAILABLE
    """

    async def list_folders(self) -> list[FolderInfo]:
        ...

    async def list_recent(self, folder: str, limit: int) -> list[ArtifactSummary]:
        ...

    async def list_unread(self, folder: str, limit: int) -> list[ArtifactSummary]:
        ...

    async def search(
        self, query: str, folder: str | None = None, limit: int = 50
    ) -> list[ArtifactSummary]:
        ...

    async def find(self, folder: str, stable_id: str) -> ArtifactSummary | None:
        ...

    async def fetch_raw(self, folder: str, stable_id: str) -> bytes:
        ...

    async def delete(self, folder: str, stable_id: str) -> None:
        ...

    async def set_read(self, folder: str, stable_id: str, read: bool) -> None:
        ...

    async def move(self, folder: str, stable_id: str, destination: str) -> None:
        ...

    async def open_compose(
        self, folder: str, *, target_stable_id: str | None = None
    ) -> ComposeSession:
        ...

    def subscribe_saves(self, folder: str) -> asyncio.Queue[SaveEvent] | None:
        ...

    def unsubscribe_saves(self, folder: str, queue: asyncio.Queue[SaveEvent]) -> None:
        ...

    def status(self) -> ConnectionStatus:
        ...


@runtime_checkable
class PendingStore(Protocol):
    """
    Process-wide set of idempotency tokens being serviced.

    POST-PENDING-01: add_if_absent is atomic insert-if-absent
    INV-PENDING-01: A token is present at most once
    """

    def add_if_absent(self, token: str) -> bool:
        ...

    def discard(self, token: str) -> None:
        ...

    def contains(self, token: str) -> bool:
        ...

    def record_result(self, token: str, stable_id: str) -> None:
        ...

    def recorded_result(self, token: str) -> str | None:
        ...


# =============================================================================
# TOOL CONTRACTS
# =============================================================================

@runtime_checkable
class CreateDraftContract(Protocol):
    """
    Tool: createDraft

    PRE-CREATE-01: to and subject are strings, body is a string (may be empty)
    PRE-CREATE-02: idempotencyKey, when given, is a non-empty string

    POST-CREATE-01: Returns {success, messageId, status}
    POST-CREATE-02: Retrying with the same key/payload returns the same
                    messageId without creating a second artifact
    POST-CREATE-03: An unconfirmed save is success-shaped: success is true,
                    status == "unconfirmed", messageId is null and debug is
                    set. Callers treat it as uncertain, not failed

    INV-CREATE-01 (Idempotent): N identical concurrent requests produce one
                  artifact and the same messageId
    INV-CREATE-02 (Release): The pending token is released on every exit path

    ERRORS:
    - VALIDATION_FAILED (returned as RPC invalid params)
    - BACKEND_UNAVAILABLE (returned as status == "failed")
    """

    async def create_draft(self, **arguments: Any) -> dict:
        ...


@runtime_checkable
class ReviseDraftContract(Protocol):
    """
    Tool: reviseDraftInPlace

    PRE-REVISE-01: stableId names an artifact in folder

    POST-REVISE-01: Returns {ok, replaced, oldMessageId, messageId, deletedOld, debug}
    POST-REVISE-02: With preserveTrailing and a quote boundary at offset X, the
                    new content is the new head followed by original[X:]
    POST-REVISE-03: When the backend produced a new artifact, the original is
                    deleted (deletedOld) or the failure is in debug
    POST-REVISE-04: A retry that finds the revision already saved deletes an
                    original that is still present; deletedOld reports whether
                    the original is gone

    INV-REVISE-01 (Non-fatal cleanup): Reconciliation failure never turns a
                  confirmed revision into a failure
    INV-REVISE-02 (Release): The pending token is released on every exit path

    ERRORS:
    - VALIDATION_FAILED
    - MESSAGE_NOT_FOUND (returned as status == "failed")
    """

    async def revise_draft_in_place(self, **arguments: Any) -> dict:
        ...


@runtime_checkable
class CompletionDetectorContract(Protocol):
    """
    Completion detection for one submitted save.

    POST-DETECT-01 (Fast Path): A receipt with a stable id is the result,
                   regardless of scan outcomes
    POST-DETECT-02 (Bounded): Returns within budget + epsilon
    POST-DETECT-03 (Diagnostics): TIMEOUT carries candidates, scores, errors

    INV-DETECT-01: Never polls more than snapshot_limit items per listing
    INV-DETECT-02: TIMEOUT is a result, never an exception
    """

    async def run(self, folder: str, submit: Any, fragments: Any) -> CompletionResult:
        ...


# =============================================================================
# GLOBAL INVARIANTS (Apply to ALL operations)
# =============================================================================

"""
INV-GLOBAL-01 (Structured Results): Every terminal response is a structured
             object; transports never see a bare exception.

INV-GLOBAL-02 (No Send): The server CANNOT send email. Drafts only.

INV-GLOBAL-03 (Credential Isolation): Credentials retrieved via biosecret
             at startup, held in memory only, never persisted by MCP.

INV-GLOBAL-04 (No Content Logging): Message bodies and raw sources MUST NOT
             appear in server logs under any circumstance.

INV-GLOBAL-05 (Single Connection): One mail server connection per process,
             serialized by the store.
"""


# =============================================================================
# TEST CASE INDEX
# =============================================================================

TEST_CASES = {
    "test_token_deterministic": {
        "contract": "CreateDraftContract",
        "enforces": ["POST-CREATE-02"],
    },
    "test_admit_releases_on_exception": {
        "contract": "CreateDraftContract",
        "enforces": ["INV-CREATE-02", "INV-REVISE-02"],
        "adversarial": True,
    },
    "test_begin_is_insert_if_absent": {
        "contract": "PendingStore",
        "enforces": ["POST-PENDING-01", "INV-PENDING-01"],
    },
    "test_fast_path_beats_scan": {
        "contract": "CompletionDetectorContract",
        "enforces": ["POST-DETECT-01"],
        "adversarial": True,
    },
    "test_timeout_is_bounded": {
        "contract": "CompletionDetectorContract",
        "enforces": ["POST-DETECT-02", "POST-DETECT-03", "INV-DETECT-02"],
    },
    "test_snapshot_is_capped": {
        "contract": "CompletionDetectorContract",
        "enforces": ["INV-DETECT-01"],
    },
    "test_create_retry_returns_same_id": {
        "contract": "CreateDraftContract",
        "enforces": ["POST-CREATE-01", "POST-CREATE-02"],
    },
    "test_concurrent_creates_produce_one_artifact": {
        "contract": "CreateDraftContract",
        "enforces": ["INV-CREATE-01"],
        "adversarial": True,
    },
    "test_create_unconfirmed": {
        "contract": "CreateDraftContract",
        "enforces": ["POST-CREATE-03"],
    },
    "test_revise_preserves_tail": {
        "contract": "ReviseDraftContract",
        "enforces": ["POST-REVISE-01", "POST-REVISE-02"],
    },
    "test_revise_deletes_replaced_original": {
        "contract": "ReviseDraftContract",
        "enforces": ["POST-REVISE-03"],
    },
    "test_revise_delete_failure_is_reported": {
        "contract": "ReviseDraftContract",
        "enforces": ["INV-REVISE-01"],
        "adversarial": True,
    },
    "test_revise_retry_after_timeout_reconciles": {
        "contract": "ReviseDraftContract",
        "enforces": ["POST-REVISE-04"],
        "adversarial": True,
    },
    "test_revise_missing_target": {
        "contract": "ReviseDraftContract",
        "enforces": ["PRE-REVISE-01", "ERRORS: MESSAGE_NOT_FOUND"],
    },
    "test_handler_errors_are_enveloped": {
        "contract": "INV-GLOBAL-01",
        "enforces": ["INV-GLOBAL-01"],
    },
    "test_no_body_logging": {
        "contract": "INV-GLOBAL-04",
        "enforces": ["INV-GLOBAL-04", "INV-STORE-02"],
        "adversarial": True,
    },
    "test_no_send_capability": {
        "contract": "INV-GLOBAL-02",
        "enforces": ["INV-GLOBAL-02"],
        "adversarial": True,
    },
    "test_create_rejects_invalid_fields": {
        "contract": "CreateDraftContract",
        "enforces": ["PRE-CREATE-01", "PRE-CREATE-02"],
    },
    "test_credentials_memory_only": {
        "contract": "INV-GLOBAL-03",
        "enforces": ["INV-GLOBAL-03"],
        "adversarial": True,
    },
    "test_find_requires_exact_message_id": {
        "contract": "ArtifactStore",
        "enforces": ["POST-STORE-02"],
        "adversarial": True,
    },
    "test_unread_listing_does_not_mark_read": {
        "contract": "ArtifactStore",
        "enforces": ["POST-STORE-04"],
    },
    "test_single_connection": {
        "contract": "INV-GLOBAL-05",
        "enforces": ["INV-GLOBAL-05"],
    },
}
