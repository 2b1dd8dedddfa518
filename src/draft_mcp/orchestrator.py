"""
Mutation Orchestrator
=====================

Runs create / reply / revise against the store: validation, idempotency,
save, completion detection and cleanup of replaced originals.

Every path returns a MutationOutcome. Only ValidationError escapes, and only
before the store has been touched.

INV-CREATE-02 / INV-REVISE-02: pending tokens are released on every path
INV-REVISE-01: a failed cleanup never fails a confirmed revision
POST-REVISE-04: a retry that finds its revision deletes a leftover original
POST-CREATE-03: an unconfirmed save is success-shaped, with no message id
INV-GLOBAL-04: payloads are never logged
"""

from __future__ import annotations

import email.utils
import logging
from dataclasses import replace
from typing import Any

from contracts import (
    RECONCILIATION_FAILED,
    ArtifactStore,
    CompletionResult,
    DraftContent,
    DraftHeaders,
    DraftMCPError,
    MessageNotFoundError,
    MutationOutcome,
    MutationRequest,
    MutationStatus,
    OperationKind,
    ValidationError,
)
from src.draft_mcp.compose import (
    extract_body,
    extract_headers,
    html_to_text,
    normalize_stable_id,
    parse_message,
    quote_original_html,
    reply_subject,
    split_quoted,
    text_to_html,
    wrap_html_document,
)
from src.draft_mcp.dedup import DedupEngine, derive_token
from src.draft_mcp.detector import CompletionDetector, expected_fragments

logger = logging.getLogger("draft-mcp.orchestrator")


class MutationOrchestrator:
    """Coordinates dedup, compose session and detector for one request."""

    def __init__(
        self,
        store: ArtifactStore,
        dedup: DedupEngine,
        detector: CompletionDetector,
        *,
        from_address: str = "",
        own_address: str = "",
    ) -> None:
        self._store = store
        self._dedup = dedup
        self._detector = detector
        self._from_address = from_address
        self._own_address = own_address.lower()

    @property
    def store(self) -> ArtifactStore:
        return self._store

    # -------------------------------------------------------------------------
    # validation
    # -------------------------------------------------------------------------

    @staticmethod
    def validate(request: MutationRequest) -> None:
        """Raise ValidationError for malformed requests. No I/O."""
        if not isinstance(request.content_payload, str):
            raise ValidationError("content payload must be a string")
        if not isinstance(request.folder, str) or not request.folder.strip():
            raise ValidationError("folder is required")
        if request.idempotency_key is not None and (
            not isinstance(request.idempotency_key, str) or not request.idempotency_key.strip()
        ):
            raise ValidationError("idempotencyKey must be a non-empty string")
        if request.operation_kind is OperationKind.REVISE:
            if not normalize_stable_id(request.target_stable_id):
                raise ValidationError("target stable id is required for revise")
        elif request.headers is not None:
            for name in ("to", "subject", "cc"):
                if not isinstance(getattr(request.headers, name), str):
                    raise ValidationError(f"{name} must be a string")

    # -------------------------------------------------------------------------
    # create / reply
    # -------------------------------------------------------------------------

    async def create_draft(self, request: MutationRequest) -> MutationOutcome:
        """Save a new draft exactly once per logical request."""
        self.validate(request)
        headers = request.headers or DraftHeaders()
        token_payload = f"{headers.to}|{headers.cc}|{headers.subject}\n{request.content_payload}"
        token = derive_token("create", token_payload, idempotency_key=request.idempotency_key)
        return await self._create(request, token)

    async def reply_draft(
        self,
        *,
        message_id: str,
        source_folder: str,
        drafts_folder: str,
        body: str,
        reply_all: bool = False,
        is_html: bool = False,
        idempotency_key: str | None = None,
        include_quoted: bool = True,
    ) -> MutationOutcome:
        """Reply draft to an existing message, optionally quoting it below."""
        original_id = normalize_stable_id(message_id)
        if not original_id:
            raise ValidationError("messageId is required")
        draft_request = MutationRequest(
            operation_kind=OperationKind.CREATE,
            folder=drafts_folder,
            content_payload=body,
            idempotency_key=idempotency_key,
            is_html=is_html,
        )
        self.validate(draft_request)
        token = derive_token("reply", body, target=original_id, idempotency_key=idempotency_key)

        try:
            raw = await self._store.fetch_raw(source_folder, original_id)
        except (DraftMCPError, OSError) as e:
            return self._failed(token, drafts_folder, e)

        request = replace(
            draft_request,
            headers=self._reply_headers(raw, original_id, reply_all),
            trailing_content=self._quoted(raw, original_id) if include_quoted else "",
        )
        return await self._create(request, token)

    def _reply_headers(self, raw: bytes, original_id: str, reply_all: bool) -> DraftHeaders:
        original = extract_headers(raw)
        msg = parse_message(raw)
        to = original.from_addr
        cc = ""
        if reply_all:
            others = [
                email.utils.formataddr((name, addr))
                for name, addr in email.utils.getaddresses(
                    [str(msg.get("To", "")), str(msg.get("Cc", ""))]
                )
                if addr and addr.lower() != self._own_address
            ]
            cc = ", ".join(others)
        references = tuple(r for r in original.references if r) + (original_id,)
        return DraftHeaders(
            to=to,
            subject=reply_subject(original.subject),
            cc=cc,
            in_reply_to=original_id,
            references=references,
        )

    @staticmethod
    def _quoted(raw: bytes, original_id: str) -> str:
        msg = parse_message(raw)
        body = extract_body(raw)
        try:
            date = email.utils.parsedate_to_datetime(str(msg.get("Date", "")))
        except (TypeError, ValueError):
            date = None
        return quote_original_html(
            author=extract_headers(raw).from_addr,
            date=date,
            stable_id=original_id,
            body_text=body.text,
            body_html=body.html,
        )

    async def _create(self, request: MutationRequest, token: str) -> MutationOutcome:
        folder = request.folder
        async with self._dedup.admit(token) as admission:
            if not admission.admitted:
                return await self._deferred(token, folder)

            existing = await self._dedup.exists(token, folder)
            if existing:
                logger.info("Draft for token %s already exists as %s", token, existing)
                return MutationOutcome(
                    ok=True,
                    status=MutationStatus.ALREADY_EXISTS,
                    resolved_id=existing,
                    token=token,
                    folder=folder,
                )

            content = self._new_draft_content(request, self._dedup.stable_id_for(token))
            fragments = expected_fragments(
                request.content_payload, is_html=request.is_html, policy=self._detector.policy
            )
            logger.info("Creating draft in %s (token %s)", folder, token)

            session = None
            try:
                session = await self._store.open_compose(folder)
                await session.set_content(content)
                result = await self._detector.run(folder, session.save, fragments)
            except (DraftMCPError, OSError) as e:
                return self._failed(token, folder, e)
            finally:
                if session is not None and request.close_after_save:
                    await session.close()

            if result.timed_out:
                return MutationOutcome(
                    ok=True,
                    status=MutationStatus.UNCONFIRMED,
                    token=token,
                    folder=folder,
                    diagnostics=dict(result.diagnostics),
                )

            self._dedup.record(token, result.resolved_id)
            return MutationOutcome(
                ok=True,
                status=MutationStatus.CREATED,
                resolved_id=result.resolved_id,
                token=token,
                folder=folder,
                diagnostics={"resolution": result.resolution},
            )

    def _new_draft_content(self, request: MutationRequest, stable_id: str) -> DraftContent:
        headers = request.headers or DraftHeaders()
        if not headers.from_addr and self._from_address:
            headers = replace(headers, from_addr=self._from_address)

        if request.trailing_content:
            head = request.content_payload if request.is_html else text_to_html(request.content_payload)
            body = wrap_html_document(f"{head}<br>{request.trailing_content}")
            is_html = True
        else:
            body = request.content_payload
            is_html = request.is_html
        return DraftContent(headers=headers, body=body, is_html=is_html, message_id=stable_id)

    # -------------------------------------------------------------------------
    # revise
    # -------------------------------------------------------------------------

    async def revise_draft_in_place(self, request: MutationRequest) -> MutationOutcome:
        """
        Replace the head of an existing draft, keeping any quoted tail.

        When the backend stores the revision as a new artifact, the original
        is deleted; a failed delete is reported under diagnostics.
        """
        self.validate(request)
        folder = request.folder
        target = normalize_stable_id(request.target_stable_id)
        token = derive_token(
            "revise", request.content_payload, target=target, idempotency_key=request.idempotency_key
        )

        async with self._dedup.admit(token) as admission:
            if not admission.admitted:
                return await self._deferred(token, folder, original_id=target)

            existing = await self._dedup.exists(token, folder)
            if existing:
                return await self._existing_revision(token, folder, target, existing)

            try:
                found = await self._store.find(folder, target)
                if found is None:
                    raise MessageNotFoundError(f"Message not found: {target}")
            except (DraftMCPError, OSError) as e:
                return self._failed(token, folder, e, original_id=target)

            logger.info("Revising %s in %s (token %s)", target, folder, token)
            diagnostics: dict[str, Any] = {}
            session = None
            try:
                session = await self._store.open_compose(folder, target_stable_id=target)
                current = await session.current_content()
                head, body, is_html, diagnostics["split"] = self._revised_body(current, request)
                fragments = expected_fragments(head, is_html=is_html, policy=self._detector.policy)
                await session.set_content(
                    DraftContent(
                        headers=current.headers,
                        body=body,
                        is_html=is_html,
                        message_id=self._dedup.stable_id_for(token),
                    )
                )
                result = await self._detector.run(folder, session.save, fragments)
            except (DraftMCPError, OSError) as e:
                return self._failed(token, folder, e, original_id=target)
            finally:
                if session is not None and request.close_after_save:
                    await session.close()

            diagnostics["detection"] = dict(result.diagnostics)
            if result.timed_out:
                return MutationOutcome(
                    ok=True,
                    status=MutationStatus.UNCONFIRMED,
                    original_id=target,
                    token=token,
                    folder=folder,
                    diagnostics=diagnostics,
                )

            self._dedup.record(token, result.resolved_id)
            result = await self._reconcile(folder, target, result)
            if "reconciliation" in result.diagnostics:
                diagnostics["reconciliation"] = result.diagnostics["reconciliation"]
            diagnostics["resolution"] = result.resolution

            return MutationOutcome(
                ok=True,
                status=MutationStatus.REVISED,
                resolved_id=result.resolved_id,
                original_id=target,
                deleted_original=result.deleted_original,
                replaced_original=result.replaced_original,
                token=token,
                folder=folder,
                diagnostics=diagnostics,
            )

    @staticmethod
    def _revised_body(
        current: DraftContent, request: MutationRequest
    ) -> tuple[str, str, bool, dict[str, Any]]:
        """(new head, full body, is_html, split info) for a revision."""
        is_html = current.is_html
        head = request.content_payload
        if is_html and not request.is_html:
            head = text_to_html(head)
        elif request.is_html and not is_html:
            head = html_to_text(head)

        if not request.preserve_trailing_content:
            body = wrap_html_document(head) if is_html else head
            return head, body, is_html, {"preserved": False}

        split = split_quoted(current.body, is_html=is_html)
        if split.marker is None:
            body = wrap_html_document(head) if is_html else head
        else:
            body = split.splice(head)
        info = {
            "preserved": split.marker is not None,
            "marker": split.marker,
            "structured": split.structured,
            "boundary": split.boundary,
            "tailLength": len(split.tail),
        }
        return head, body, is_html, info

    async def _reconcile(
        self, folder: str, original_id: str, result: CompletionResult
    ) -> CompletionResult:
        if result.resolved_id == original_id:
            return result
        try:
            await self._store.delete(folder, original_id)
        except MessageNotFoundError:
            # Already gone: an earlier attempt or a concurrent retry removed it
            return replace(result, replaced_original=True, deleted_original=True)
        except (DraftMCPError, OSError) as e:
            logger.warning(
                "Could not delete replaced draft %s: %s", original_id, e.__class__.__name__
            )
            diagnostics = {
                **result.diagnostics,
                "reconciliation": {
                    "code": RECONCILIATION_FAILED,
                    "error": f"{e.__class__.__name__}: {e}",
                },
            }
            return replace(
                result, replaced_original=True, deleted_original=False, diagnostics=diagnostics
            )
        return replace(result, replaced_original=True, deleted_original=True)

    async def _existing_revision(
        self, token: str, folder: str, original_id: str, existing: str
    ) -> MutationOutcome:
        """
        ALREADY_EXISTS for a revision saved by an earlier attempt.

        That attempt may have timed out before cleanup, so an original still
        present next to the revision is deleted now.
        """
        result = CompletionResult(resolved_id=existing, resolution="existing")
        if existing != original_id:
            try:
                present = await self._store.find(folder, original_id) is not None
            except (DraftMCPError, OSError) as e:
                logger.warning("Lookup of %s failed: %s", original_id, e.__class__.__name__)
                present = True
            if present:
                logger.info("Deleting %s left behind by an earlier revision", original_id)
                result = await self._reconcile(folder, original_id, result)
            else:
                result = replace(result, replaced_original=True, deleted_original=True)

        diagnostics: dict[str, Any] = {"resolution": result.resolution}
        if "reconciliation" in result.diagnostics:
            diagnostics["reconciliation"] = result.diagnostics["reconciliation"]
        return MutationOutcome(
            ok=True,
            status=MutationStatus.ALREADY_EXISTS,
            resolved_id=existing,
            original_id=original_id,
            deleted_original=result.deleted_original,
            replaced_original=result.replaced_original,
            token=token,
            folder=folder,
            diagnostics=diagnostics,
        )

    # -------------------------------------------------------------------------
    # shared outcomes
    # -------------------------------------------------------------------------

    async def _deferred(
        self, token: str, folder: str, *, original_id: str | None = None
    ) -> MutationOutcome:
        settled = await self._dedup.wait_settled(token)
        if settled and original_id is not None:
            return await self._existing_revision(token, folder, original_id, settled)
        if settled:
            return MutationOutcome(
                ok=True,
                status=MutationStatus.ALREADY_EXISTS,
                resolved_id=settled,
                token=token,
                folder=folder,
            )
        return MutationOutcome(
            ok=True,
            status=MutationStatus.ALREADY_PENDING,
            original_id=original_id,
            token=token,
            folder=folder,
        )

    @staticmethod
    def _failed(
        token: str, folder: str, exc: Exception, *, original_id: str | None = None
    ) -> MutationOutcome:
        code = getattr(exc, "code", "BACKEND_UNAVAILABLE")
        logger.warning("Mutation for token %s failed: %s", token, code)
        return MutationOutcome(
            ok=False,
            status=MutationStatus.FAILED,
            original_id=original_id,
            token=token,
            folder=folder,
            error={"code": code, "message": str(exc)},
        )
