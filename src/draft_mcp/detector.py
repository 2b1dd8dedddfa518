"""
Completion Detector
===================

Works out which artifact a save produced when the backend may not say.

    SNAPSHOT -> SUBMIT -> (FAST_PATH | AWAIT_EVENT + SCAN) -> SCORE
             -> RESOLVED | TIMEOUT

POST-DETECT-01: A receipt carrying a stable id wins over any scan outcome
POST-DETECT-02: run() returns within total_budget_seconds plus scheduling slack
POST-DETECT-03: TIMEOUT carries candidates, scores and per-step errors
INV-DETECT-01:  Every listing asks for at most snapshot_limit items
INV-DETECT-02:  TIMEOUT is a result, never an exception
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import asdict
from typing import Any, Awaitable, Callable, Sequence

from contracts import (
    ArtifactSnapshot,
    ArtifactStore,
    ArtifactSummary,
    CandidateScore,
    CompletionResult,
    DraftMCPError,
    Fragment,
    SaveEvent,
    SaveReceipt,
)
from src.draft_mcp.compose import extract_body, html_to_text, normalize_stable_id
from src.draft_mcp.config import DetectionSettings

logger = logging.getLogger("draft-mcp.detector")

MARKER_RE = re.compile(r"\b[A-Z][A-Z0-9]*-\d+[\w-]*\b")
FILLER_RE = re.compile(
    r"^(hi|hello|hey|dear|thanks|thank you|many thanks|best|best regards|kind regards|"
    r"regards|cheers|sincerely|br)\b[\w ,.!'-]{0,30}$",
    re.IGNORECASE,
)

StoreErrors = (DraftMCPError, OSError, asyncio.TimeoutError)

Submit = Callable[[], Awaitable["SaveReceipt | None"]]
Sleep = Callable[[float], Awaitable[None]]


# =============================================================================
# SCORING
# =============================================================================

def _squash(text: str) -> str:
    return " ".join(text.split()).casefold()


def expected_fragments(
    content: str,
    *,
    is_html: bool = False,
    markers: Sequence[str] = (),
    policy: DetectionSettings | None = None,
) -> list[Fragment]:
    """
    Pieces of the submitted content to look for in candidates.

    Non-blank lines become fragments; short lines and greetings count less.
    Marker tokens (caller supplied or ABC-123 style) are separate fragments
    of full weight that must all be present.
    """
    policy = policy or DetectionSettings()
    text = html_to_text(content) if is_html else (content or "")
    text = text.replace("\r\n", "\n").replace("\r", "\n")

    fragments: list[Fragment] = []
    seen: set[str] = set()

    def add(fragment: Fragment) -> None:
        key = _squash(fragment.text)
        if key and key not in seen:
            seen.add(key)
            fragments.append(fragment)

    for marker in markers:
        if marker and marker.strip():
            add(Fragment(text=marker.strip(), weight=1.0, is_marker=True))

    for raw_line in text.split("\n"):
        line = raw_line.strip()
        if not line:
            continue
        for marker in MARKER_RE.findall(line):
            add(Fragment(text=marker, weight=1.0, is_marker=True))
        if len(line) < policy.short_line_length or FILLER_RE.match(line):
            add(Fragment(text=line, weight=policy.short_line_weight))
        else:
            add(Fragment(text=line, weight=1.0))

    return fragments


def score_candidate(
    stable_id: str,
    body_text: str,
    fragments: Sequence[Fragment],
    *,
    is_new: bool,
    policy: DetectionSettings | None = None,
) -> CandidateScore:
    """Weighted overlap of fragments with a candidate body."""
    policy = policy or DetectionSettings()

    if not fragments:
        return CandidateScore(
            stable_id=stable_id, overlap_score=0.0, is_new=is_new, threshold=0.0, accepted=is_new
        )

    haystack = _squash(body_text)
    matched = [f for f in fragments if _squash(f.text) in haystack]
    score = sum(f.weight for f in matched)
    total = sum(f.weight for f in fragments)
    markers = [f for f in fragments if f.is_marker]

    if markers:
        threshold = max(1.0, policy.marker_ratio * total)
        accepted = score >= threshold and all(m in matched for m in markers)
    else:
        threshold = min(max(float(policy.min_fragment_matches), policy.plain_ratio * total), total)
        needed = min(policy.min_fragment_matches, len(fragments))
        accepted = score >= threshold and len(matched) >= needed

    return CandidateScore(
        stable_id=stable_id,
        overlap_score=round(score, 3),
        is_new=is_new,
        threshold=round(threshold, 3),
        accepted=accepted,
        matched=len(matched),
    )


# =============================================================================
# DETECTOR
# =============================================================================

class CompletionDetector:
    """One bounded detection run per submitted save."""

    def __init__(
        self,
        store: ArtifactStore,
        policy: DetectionSettings | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self.policy = policy or DetectionSettings()
        self._sleep = sleep
        self._clock = clock

    async def run(
        self, folder: str, submit: Submit, fragments: Sequence[Fragment]
    ) -> CompletionResult:
        run = _DetectionRun(self, folder, list(fragments))
        return await run.execute(submit)


class _DetectionRun:
    """State of a single run; discarded afterwards."""

    def __init__(self, detector: CompletionDetector, folder: str, fragments: list[Fragment]) -> None:
        self.store = detector._store
        self.policy = detector.policy
        self.sleep = detector._sleep
        self.clock = detector._clock
        self.folder = folder
        self.fragments = fragments
        self.started = self.clock()
        self.deadline = self.started + self.policy.total_budget_seconds
        self.hints: list[str] = []
        self.snapshot = ArtifactSnapshot(folder=folder, items=(), captured_at=self.started)
        self.diagnostics: dict[str, Any] = {
            "states": [],
            "budget_seconds": self.policy.total_budget_seconds,
            "snapshot_size": 0,
            "attempts": 0,
            "candidates": [],
            "scores": [],
            "events": [],
            "errors": [],
        }

    def remaining(self) -> float:
        return max(0.0, self.deadline - self.clock())

    def enter(self, state: str) -> None:
        self.diagnostics["states"].append(state)

    def error(self, step: str, exc: BaseException) -> None:
        self.diagnostics["errors"].append(
            {"step": step, "error": exc.__class__.__name__, "message": str(exc)[:200]}
        )

    async def bounded(self, awaitable: Awaitable[Any]) -> Any:
        return await asyncio.wait_for(awaitable, timeout=self.remaining())

    def finish(self, resolved_id: str | None, resolution: str) -> CompletionResult:
        elapsed = self.clock() - self.started
        self.diagnostics["elapsed_seconds"] = round(elapsed, 3)
        self.enter("RESOLVED" if resolved_id else "TIMEOUT")
        if resolved_id:
            logger.info(
                "Save in %s resolved to %s via %s in %.2fs",
                self.folder, resolved_id, resolution, elapsed,
            )
        else:
            logger.warning(
                "Save in %s unconfirmed after %.2fs (%d scan attempts)",
                self.folder, elapsed, self.diagnostics["attempts"],
            )
        return CompletionResult(
            resolved_id=normalize_stable_id(resolved_id) or None,
            resolution=resolution if resolved_id else "timeout",
            diagnostics=self.diagnostics,
        )

    async def execute(self, submit: Submit) -> CompletionResult:
        self.enter("SNAPSHOT")
        try:
            items = await self.bounded(self.store.list_recent(self.folder, self.policy.snapshot_limit))
        except StoreErrors as e:
            self.error("snapshot", e)
            items = []
        self.snapshot = ArtifactSnapshot(folder=self.folder, items=tuple(items), captured_at=self.clock())
        self.diagnostics["snapshot_size"] = len(items)

        # Subscribe before submitting so an immediate event is not lost
        queue = self.store.subscribe_saves(self.folder)
        try:
            return await self._submit_and_detect(submit, queue)
        finally:
            if queue is not None:
                self.store.unsubscribe_saves(self.folder, queue)

    async def _submit_and_detect(
        self, submit: Submit, queue: asyncio.Queue[SaveEvent] | None
    ) -> CompletionResult:
        self.enter("SUBMIT")
        submit_task = asyncio.ensure_future(submit())
        submit_task.add_done_callback(_retrieve_late_failure)

        timeout = min(self.policy.submit_timeout_seconds, self.remaining())
        done, _ = await asyncio.wait({submit_task}, timeout=timeout)
        if submit_task in done:
            receipt = submit_task.result()
            if receipt is not None and receipt.stable_id:
                self.enter("FAST_PATH")
                self.diagnostics["receipt"] = asdict(receipt)
                return self.finish(receipt.stable_id, "fast_path")
        else:
            self.diagnostics["submit_pending"] = True

        racers: dict[asyncio.Future, str] = {asyncio.ensure_future(self._scan()): "scan"}
        if queue is not None:
            self.enter("AWAIT_EVENT")
            racers[asyncio.ensure_future(self._await_event(queue))] = "event"
        if not submit_task.done():
            racers[asyncio.ensure_future(self._late_receipt(submit_task))] = "fast_path"

        pending = set(racers)
        try:
            while pending:
                timeout = self.remaining()
                if timeout <= 0:
                    break
                done, pending = await asyncio.wait(
                    pending, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
                )
                if not done:
                    break
                for task in done:
                    if task.cancelled():
                        continue
                    exc = task.exception()
                    if exc is not None:
                        self.error(racers[task], exc)
                        continue
                    resolved = task.result()
                    if resolved:
                        return self.finish(resolved, racers[task])
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        return self.finish(None, "timeout")

    async def _late_receipt(self, submit_task: asyncio.Future) -> str | None:
        # asyncio.wait leaves the save running if this watcher is cancelled
        await asyncio.wait({submit_task})
        if submit_task.cancelled():
            return None
        exc = submit_task.exception()
        if exc is not None:
            self.error("submit", exc)
            return None
        receipt = submit_task.result()
        if receipt is not None and receipt.stable_id:
            self.diagnostics["receipt"] = asdict(receipt)
            return receipt.stable_id
        return None

    async def _await_event(self, queue: asyncio.Queue[SaveEvent]) -> str | None:
        grace_deadline = min(self.deadline, self.clock() + self.policy.event_grace_seconds)
        while True:
            timeout = grace_deadline - self.clock()
            if timeout <= 0:
                return None
            try:
                event = await asyncio.wait_for(queue.get(), timeout=timeout)
            except asyncio.TimeoutError:
                return None
            if event.folder != self.folder:
                continue

            stable_id = normalize_stable_id(event.stable_id)
            self.diagnostics["events"].append(stable_id)
            if stable_id not in self.hints:
                self.hints.append(stable_id)

            score = await self._score(stable_id, is_new=not self.snapshot.contains(stable_id))
            if score.accepted:
                return stable_id

    async def _scan(self) -> str | None:
        policy = self.policy
        for attempt in range(1, policy.scan_attempts + 1):
            if attempt > 1:
                delay = min(policy.scan_interval_seconds, self.remaining())
                if delay <= 0:
                    return None
                await self.sleep(delay)

            self.enter("SCAN")
            self.diagnostics["attempts"] = attempt
            try:
                items = await self.bounded(self.store.list_recent(self.folder, policy.snapshot_limit))
            except StoreErrors as e:
                self.error(f"scan[{attempt}]", e)
                continue

            resolved = await self._score_attempt(items)
            if resolved:
                return resolved
        return None

    async def _score_attempt(self, items: list[ArtifactSummary]) -> str | None:
        new_items = [item for item in items if not self.snapshot.contains(item.stable_id)]
        candidates = new_items or items
        new_ids = {item.stable_id for item in new_items}

        # Event hints first; listing order is most recent first
        ordered = sorted(candidates, key=lambda item: item.stable_id not in self.hints)
        rank = {item.stable_id: index for index, item in enumerate(candidates)}

        self.enter("SCORE")
        scores = []
        for item in ordered[: self.policy.fetch_budget]:
            if item.stable_id not in self.diagnostics["candidates"]:
                self.diagnostics["candidates"].append(item.stable_id)
            scores.append(await self._score(item.stable_id, is_new=item.stable_id in new_ids))

        accepted = [s for s in scores if s.accepted]
        if not accepted:
            return None
        best = min(
            accepted,
            key=lambda s: (not s.is_new, -s.overlap_score, rank.get(s.stable_id, len(rank))),
        )
        return best.stable_id

    async def _score(self, stable_id: str, *, is_new: bool) -> CandidateScore:
        try:
            raw = await self.bounded(self.store.fetch_raw(self.folder, stable_id))
        except StoreErrors as e:
            self.error(f"fetch:{stable_id}", e)
            score = CandidateScore(
                stable_id=stable_id,
                overlap_score=0.0,
                is_new=is_new,
                threshold=0.0,
                accepted=False,
                error=e.__class__.__name__,
            )
        else:
            score = score_candidate(
                stable_id,
                extract_body(raw).searchable(),
                self.fragments,
                is_new=is_new,
                policy=self.policy,
            )
        self.diagnostics["scores"].append(asdict(score))
        logger.debug(
            "Candidate %s score=%.2f threshold=%.2f accepted=%s",
            stable_id, score.overlap_score, score.threshold, score.accepted,
        )
        return score


def _retrieve_late_failure(task: asyncio.Future) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Save task failed: %s", task.exception().__class__.__name__)
