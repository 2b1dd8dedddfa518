"""
Completion Detector Tests
=========================

CL12-E TRACEABILITY: Every test cites specific contract clause IDs.
THEATER DETECTION: Each weak-observability mode is driven through the
in-memory backend, not through mocks of the detector itself.
"""

import asyncio
import time

import pytest

from contracts import BackendUnavailableError, DraftContent, DraftHeaders, Fragment, SaveReceipt
from src.draft_mcp.config import DetectionSettings
from src.draft_mcp.detector import expected_fragments, score_candidate
from src.draft_mcp.memory_store import MemoryBackendBehavior

from tests.conftest import make_raw

BODY = "Status update for the quarter\nRevenue grew in every region\nTOK-42"


async def _save_new(harness, body=BODY, message_id="new@backend"):
    session = await harness.store.open_compose("Drafts")
    await session.set_content(
        DraftContent(headers=DraftHeaders(subject="s"), body=body, message_id=message_id)
    )
    fragments = expected_fragments(body, policy=harness.policy)
    return await harness.detector.run("Drafts", session.save, fragments)


# =============================================================================
# SCORING
# =============================================================================

class TestFragments:
    def test_markers_and_weights(self):
        fragments = expected_fragments(
            "Hi Bob,\nTOK-42 status update for the quarter\nThanks", policy=DetectionSettings()
        )
        by_text = {f.text: f for f in fragments}

        assert by_text["TOK-42"].is_marker is True
        assert by_text["TOK-42"].weight == 1.0
        assert by_text["Hi Bob,"].weight == 0.5
        assert by_text["Thanks"].weight == 0.5
        assert by_text["TOK-42 status update for the quarter"].weight == 1.0

    def test_html_payload_uses_text(self):
        fragments = expected_fragments("<p>First long line here</p><p>Second long line here</p>", is_html=True)
        assert [f.text for f in fragments] == ["First long line here", "Second long line here"]

    def test_blank_payload_has_no_fragments(self):
        assert expected_fragments("  \n\n ") == []


class TestScoring:
    def test_all_markers_required(self):
        fragments = expected_fragments("Status update for the quarter", markers=["REF-9"])
        score = score_candidate("c@x", "Status update for the quarter", fragments, is_new=True)
        assert score.accepted is False
        assert score.matched == 1

        score = score_candidate("c@x", "REF-9\nStatus update for the quarter", fragments, is_new=True)
        assert score.accepted is True

    def test_plain_threshold(self):
        fragments = [
            Fragment("first long line of the body", 1.0),
            Fragment("second long line of the body", 1.0),
            Fragment("third long line of the body", 1.0),
        ]
        one = score_candidate("c@x", "first long line of the body", fragments, is_new=True)
        two = score_candidate(
            "c@x", "first long line of the body\nsecond long line of the body", fragments, is_new=True
        )
        assert one.accepted is False
        assert two.accepted is True
        assert two.threshold == 2.0

    def test_whitespace_normalized_match(self):
        fragments = [Fragment("status update for the quarter", 1.0)]
        score = score_candidate("c@x", "Status   update\r\nfor the\tquarter", fragments, is_new=False)
        assert score.overlap_score == 1.0
        assert score.accepted is True

    def test_empty_fragments_accept_only_new(self):
        assert score_candidate("c@x", "", [], is_new=True).accepted is True
        assert score_candidate("c@x", "", [], is_new=False).accepted is False


# =============================================================================
# DETECTION RUNS
# =============================================================================

class TestCompletionDetector:
    async def test_fast_path_beats_scan(self, harness):
        """
        Contract: CompletionDetectorContract
        Enforces: POST-DETECT-01
        Adversarial: True

        A perfectly matching new artifact appears, but the receipt names a
        different one: the receipt wins.
        """

        async def submit():
            harness.store.add_message("Drafts", make_raw("decoy@backend", BODY))
            return SaveReceipt(stable_id="<authoritative@backend>", backend_id=99)

        result = await harness.detector.run("Drafts", submit, expected_fragments(BODY))

        assert result.resolved_id == "authoritative@backend"
        assert result.resolution == "fast_path"
        assert "SCAN" not in result.diagnostics["states"]

    async def test_scan_finds_delayed_artifact(self, make_harness):
        harness = make_harness(MemoryBackendBehavior(return_receipts=False, visibility_delay=2))
        harness.store.add_message("Drafts", make_raw("old@backend", "Unrelated older draft body"))

        result = await _save_new(harness)

        assert result.resolved_id == "new@backend"
        assert result.resolution == "scan"
        assert result.diagnostics["attempts"] == 2

    async def test_scan_handles_rewritten_ids(self, make_harness):
        harness = make_harness(MemoryBackendBehavior(return_receipts=False, honor_message_id=False))

        result = await _save_new(harness, message_id="mcp-draft-tok@example.com")

        assert result.resolved_id is not None
        assert result.resolved_id != "mcp-draft-tok@example.com"
        assert result.resolved_id == harness.store.all_items("Drafts")[0].stable_id

    async def test_event_resolves_before_listing_catches_up(self, make_harness):
        harness = make_harness(
            MemoryBackendBehavior(return_receipts=False, emit_events=True, visibility_delay=10_000)
        )

        result = await _save_new(harness)

        assert result.resolved_id == "new@backend"
        assert result.resolution == "event"
        assert result.diagnostics["events"] == ["new@backend"]

    async def test_miskeyed_event_is_only_advisory(self, make_harness):
        harness = make_harness(
            MemoryBackendBehavior(
                return_receipts=False,
                emit_events=True,
                event_stable_id_override="wrong@backend",
                visibility_delay=2,
            )
        )

        result = await _save_new(harness)

        assert result.resolved_id == "new@backend"
        assert result.resolution == "scan"
        assert any(e["step"] == "fetch:wrong@backend" for e in result.diagnostics["errors"])

    async def test_timeout_is_bounded(self, make_harness):
        """
        Contract: CompletionDetectorContract
        Enforces: POST-DETECT-02, POST-DETECT-03, INV-DETECT-02
        """
        budget = 0.3
        harness = make_harness(
            MemoryBackendBehavior(return_receipts=False, visibility_delay=10_000),
            total_budget_seconds=budget,
            scan_attempts=1_000,
            scan_interval_seconds=0.05,
        )
        harness.store.add_message("Drafts", make_raw("old@backend", "Unrelated older draft body"))

        started = time.monotonic()
        result = await _save_new(harness)
        elapsed = time.monotonic() - started

        assert result.timed_out is True
        assert result.resolution == "timeout"
        assert elapsed < budget + 0.5
        diagnostics = result.diagnostics
        assert diagnostics["states"][-1] == "TIMEOUT"
        assert diagnostics["attempts"] >= 1
        assert diagnostics["candidates"] == ["old@backend"]
        assert all(score["accepted"] is False for score in diagnostics["scores"])
        assert "errors" in diagnostics
        assert diagnostics["budget_seconds"] == budget

    async def test_hanging_save_is_bounded(self, make_harness):
        harness = make_harness(total_budget_seconds=0.2, submit_timeout_seconds=5.0)

        async def submit():
            await asyncio.sleep(0.3)
            return SaveReceipt(stable_id="late@backend")

        started = time.monotonic()
        result = await harness.detector.run("Drafts", submit, expected_fragments(BODY))

        assert time.monotonic() - started < 0.5
        assert result.timed_out is True
        assert result.diagnostics["submit_pending"] is True

    async def test_late_receipt_is_accepted(self, make_harness):
        harness = make_harness(submit_timeout_seconds=0.05, total_budget_seconds=2.0)

        async def submit():
            await asyncio.sleep(0.15)
            return SaveReceipt(stable_id="late@backend")

        result = await harness.detector.run("Drafts", submit, expected_fragments(BODY))

        assert result.resolved_id == "late@backend"
        assert result.resolution == "fast_path"

    async def test_snapshot_is_capped(self, make_harness):
        """
        Contract: CompletionDetectorContract
        Enforces: INV-DETECT-01
        """
        harness = make_harness(MemoryBackendBehavior(return_receipts=False), snapshot_limit=10)
        for index in range(30):
            harness.store.add_message("Drafts", make_raw(f"old{index}@backend", f"Older body {index}"))

        result = await _save_new(harness)

        assert result.resolved_id == "new@backend"
        assert result.diagnostics["snapshot_size"] == 10
        assert set(harness.store.list_limits) == {10}

    async def test_empty_payload_accepts_most_recent_new(self, make_harness):
        harness = make_harness(MemoryBackendBehavior(return_receipts=False))
        harness.store.add_message("Drafts", make_raw("old@backend", "Older body"))

        result = await _save_new(harness, body="", message_id="blank@backend")

        assert result.resolved_id == "blank@backend"

    async def test_save_failure_propagates(self, make_harness):
        harness = make_harness(MemoryBackendBehavior(fail_save=True))
        with pytest.raises(BackendUnavailableError):
            await _save_new(harness)
