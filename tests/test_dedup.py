"""
Idempotency & Dedup Engine Tests
================================

CL12-E TRACEABILITY: Every test cites specific contract clause IDs.
"""

import asyncio
import threading
from unittest.mock import AsyncMock

import pytest

from contracts import BackendUnavailableError, DraftContent, DraftHeaders
from src.draft_mcp.dedup import DedupEngine, InMemoryPendingStore, derive_token, normalize_payload
from src.draft_mcp.memory_store import InMemoryArtifactStore


@pytest.fixture
def store():
    return InMemoryArtifactStore()


@pytest.fixture
def engine(store):
    return DedupEngine(store, InMemoryPendingStore(), domain="example.com", pending_wait_seconds=0.5)


class TestTokenDerivation:
    def test_token_deterministic(self):
        """
        Contract: CreateDraftContract
        Enforces: POST-CREATE-02
        """
        a = derive_token("create", "Hello\r\nWorld  \r\n\r\n")
        b = derive_token("create", "\nHello\nWorld")
        assert a == b
        assert a.startswith("create-")
        assert len(a) == len("create-") + 16

        assert derive_token("create", "Hello\nWorld!") != a
        assert derive_token("revise", "Hello\nWorld") != a
        assert derive_token("revise", "x", target="<a@b>") == derive_token("revise", "x", target="a@b")
        assert derive_token("revise", "x", target="a@b") != derive_token("revise", "x", target="c@d")

    def test_caller_key_wins(self):
        assert derive_token("create", "anything", idempotency_key="TOK-42") == "tok-42"
        # Nothing left after sanitizing: fall back to the content hash
        assert derive_token("create", "x", idempotency_key="***").startswith("create-")

    def test_normalize_payload(self):
        assert normalize_payload("\r\n  a  \r\nb\t\r\n\r\n") == "  a\nb"


class TestPendingSet:
    def test_begin_is_insert_if_absent(self, engine):
        """
        Contract: PendingStore
        Enforces: POST-PENDING-01, INV-PENDING-01
        """
        first = engine.begin("tok")
        second = engine.begin("tok")
        assert first.admitted is True
        assert second.admitted is False

        engine.end("tok")
        assert engine.pending.contains("tok") is False
        assert engine.begin("tok").admitted is True

    def test_add_if_absent_across_threads(self):
        """
        Contract: PendingStore
        Enforces: POST-PENDING-01
        Adversarial: True
        """
        pending = InMemoryPendingStore()
        results = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            results.append(pending.add_if_absent("same"))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1

    async def test_admit_releases_on_exception(self, engine):
        """
        Contract: CreateDraftContract
        Enforces: INV-CREATE-02, INV-REVISE-02
        Adversarial: True
        """
        with pytest.raises(RuntimeError):
            async with engine.admit("tok") as admission:
                assert admission.admitted is True
                assert engine.pending.contains("tok") is True
                raise RuntimeError("boom")

        assert engine.pending.contains("tok") is False

    async def test_admit_releases_on_cancellation(self, engine):
        """
        Contract: CreateDraftContract
        Enforces: INV-CREATE-02
        """
        entered = asyncio.Event()

        async def hold():
            async with engine.admit("tok"):
                entered.set()
                await asyncio.sleep(10)

        task = asyncio.ensure_future(hold())
        await entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert engine.pending.contains("tok") is False

    async def test_non_admitted_does_not_release(self, engine):
        engine.begin("tok")
        async with engine.admit("tok") as admission:
            assert admission.admitted is False
        assert engine.pending.contains("tok") is True

    async def test_wait_settled_returns_recorded_result(self, engine):
        engine.begin("tok")

        async def finish():
            await asyncio.sleep(0.01)
            engine.record("tok", "<done@example.com>")
            engine.end("tok")

        asyncio.ensure_future(finish())
        assert await engine.wait_settled("tok", timeout=1.0) == "done@example.com"

    async def test_wait_settled_times_out(self, engine):
        engine.begin("tok")
        assert await engine.wait_settled("tok", timeout=0.01) is None
        assert engine.pending.contains("tok") is True


class TestExists:
    async def test_finds_synthetic_id(self, engine, store):
        store.add_draft(
            "Drafts",
            DraftContent(headers=DraftHeaders(subject="s"), body="b", message_id="mcp-draft-tok@example.com"),
        )
        assert await engine.exists("tok", "Drafts") == "mcp-draft-tok@example.com"
        assert await engine.exists("other", "Drafts") is None

    async def test_recorded_result_must_still_exist(self, engine, store):
        summary = store.add_draft(
            "Drafts", DraftContent(headers=DraftHeaders(subject="s"), body="b", message_id="rewritten@backend")
        )
        engine.record("tok", summary.stable_id)
        assert await engine.exists("tok", "Drafts") == "rewritten@backend"

        await store.delete("Drafts", "rewritten@backend")
        assert await engine.exists("tok", "Drafts") is None

    async def test_lookup_failure_is_not_found(self):
        """A store that cannot answer means "not found", never an exception."""
        failing = AsyncMock()
        failing.find.side_effect = BackendUnavailableError("down")
        engine = DedupEngine(failing, domain="example.com")
        assert await engine.exists("tok", "Drafts") is None
