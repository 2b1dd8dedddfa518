"""
Shared fixtures: fast detection policy, in-memory backend, wired orchestrator.
"""

from __future__ import annotations

from dataclasses import replace

import pytest

from contracts import DraftContent, DraftHeaders
from src.draft_mcp.compose import render_draft
from src.draft_mcp.config import DetectionSettings, HttpSettings, MailSettings, Settings
from src.draft_mcp.dedup import DedupEngine, InMemoryPendingStore
from src.draft_mcp.detector import CompletionDetector
from src.draft_mcp.memory_store import InMemoryArtifactStore, MemoryBackendBehavior
from src.draft_mcp.orchestrator import MutationOrchestrator

DOMAIN = "example.com"

FAST_DETECTION = DetectionSettings(
    total_budget_seconds=2.0,
    submit_timeout_seconds=0.5,
    event_grace_seconds=0.5,
    scan_attempts=6,
    scan_interval_seconds=0.02,
    snapshot_limit=10,
    fetch_budget=5,
)


def make_settings(**detection_overrides) -> Settings:
    return Settings(
        environment="test",
        log_level="DEBUG",
        http=HttpSettings(host="127.0.0.1", port=8765, path="/"),
        mail=MailSettings(
            backend="memory",
            account_id="test",
            drafts_folder="Drafts",
            draft_domain=DOMAIN,
            pending_wait_seconds=2.0,
        ),
        detection=replace(FAST_DETECTION, **detection_overrides),
    )


def make_raw(
    message_id: str,
    body: str,
    *,
    subject: str = "Quarterly numbers",
    from_addr: str = "Alice <alice@example.org>",
    to: str = "me@example.com",
    cc: str = "",
    is_html: bool = False,
) -> bytes:
    return render_draft(
        DraftContent(
            headers=DraftHeaders(to=to, subject=subject, cc=cc, from_addr=from_addr),
            body=body,
            is_html=is_html,
            message_id=message_id,
        )
    )


class Harness:
    """Store, dedup engine, detector and orchestrator wired together."""

    def __init__(self, behavior: MemoryBackendBehavior | None = None, **detection_overrides) -> None:
        self.store = InMemoryArtifactStore(behavior=behavior, domain="backend.invalid")
        self.pending = InMemoryPendingStore()
        self.dedup = DedupEngine(self.store, self.pending, domain=DOMAIN, pending_wait_seconds=2.0)
        self.policy = replace(FAST_DETECTION, **detection_overrides)
        self.detector = CompletionDetector(self.store, self.policy)
        self.orchestrator = MutationOrchestrator(
            self.store,
            self.dedup,
            self.detector,
            from_address="Me <me@example.com>",
            own_address="me@example.com",
        )


@pytest.fixture
def harness() -> Harness:
    return Harness()


@pytest.fixture
def make_harness():
    return Harness
