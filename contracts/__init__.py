"""
Draft MCP Contract Index
========================

AUTHORITY: This file is the SINGLE authoritative entrypoint for all
Draft MCP contracts. Import from here, not from individual contract files.
"""

from contracts.draft_protocol_contract import (
    RECONCILIATION_FAILED,
    # Test Case Index
    TEST_CASES,
    ArtifactSnapshot,
    # Collaborators
    ArtifactStore,
    ArtifactSummary,
    AuthFailedError,
    BackendUnavailableError,
    BiosecretDeniedError,
    BiosecretNotFoundError,
    CandidateScore,
    CompletionDetectorContract,
    CompletionResult,
    ComposeSession,
    ConnectionFailedError,
    ConnectionStatus,
    # Contracts (Protocols)
    CreateDraftContract,
    DraftContent,
    DraftHeaders,
    # Error Types
    DraftMCPError,
    # Domain Types
    EmailProtocol,
    FolderInfo,
    FolderNotFoundError,
    Fragment,
    MessageNotFoundError,
    MutationOutcome,
    MutationRequest,
    MutationStatus,
    NotConnectedError,
    OperationKind,
    PendingStore,
    ReviseDraftContract,
    SaveEvent,
    SaveReceipt,
    ToolNotFoundError,
    ValidationError,
)

__all__ = [
    # Domain Types
    "EmailProtocol",
    "OperationKind",
    "MutationStatus",
    "FolderInfo",
    "ConnectionStatus",
    "ArtifactSummary",
    "ArtifactSnapshot",
    "DraftHeaders",
    "DraftContent",
    "SaveReceipt",
    "SaveEvent",
    "MutationRequest",
    "Fragment",
    "CandidateScore",
    "CompletionResult",
    "MutationOutcome",
    "RECONCILIATION_FAILED",
    # Error Types
    "DraftMCPError",
    "BiosecretDeniedError",
    "BiosecretNotFoundError",
    "AuthFailedError",
    "ConnectionFailedError",
    "NotConnectedError",
    "FolderNotFoundError",
    "MessageNotFoundError",
    "ValidationError",
    "BackendUnavailableError",
    "ToolNotFoundError",
    # Collaborators
    "ArtifactStore",
    "ComposeSession",
    "PendingStore",
    # Contracts
    "CreateDraftContract",
    "ReviseDraftContract",
    "CompletionDetectorContract",
    # Test Traceability
    "TEST_CASES",
    # Functions
    "audit_contract_coverage",
]


def audit_contract_coverage() -> dict:
    """
    Audit which contract clauses have test coverage.

    Returns dict with:
    - covered: clauses with at least one test
    - uncovered: clauses with no tests
    - test_count: total tests defined
    """
    covered_clauses = set()
    for test_info in TEST_CASES.values():
        for clause in test_info.get("enforces", []):
            covered_clauses.add(clause)

    all_clauses = set()

    # Create draft clauses
    all_clauses.update(
        [
            "PRE-CREATE-01",
            "PRE-CREATE-02",
            "POST-CREATE-01",
            "POST-CREATE-02",
            "POST-CREATE-03",
            "INV-CREATE-01",
            "INV-CREATE-02",
        ]
    )

    # Revise clauses
    all_clauses.update(
        [
            "PRE-REVISE-01",
            "POST-REVISE-01",
            "POST-REVISE-02",
            "POST-REVISE-03",
            "POST-REVISE-04",
            "INV-REVISE-01",
            "INV-REVISE-02",
            "ERRORS: MESSAGE_NOT_FOUND",
        ]
    )

    # Detector clauses
    all_clauses.update(
        [
            "POST-DETECT-01",
            "POST-DETECT-02",
            "POST-DETECT-03",
            "INV-DETECT-01",
            "INV-DETECT-02",
        ]
    )

    # Collaborator clauses
    all_clauses.update(
        [
            "POST-PENDING-01",
            "INV-PENDING-01",
            "POST-STORE-02",
            "POST-STORE-04",
            "INV-STORE-02",
        ]
    )

    # Global invariants
    all_clauses.update(
        [
            "INV-GLOBAL-01",
            "INV-GLOBAL-02",
            "INV-GLOBAL-03",
            "INV-GLOBAL-04",
            "INV-GLOBAL-05",
        ]
    )

    uncovered = all_clauses - covered_clauses

    return {
        "covered": sorted(covered_clauses),
        "uncovered": sorted(uncovered),
        "test_count": len(TEST_CASES),
        "coverage_pct": round(len(covered_clauses) / len(all_clauses) * 100, 1),
    }
