"""
Draft MCP Server
================

MCP server for mail access whose draft mutations (create, reply, revise)
are idempotent and confirmed against a weakly observable backend.
"""

__version__ = "0.2.0"

from src.draft_mcp.credentials import Credentials, retrieve_credentials
from src.draft_mcp.dedup import DedupEngine, InMemoryPendingStore
from src.draft_mcp.detector import CompletionDetector
from src.draft_mcp.memory_store import InMemoryArtifactStore, MemoryBackendBehavior
from src.draft_mcp.orchestrator import MutationOrchestrator
from src.draft_mcp.server import DraftMCPServer, create_server, get_server

__all__ = [
    "DraftMCPServer",
    "get_server",
    "create_server",
    "MutationOrchestrator",
    "CompletionDetector",
    "DedupEngine",
    "InMemoryPendingStore",
    "InMemoryArtifactStore",
    "MemoryBackendBehavior",
    "Credentials",
    "retrieve_credentials",
]
