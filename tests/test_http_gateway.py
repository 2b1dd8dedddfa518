"""
JSON-RPC HTTP Gateway Tests
===========================

Drives the Starlette app in-process through httpx's ASGI transport.
"""

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from src.draft_mcp.http import build_http_app
from src.draft_mcp.memory_store import InMemoryArtifactStore
from src.draft_mcp.server import create_server

from tests.conftest import make_raw, make_settings


@pytest.fixture
def store():
    store = InMemoryArtifactStore(domain="backend.invalid")
    store.add_message("INBOX", make_raw("orig@example.org", "Can you send the numbers?"))
    return store


@pytest.fixture
def server(store):
    return create_server(settings=make_settings(), store=store)


@pytest.fixture
async def client(server):
    app = build_http_app(make_settings(), server)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


async def rpc(client, method, params=None, rpc_id=1):
    response = await client.post(
        "/", json={"jsonrpc": "2.0", "id": rpc_id, "method": method, "params": params or {}}
    )
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/json")
    return response.json()


async def call_tool(client, name, arguments):
    body = await rpc(client, "tools/call", {"name": name, "arguments": arguments})
    assert "error" not in body, body
    return json.loads(body["result"]["content"][0]["text"])


class TestProtocol:
    async def test_initialize(self, client):
        body = await rpc(client, "initialize", rpc_id=7)
        assert body["id"] == 7
        assert body["result"]["serverInfo"]["name"] == "draft-mcp"
        assert "tools" in body["result"]["capabilities"]

    async def test_tools_list(self, client):
        body = await rpc(client, "tools/list")
        names = {tool["name"] for tool in body["result"]["tools"]}
        assert {
            "createDraft",
            "replyToMessageDraft",
            "reviseDraftInPlace",
            "searchMessages",
            "listLatestMessages",
            "getMessage",
            "getRawMessage",
            "deleteMessages",
            "setMessageRead",
            "moveMessages",
            "getLatestUnread",
            "getLatestUnreadBatch",
            "listFolders",
            "status",
        } <= names
        create = next(t for t in body["result"]["tools"] if t["name"] == "createDraft")
        assert create["inputSchema"]["required"] == ["to", "subject", "body"]

    async def test_unknown_method(self, client):
        body = await rpc(client, "tools/destroy")
        assert body["error"]["code"] == -32601

    async def test_unknown_tool(self, client):
        body = await rpc(client, "tools/call", {"name": "sendMail", "arguments": {}})
        assert body["error"]["code"] == -32601

    async def test_missing_argument(self, client):
        body = await rpc(client, "tools/call", {"name": "createDraft", "arguments": {"to": "a@b"}})
        assert body["error"]["code"] == -32602
        assert "subject" in body["error"]["message"]

    async def test_wrong_argument_type(self, client):
        body = await rpc(
            client,
            "tools/call",
            {"name": "listLatestMessages", "arguments": {"folderPath": "INBOX", "limit": "5"}},
        )
        assert body["error"]["code"] == -32602

    async def test_parse_error(self, client):
        response = await client.post(
            "/", content=b"{not json", headers={"content-type": "application/json"}
        )
        assert response.status_code == 200
        assert response.headers["content-type"] == "application/json; charset=utf-8"
        assert response.json()["error"]["code"] == -32700

    async def test_non_object_request(self, client):
        response = await client.post("/", json=[1, 2])
        assert response.json()["error"]["code"] == -32600

    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["connected"] is True


class TestToolCalls:
    async def test_create_draft(self, client):
        result = await call_tool(
            client,
            "createDraft",
            {"to": "bob@example.org", "subject": "Hi", "body": "Hello there Bob", "idempotencyKey": "K-1"},
        )
        assert result["success"] is True
        assert result["status"] == "created"
        assert result["messageId"] == "mcp-draft-k-1@example.com"
        assert result["draftsFolder"] == "Drafts"

        again = await call_tool(
            client,
            "createDraft",
            {"to": "bob@example.org", "subject": "Hi", "body": "Hello there Bob", "idempotencyKey": "K-1"},
        )
        assert again["status"] == "already_exists"
        assert again["messageId"] == result["messageId"]

    async def test_blank_idempotency_key_is_invalid_params(self, client):
        body = await rpc(
            client,
            "tools/call",
            {
                "name": "createDraft",
                "arguments": {"to": "a@b", "subject": "s", "body": "b", "idempotencyKey": " "},
            },
        )
        assert body["error"]["code"] == -32602

    async def test_reply_then_revise(self, client, store):
        reply = await call_tool(
            client,
            "replyToMessageDraft",
            {"messageId": "<orig@example.org>", "folderPath": "INBOX", "body": "Attached below"},
        )
        assert reply["inReplyTo"] == "orig@example.org"
        assert reply["status"] == "created"

        revised = await call_tool(
            client,
            "reviseDraftInPlace",
            {"stableId": reply["messageId"], "newContent": "Numbers attached, see row 4"},
        )
        assert revised["ok"] is True
        assert revised["oldMessageId"] == reply["messageId"]
        assert revised["deletedOld"] is True
        assert revised["debug"]["split"]["preserved"] is True

        message = await call_tool(
            client, "getMessage", {"messageId": revised["messageId"], "folderPath": "Drafts"}
        )
        assert "Numbers attached" in message["bodyHtml"]
        assert "Can you send the numbers?" in message["bodyHtml"]

    async def test_read_tools(self, client):
        listed = await call_tool(client, "listLatestMessages", {"folderPath": "INBOX", "limit": 5})
        assert [m["stable_id"] for m in listed["messages"]] == ["orig@example.org"]

        found = await call_tool(client, "searchMessages", {"query": "numbers"})
        assert [m["stable_id"] for m in found["messages"]] == ["orig@example.org"]

        raw = await call_tool(client, "getRawMessage", {"messageId": "orig@example.org", "folderPath": "INBOX"})
        assert "Message-ID: <orig@example.org>" in raw["raw"]

        marked = await call_tool(
            client, "setMessageRead", {"messageId": "orig@example.org", "folderPath": "INBOX"}
        )
        assert marked["read"] is True

        folders = await call_tool(client, "listFolders", {})
        inbox = next(f for f in folders["folders"] if f["name"] == "INBOX")
        assert inbox["unread_count"] == 0

        status = await call_tool(client, "status", {})
        assert status["connected"] is True
        assert status["protocol"] == "memory"

    async def test_delete_messages_reports_failures(self, client):
        result = await call_tool(
            client,
            "deleteMessages",
            {"folderPath": "INBOX", "messageIds": ["orig@example.org", "ghost@example.org"]},
        )
        assert result["deleted"] == ["orig@example.org"]
        assert result["failed"][0]["messageId"] == "ghost@example.org"
        assert result["failed"][0]["error"] == "MESSAGE_NOT_FOUND"

    async def test_move_messages(self, client, store):
        result = await call_tool(
            client,
            "moveMessages",
            {
                "fromFolderPath": "INBOX",
                "toFolderPath": "Drafts",
                "messageIds": ["<orig@example.org>", "ghost@example.org"],
            },
        )

        assert result["moved"] == ["orig@example.org"]
        assert result["failed"][0]["error"] == "MESSAGE_NOT_FOUND"
        assert await store.find("INBOX", "orig@example.org") is None
        assert await store.find("Drafts", "orig@example.org") is not None

    async def test_move_to_missing_folder_fails_per_message(self, client, store):
        result = await call_tool(
            client,
            "moveMessages",
            {"fromFolderPath": "INBOX", "toFolderPath": "Archive", "messageIds": ["orig@example.org"]},
        )

        assert result["moved"] == []
        assert result["failed"][0]["error"] == "FOLDER_NOT_FOUND"
        assert await store.find("INBOX", "orig@example.org") is not None

    async def test_latest_unread_batch(self, client, store):
        store.add_message("INBOX", make_raw("seen@example.org", "Already read"), read=True)
        store.add_message("INBOX", make_raw("new@example.org", "Second request", subject="Follow-up"))

        batch = await call_tool(client, "getLatestUnreadBatch", {"limit": 5})

        assert batch["ok"] is True
        assert batch["folderPath"] == "INBOX"
        assert batch["count"] == 2
        assert [item["messageId"] for item in batch["items"]] == ["new@example.org", "orig@example.org"]
        assert batch["items"][0]["subject"] == "Follow-up"
        assert "Second request" in batch["items"][0]["bodyText"]

        # Reading through the unread tools leaves the messages unread
        again = await call_tool(client, "getLatestUnread", {"folderPath": "INBOX"})
        assert again["messageId"] == "new@example.org"

    async def test_latest_unread_when_none(self, client):
        await call_tool(client, "setMessageRead", {"messageId": "orig@example.org", "folderPath": "INBOX"})

        result = await call_tool(client, "getLatestUnread", {})

        assert result == {
            "ok": True,
            "message": "No unread messages found in folder",
            "folderPath": "INBOX",
        }

    async def test_unread_batch_limit_is_bounded(self, client):
        body = await rpc(
            client, "tools/call", {"name": "getLatestUnreadBatch", "arguments": {"limit": 51}}
        )
        assert body["error"]["code"] == -32602


class TestErrorEnvelope:
    async def test_handler_errors_are_enveloped(self, client, store, caplog):
        """
        Contract: INV-GLOBAL-01
        Enforces: INV-GLOBAL-01
        """
        missing = await rpc(
            client,
            "tools/call",
            {"name": "getMessage", "arguments": {"messageId": "nope@x", "folderPath": "INBOX"}},
        )
        assert missing["error"]["code"] == -32000
        assert "nope@x" in missing["error"]["message"]

        store.fetch_raw = AsyncMock(side_effect=RuntimeError("backend exploded"))
        crashed = await rpc(
            client,
            "tools/call",
            {"name": "getRawMessage", "arguments": {"messageId": "orig@example.org", "folderPath": "INBOX"}},
        )
        assert crashed["error"] == {"code": -32000, "message": "backend exploded"}
        assert any(record.exc_info for record in caplog.records)

    async def test_not_connected_is_enveloped(self):
        server = create_server(settings=make_settings())
        app = build_http_app(make_settings(), server)
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
            body = await rpc(
                c, "tools/call", {"name": "createDraft", "arguments": {"to": "a", "subject": "s", "body": "b"}}
            )
            health = await c.get("/health")

        assert body["error"]["code"] == -32000
        assert health.json()["connected"] is False
