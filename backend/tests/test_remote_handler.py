"""
Tests for the HTTP node handler, using httpx.MockTransport in place of the
node service.
"""

import json

import httpx
import pytest

import sys
from pathlib import Path

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from contentflow.services.errors import HandlerError
from contentflow.services.remote_handler import RemoteNodeHandler
from contentflow.services.workflow_executor import execute_workflow


def mock_client(responder) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(responder))


class TestRemoteNodeHandler:
    """Tests for request shape and envelope handling."""

    @pytest.mark.asyncio
    async def test_posts_node_request_and_returns_result(self):
        requests = []

        def responder(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"ok": True, "result": {"script": "hello"}})

        async with mock_client(responder) as client:
            handler = RemoteNodeHandler("http://nodes.test/", client=client)
            result = await handler(
                "script-generator", {"tone": "casual"}, {"openai": "sk"}, {"A": "topic"}
            )

        assert result == {"script": "hello"}
        assert str(requests[0].url) == "http://nodes.test/api/execute-node"
        body = json.loads(requests[0].content)
        assert body == {
            "type": "script-generator",
            "payload": {"tone": "casual"},
            "apiKeys": {"openai": "sk"},
            "inputData": {"A": "topic"},
            "nodeId": None,
            "runId": None,
        }

    @pytest.mark.asyncio
    async def test_error_envelope_raises(self):
        def responder(request):
            return httpx.Response(200, json={"ok": False, "error": "quota exceeded"})

        async with mock_client(responder) as client:
            handler = RemoteNodeHandler("http://nodes.test", client=client)
            with pytest.raises(HandlerError, match="quota exceeded"):
                await handler("voice-generator", {}, {}, {})

    @pytest.mark.asyncio
    async def test_http_error_status_raises(self):
        def responder(request):
            return httpx.Response(500, json={"ok": True, "result": "ignored"})

        async with mock_client(responder) as client:
            handler = RemoteNodeHandler("http://nodes.test", client=client)
            with pytest.raises(HandlerError, match="HTTP 500"):
                await handler("voice-generator", {}, {}, {})

    @pytest.mark.asyncio
    async def test_non_json_body_raises(self):
        def responder(request):
            return httpx.Response(502, text="<html>bad gateway</html>")

        async with mock_client(responder) as client:
            handler = RemoteNodeHandler("http://nodes.test", client=client)
            with pytest.raises(HandlerError, match="non-JSON"):
                await handler("voice-generator", {}, {}, {})

    @pytest.mark.asyncio
    async def test_unreachable_service_raises(self):
        def responder(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with mock_client(responder) as client:
            handler = RemoteNodeHandler("http://nodes.test", client=client)
            with pytest.raises(HandlerError, match="unreachable"):
                await handler("voice-generator", {}, {}, {})

    def test_base_url_from_environment(self, monkeypatch):
        monkeypatch.setenv("CONTENTFLOW_NODE_HANDLER_URL", "http://remote:9000/")
        assert RemoteNodeHandler().base_url == "http://remote:9000"


class TestRemoteExecution:
    """Tests for a full run dispatched over HTTP."""

    @pytest.mark.asyncio
    async def test_run_sends_node_and_run_ids(self):
        seen = []

        def responder(request):
            body = json.loads(request.content)
            seen.append(body)
            if body["type"] == "input-node":
                return httpx.Response(200, json={"ok": True, "result": "topic"})
            return httpx.Response(200, json={"ok": True, "result": f"script for {body['inputData']['A']}"})

        workflow = {
            "nodes": [
                {"id": "A", "type": "input-node", "data": {"label": "Input"}},
                {"id": "B", "type": "script-generator", "data": {"tone": "casual"}},
            ],
            "connections": [{"sourceId": "A", "targetId": "B"}],
        }

        async with mock_client(responder) as client:
            result = await execute_workflow(workflow, RemoteNodeHandler("http://nodes.test", client=client))

        assert result.success
        assert result.outputs["B"] == "script for topic"
        assert [body["nodeId"] for body in seen] == ["A", "B"]
        assert all(body["runId"] == result.run_id for body in seen)
        assert seen[0]["payload"] == {}
        assert seen[1]["payload"] == {"tone": "casual"}

    @pytest.mark.asyncio
    async def test_remote_failure_fails_the_node(self):
        def responder(request):
            return httpx.Response(200, json={"ok": False, "error": "model overloaded"})

        workflow = {
            "nodes": [{"id": "A", "type": "input-node", "data": {}}],
            "connections": [],
        }

        async with mock_client(responder) as client:
            result = await execute_workflow(workflow, RemoteNodeHandler("http://nodes.test", client=client))

        assert result.status == "failed"
        assert result.nodes["A"].error == "HandlerError: model overloaded"
