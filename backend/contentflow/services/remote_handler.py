"""
Remote node handler: dispatches node work to the editor's node service.

POSTs `{type, payload, apiKeys, inputData, nodeId, runId}` to
`{base_url}/api/execute-node` and unwraps the `{ok, result | error,
details}` envelope.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

import httpx

from contentflow import config
from contentflow.services.errors import HandlerError
from contentflow.services.handlers import current_node

logger = logging.getLogger(__name__)

EXECUTE_NODE_PATH = "/api/execute-node"


class RemoteNodeHandler:
    def __init__(
        self,
        base_url: str | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: httpx.Timeout | float | None = None,
    ):
        self.base_url = (base_url or config.node_handler_url()).rstrip("/")
        self._client = client
        self._timeout = timeout if timeout is not None else httpx.Timeout(300.0, connect=20.0)

    async def __call__(
        self,
        node_type: str,
        node_config: Mapping[str, Any],
        api_keys: Mapping[str, str],
        input_data: dict[str, Any],
    ) -> Any:
        run_id, node_id = current_node.get() or (None, None)
        body = {
            "type": node_type,
            "payload": dict(node_config),
            "apiKeys": dict(api_keys),
            "inputData": input_data,
            "nodeId": node_id,
            "runId": run_id,
        }
        url = f"{self.base_url}{EXECUTE_NODE_PATH}"
        logger.debug("Dispatching %s node %s (run %s) to %s", node_type, node_id, run_id, url)

        try:
            if self._client is not None:
                resp = await self._client.post(url, json=body)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.post(url, json=body)
        except httpx.HTTPError as e:
            raise HandlerError(node_id, f"Node service unreachable: {type(e).__name__}: {e}") from e

        try:
            envelope = resp.json()
        except ValueError:
            envelope = None

        if not isinstance(envelope, dict):
            raise HandlerError(
                node_id,
                f"Node service returned HTTP {resp.status_code} with a non-JSON body",
            )

        if resp.status_code >= 400 or not envelope.get("ok"):
            message = envelope.get("error") or f"HTTP {resp.status_code}"
            details = envelope.get("details")
            if details:
                logger.warning("Node %s failed remotely: %s (%s)", node_id, message, details)
            raise HandlerError(node_id, str(message))

        return envelope.get("result")
