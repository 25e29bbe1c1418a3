import json
import uuid
from typing import Any

import httpx

MCP_ACCEPT = "application/json, text/event-stream"
SESSION_HEADER = "mcp-session-id"
PROTOCOL_VERSION = "2025-03-26"


def _parse_text_content(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def _tool_error_message(result: dict[str, Any]) -> str:
    content = result.get("content") or []
    if content:
        first = content[0]
        if isinstance(first, dict) and first.get("type") == "text":
            return first.get("text", "Unknown MCP tool error")
    return "Unknown MCP tool error"


def _normalize_tool_result(result: dict[str, Any]) -> Any:
    if result.get("isError"):
        raise RuntimeError(_tool_error_message(result))

    structured = result.get("structuredContent")
    if structured is not None:
        return structured

    content = result.get("content") or []
    if content:
        first = content[0]
        if isinstance(first, dict) and first.get("type") == "text":
            return _parse_text_content(first.get("text", ""))

    return result


def _decode(response: httpx.Response, request_id: str) -> dict[str, Any]:
    """Pick the JSON-RPC reply out of a JSON or SSE response body."""
    if response.headers.get("content-type", "").startswith("text/event-stream"):
        for line in response.text.splitlines():
            if not line.startswith("data:"):
                continue
            message = json.loads(line[len("data:"):].strip())
            if message.get("id") == request_id:
                return message
            if message.get("method") == "notifications/message":
                print(f"[server] {message['params'].get('data')}")
        raise RuntimeError("No response for request in event stream")
    return response.json()


class McpSession:
    def __init__(self, base_url: str, *, timeout: float = 30.0) -> None:
        self._url = base_url
        self._client = httpx.Client(timeout=timeout)
        self.session_id: str | None = None

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": MCP_ACCEPT}
        if self.session_id:
            headers[SESSION_HEADER] = self.session_id
            headers["mcp-protocol-version"] = PROTOCOL_VERSION
        return headers

    def _rpc(self, method: str, params: dict | None = None) -> Any:
        request_id = str(uuid.uuid4())
        payload = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            payload["params"] = params
        response = self._client.post(self._url, json=payload, headers=self._headers())
        response.raise_for_status()
        if self.session_id is None:
            self.session_id = response.headers.get(SESSION_HEADER)
        data = _decode(response, request_id)
        if "error" in data:
            raise RuntimeError(json.dumps(data["error"], indent=2))
        return data.get("result", data)

    def initialize(self) -> dict[str, Any]:
        result = self._rpc(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": "d365-mcp-client", "version": "0.1.0"},
            },
        )
        notification = {"jsonrpc": "2.0", "method": "notifications/initialized"}
        self._client.post(self._url, json=notification, headers=self._headers()).raise_for_status()
        return result

    def call_tool(self, name: str, arguments: dict[str, Any]) -> Any:
        result = self._rpc("tools/call", {"name": name, "arguments": arguments})
        if isinstance(result, dict) and ("content" in result or "structuredContent" in result):
            return _normalize_tool_result(result)
        return result

    def close(self) -> None:
        if self.session_id:
            self._client.delete(self._url, headers=self._headers())
            self.session_id = None
        self._client.close()

    def __enter__(self) -> "McpSession":
        self.initialize()
        return self

    def __exit__(self, *_exc) -> None:
        self.close()
