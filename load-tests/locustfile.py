import os
import uuid

from locust import HttpUser, between, task

ENTITY = os.getenv("D365_ENTITY", "CustomersV3")
MCP_HEADERS = {"Accept": "application/json, text/event-stream"}


def _payload(method: str, params: dict | None = None) -> dict:
    payload = {"jsonrpc": "2.0", "id": str(uuid.uuid4()), "method": method}
    if params is not None:
        payload["params"] = params
    return payload


def _tool(name: str, arguments: dict) -> dict:
    return _payload("tools/call", {"name": name, "arguments": arguments})


class MCPUser(HttpUser):
    wait_time = between(1, 3)

    def on_start(self) -> None:
        response = self.client.post(
            "/mcp",
            json=_payload(
                "initialize",
                {
                    "protocolVersion": "2025-03-26",
                    "capabilities": {},
                    "clientInfo": {"name": "locust", "version": "1.0"},
                },
            ),
            headers=MCP_HEADERS,
            name="initialize",
        )
        self.headers = {**MCP_HEADERS, "mcp-session-id": response.headers.get("mcp-session-id", "")}
        self.client.post(
            "/mcp",
            json={"jsonrpc": "2.0", "method": "notifications/initialized"},
            headers=self.headers,
            name="notifications/initialized",
        )

    def on_stop(self) -> None:
        self.client.delete("/mcp", headers=self.headers, name="close")

    @task(3)
    def query(self):
        self.client.post(
            "/mcp",
            json=_tool("odata_query", {"entity": ENTITY, "top": 5}),
            headers=self.headers,
            name="odata_query",
        )

    @task(1)
    def resolve(self):
        self.client.post(
            "/mcp",
            json=_tool("resolve_entity", {"entity": ENTITY.lower()}),
            headers=self.headers,
            name="resolve_entity",
        )
