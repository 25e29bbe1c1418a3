import json
import os

from mcp_client import McpSession

BASE_URL = os.getenv("MCP_BASE_URL", "http://localhost:3000/mcp")
ENTITY = os.getenv("D365_ENTITY", "customers")


if __name__ == "__main__":
    with McpSession(BASE_URL) as session:
        print(json.dumps(session.call_tool("resolve_entity", {"entity": ENTITY}), indent=2))
        result = session.call_tool("odata_query", {"entity": ENTITY, "top": 3})
        print(json.dumps(result, indent=2) if not isinstance(result, str) else result)
