from dataclasses import dataclass

JSONRPC_SESSION_ERROR = -32000
JSONRPC_INTERNAL_ERROR = -32603


@dataclass
class MCPError(Exception):
    code: str
    message: str
    status: int = 400
    correlation_id: str | None = None

    def __str__(self) -> str:
        return self.message


class ConfigurationError(MCPError):
    def __init__(self, message: str) -> None:
        super().__init__("CONFIGURATION_ERROR", message, status=500)


class UpstreamAuthError(MCPError):
    def __init__(self, message: str, upstream_status: int, body: str) -> None:
        super().__init__("UPSTREAM_AUTH_ERROR", message, status=502)
        self.upstream_status = upstream_status
        self.body = body


class UpstreamCallError(MCPError):
    def __init__(self, message: str, upstream_status: int, body: str) -> None:
        super().__init__("UPSTREAM_ERROR", message, status=502)
        self.upstream_status = upstream_status
        self.body = body


class EnumerationError(MCPError):
    def __init__(self, message: str) -> None:
        super().__init__("ENUMERATION_ERROR", message, status=502)


class SessionProtocolError(MCPError):
    def __init__(self, message: str = "Bad Request: Missing or invalid session ID.") -> None:
        super().__init__("SESSION_PROTOCOL_ERROR", message, status=400)


def as_error_payload(err: MCPError) -> dict:
    payload = {
        "error": {
            "code": err.code,
            "message": err.message,
        }
    }
    if err.correlation_id:
        payload["error"]["correlation_id"] = err.correlation_id
    return payload


def as_jsonrpc_error(code: int, message: str, request_id=None) -> dict:
    return {
        "jsonrpc": "2.0",
        "error": {"code": code, "message": message},
        "id": request_id,
    }
