"""Error taxonomy for the tool gateway.

Every error carries a stable ``reason`` code and a message written for the
person reading the assistant's reply. The gateway turns any of these into a
``{"error": ..., "isError": true}`` payload; nothing here is ever allowed to
escape the MCP boundary as a raw exception.
"""
from typing import Any, Dict, List, Optional


class GatewayError(Exception):
    reason = "gatewayError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def metadata(self) -> Dict[str, Any]:
        return {"reason": self.reason}

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.message, "isError": True, "metadata": self.metadata()}


class InvalidCursor(GatewayError):
    reason = "invalidCursor"

    def __init__(self, detail: str):
        super().__init__(f"Invalid cursor: {detail}. Please restart your search from the first page.")
        self.detail = detail


class PermissionDenied(GatewayError):
    reason = "permissionDenied"

    def __init__(self, message: str, required_level: int, current_level: int):
        super().__init__(message)
        self.required_level = required_level
        self.current_level = current_level

    def metadata(self) -> Dict[str, Any]:
        return {"reason": self.reason, "requiredLevel": int(self.required_level)}


class UnknownTool(GatewayError):
    reason = "unknownTool"

    def __init__(self, name: str, candidates: Optional[List[str]] = None):
        if candidates:
            message = f'Ambiguous tool name "{name}". Please specify one of: {", ".join(candidates)}'
        else:
            message = f"Unknown tool: {name}. Use get_tools_in_category to discover available tools."
        super().__init__(message)
        self.name = name
        self.candidates = candidates or []


class SchemaViolation(GatewayError):
    reason = "schemaViolation"

    def __init__(self, path: str, problem: str):
        where = path or "arguments"
        super().__init__(f"Invalid arguments: {where} {problem}")
        self.path = path
        self.problem = problem


class NotConnected(GatewayError):
    reason = "notConnected"

    def __init__(self, provider: str):
        label = provider.replace("_", " ").title()
        super().__init__(f"{label} is not connected. Please connect your {label} account in settings first.")
        self.provider = provider


class UpstreamError(GatewayError):
    reason = "upstreamError"

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    def metadata(self) -> Dict[str, Any]:
        meta = {"reason": self.reason}
        if self.status is not None:
            meta["statusCode"] = self.status
        return meta


class UpstreamTransient(UpstreamError):
    """429/5xx or a timeout. Only ever seen inside the retry loop."""
    reason = "upstreamTransient"


class UpstreamPermanent(UpstreamError):
    reason = "upstreamPermanent"


class UpstreamUnavailable(UpstreamError):
    reason = "upstreamUnavailable"

    def __init__(self, message: str, status: Optional[int] = None, attempts: int = 0,
                 last_error: Optional[BaseException] = None):
        super().__init__(message, status)
        self.attempts = attempts
        self.last_error = last_error

    def metadata(self) -> Dict[str, Any]:
        meta = super().metadata()
        meta["attempts"] = self.attempts
        return meta


class UpstreamTimeout(UpstreamUnavailable):
    reason = "upstreamTimeout"


class ResourceNotFound(GatewayError):
    reason = "resourceNotFound"

    def __init__(self, resource_id: str):
        super().__init__(f"Resource {resource_id} not found or expired. Re-run the tool to generate a fresh copy.")
        self.resource_id = resource_id


class StorageUnavailable(GatewayError):
    reason = "storageUnavailable"

    def __init__(self, detail: str):
        super().__init__(f"Result storage is unavailable ({detail}). Please try again shortly.")
        self.detail = detail


class InvalidState(GatewayError):
    """The entity exists but is not in a state that allows the requested change."""
    reason = "invalidState"
