"""Lazy-loading gateway: two meta-tools in front of the whole tool registry.

Clients connect seeing only ``get_tools_in_category`` and ``execute_tool``.
Every real tool call goes through ``execute_tool``: resolve the name, check
permission, validate arguments, then run the executor. A denied or malformed
call never reaches an executor, and nothing raised past that point escapes as
an exception; callers always get a payload back.
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from credentials import CredentialProvider
from errors import GatewayError, PermissionDenied, SchemaViolation
from gmail_tools import GMAIL_TOOLS
from pagination import CursorCodec
from permissions import PermissionEngine
from registry import ToolContext, ToolRegistry
from resource_store import ResourceStore
from retry import DEFAULT_RETRY_POLICY, RetryPolicy
from schema import ObjectSchema, StringSchema, object_schema
from utils import log_token_metrics, logger, safe_dumps
from xero_tools import XERO_TOOLS

GET_TOOLS_IN_CATEGORY = "get_tools_in_category"
EXECUTE_TOOL = "execute_tool"

_CATEGORY_SCHEMA = object_schema(
    {"category": StringSchema(
        description="Category to expand, e.g. invoices, reports, banking, contacts, organisation, search, "
                    "attachments. May be namespaced (xero:invoices).",
        min_length=1,
    )},
    required=("category",),
)
_EXECUTE_SCHEMA = object_schema(
    {
        "name": StringSchema(description="Tool name from get_tools_in_category, e.g. xero:get_invoices",
                             min_length=1),
        "arguments": ObjectSchema(description="Arguments for the tool", additional_properties=True),
    },
    required=("name",),
)

META_TOOLS = [
    {
        "name": GET_TOOLS_IN_CATEGORY,
        "description": "List the tools available to you in a category. Call this before execute_tool.",
        "inputSchema": _CATEGORY_SCHEMA.to_json(),
    },
    {
        "name": EXECUTE_TOOL,
        "description": "Run a tool returned by get_tools_in_category with its arguments.",
        "inputSchema": _EXECUTE_SCHEMA.to_json(),
    },
]


def default_registry() -> ToolRegistry:
    return ToolRegistry(XERO_TOOLS + GMAIL_TOOLS)


class Gateway:
    def __init__(
        self,
        registry: ToolRegistry,
        permissions: PermissionEngine,
        credentials: CredentialProvider,
        resources: ResourceStore,
        cursors: CursorCodec,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.registry = registry
        self.permissions = permissions
        self.credentials = credentials
        self.resources = resources
        self.cursors = cursors
        self.retry_policy = retry_policy
        self.sleep = sleep

    def list_tools(self):
        return list(META_TOOLS)

    def get_tools_in_category(self, user_id: str, category: str) -> Dict[str, Any]:
        visible = self.permissions.visible_tools(user_id)
        tools = self.registry.in_category(category, visible)
        return {
            "category": category,
            "tools": [t.manifest() for t in tools],
            "count": len(tools),
            "availableCategories": self.registry.categories(),
        }

    async def execute_tool(self, user_id: str, tool_name: str, args: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Run one tool call; returns the executor's payload or an ``isError`` payload."""
        started = time.monotonic()
        try:
            result = await self._dispatch(user_id, tool_name, args)
        except GatewayError as exc:
            logger.info("Tool %s failed for %s: %s (%s)", tool_name, user_id, exc.reason, exc.message)
            return exc.to_payload()
        except Exception as exc:
            logger.exception("Unhandled error executing %s", tool_name)
            return {
                "error": f"Tool {tool_name} failed unexpectedly. Please try again.",
                "isError": True,
                "metadata": {"reason": "exception", "type": exc.__class__.__name__},
            }
        log_token_metrics(tool_name, safe_dumps(result))
        logger.debug("Tool %s completed in %.3fs", tool_name, time.monotonic() - started)
        return result

    async def _dispatch(self, user_id: str, tool_name: str, args: Optional[Dict[str, Any]]):
        if tool_name == GET_TOOLS_IN_CATEGORY:
            validated = _CATEGORY_SCHEMA.validate(args)
            return self.get_tools_in_category(user_id, validated["category"])
        if tool_name == EXECUTE_TOOL:
            validated = _EXECUTE_SCHEMA.validate(args)
            return await self._dispatch(user_id, validated["name"], validated.get("arguments") or {})

        tool = self.registry.resolve(tool_name)
        decision = self.permissions.check_permission(user_id, tool.name)
        if not decision.allowed:
            raise PermissionDenied(decision.reason, decision.required_level, decision.current_level)
        if args is not None and not isinstance(args, dict):
            raise SchemaViolation("arguments", "must be an object")
        validated = tool.input_schema.validate(args)
        ctx = ToolContext(
            user_id=user_id,
            credentials=self.credentials,
            resources=self.resources,
            cursors=self.cursors,
            retry_policy=self.retry_policy,
            sleep=self.sleep,
        )
        return await tool.handler(ctx, validated)
