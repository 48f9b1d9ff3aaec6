"""Static tool registry and the per-call context handed to executors.

Entries are built once at import time from each connector's tool list and
never mutated afterwards. Names are namespaced ``provider:short_name``; the
short name alone resolves when exactly one provider registers it.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from credentials import Credential, CredentialProvider
from errors import UnknownTool
from pagination import CursorCodec
from permissions import PermissionLevel, is_destructive, is_write_operation, requires_confirmation
from resource_store import ResourceStore
from retry import DEFAULT_RETRY_POLICY, RetryPolicy, with_retry
from schema import ObjectSchema


@dataclass
class ToolContext:
    """Everything an executor may touch for one call. Nothing is shared per call."""

    user_id: str
    credentials: CredentialProvider
    resources: ResourceStore
    cursors: CursorCodec
    retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep

    async def credential(self, provider: str) -> Credential:
        return await self.credentials.get_token(self.user_id, provider)

    async def call_upstream(self, operation: Callable[[], Any], description: str):
        return await with_retry(self.retry_policy, operation, description, sleep=self.sleep)


Handler = Callable[[ToolContext, Dict[str, Any]], Awaitable[Any]]


@dataclass(frozen=True)
class ToolDefinition:
    short_name: str
    provider: str
    category: str
    description: str
    input_schema: ObjectSchema
    required_level: PermissionLevel
    handler: Handler = field(compare=False, repr=False)

    @property
    def name(self) -> str:
        return f"{self.provider}:{self.short_name}"

    @property
    def namespaced_category(self) -> str:
        return f"{self.provider}:{self.category}"

    def manifest(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema.to_json(),
            "annotations": {
                "readOnlyHint": not is_write_operation(self),
                "destructiveHint": is_destructive(self),
                "requiresConfirmation": requires_confirmation(self),
            },
        }


class ToolRegistry:
    def __init__(self, tools: Iterable[ToolDefinition]):
        self._tools: Dict[str, ToolDefinition] = {}
        self._by_short: Dict[str, List[ToolDefinition]] = {}
        for tool in tools:
            if tool.name in self._tools:
                raise ValueError(f"duplicate tool {tool.name}")
            self._tools[tool.name] = tool
            self._by_short.setdefault(tool.short_name, []).append(tool)

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def resolve(self, name: str) -> ToolDefinition:
        if not isinstance(name, str) or not name:
            raise UnknownTool(str(name))
        tool = self._tools.get(name)
        if tool is not None:
            return tool
        if ":" not in name:
            matches = self._by_short.get(name, [])
            if len(matches) == 1:
                return matches[0]
            if len(matches) > 1:
                raise UnknownTool(name, sorted(t.name for t in matches))
        raise UnknownTool(name)

    def all(self) -> List[ToolDefinition]:
        return list(self._tools.values())

    def in_category(self, category: str, tools: Optional[Iterable[ToolDefinition]] = None) -> List[ToolDefinition]:
        pool = self.all() if tools is None else tools
        if ":" in category:
            return [t for t in pool if t.namespaced_category == category]
        return [t for t in pool if t.category == category]

    def categories(self) -> List[str]:
        return sorted({t.category for t in self._tools.values()})
