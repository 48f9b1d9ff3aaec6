"""Tiered permission gate for tool execution.

Levels are ordinal: a tool tagged with level N runs only when the caller's
effective level is >= N. Users with no record are ReadOnly (fail closed).
Levels only change through an explicit settings action; vacation mode can
lower the effective level temporarily, never raise it.

A connector-specific level, when one has been set, replaces the global level
for that connector's tools.
"""
import json
import os
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import IntEnum
from typing import Callable, Dict, List, Optional

from errors import UnknownTool
from utils import logger, safe_dumps

PERMISSION_STORE_PATH = os.environ.get("PERMISSION_STORE_PATH")


class PermissionLevel(IntEnum):
    READ_ONLY = 0
    CREATE_DRAFT = 1
    APPROVE_UPDATE = 2
    FULL_ACCESS = 3

    @property
    def display_name(self) -> str:
        return PERMISSION_LEVEL_NAMES[self]

    @classmethod
    def parse(cls, value) -> "PermissionLevel":
        if isinstance(value, PermissionLevel):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            return cls(value)
        if isinstance(value, str):
            for level, name in PERMISSION_LEVEL_NAMES.items():
                if value.strip().lower() == name.lower():
                    return level
            key = value.strip().upper().replace(" ", "_").replace("-", "_")
            if key.isdigit():
                return cls(int(key))
            aliases = {"READONLY": "READ_ONLY", "CREATEDRAFT": "CREATE_DRAFT",
                       "APPROVEUPDATE": "APPROVE_UPDATE", "FULLACCESS": "FULL_ACCESS"}
            if aliases.get(key, key) in cls.__members__:
                return cls[aliases.get(key, key)]
        raise ValueError(f"not a permission level: {value!r}")


PERMISSION_LEVEL_NAMES = {
    PermissionLevel.READ_ONLY: "Read Only",
    PermissionLevel.CREATE_DRAFT: "Create Drafts",
    PermissionLevel.APPROVE_UPDATE: "Approve & Update",
    PermissionLevel.FULL_ACCESS: "Full Access",
}


@dataclass(frozen=True)
class PermissionRecord:
    user_id: str
    level: PermissionLevel = PermissionLevel.READ_ONLY
    connector_levels: Dict[str, PermissionLevel] = field(default_factory=dict)
    vacation_until: Optional[float] = None

    def to_dict(self) -> Dict:
        return {
            "userId": self.user_id,
            "level": int(self.level),
            "levelName": self.level.display_name,
            "connectorLevels": {k: int(v) for k, v in sorted(self.connector_levels.items())},
            "vacationUntil": self.vacation_until,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "PermissionRecord":
        return cls(
            user_id=data["userId"],
            level=PermissionLevel.parse(data.get("level", 0)),
            connector_levels={k: PermissionLevel.parse(v) for k, v in (data.get("connectorLevels") or {}).items()},
            vacation_until=data.get("vacationUntil"),
        )


@dataclass(frozen=True)
class PermissionDecision:
    allowed: bool
    required_level: PermissionLevel
    current_level: PermissionLevel
    connector: Optional[str] = None
    reason: Optional[str] = None


class PermissionStore(ABC):
    """Per-user permission records. ``get`` returns None when the user has none."""

    @abstractmethod
    def get(self, user_id: str) -> Optional[PermissionRecord]:
        ...

    @abstractmethod
    def set(self, record: PermissionRecord) -> PermissionRecord:
        ...

    def get_or_create(self, user_id: str) -> PermissionRecord:
        record = self.get(user_id)
        if record is None:
            record = self.set(PermissionRecord(user_id=user_id))
        return record


class InMemoryPermissionStore(PermissionStore):
    # Records are immutable and replaced whole, so reads need no lock.
    def __init__(self, records: Optional[List[PermissionRecord]] = None):
        self._records: Dict[str, PermissionRecord] = {r.user_id: r for r in records or []}
        self._write_lock = threading.Lock()

    def get(self, user_id):
        return self._records.get(user_id)

    def set(self, record):
        with self._write_lock:
            self._records[record.user_id] = record
        return record

    def get_or_create(self, user_id):
        record = self._records.get(user_id)
        if record is not None:
            return record
        with self._write_lock:
            return self._records.setdefault(user_id, PermissionRecord(user_id=user_id))


class JsonFilePermissionStore(InMemoryPermissionStore):
    """Write-through JSON file; the in-memory copy serves every read."""

    def __init__(self, path: str):
        self.path = path
        records = []
        if os.path.exists(path):
            with open(path, "r", encoding="utf-8") as f:
                records = [PermissionRecord.from_dict(r) for r in json.load(f)]
        super().__init__(records)

    def set(self, record):
        with self._write_lock:
            self._records[record.user_id] = record
            self._flush_locked()
        return record

    def get_or_create(self, user_id):
        record = self._records.get(user_id)
        if record is not None:
            return record
        return self.set(PermissionRecord(user_id=user_id))

    def _flush_locked(self) -> None:
        payload = [r.to_dict() for r in sorted(self._records.values(), key=lambda r: r.user_id)]
        tmp = f"{self.path}.tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(safe_dumps(payload))
        os.replace(tmp, self.path)


def create_permission_store() -> PermissionStore:
    if PERMISSION_STORE_PATH:
        logger.info("Using JSON permission store at %s", PERMISSION_STORE_PATH)
        return JsonFilePermissionStore(PERMISSION_STORE_PATH)
    return InMemoryPermissionStore()


class PermissionEngine:
    def __init__(self, store: PermissionStore, registry, clock: Callable[[], float] = time.time):
        self.store = store
        self.registry = registry
        self._clock = clock

    def effective_level(self, user_id: str, connector: Optional[str] = None) -> PermissionLevel:
        record = self.store.get_or_create(user_id)
        if self._on_vacation(record):
            return PermissionLevel.READ_ONLY
        if connector and connector in record.connector_levels:
            return record.connector_levels[connector]
        return record.level

    def _on_vacation(self, record: PermissionRecord) -> bool:
        return record.vacation_until is not None and record.vacation_until > self._clock()

    def check_permission(self, user_id: str, tool_name: str) -> PermissionDecision:
        tool = self.registry.get(tool_name)
        if tool is None:
            raise UnknownTool(tool_name)
        record = self.store.get_or_create(user_id)
        required = tool.required_level
        current = self.effective_level(user_id, tool.provider)
        if current >= required:
            return PermissionDecision(True, required, current, tool.provider)

        if self._on_vacation(record):
            reason = (
                f"Vacation mode is active, so only read-only tools are available. "
                f"{tool.name} requires {required.display_name} permission or higher."
            )
        else:
            reason = (
                f"{tool.name} requires {required.display_name} permission or higher. "
                f"Your current {tool.provider} level is {current.display_name}. "
                f"Enable higher permissions in settings if you want to allow this."
            )
        logger.info(safe_dumps({
            "type": "permission_denied",
            "userId": user_id,
            "tool": tool.name,
            "requiredLevel": int(required),
            "currentLevel": int(current),
        }))
        return PermissionDecision(False, required, current, tool.provider, reason)

    def visible_tools(self, user_id: str) -> List:
        levels: Dict[str, PermissionLevel] = {}
        visible = []
        for tool in self.registry.all():
            if tool.provider not in levels:
                levels[tool.provider] = self.effective_level(user_id, tool.provider)
            if levels[tool.provider] >= tool.required_level:
                visible.append(tool)
        return visible

    def set_permission_level(self, user_id: str, level, connector: Optional[str] = None) -> PermissionRecord:
        level = PermissionLevel.parse(level)
        record = self.store.get_or_create(user_id)
        if connector:
            levels = dict(record.connector_levels)
            levels[connector] = level
            updated = replace(record, connector_levels=levels)
        else:
            updated = replace(record, level=level)
        logger.info("Permission level for %s%s set to %s", user_id, f" ({connector})" if connector else "", level.name)
        return self.store.set(updated)

    def clear_connector_level(self, user_id: str, connector: str) -> PermissionRecord:
        record = self.store.get_or_create(user_id)
        levels = {k: v for k, v in record.connector_levels.items() if k != connector}
        return self.store.set(replace(record, connector_levels=levels))

    def set_vacation_mode(self, user_id: str, until: Optional[float]) -> PermissionRecord:
        record = self.store.get_or_create(user_id)
        return self.store.set(replace(record, vacation_until=until))


def is_write_operation(tool) -> bool:
    return tool.required_level > PermissionLevel.READ_ONLY


def requires_confirmation(tool) -> bool:
    return tool.required_level >= PermissionLevel.APPROVE_UPDATE


def is_destructive(tool) -> bool:
    return tool.required_level >= PermissionLevel.FULL_ACCESS
