"""Persistent exec allowlist storage."""

import json
import secrets
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path
from typing import Any

from filelock import FileLock, Timeout
from loguru import logger

from execgate.exec.types import AllowlistEntry

STORE_VERSION = 1
DEFAULT_AGENT_ID = "default"
GLOBAL_AGENT_ID = "*"
LOCK_TIMEOUT_SECONDS = 10


class AllowlistStoreError(Exception):
    """The allowlist file is unreadable or could not be written."""


def get_default_approvals_path() -> Path:
    """Get path to the exec approvals file."""
    return Path.home() / ".execgate" / "exec-approvals.json"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _entry_from_dict(data: dict[str, Any]) -> AllowlistEntry | None:
    pattern = data.get("pattern")
    if not isinstance(pattern, str) or not pattern.strip():
        return None
    return AllowlistEntry(
        pattern=pattern.strip(),
        created_at=data.get("created_at"),
        last_used_at=data.get("last_used_at"),
        usage_count=int(data.get("usage_count") or 0),
        last_used_command=data.get("last_used_command"),
        last_resolved_path=data.get("last_resolved_path"),
    )


def _entry_to_dict(entry: AllowlistEntry) -> dict[str, Any]:
    return {
        "pattern": entry.pattern,
        "created_at": entry.created_at,
        "last_used_at": entry.last_used_at,
        "usage_count": entry.usage_count,
        "last_used_command": entry.last_used_command,
        "last_resolved_path": entry.last_resolved_path,
    }


def _merge_entries(own: list[AllowlistEntry], shared: list[AllowlistEntry]) -> list[AllowlistEntry]:
    """Agent entries first, then global ones not already present."""
    seen = {entry.pattern for entry in own}
    return [*own, *(entry for entry in shared if entry.pattern not in seen)]


def _touch_entry(entry: AllowlistEntry, command: str | None, resolved_path: str | None) -> None:
    entry.last_used_at = _now_ms()
    entry.usage_count += 1
    if command:
        entry.last_used_command = command
    if resolved_path:
        entry.last_resolved_path = resolved_path


class AllowlistStore(ABC):
    """Where allowlist entries live for one agent."""

    @abstractmethod
    def load(self) -> list[AllowlistEntry]:
        """Entries visible to the agent (its own, then global)."""

    @abstractmethod
    def append(self, pattern: str) -> bool:
        """Add a pattern. Returns False if it was already present."""

    @abstractmethod
    def touch(self, pattern: str, command: str | None = None, resolved_path: str | None = None) -> None:
        """Record a use of an existing pattern."""

    @abstractmethod
    def remove(self, pattern: str) -> bool:
        """Remove a pattern. Returns False if it was not present."""


class InMemoryAllowlistStore(AllowlistStore):
    """Allowlist held in process memory."""

    def __init__(self, entries: list[AllowlistEntry] | None = None, shared: list[AllowlistEntry] | None = None):
        self._entries = list(entries or [])
        self._shared = list(shared or [])
        self._lock = threading.Lock()

    def load(self) -> list[AllowlistEntry]:
        with self._lock:
            return _merge_entries(list(self._entries), list(self._shared))

    def append(self, pattern: str) -> bool:
        pattern = pattern.strip()
        if not pattern:
            return False
        with self._lock:
            if any(entry.pattern == pattern for entry in self._entries):
                return False
            self._entries.append(AllowlistEntry(pattern=pattern, created_at=_now_ms()))
            return True

    def touch(self, pattern: str, command: str | None = None, resolved_path: str | None = None) -> None:
        with self._lock:
            for entry in [*self._entries, *self._shared]:
                if entry.pattern == pattern:
                    _touch_entry(entry, command, resolved_path)
                    return

    def remove(self, pattern: str) -> bool:
        with self._lock:
            before = len(self._entries)
            self._entries = [entry for entry in self._entries if entry.pattern != pattern]
            return len(self._entries) != before


class FileAllowlistStore(AllowlistStore):
    """
    Allowlist persisted as one JSON document shared by all agents.

    Layout: {"version": 1, "agents": {"<agent>": {"allowlist": [...]}}}.
    Entries under the "*" agent apply to every agent. Every mutation runs
    under a file lock as read-merge-write, so concurrent writers (including
    other processes) never lose each other's appends.
    """

    def __init__(self, path: Path | str | None = None, agent_id: str | None = None):
        self.path = Path(path).expanduser() if path else get_default_approvals_path()
        self.agent_id = (agent_id or "").strip() or DEFAULT_AGENT_ID
        self._lock_path = self.path.with_suffix(".lock")

    def _lock(self) -> FileLock:
        return FileLock(self._lock_path, timeout=LOCK_TIMEOUT_SECONDS)

    def _read_document(self) -> dict[str, Any]:
        """Read the document. Raises AllowlistStoreError if it is corrupt."""
        if not self.path.exists():
            return {"version": STORE_VERSION, "agents": {}}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise AllowlistStoreError(f"Unreadable allowlist file {self.path}: {e}") from e
        if not isinstance(data, dict) or not isinstance(data.get("agents", {}), dict):
            raise AllowlistStoreError(f"Malformed allowlist file {self.path}")
        data.setdefault("version", STORE_VERSION)
        data.setdefault("agents", {})
        return data

    def _write_document(self, data: dict[str, Any]) -> None:
        """Atomic write: temp file, then rename over the target."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(f".{secrets.token_hex(4)}.tmp")
        try:
            tmp_path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
            tmp_path.chmod(0o600)
            tmp_path.replace(self.path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise AllowlistStoreError(f"Failed to write allowlist file {self.path}: {e}") from e

    @staticmethod
    def _agent_entries(data: dict[str, Any], agent_id: str) -> list[AllowlistEntry]:
        agent = data["agents"].get(agent_id)
        if not isinstance(agent, dict):
            return []
        raw = agent.get("allowlist")
        if not isinstance(raw, list):
            return []
        entries = (_entry_from_dict(item) for item in raw if isinstance(item, dict))
        return [entry for entry in entries if entry is not None]

    @staticmethod
    def _set_agent_entries(data: dict[str, Any], agent_id: str, entries: list[AllowlistEntry]) -> None:
        agent = data["agents"].get(agent_id)
        if not isinstance(agent, dict):
            agent = {}
            data["agents"][agent_id] = agent
        agent["allowlist"] = [_entry_to_dict(entry) for entry in entries]

    def _mutate(self, fn: Callable[[dict[str, Any]], bool]) -> bool:
        try:
            with self._lock():
                data = self._read_document()
                changed = fn(data)
                if changed:
                    self._write_document(data)
                return changed
        except Timeout as e:
            raise AllowlistStoreError(f"Timed out waiting for lock on {self.path}") from e

    def load(self) -> list[AllowlistEntry]:
        try:
            with self._lock():
                data = self._read_document()
        except (AllowlistStoreError, Timeout) as e:
            logger.warning(f"Error loading exec allowlist: {e}")
            return []
        own = self._agent_entries(data, self.agent_id)
        if self.agent_id == GLOBAL_AGENT_ID:
            return own
        return _merge_entries(own, self._agent_entries(data, GLOBAL_AGENT_ID))

    def agents(self) -> list[str]:
        """Agent ids that have a section in the file."""
        try:
            with self._lock():
                data = self._read_document()
        except (AllowlistStoreError, Timeout) as e:
            logger.warning(f"Error loading exec allowlist: {e}")
            return []
        return sorted(data["agents"].keys())

    def append(self, pattern: str) -> bool:
        pattern = pattern.strip()
        if not pattern:
            return False

        def apply(data: dict[str, Any]) -> bool:
            entries = self._agent_entries(data, self.agent_id)
            if any(entry.pattern == pattern for entry in entries):
                return False
            entries.append(AllowlistEntry(pattern=pattern, created_at=_now_ms()))
            self._set_agent_entries(data, self.agent_id, entries)
            return True

        added = self._mutate(apply)
        if added:
            logger.info(f"Added allowlist pattern for agent {self.agent_id}: {pattern}")
        return added

    def touch(self, pattern: str, command: str | None = None, resolved_path: str | None = None) -> None:
        def apply(data: dict[str, Any]) -> bool:
            for agent_id in (self.agent_id, GLOBAL_AGENT_ID):
                entries = self._agent_entries(data, agent_id)
                for entry in entries:
                    if entry.pattern == pattern:
                        _touch_entry(entry, command, resolved_path)
                        self._set_agent_entries(data, agent_id, entries)
                        return True
            return False

        self._mutate(apply)

    def remove(self, pattern: str) -> bool:
        pattern = pattern.strip()

        def apply(data: dict[str, Any]) -> bool:
            entries = self._agent_entries(data, self.agent_id)
            kept = [entry for entry in entries if entry.pattern != pattern]
            if len(kept) == len(entries):
                return False
            self._set_agent_entries(data, self.agent_id, kept)
            return True

        removed = self._mutate(apply)
        if removed:
            logger.info(f"Removed allowlist pattern for agent {self.agent_id}: {pattern}")
        return removed


def record_allowlist_use(
    store: AllowlistStore,
    matches: list[AllowlistEntry],
    command: str,
    resolved_path: str | None = None,
) -> int:
    """Touch each matched entry once. Returns the number of entries touched."""
    seen: set[str] = set()
    for match in matches:
        if not match.pattern or match.pattern in seen:
            continue
        seen.add(match.pattern)
        store.touch(match.pattern, command, resolved_path)
    return len(seen)
