"""
Transport - Local Allow-List Stores.

============================================================
PURPOSE
============================================================
The local allow-list of hosts permitted over the plain
listener. All mutation is confined behind AllowListStore.

RULES:
- Additive only: add() never replaces or removes other entries
- No wildcards, ever
- Entries added by the negotiator are tracked as programmatic
  so they (and only they) can be cleared later

IMPLEMENTATIONS:
- InMemoryAllowListStore: process-local, used by tests
- JsonFileAllowListStore: persisted, survives restarts
- NullAllowListStore: certificate-only environments

============================================================
"""

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Set

from core.exceptions import ConfigurationError, StoreCorruptionError
from transport.types import normalize_target


logger = logging.getLogger(__name__)


def _validate_entry(host: str) -> str:
    entry = normalize_target(host)
    if "*" in entry or "?" in entry or "," in entry:
        raise ConfigurationError(
            f"Allow-list entries must be single hosts, got '{host}'",
            config_key="allow_list",
            actual_value=host,
        )
    return entry


# ============================================================
# INTERFACE
# ============================================================

class AllowListStore(ABC):
    """
    Abstract allow-list.

    Implementations raise PermissionError when the underlying list
    cannot be modified; the negotiator reports that as AccessDenied.
    """

    @property
    def mutable(self) -> bool:
        """Whether this store can record new hosts."""
        return True

    @abstractmethod
    def entries(self) -> List[str]:
        """All entries, in insertion order."""

    @abstractmethod
    def programmatic_entries(self) -> List[str]:
        """Entries added programmatically, in insertion order."""

    @abstractmethod
    def add(self, host: str, programmatic: bool = True) -> bool:
        """
        Append a host.

        Returns:
            True if the host was not present before
        """

    @abstractmethod
    def remove(self, host: str) -> bool:
        """
        Remove a host.

        Returns:
            True if it was present
        """

    def contains(self, host: str) -> bool:
        """Check whether a host is listed."""
        return normalize_target(host) in self.entries()

    def clear_programmatic(self) -> List[str]:
        """
        Remove exactly the programmatically added entries.

        Returns:
            The entries removed
        """
        removed = []
        for host in self.programmatic_entries():
            if self.remove(host):
                removed.append(host)
        return removed


# ============================================================
# IN-MEMORY
# ============================================================

class InMemoryAllowListStore(AllowListStore):
    """Process-local allow-list."""

    def __init__(self, initial: List[str] = None, read_only: bool = False):
        self._entries: List[str] = [_validate_entry(h) for h in (initial or [])]
        self._programmatic: Set[str] = set()
        self._read_only = read_only
        self._lock = threading.Lock()

    def entries(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def programmatic_entries(self) -> List[str]:
        with self._lock:
            return [h for h in self._entries if h in self._programmatic]

    def add(self, host: str, programmatic: bool = True) -> bool:
        entry = _validate_entry(host)
        if self._read_only:
            raise PermissionError(f"Allow-list is read-only; cannot add {entry}")
        with self._lock:
            if entry in self._entries:
                return False
            self._entries.append(entry)
            if programmatic:
                self._programmatic.add(entry)
        logger.info(f"Allow-list: added {entry}")
        return True

    def remove(self, host: str) -> bool:
        entry = normalize_target(host)
        if self._read_only:
            raise PermissionError(f"Allow-list is read-only; cannot remove {entry}")
        with self._lock:
            if entry not in self._entries:
                return False
            self._entries.remove(entry)
            self._programmatic.discard(entry)
        logger.info(f"Allow-list: removed {entry}")
        return True


# ============================================================
# JSON FILE
# ============================================================

class JsonFileAllowListStore(AllowListStore):
    """
    Allow-list persisted as a JSON document.

    Format:
        {"entries": ["host-a", ...], "programmatic": ["host-a", ...]}

    Writes go to a temp file in the same directory and are renamed
    into place, so a crash never leaves a truncated list.
    """

    def __init__(self, path: Path):
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> Dict[str, List[str]]:
        if not self._path.exists():
            return {"entries": [], "programmatic": []}
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise StoreCorruptionError(
                f"Allow-list file {self._path} is not valid JSON: {e}",
                cause=e,
            ) from e
        return {
            "entries": list(data.get("entries", [])),
            "programmatic": list(data.get("programmatic", [])),
        }

    def _save(self, data: Dict[str, List[str]]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(self._path.parent), prefix=".allow-list-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp, self._path)
        except OSError:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def entries(self) -> List[str]:
        with self._lock:
            return self._load()["entries"]

    def programmatic_entries(self) -> List[str]:
        with self._lock:
            data = self._load()
        tracked = set(data["programmatic"])
        return [h for h in data["entries"] if h in tracked]

    def add(self, host: str, programmatic: bool = True) -> bool:
        entry = _validate_entry(host)
        with self._lock:
            data = self._load()
            if entry in data["entries"]:
                return False
            data["entries"].append(entry)
            if programmatic:
                data["programmatic"].append(entry)
            self._save(data)
        logger.info(f"Allow-list {self._path}: added {entry}")
        return True

    def remove(self, host: str) -> bool:
        entry = normalize_target(host)
        with self._lock:
            data = self._load()
            if entry not in data["entries"]:
                return False
            data["entries"] = [h for h in data["entries"] if h != entry]
            data["programmatic"] = [h for h in data["programmatic"] if h != entry]
            self._save(data)
        logger.info(f"Allow-list {self._path}: removed {entry}")
        return True


# ============================================================
# NULL
# ============================================================

class NullAllowListStore(AllowListStore):
    """
    Allow-list for certificate-only environments.

    Holds nothing and accepts nothing; plain-listener targets are
    reported as AccessDenied.
    """

    @property
    def mutable(self) -> bool:
        return False

    def entries(self) -> List[str]:
        return []

    def programmatic_entries(self) -> List[str]:
        return []

    def add(self, host: str, programmatic: bool = True) -> bool:
        raise PermissionError("Allow-list mutation is disabled in this environment")

    def remove(self, host: str) -> bool:
        return False
