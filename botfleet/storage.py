# FilePath: "/botfleet/storage.py"
# Project: BotFleet
# Description: File-backed stores for bot configuration records, per-bot context blobs
#              and the operator accounts written by the dashboard.
# Author: "Michael Landbo"
# Date created: "19/10/2026"
# Version: "v.1.0.0"

import asyncio
import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from pydantic import ValidationError

from .exceptions import ConfigError, StorageReadError
from .models import BotConfig, ContextRecord

logger = logging.getLogger("botfleet.storage")

DEFAULT_CONTEXT = "Company info:\n"
OPERATOR_ROLES = ("admin", "superadmin")

_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def atomic_write_text(path: Path, text: str) -> None:
    """Write via a temp file in the same directory and os.replace it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


def _read_json_array(path: Path) -> List[Any]:
    """Missing, unreadable or non-array files all read as empty."""
    if not path.exists():
        return []
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning(f"Ignoring unreadable store {path}: {e}")
        return []
    if not isinstance(raw, list):
        logger.warning(f"Ignoring store {path}: expected a JSON array, got {type(raw).__name__}")
        return []
    return raw


class JsonConfigStore:
    """
    Bot configuration records kept as one JSON array on disk.

    Reads tolerate a missing file (empty store) and corrupt entries (skipped,
    logged as ConfigError). Writes replace the whole file atomically.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _load(self) -> List[BotConfig]:
        configs: List[BotConfig] = []
        seen: Set[str] = set()
        for index, raw in enumerate(_read_json_array(self.path)):
            try:
                if not isinstance(raw, dict):
                    raise ConfigError(f"Record #{index} is not an object")
                config = BotConfig.model_validate(raw)
            except (ConfigError, ValidationError) as e:
                logger.warning(f"Skipping malformed bot record #{index} in {self.path}: {e}")
                continue
            if config.id in seen:
                logger.warning(f"Skipping duplicate bot record '{config.id}' in {self.path}")
                continue
            seen.add(config.id)
            configs.append(config)
        return configs

    async def list(self) -> List[BotConfig]:
        """All well-formed bot records in file order."""
        return await asyncio.to_thread(self._load)

    async def get(self, bot_id: str) -> Optional[BotConfig]:
        """Returns the record for bot_id or None when absent or corrupt."""
        for config in await self.list():
            if config.id == bot_id:
                return config
        return None

    async def put(self, bot_id: str, config: BotConfig) -> None:
        """Insert or replace the record for bot_id."""
        if config.id != bot_id:
            raise ConfigError(f"Record id '{config.id}' does not match key '{bot_id}'")
        async with self._lock:
            await asyncio.to_thread(self._put_sync, config)

    def _put_sync(self, config: BotConfig) -> None:
        records = _read_json_array(self.path)
        record = config.to_record()
        for index, raw in enumerate(records):
            if isinstance(raw, dict) and raw.get("id") == config.id:
                records[index] = record
                break
        else:
            records.append(record)
        atomic_write_text(self.path, json.dumps(records, indent=2, ensure_ascii=False))

    async def delete(self, bot_id: str) -> bool:
        """Remove the record for bot_id. Returns False if there was none."""
        async with self._lock:
            return await asyncio.to_thread(self._delete_sync, bot_id)

    def _delete_sync(self, bot_id: str) -> bool:
        records = _read_json_array(self.path)
        kept = [r for r in records if not (isinstance(r, dict) and r.get("id") == bot_id)]
        if len(kept) == len(records):
            return False
        atomic_write_text(self.path, json.dumps(kept, indent=2, ensure_ascii=False))
        return True


class FileContextStore:
    """
    One text file per bot under `directory`, named `<bot_id>.txt`.

    `get` creates the file with the default placeholder on first access, so a
    context always exists before the first completion call for that bot.
    """

    def __init__(self, directory: Path, default_text: str = DEFAULT_CONTEXT):
        self.directory = Path(directory)
        self.default_text = default_text
        self._lock = asyncio.Lock()

    def _path(self, bot_id: str) -> Path:
        if not _SAFE_ID.match(bot_id or ""):
            raise ConfigError(f"Bot id '{bot_id}' is not a valid file name", {"bot_id": bot_id})
        return self.directory / f"{bot_id}.txt"

    def _read_or_create(self, bot_id: str) -> str:
        path = self._path(bot_id)
        if not path.exists():
            try:
                atomic_write_text(path, self.default_text)
            except OSError as e:
                raise StorageReadError(f"Could not create context for {bot_id}: {e}", {"bot_id": bot_id})
            logger.info(f"Created default context for bot {bot_id}")
            return self.default_text
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise StorageReadError(f"Could not read context for {bot_id}: {e}", {"bot_id": bot_id})

    async def get(self, bot_id: str) -> ContextRecord:
        """Fresh read on every call. Raises StorageReadError when the file is unreadable."""
        text = await asyncio.to_thread(self._read_or_create, bot_id)
        return ContextRecord(bot_id=bot_id, text=text)

    async def put(self, bot_id: str, record: ContextRecord) -> None:
        path = self._path(bot_id)
        async with self._lock:
            await asyncio.to_thread(atomic_write_text, path, record.text)

    async def list(self) -> List[ContextRecord]:
        return await asyncio.to_thread(self._list_sync)

    def _list_sync(self) -> List[ContextRecord]:
        if not self.directory.is_dir():
            return []
        records = []
        for path in sorted(self.directory.glob("*.txt")):
            try:
                records.append(ContextRecord(bot_id=path.stem, text=path.read_text(encoding="utf-8")))
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(f"Skipping unreadable context file {path}: {e}")
        return records


class OperatorDirectory:
    """
    Reads the dashboard's accounts file to find which chat identities may run
    privileged commands on a bot: admins and superadmins everywhere, customers
    only on the bots assigned to them.
    """

    def __init__(self, accounts_file: Path):
        self.accounts_file = Path(accounts_file)

    def _operator_ids_sync(self, bot_id: str) -> Set[str]:
        ids: Set[str] = set()
        for account in _read_json_array(self.accounts_file):
            if not isinstance(account, dict) or not account.get("telegramId"):
                continue
            role = account.get("role")
            assigned = account.get("assignedBots") or []
            if role in OPERATOR_ROLES or (role == "customer" and bot_id in assigned):
                ids.add(str(account["telegramId"]))
        return ids

    async def operator_ids(self, bot_id: str) -> Set[str]:
        return await asyncio.to_thread(self._operator_ids_sync, bot_id)


__all__ = [
    "DEFAULT_CONTEXT",
    "JsonConfigStore",
    "FileContextStore",
    "OperatorDirectory",
    "atomic_write_text",
]
