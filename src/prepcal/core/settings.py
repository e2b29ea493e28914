"""Settings persistence for calendar events, selection and cloud credentials.

All stores share the same typed surface (:class:`SettingsStore`) layered on a
small key-value primitive. Values are JSON documents produced by pydantic's
``model_dump(mode="json")``.

Three backends are provided:

- :class:`InMemorySettingsStore` for tests and ephemeral runs
- :class:`JsonFileSettingsStore` writing one JSON document with atomic replace
- :class:`PostgresSettingsStore` using the ``state`` table (JSONB values)
"""

from __future__ import annotations

import abc
import asyncio
import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

import asyncpg

from prepcal.calendar.models import CalendarEvent, CalendarSelection

logger = logging.getLogger(__name__)

KEY_EVENTS = "calendar.events"
KEY_LAST_SYNC = "calendar.last_sync"
KEY_SELECTION = "calendar.selection"
KEY_GOOGLE_REFRESH_TOKEN = "google_calendar.refresh_token"


class SettingsStore(Protocol):
    async def get_events(self) -> list[CalendarEvent]: ...

    async def set_events(self, events: list[CalendarEvent]) -> None: ...

    async def get_last_calendar_sync(self) -> datetime | None: ...

    async def set_last_calendar_sync(self, moment: datetime) -> None: ...

    async def get_calendar_selection(self) -> CalendarSelection: ...

    async def set_calendar_selection(self, selection: CalendarSelection) -> None: ...

    async def get_google_calendar_connected(self) -> bool: ...

    async def get_google_calendar_refresh_token(self) -> str | None: ...

    async def set_google_calendar_credentials(self, refresh_token: str | None) -> None: ...


class KeyValueSettingsStore(abc.ABC):
    """Typed settings operations on top of ``_get``/``_set``/``_delete``."""

    @abc.abstractmethod
    async def _get(self, key: str) -> Any | None: ...

    @abc.abstractmethod
    async def _set(self, key: str, value: Any) -> None: ...

    @abc.abstractmethod
    async def _delete(self, key: str) -> None: ...

    async def get_events(self) -> list[CalendarEvent]:
        raw = await self._get(KEY_EVENTS)
        if not raw:
            return []
        return [CalendarEvent.model_validate(item) for item in raw]

    async def set_events(self, events: list[CalendarEvent]) -> None:
        await self._set(KEY_EVENTS, [event.model_dump(mode="json") for event in events])

    async def get_last_calendar_sync(self) -> datetime | None:
        raw = await self._get(KEY_LAST_SYNC)
        if raw is None:
            return None
        return datetime.fromisoformat(raw)

    async def set_last_calendar_sync(self, moment: datetime) -> None:
        await self._set(KEY_LAST_SYNC, moment.isoformat())

    async def get_calendar_selection(self) -> CalendarSelection:
        raw = await self._get(KEY_SELECTION)
        if raw is None:
            return CalendarSelection()
        return CalendarSelection.model_validate(raw)

    async def set_calendar_selection(self, selection: CalendarSelection) -> None:
        await self._set(KEY_SELECTION, selection.model_dump(mode="json"))

    async def get_google_calendar_connected(self) -> bool:
        return bool(await self.get_google_calendar_refresh_token())

    async def get_google_calendar_refresh_token(self) -> str | None:
        raw = await self._get(KEY_GOOGLE_REFRESH_TOKEN)
        if not isinstance(raw, str) or not raw.strip():
            return None
        return raw

    async def set_google_calendar_credentials(self, refresh_token: str | None) -> None:
        if refresh_token is None:
            await self._delete(KEY_GOOGLE_REFRESH_TOKEN)
            return
        await self._set(KEY_GOOGLE_REFRESH_TOKEN, refresh_token)


class InMemorySettingsStore(KeyValueSettingsStore):
    def __init__(self) -> None:
        self._values: dict[str, Any] = {}

    async def _get(self, key: str) -> Any | None:
        return self._values.get(key)

    async def _set(self, key: str, value: Any) -> None:
        self._values[key] = value

    async def _delete(self, key: str) -> None:
        self._values.pop(key, None)


class JsonFileSettingsStore(KeyValueSettingsStore):
    """All settings in a single JSON document, rewritten atomically on each change."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path).expanduser()
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> dict[str, Any]:
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        if not text.strip():
            return {}
        document = json.loads(text)
        if not isinstance(document, dict):
            raise ValueError(f"Settings file {self._path} must contain a JSON object")
        return document

    def _write(self, document: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle, indent=2, sort_keys=True)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def _get(self, key: str) -> Any | None:
        async with self._lock:
            document = await asyncio.to_thread(self._read)
        return document.get(key)

    async def _set(self, key: str, value: Any) -> None:
        async with self._lock:
            document = await asyncio.to_thread(self._read)
            document[key] = value
            await asyncio.to_thread(self._write, document)

    async def _delete(self, key: str) -> None:
        async with self._lock:
            document = await asyncio.to_thread(self._read)
            if document.pop(key, None) is not None:
                await asyncio.to_thread(self._write, document)


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------

STATE_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS state (
    key TEXT PRIMARY KEY,
    value JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    version INTEGER NOT NULL DEFAULT 1
)
"""


def decode_jsonb(val: Any) -> Any:
    """Decode a JSONB value, handling potential double-encoding.

    asyncpg returns JSONB columns as Python strings when no custom codec is
    registered. A JSON string that itself contains JSON text gets a second pass.
    """
    if not isinstance(val, str):
        return val
    val = json.loads(val)
    if isinstance(val, str) and val[:1] in ("{", "["):
        logger.warning("Double-encoded JSONB detected, applying second decode pass")
        try:
            val = json.loads(val)
        except ValueError:
            logger.debug("Second JSONB decode pass failed; keeping string value")
    return val


class PostgresSettingsStore(KeyValueSettingsStore):
    """Settings in the ``state`` key-value table of a PostgreSQL database."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    @classmethod
    async def connect(
        cls, dsn: str, *, min_size: int = 1, max_size: int = 4
    ) -> PostgresSettingsStore:
        pool = await asyncpg.create_pool(dsn, min_size=min_size, max_size=max_size)
        store = cls(pool)
        await store.ensure_schema()
        return store

    async def ensure_schema(self) -> None:
        await self._pool.execute(STATE_TABLE_DDL)

    async def close(self) -> None:
        await self._pool.close()

    async def _get(self, key: str) -> Any | None:
        row = await self._pool.fetchval("SELECT value FROM state WHERE key = $1", key)
        if row is None:
            return None
        return decode_jsonb(row)

    async def _set(self, key: str, value: Any) -> None:
        await self._pool.execute(
            """
            INSERT INTO state (key, value, updated_at, version)
            VALUES ($1, $2::jsonb, now(), 1)
            ON CONFLICT (key) DO UPDATE
                SET value = EXCLUDED.value,
                    updated_at = now(),
                    version = state.version + 1
            """,
            key,
            json.dumps(value),
        )

    async def _delete(self, key: str) -> None:
        await self._pool.execute("DELETE FROM state WHERE key = $1", key)
