"""Monthly upload counter persisted in a small JSON file.

Advisory only: it lets the client block an attempt before any network
traffic, but the server never consults it.
"""
import asyncio
import json
import logging
import os
from datetime import datetime, timezone
from typing import Optional

import aiofiles
import aiofiles.os

logger = logging.getLogger(__name__)


def counter_key(now: datetime) -> str:
    return f"uploadCount_{now.year}_{now.month}"


class MonthlyUploadCounter:
    def __init__(self, path: str):
        self.path = path
        self._lock = asyncio.Lock()

    async def _load(self) -> dict:
        if not await aiofiles.os.path.exists(self.path):
            return {}
        async with aiofiles.open(self.path, "r") as f:
            raw = await f.read()
        try:
            data = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError:
            logger.warning(f"Upload counter file {self.path} is corrupt; starting from zero")
            return {}
        return data if isinstance(data, dict) else {}

    async def _save(self, data: dict) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            await aiofiles.os.makedirs(directory, exist_ok=True)
        async with aiofiles.open(self.path, "w") as f:
            await f.write(json.dumps(data, indent=2))

    async def get(self, now: Optional[datetime] = None) -> int:
        """Uploads recorded for the calendar month containing `now`."""
        now = now or datetime.now(timezone.utc)
        async with self._lock:
            data = await self._load()
        return int(data.get(counter_key(now), 0))

    async def increment(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        async with self._lock:
            data = await self._load()
            key = counter_key(now)
            data[key] = int(data.get(key, 0)) + 1
            await self._save(data)
        return data[key]
