"""Local file inspection that never reads file content."""
import asyncio
import logging
import mimetypes
import os
from typing import Optional

import aiofiles.os

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"


async def detect_file_size(path: str) -> Optional[int]:
    """Size in bytes from filesystem metadata, or None when it cannot be determined.

    Both lookups run off the event loop. The second one only runs when the
    first raises or reports nothing.
    """
    try:
        stat = await aiofiles.os.stat(path)
        if stat.st_size:
            return stat.st_size
    except OSError as e:
        logger.debug(f"stat failed for {path}: {e}")

    try:
        return await asyncio.to_thread(os.path.getsize, path)
    except OSError as e:
        logger.warning(f"Could not determine size of {path}, continuing without it: {e}")
        return None


def guess_mime_type(path: str) -> str:
    mime_type, _ = mimetypes.guess_type(path)
    return mime_type or DEFAULT_MIME_TYPE
