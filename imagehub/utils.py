import hashlib
import math
import os
import re
import time
import uuid

from imagehub.models import Pagination

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9.-]")


def generate_unique_filename(original_name: str, prefix: str = "") -> str:
    """
    Build a collision-resistant object name.

    ``holiday photo.JPG`` becomes ``holiday_photo_1718000000000_1a2b3c4d.jpg``:
    sanitized basename (max 50 chars), millisecond timestamp, the first eight
    hex digits of a uuid4 and the lowercased extension.
    """
    base, extension = os.path.splitext(os.path.basename(original_name or ""))
    sanitized = _UNSAFE_CHARS.sub("_", base)[:50] or "file"
    timestamp = int(time.time() * 1000)
    short_random = uuid.uuid4().hex[:8]
    parts = [prefix] if prefix else []
    parts.extend([sanitized, str(timestamp), short_random])
    return "_".join(parts) + extension.lower()


def md5_hex(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


def format_file_size(size: int) -> str:
    if size < 1024:
        return f"{size} Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    exponent = min(int(math.log(size, 1024)), len(units) - 1)
    value = round(size / (1024 ** exponent), 2)
    return f"{value:g} {units[exponent]}"


def pagination_meta(page: int, limit: int, total: int) -> Pagination:
    total_pages = math.ceil(total / limit) if limit else 0
    return Pagination(
        total=total,
        page=page,
        limit=limit,
        total_pages=total_pages,
        has_next=page < total_pages,
        has_prev=page > 1,
    )
