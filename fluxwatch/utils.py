from __future__ import annotations

import asyncio
import copy
import json
import socket
from typing import Any

REDACTED = "[REDACTED]"
SENSITIVE_KEYWORDS = ("token", "password", "signature", "zelidauth", "zelid", "loginphrase")


def _is_sensitive(key: Any) -> bool:
    lowered = str(key).lower()
    return any(keyword in lowered for keyword in SENSITIVE_KEYWORDS)


def _masked_copy(current: Any) -> Any:
    if isinstance(current, dict):
        return {key: REDACTED if _is_sensitive(key) else _masked_copy(value) for key, value in current.items()}
    if isinstance(current, (list, tuple)):
        return [_masked_copy(item) for item in current]
    return copy.deepcopy(current)


def mask_sensitive_data(data: Any) -> Any:
    """Return a deep copy of ``data`` with every sensitive key's value replaced.

    Keys match when they contain one of ``SENSITIVE_KEYWORDS`` (case-insensitive).
    Nested dicts, lists and tuples are walked at any depth; tuples come back as
    lists. The caller's object is left untouched.
    """
    if not isinstance(data, (dict, list, tuple)):
        return data
    return _masked_copy(data)


def render_log_item(item: Any, indent: int | None = None) -> str:
    if isinstance(item, (dict, list, tuple)):
        masked = mask_sensitive_data(item)
        separators = None if indent else (",", ":")
        return json.dumps(masked, indent=indent, separators=separators, default=str, ensure_ascii=False)
    return str(item)


async def check_internet_connection(host: str = "google.com", timeout: float = 5.0) -> bool:
    loop = asyncio.get_running_loop()
    try:
        await asyncio.wait_for(loop.getaddrinfo(host, None), timeout=timeout)
    except (socket.gaierror, asyncio.TimeoutError):
        return False
    return True
