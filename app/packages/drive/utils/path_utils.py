"""Path utilities: item name validation and materialized path building.

Rules shared by the tree service and the upload flows:
- A path always starts with '/' and never ends with '/';
- A root item's path is '/{name}', a child's path is '{parent_path}/{name}';
- Names never contain '/', so a path splits back into its ancestor names.
"""

from __future__ import annotations

import os
import time
from typing import Optional

from app.packages.drive.core.constants import ITEM_NAME_MAX_LENGTH
from app.packages.drive.core.exceptions import InvalidOperationError

_RESERVED_NAMES = {".", ".."}


def build_item_path(name: str, parent_path: Optional[str] = None) -> str:
    if parent_path is None:
        return f"/{name}"
    return f"{parent_path.rstrip('/')}/{name}"


def normalize_item_name(name: Optional[str]) -> str:
    """Strip surrounding whitespace and reject names the tree cannot hold."""
    s = (name or "").strip()
    if not s:
        raise InvalidOperationError("名称不能为空")
    if "/" in s or "\\" in s:
        raise InvalidOperationError("名称不能包含路径分隔符")
    if s in _RESERVED_NAMES:
        raise InvalidOperationError("名称不合法")
    if len(s) > ITEM_NAME_MAX_LENGTH:
        raise InvalidOperationError(f"名称长度不能超过 {ITEM_NAME_MAX_LENGTH} 个字符")
    return s


def build_storage_key(owner_id: str, filename: str, *, timestamp_ms: Optional[int] = None) -> str:
    """Object key '{owner_id}/{epoch_ms}-{filename}'.

    Collision-resistant but not globally unique; duplicate visible items are
    prevented by the sibling uniqueness constraint, not by the key.
    """
    ts = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
    return f"{owner_id}/{ts}-{os.path.basename(filename)}"


def owner_key_prefix(owner_id: str) -> str:
    return f"{owner_id}/"
