"""Branch naming policy for claimed tasks."""

from __future__ import annotations

import re
from enum import StrEnum
from typing import Any

DEFAULT_BRANCH_PREFIX = "hive/"


class BranchingStrategy(StrEnum):
    NONE = "none"
    TRUNK = "trunk"
    CUSTOM = "custom"
    DEFAULT = "default"


def slugify_title(title: str, max_length: int = 30) -> str:
    return re.sub(r"[^a-z0-9]+", "-", title.lower())[:max_length]


def branch_name_for(task_id: str, title: str, git_config: dict[str, Any] | None) -> str:
    """Synthesize the worker branch from the workspace's git config.

    ``none``                 -> task-<short id>
    ``use_build_branch``     -> hive/<short id>-<slug>
    ``branch_prefix`` set    -> <prefix><short id>-<slug>
    otherwise                -> hive/<short id>-<slug>
    """
    config = git_config or {}
    short_id = task_id[:8]
    slug = slugify_title(title)

    if config.get("branching_strategy") == BranchingStrategy.NONE:
        return f"task-{short_id}"
    if config.get("use_build_branch"):
        return f"{DEFAULT_BRANCH_PREFIX}{short_id}-{slug}"
    prefix = config.get("branch_prefix")
    if prefix:
        return f"{prefix}{short_id}-{slug}"
    return f"{DEFAULT_BRANCH_PREFIX}{short_id}-{slug}"
