"""Thread ages for comment lists: the newest activity anywhere in each thread."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Sequence

COMMENT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass
class CommentNode:
    comment_id: int
    timestamp: int
    children: List["CommentNode"] = field(default_factory=list)


def comment_timestamp(comment_date: str) -> int:
    """Unix time of a `YYYY-MM-DD HH:MM:SS` comment date, read as UTC."""
    parsed = datetime.strptime(comment_date.strip(), COMMENT_DATE_FORMAT)
    return int(parsed.replace(tzinfo=timezone.utc).timestamp())


def latest_thread_time(root: CommentNode) -> int:
    latest = root.timestamp
    # Iterative walk; reply chains may nest deeper than the recursion limit.
    stack = list(root.children)
    while stack:
        node = stack.pop()
        if node.timestamp > latest:
            latest = node.timestamp
        stack.extend(node.children)
    return latest


def build_thread_latest_date(comments: Sequence[CommentNode]) -> Dict[int, int]:
    return {comment.comment_id: latest_thread_time(comment) for comment in comments}


def thread_time_attributes(comment: CommentNode, thread_ages: Dict[int, int]) -> Dict[str, str]:
    attrs = {"data-sort-time": str(comment.timestamp)}
    update_time = thread_ages.get(comment.comment_id)
    if update_time:
        attrs["data-update-time"] = str(update_time)
    return attrs
