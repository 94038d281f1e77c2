"""Reply threading for flat comment lists.

Works on any comment object exposing ``id``, ``parent_comment_id`` and
``created_at`` (forum, kata and ohyo comments alike).
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol


class CommentLike(Protocol):
    id: int
    parent_comment_id: int | None
    created_at: datetime


@dataclass(slots=True)
class ThreadedComment[T: CommentLike]:
    comment: T
    replies: list[ThreadedComment[T]] = field(default_factory=list)
    depth: int = 0

    @property
    def total_comments(self) -> int:
        """This comment plus all nested replies."""
        return 1 + sum(reply.total_comments for reply in self.replies)

    @property
    def direct_reply_count(self) -> int:
        return len(self.replies)

    def comment_ids(self) -> list[int]:
        ids = [self.comment.id]
        for reply in self.replies:
            ids.extend(reply.comment_ids())
        return ids


def _children_map[T: CommentLike](comments: list[T]) -> dict[int | None, list[T]]:
    children: dict[int | None, list[T]] = defaultdict(list)
    for comment in comments:
        children[comment.parent_comment_id].append(comment)
    return children


def organize_comments[T: CommentLike](comments: list[T]) -> list[ThreadedComment[T]]:
    """Nest comments under their parents, oldest first on every level.

    Comments whose parent is not in the list are left out.
    """
    children = _children_map(comments)

    def build(level: list[T], depth: int) -> list[ThreadedComment[T]]:
        return [
            ThreadedComment(comment=c, replies=build(children.get(c.id, []), depth + 1), depth=depth)
            for c in sorted(level, key=lambda c: c.created_at)
        ]

    return build(children.get(None, []), 0)


def find_comment[T: CommentLike](threads: list[ThreadedComment[T]], comment_id: int) -> ThreadedComment[T] | None:
    for thread in threads:
        if thread.comment.id == comment_id:
            return thread
        found = find_comment(thread.replies, comment_id)
        if found is not None:
            return found
    return None


def has_replies(comments: list[CommentLike], comment_id: int) -> bool:
    return any(c.parent_comment_id == comment_id for c in comments)


def reply_count(comments: list[CommentLike], comment_id: int) -> int:
    return sum(1 for c in comments if c.parent_comment_id == comment_id)


def thread_root_id(comments: list[CommentLike], comment_id: int) -> int:
    """Follow parent links up to the top-level comment."""
    parents = {c.id: c.parent_comment_id for c in comments}
    current = comment_id
    seen = {current}
    while (parent := parents.get(current)) is not None and parent not in seen:
        seen.add(parent)
        current = parent
    return current


def thread_comments[T: CommentLike](comments: list[T], root_id: int) -> list[T]:
    """The root comment followed by its replies, depth first."""
    by_id = {c.id: c for c in comments}
    children = _children_map(comments)
    result: list[T] = []
    seen: set[int] = set()

    def collect(comment_id: int) -> None:
        if comment_id in seen or comment_id not in by_id:
            return
        seen.add(comment_id)
        result.append(by_id[comment_id])
        for reply in children.get(comment_id, []):
            collect(reply.id)

    collect(root_id)
    return result


def descendant_ids_depth_first(comments: list[CommentLike], comment_id: int) -> list[int]:
    """Ids of all replies below ``comment_id``, children listed before their parents."""
    children = _children_map(comments)
    ordered: list[int] = []
    seen: set[int] = {comment_id}

    def visit(parent_id: int) -> None:
        for child in children.get(parent_id, []):
            if child.id in seen:
                continue
            seen.add(child.id)
            visit(child.id)
            ordered.append(child.id)

    visit(comment_id)
    return ordered
