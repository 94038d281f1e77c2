from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from karatapp.utils.comments import (
    descendant_ids_depth_first,
    find_comment,
    has_replies,
    organize_comments,
    reply_count,
    thread_comments,
    thread_root_id,
)

T0 = datetime(2024, 1, 1, tzinfo=UTC)


@dataclass
class Comment:
    id: int
    parent_comment_id: int | None
    minute: int

    @property
    def created_at(self) -> datetime:
        return T0 + timedelta(minutes=self.minute)


# 1 ── 3 ── 5
#  └── 2
# 4
# 6 (parent missing)
COMMENTS = [
    Comment(3, 1, 3),
    Comment(1, None, 0),
    Comment(2, 1, 2),
    Comment(4, None, 1),
    Comment(5, 3, 4),
    Comment(6, 99, 5),
]


def test_organize_comments():
    threads = organize_comments(COMMENTS)

    assert [t.comment.id for t in threads] == [1, 4]
    assert [r.comment.id for r in threads[0].replies] == [2, 3]
    assert threads[0].total_comments == 4
    assert threads[0].direct_reply_count == 2
    assert threads[0].comment_ids() == [1, 2, 3, 5]
    assert find_comment(threads, 5).depth == 2
    assert find_comment(threads, 6) is None


def test_reply_helpers():
    assert has_replies(COMMENTS, 1)
    assert not has_replies(COMMENTS, 4)
    assert reply_count(COMMENTS, 1) == 2
    assert thread_root_id(COMMENTS, 5) == 1
    assert thread_root_id(COMMENTS, 4) == 4
    assert [c.id for c in thread_comments(COMMENTS, 1)] == [1, 3, 5, 2]
    assert thread_comments(COMMENTS, 42) == []


def test_descendants_listed_before_parents():
    assert descendant_ids_depth_first(COMMENTS, 1) == [5, 3, 2]
    assert descendant_ids_depth_first(COMMENTS, 4) == []


def test_cycles_terminate():
    looped = [Comment(1, 2, 0), Comment(2, 1, 1)]

    assert thread_root_id(looped, 1) == 2
    assert sorted(descendant_ids_depth_first(looped, 1)) == [2]
