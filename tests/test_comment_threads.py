"""Tests for comment thread ages."""

from comment_threads import (
    CommentNode,
    build_thread_latest_date,
    comment_timestamp,
    latest_thread_time,
    thread_time_attributes,
)


def test_thread_age_is_newest_descendant():
    reply = CommentNode(3, 300, [CommentNode(4, 250)])
    root = CommentNode(1, 100, [CommentNode(2, 150), reply])
    assert latest_thread_time(root) == 300


def test_ages_are_assigned_to_top_level_comments_only():
    first = CommentNode(1, 500, [CommentNode(2, 100)])
    second = CommentNode(3, 200, [CommentNode(4, 400)])
    assert build_thread_latest_date([first, second]) == {1: 500, 3: 400}


def test_deep_threads_do_not_recurse():
    root = CommentNode(0, 0)
    node = root
    for i in range(1, 5000):
        child = CommentNode(i, i)
        node.children.append(child)
        node = child
    assert build_thread_latest_date([root]) == {0: 4999}


def test_comment_timestamp():
    assert comment_timestamp("1970-01-02 00:00:00") == 86400


def test_thread_time_attributes():
    root = CommentNode(1, 100, [CommentNode(2, 900)])
    ages = build_thread_latest_date([root])
    assert thread_time_attributes(root, ages) == {"data-sort-time": "100", "data-update-time": "900"}
    assert thread_time_attributes(root.children[0], ages) == {"data-sort-time": "900"}
