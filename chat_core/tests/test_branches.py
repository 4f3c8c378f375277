from datetime import datetime, timedelta, timezone

import pytest

from chat_core.domain.exceptions import ValidationError
from chat_core.engine.branches import BranchResolver
from chat_core.engine.store import ConversationStore


class TickClock:
    """每次调用前进一秒，保证创建时间严格递增。"""

    def __init__(self):
        self._now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        self._now += timedelta(seconds=1)
        return self._now


def _tree():
    store = ConversationStore(clock=TickClock())
    store.create_session(chat_id="c1")
    root = store.create_root("c1", content="Hi")
    a = store.append(root, "user", "How are you?")
    a_reply = store.append(a, "assistant", "")
    b = store.append(root, "user", "How's it going?")
    b_reply = store.append(b, "assistant", "")
    return store, BranchResolver(store), root, a, a_reply, b, b_reply


def test_resolve_path_root_to_leaf():
    store, resolver, root, a, a_reply, *_ = _tree()
    path = [m.id for m in resolver.resolve_path(a_reply)]
    assert path == [root, a, a_reply]
    assert len(set(path)) == len(path)


def test_resolve_path_all_leaves_acyclic():
    store, resolver, *_ = _tree()
    for msg in store.messages_of("c1"):
        if not store.children_of(msg.id):
            path = resolver.resolve_path(msg.id)
            assert path[0].parent_id is None
            assert path[-1].id == msg.id
            assert len({m.id for m in path}) == len(path)


def test_resolve_path_detects_cycle():
    store, resolver, root, a, a_reply, *_ = _tree()
    store.get_message(a).parent_id = a_reply
    with pytest.raises(ValidationError) as exc:
        resolver.resolve_path(a_reply)
    assert exc.value.code == "CYCLE_DETECTED"


def test_siblings_ordered_by_created_at():
    store, resolver, root, a, a_reply, b, b_reply = _tree()
    assert [m.id for m in resolver.siblings_of(b)] == [a, b]
    assert resolver.branch_info(a) == (0, 2)
    assert resolver.branch_info(b) == (1, 2)
    assert [m.id for m in resolver.siblings_of(root)] == [root]


def test_describe_path_branch_positions():
    store, resolver, root, a, a_reply, b, b_reply = _tree()
    entries = resolver.describe_path(b_reply)
    assert [(e.message.id, e.branch_index, e.total_branches) for e in entries] == [
        (root, 0, 1),
        (b, 1, 2),
        (b_reply, 0, 1),
    ]


def test_latest_leaf_and_branch_leaf():
    store, resolver, root, a, a_reply, b, b_reply = _tree()
    assert resolver.latest_leaf(root) == b_reply
    assert resolver.branch_leaf(root, 0) == a_reply
    assert resolver.branch_leaf(root, 1) == b_reply
    with pytest.raises(ValidationError):
        resolver.branch_leaf(root, 2)


def test_fallback_after_deleting_active_branch():
    store, resolver, root, a, a_reply, b, b_reply = _tree()
    previous = [m.id for m in resolver.resolve_path(a_reply)]
    removed = store.delete(a)
    assert resolver.fallback_leaf_after_deletion(removed, a_reply, previous) == root


def test_fallback_keeps_untouched_leaf():
    store, resolver, root, a, a_reply, b, b_reply = _tree()
    previous = [m.id for m in resolver.resolve_path(a_reply)]
    removed = store.delete(b)
    assert resolver.fallback_leaf_after_deletion(removed, a_reply, previous) == a_reply


def test_fallback_stops_at_nearest_surviving_ancestor():
    store, resolver, root, a, a_reply, *_ = _tree()
    follow_up = store.append(a_reply, "user", "more")
    previous = [m.id for m in resolver.resolve_path(follow_up)]
    removed = store.delete(follow_up)
    assert resolver.fallback_leaf_after_deletion(removed, follow_up, previous) == a_reply
