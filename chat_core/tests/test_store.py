import pytest

from chat_core.domain.exceptions import ConflictError, NotFoundError, ValidationError
from chat_core.engine.store import ConversationStore


def _chat_with_root():
    store = ConversationStore()
    session = store.create_session(chat_id="c1")
    root = store.create_root(session.id, role="system", content="sys")
    return store, root


def test_create_root_sets_active_leaf_and_rejects_second_root():
    store, root = _chat_with_root()
    assert store.get_session("c1").active_leaf_id == root
    assert store.get_message(root).parent_id is None
    with pytest.raises(ConflictError):
        store.create_root("c1")


def test_append_initial_status_by_role():
    store, root = _chat_with_root()
    u = store.append(root, "user", "hi")
    a = store.append(u, "assistant", "")
    assert store.get_message(u).status == "complete"
    assert store.get_message(a).status == "pending"
    assert [m.id for m in store.children_of(root)] == [u]


def test_append_missing_parent():
    store, _ = _chat_with_root()
    with pytest.raises(NotFoundError):
        store.append("m-missing", "user", "hi")


def test_status_lattice():
    store, root = _chat_with_root()
    a = store.append(root, "assistant", "")
    with pytest.raises(ValidationError):
        store.update_content(a, status="complete")
    store.update_content(a, "Hel", status="streaming")
    store.update_content(a, "lo")
    msg = store.update_content(a, status="complete")
    assert msg.content == "Hello"
    with pytest.raises(ValidationError):
        store.update_content(a, status="streaming")
    with pytest.raises(ValidationError):
        store.update_content(a, "more")


def test_update_content_replace():
    store, root = _chat_with_root()
    a = store.append(root, "assistant", "draft")
    msg = store.update_content(a, "final", replace_content=True)
    assert msg.content == "final"


def test_only_one_streaming_message_per_chat():
    store, root = _chat_with_root()
    a1 = store.append(root, "assistant", "")
    a2 = store.append(root, "assistant", "")
    store.update_content(a1, status="streaming")
    with pytest.raises(ConflictError):
        store.update_content(a2, status="streaming")
    store.update_content(a1, status="cancelled")
    store.update_content(a2, status="streaming")
    assert store.streaming_message("c1").id == a2


def test_delete_removes_exactly_subtree():
    store, root = _chat_with_root()
    u1 = store.append(root, "user", "a")
    a1 = store.append(u1, "assistant", "")
    u2 = store.append(a1, "user", "b")
    other = store.append(root, "user", "c")
    removed = store.delete(a1)
    assert removed == {a1, u2}
    assert store.has_message(u1) and store.has_message(other)
    assert store.children_of(u1) == []


def test_root_not_deletable():
    store, root = _chat_with_root()
    with pytest.raises(ConflictError):
        store.delete(root)


def test_set_active_leaf_validates_membership():
    store, root = _chat_with_root()
    store.create_session(chat_id="c2")
    foreign = store.create_root("c2")
    with pytest.raises(ValidationError):
        store.set_active_leaf("c1", foreign)
    with pytest.raises(ValidationError):
        store.set_active_leaf("c1", "m-missing")
    u = store.append(root, "user", "x")
    store.set_active_leaf("c1", u)
    assert store.get_session("c1").active_leaf_id == u


def test_snapshot_restore_undoes_append_and_delete():
    store, root = _chat_with_root()
    u1 = store.append(root, "user", "a")
    a1 = store.append(u1, "assistant", "")
    u2 = store.append(root, "user", "b")
    store.set_active_leaf("c1", a1)

    snap = store.snapshot("c1", store.subtree_ids(u1))
    store.delete(u1)
    extra = store.append(u2, "user", "c")
    store.set_active_leaf("c1", extra)
    store.restore(snap)

    assert store.get_session("c1").active_leaf_id == a1
    assert not store.has_message(extra)
    assert [m.id for m in store.children_of(root)] == [u1, u2]
    assert [m.id for m in store.children_of(u1)] == [a1]


def test_load_rejects_orphans():
    store, root = _chat_with_root()
    u = store.append(root, "user", "a")
    session = store.get_session("c1")
    messages = [m for m in store.messages_of("c1") if m.id != root]

    fresh = ConversationStore()
    with pytest.raises(ValidationError):
        fresh.load(session, messages)
    assert not fresh.has_session("c1")

    fresh.load(session, store.messages_of("c1"))
    assert fresh.get_message(u).parent_id == root
    assert fresh.root_of("c1") == root
