import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from chat_core.domain.exceptions import NotFoundError
from chat_core.domain.models import ChatSession, ChatSettings, Message
from chat_core.infrastructure.storage.json_store import JsonChatPersistence


def _chat(chat_id="c1", leaf=None):
    now = datetime.now(timezone.utc)
    return ChatSession(
        id=chat_id,
        active_leaf_id=leaf,
        created_at=now,
        updated_at=now,
        title="demo",
        settings=ChatSettings(system_prompt="sys", model="chat-small", temperature=0.5),
    )


def _msg(mid, parent_id, offset, role="user", content="x", chat_id="c1"):
    return Message(
        id=mid,
        chat_id=chat_id,
        parent_id=parent_id,
        role=role,
        content=content,
        status="complete",
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=offset),
    )


@pytest.mark.asyncio
async def test_json_store_chat_and_messages():
    with tempfile.TemporaryDirectory() as d:
        store = JsonChatPersistence(root=Path(d) / ".storage")
        await store.put_chat(_chat(leaf="m0"))
        await store.put_message(_msg("m0", None, 0, role="system", content="sys"))
        await store.put_message(_msg("m1", "m0", 1, content="你好"))

        chat = await store.get_chat("c1")
        assert chat.title == "demo"
        assert chat.settings.model == "chat-small"
        msgs = await store.list_messages("c1")
        assert [m.id for m in msgs] == ["m0", "m1"]
        assert msgs[1].content == "你好"
        assert (await store.get_message("m1")).parent_id == "m0"


@pytest.mark.asyncio
async def test_json_store_last_write_wins():
    with tempfile.TemporaryDirectory() as d:
        store = JsonChatPersistence(root=Path(d))
        await store.put_chat(_chat())
        m = _msg("m1", None, 0, role="assistant", content="")
        m.status = "pending"
        await store.put_message(m)
        m.content, m.status = "done", "complete"
        await store.put_message(m)

        msgs = await store.list_messages("c1")
        assert len(msgs) == 1
        assert (msgs[0].content, msgs[0].status) == ("done", "complete")


@pytest.mark.asyncio
async def test_json_store_delete_subtree():
    with tempfile.TemporaryDirectory() as d:
        store = JsonChatPersistence(root=Path(d))
        await store.put_chat(_chat())
        for m in [_msg("m0", None, 0), _msg("a", "m0", 1), _msg("a1", "a", 2), _msg("b", "m0", 3)]:
            await store.put_message(m)

        removed = await store.delete_subtree("a")
        assert set(removed) == {"a", "a1"}
        assert [m.id for m in await store.list_messages("c1")] == ["m0", "b"]
        with pytest.raises(NotFoundError):
            await store.delete_subtree("a")


@pytest.mark.asyncio
async def test_json_store_compare_and_set_active_leaf():
    with tempfile.TemporaryDirectory() as d:
        store = JsonChatPersistence(root=Path(d))
        await store.put_chat(_chat(leaf="m0"))
        assert await store.compare_and_set_active_leaf("c1", "m0", "m1")
        assert not await store.compare_and_set_active_leaf("c1", "m0", "m2")
        assert (await store.get_chat("c1")).active_leaf_id == "m1"


@pytest.mark.asyncio
async def test_json_store_delete_chat():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        store = JsonChatPersistence(root=root)
        await store.put_chat(_chat())
        chat_dir = root / "chats" / "c1"
        assert chat_dir.exists()
        await store.delete_chat("c1")
        assert not chat_dir.exists()
        assert "c1" not in {c.id for c in await store.list_chats()}
        with pytest.raises(NotFoundError):
            await store.get_chat("c1")
        with pytest.raises(NotFoundError):
            await store.put_message(_msg("m0", None, 0))
