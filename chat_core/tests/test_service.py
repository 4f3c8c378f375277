import asyncio

import pytest

from chat_core.api import service
from chat_core.domain.exceptions import ValidationError
from chat_core.engine.orchestrator import MutationOrchestrator
from chat_core.infrastructure.storage.memory_store import InMemoryChatPersistence

from conftest import FakeTransport, sse


@pytest.fixture
def fake_transport():
    return FakeTransport([[sse("first")], [sse("second")]])


@pytest.fixture
def default_orchestrator(monkeypatch, fake_transport):
    persistence = InMemoryChatPersistence()
    orchestrator = MutationOrchestrator(persistence=persistence, transport=fake_transport, idle_timeout=1.0)
    monkeypatch.setattr(service, "_persistence", persistence)
    monkeypatch.setattr(service, "_orchestrator", orchestrator)
    return orchestrator


def _finished_waiter(orchestrator, chat_id):
    done = asyncio.Event()
    orchestrator.subscribe(chat_id, lambda e: done.set() if e.kind == "finished" else None)
    return done


@pytest.mark.asyncio
async def test_service_send_edit_and_switch(default_orchestrator):
    created = await service.create_chat(title="demo", system_prompt="sys")
    chat_id = created["chat"]["id"]
    assert [m["role"] for m in created["messages"]] == ["system"]
    root_id = created["messages"][0]["id"]

    done = _finished_waiter(default_orchestrator, chat_id)
    sent = await service.send_message(chat_id, "hello")
    await asyncio.wait_for(done.wait(), timeout=1.0)

    done.clear()
    edited = await service.edit_message(sent["user_message_id"], "hello again")
    await asyncio.wait_for(done.wait(), timeout=1.0)

    view = await service.get_chat(chat_id)
    assert [m["content"] for m in view["messages"]] == ["sys", "hello again", "second"]
    assert view["messages"][1]["branch_index"] == 1
    assert view["messages"][1]["total_branches"] == 2
    assert view["chat"]["active_leaf_id"] == edited["assistant_message_id"]

    switched = await service.switch_branch(chat_id, root_id, 0)
    assert [m["content"] for m in switched["messages"]] == ["sys", "hello", "first"]
    assert switched["chat"]["active_leaf_id"] == sent["assistant_message_id"]

    deleted = await service.delete_message(sent["user_message_id"])
    assert deleted["chat_id"] == chat_id
    assert deleted["removed_ids"] == sorted([sent["user_message_id"], sent["assistant_message_id"]])
    assert [m["id"] for m in deleted["messages"]] == [root_id]

    listing = await service.list_chats()
    assert [c["id"] for c in listing["data"]] == [chat_id]
    assert (listing["total"], listing["total_pages"]) == (1, 1)
    assert await service.cancel_streaming(chat_id) is None


@pytest.mark.asyncio
async def test_service_send_rejects_empty(default_orchestrator):
    created = await service.create_chat()
    with pytest.raises(ValidationError):
        await service.send_message(created["chat"]["id"], "")


@pytest.mark.asyncio
async def test_service_list_chats_paginates(default_orchestrator):
    for i in range(3):
        await service.create_chat(title=f"chat {i}")

    page = await service.list_chats(page=2, limit=2)
    assert len(page["data"]) == 1
    assert (page["page"], page["limit"], page["total"], page["total_pages"]) == (2, 2, 3, 2)
    assert (await service.list_chats(page=3, limit=2))["data"] == []
    with pytest.raises(ValidationError):
        await service.list_chats(page=0)


@pytest.mark.asyncio
async def test_service_create_with_initial_content_and_overrides(default_orchestrator, fake_transport):
    created = await service.create_chat(system_prompt="sys", initial_content="hi", temperature=0.3)
    chat_id = created["chat"]["id"]
    generation = created["generation"]
    assert generation["chat_id"] == chat_id
    assert [m["role"] for m in created["messages"]] == ["system", "user", "assistant"]
    await default_orchestrator.generation_of(chat_id).wait()

    done = _finished_waiter(default_orchestrator, chat_id)
    await service.regenerate_response(generation["assistant_message_id"], top_k=2)
    await asyncio.wait_for(done.wait(), timeout=1.0)
    assert fake_transport.requests[-1].settings.top_k == 2
    assert fake_transport.requests[-1].settings.temperature == 0.3
