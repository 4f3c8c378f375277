"""Minimal demonstration of branching chat with a live generation service."""

import asyncio

from chat_core.api import service


async def main() -> None:
    created = await service.create_chat(title="demo", system_prompt="You are a helpful assistant.")
    chat_id = created["chat"]["id"]
    orchestrator = service.get_default_orchestrator()
    orchestrator.subscribe(chat_id, lambda e: print(e.delta, end="", flush=True) if e.kind == "chunk" else None)

    first = await orchestrator.send_message(chat_id, "请用一句话介绍一下你自己")
    await first.wait()
    print()

    edited = await orchestrator.edit_message(first.user_message_id, "请用三个词介绍一下你自己")
    await edited.wait()
    print()

    view = await service.switch_branch(chat_id, created["messages"][0]["id"], 0)
    for m in view["messages"]:
        print(f"[{m['branch_index'] + 1}/{m['total_branches']}] {m['role']}: {m['content']}")


if __name__ == "__main__":
    asyncio.run(main())
