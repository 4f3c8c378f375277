"""分支解析：活动路径、兄弟分支与删除后的回退叶子。

所有查询都通过 ConversationStore 按 ID 进行，不持有消息之间的直接引用。
"""

from typing import Iterable, List, Sequence, Tuple

from chat_core.domain.exceptions import ConflictError, ValidationError
from chat_core.domain.models import Message, PathEntry
from chat_core.engine.store import ConversationStore


class BranchResolver:
    def __init__(self, store: ConversationStore):
        self._store = store

    def resolve_path(self, leaf_id: str) -> List[Message]:
        """构建从根到叶子的消息路径。

        沿 parent_id 向上回溯，遇到环直接报错而不是死循环。
        """
        path: List[Message] = []
        seen = set()
        current = self._store.get_message(leaf_id)
        while True:
            if current.id in seen:
                raise ValidationError(
                    code="CYCLE_DETECTED",
                    message=f"Cycle detected at message {current.id}",
                    message_id=leaf_id,
                )
            seen.add(current.id)
            path.append(current)
            if current.parent_id is None:
                break
            current = self._store.get_message(current.parent_id)
        path.reverse()
        return path

    def siblings_of(self, message_id: str) -> List[Message]:
        """同一父节点下的全部消息，按创建时间升序（同一时刻按插入顺序）。"""
        msg = self._store.get_message(message_id)
        if msg.parent_id is None:
            return [msg]
        return sorted(self._store.children_of(msg.parent_id), key=lambda m: m.created_at)

    def branch_info(self, message_id: str) -> Tuple[int, int]:
        siblings = self.siblings_of(message_id)
        ids = [m.id for m in siblings]
        return ids.index(message_id), len(ids)

    def describe_path(self, leaf_id: str) -> List[PathEntry]:
        entries: List[PathEntry] = []
        for msg in self.resolve_path(leaf_id):
            index, total = self.branch_info(msg.id)
            entries.append(PathEntry(message=msg, branch_index=index, total_branches=total))
        return entries

    def latest_leaf(self, message_id: str) -> str:
        """从 message_id 向下，每层选最新创建的子节点，直到叶子。

        用于没有显式切换时的默认分支。
        """
        current = self._store.get_message(message_id)
        seen = {current.id}
        while True:
            children = sorted(self._store.children_of(current.id), key=lambda m: m.created_at)
            if not children:
                return current.id
            current = children[-1]
            if current.id in seen:
                raise ValidationError(code="CYCLE_DETECTED", message=f"Cycle detected at message {current.id}")
            seen.add(current.id)

    def branch_leaf(self, parent_id: str, branch_index: int) -> str:
        """按序号选择 parent_id 下的某个分支，并返回该分支的默认叶子。"""
        children = sorted(self._store.children_of(parent_id), key=lambda m: m.created_at)
        if not 0 <= branch_index < len(children):
            raise ValidationError(
                code="INVALID_BRANCH_INDEX",
                message=f"Branch index {branch_index} out of range (0..{len(children) - 1})",
                message_id=parent_id,
            )
        return self.latest_leaf(children[branch_index].id)

    def fallback_leaf_after_deletion(
        self,
        removed_ids: Iterable[str],
        previous_active_leaf_id: str,
        previous_path_ids: Sequence[str],
    ) -> str:
        """删除后重新确定活动叶子。

        previous_path_ids 为删除前的活动路径（根 -> 叶）。若活动叶子未被删除则保持不变；
        否则沿路径向上找到第一个幸存的祖先，也就是被删除节点的父节点。
        根节点不可删除，因此一定能终止。
        """
        removed = set(removed_ids)
        if previous_active_leaf_id not in removed:
            return previous_active_leaf_id
        for mid in reversed(previous_path_ids):
            if mid not in removed and self._store.has_message(mid):
                return mid
        raise ConflictError(
            code="NO_SURVIVING_ANCESTOR",
            message=f"No surviving ancestor for message {previous_active_leaf_id}",
            message_id=previous_active_leaf_id,
        )
