"""
卡片版本链

同一 (scope, version_key) 的卡片构成按写入顺序的单链表 (predecessor_id):
- Sets / Updates: 失效当前有效卡片, 写入新卡片并指向它
- Extends: 多值槽位直接追加有效卡片; 单值槽位按 Updates 处理
- Retracts: 失效目标卡片, 追加一张失效的撤回记录, 槽位变为未设置

失效与写入在同一事务中完成, 读者不会看到零张或两张有效卡片。
冲突顺序以写入顺序为准, event_date 只作记录。
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import weakref
from datetime import datetime

from ..core.errors import ConflictError, DataIntegrityError, NotFoundError
from .repository import MemoryRepository
from .schema import SchemaRegistry
from .types import Card, VersionRelation

logger = logging.getLogger(__name__)


class CardVersioner:
    """卡片版本管理"""

    def __init__(self, schema: SchemaRegistry | None = None, max_retries: int = 1) -> None:
        self.schema = schema or SchemaRegistry()
        self.max_retries = max_retries
        # 进程内按 version_key 串行化; 跨进程竞争由仓储事务检测
        self._key_locks: weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, scope: str, version_key: str) -> asyncio.Lock:
        key = (scope, version_key)
        lock = self._key_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._key_locks[key] = lock
        return lock

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    async def apply(self, draft: Card, repository: MemoryRepository) -> Card | None:
        """
        将草稿卡片写入版本链。

        写事务不随调用方取消而中断: 取消只影响等待方, 事务本身会完成或回滚。

        Returns:
            写入 (或已存在) 的卡片; Retracts 返回撤回记录;
            无可撤回目标时返回 None。

        Raises:
            ConflictError: 重试后仍然竞争失败
            DataIntegrityError: 单值槽位出现多张有效卡片
        """
        return await asyncio.shield(self._apply_serialized(draft, repository))

    async def _apply_serialized(self, draft: Card, repository: MemoryRepository) -> Card | None:
        async with self._lock_for(draft.scope, draft.version_key):
            attempt = 0
            while True:
                try:
                    return await self._apply_once(draft, repository)
                except ConflictError as e:
                    if attempt >= self.max_retries:
                        logger.warning(
                            f"[Versioning] Conflict persisted for {draft.scope}/{draft.version_key}: {e}"
                        )
                        raise
                    attempt += 1
                    logger.info(
                        f"[Versioning] Lost race on {draft.scope}/{draft.version_key}, retrying"
                    )

    async def _apply_once(self, draft: Card, repository: MemoryRepository) -> Card | None:
        multi = self.schema.is_multi_valued(draft.entity, draft.slot)
        active = await self._read_active(draft.scope, draft.entity, draft.slot, multi, repository)
        expected = [c.id for c in active]
        now = datetime.now()

        relation = draft.version_relation
        if relation == VersionRelation.EXTENDS and not multi:
            relation = VersionRelation.UPDATES

        if relation == VersionRelation.RETRACTS:
            targets = [c for c in active if c.value == draft.value] if multi else active
            if not targets:
                logger.debug(
                    f"[Versioning] Nothing to retract for {draft.scope}/{draft.version_key}"
                )
                return None
            record = dataclasses.replace(
                draft,
                is_active=False,
                multi_valued=multi,
                predecessor_id=targets[-1].id,
                created_at=now,
                updated_at=now,
            )
            await repository.transition_cards(
                draft.scope, draft.entity, draft.slot,
                expected_active=expected,
                deactivate=[c.id for c in targets],
                new_card=record,
            )
            logger.info(
                f"[Versioning] Retracted {draft.scope}/{draft.version_key} "
                f"({len(targets)} card(s))"
            )
            return record

        same_value = [c for c in active if c.value == draft.value]
        for card in same_value:
            if card.polarity == draft.polarity:
                logger.debug(
                    f"[Versioning] {draft.scope}/{draft.version_key}={draft.value} already active"
                )
                return card

        if multi and relation == VersionRelation.EXTENDS:
            # 同值异极性视为更新, 其余值保留
            deactivate = [c.id for c in same_value]
            if same_value:
                predecessor = same_value[-1].id
            else:
                predecessor = active[-1].id if active else None
        else:
            deactivate = expected
            predecessor = active[-1].id if active else None

        card = dataclasses.replace(
            draft,
            is_active=True,
            multi_valued=multi,
            predecessor_id=predecessor,
            created_at=now,
            updated_at=now,
        )
        await repository.transition_cards(
            draft.scope, draft.entity, draft.slot,
            expected_active=expected,
            deactivate=deactivate,
            new_card=card,
        )
        if predecessor:
            logger.info(
                f"[Versioning] {relation.value} {draft.scope}/{draft.version_key}: "
                f"{predecessor} -> {card.id}"
            )
        else:
            logger.info(f"[Versioning] Set {draft.scope}/{draft.version_key} -> {card.id}")
        return card

    async def _read_active(
        self,
        scope: str,
        entity: str,
        slot: str,
        multi: bool,
        repository: MemoryRepository,
    ) -> list[Card]:
        active = await repository.get_active_cards(scope, entity, slot)
        if not multi and len(active) > 1:
            ids = [c.id for c in active]
            logger.error(
                f"[Versioning] Invariant violated: {len(ids)} active cards for "
                f"{scope}/{entity}:{slot}: {ids}"
            )
            raise DataIntegrityError(scope=scope, version_key=f"{entity}:{slot}", active_ids=ids)
        return active

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def require_active(
        self, scope: str, entity: str, slot: str, repository: MemoryRepository
    ) -> Card:
        """单值槽位返回有效卡片; 多值槽位返回最近写入的有效卡片; 槽位为空抛 NotFoundError"""
        multi = self.schema.is_multi_valued(entity, slot)
        active = await self._read_active(scope, entity, slot, multi, repository)
        if not active:
            raise NotFoundError(key=f"{entity}:{slot}")
        return active[-1]

    async def get_active(
        self, scope: str, entity: str, slot: str, repository: MemoryRepository
    ) -> Card | None:
        try:
            return await self.require_active(scope, entity, slot, repository)
        except NotFoundError:
            return None

    async def get_active_values(
        self, scope: str, entity: str, slot: str, repository: MemoryRepository
    ) -> list[Card]:
        multi = self.schema.is_multi_valued(entity, slot)
        return await self._read_active(scope, entity, slot, multi, repository)

    async def history(
        self, scope: str, entity: str, slot: str, repository: MemoryRepository
    ) -> list[Card]:
        """完整版本链 (含失效版本与撤回记录), 按写入顺序"""
        return await repository.list_card_chain(scope, entity, slot)

    async def value_at(
        self,
        scope: str,
        entity: str,
        slot: str,
        at: datetime,
        repository: MemoryRepository,
    ) -> Card | None:
        """
        时间点查询: 返回 at 时刻有效的卡片。

        卡片在 [created_at, 失效时间) 内有效, 失效时间取失效时写入的 updated_at;
        撤回记录写入即失效, 因此撤回之后的时间点返回 None。
        """
        chain = await repository.list_card_chain(scope, entity, slot)
        current: Card | None = None
        for card in chain:
            if card.created_at > at:
                break
            if card.is_active or card.updated_at > at:
                current = card
        return current
