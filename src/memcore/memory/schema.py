"""
槽位 Schema 注册表

每个槽位声明:
- cardinality: single (同一 version_key 至多一张有效卡片) / multiple (可并存多个值)
- value_type: 值类型校验 (string / number / datetime / boolean / enum / any)

配置项 multi_valued_slots 以 "entity:slot" 形式覆盖 cardinality。
"""

from __future__ import annotations

import logging
from enum import Enum

from pydantic import BaseModel, Field

from ..config import Settings
from ..core.errors import SchemaError
from .types import Card

logger = logging.getLogger(__name__)

_BOOLEAN_WORDS = {"true", "false", "yes", "no", "1", "0", "是", "否", "对", "错"}


class ValueType(Enum):
    STRING = "string"
    NUMBER = "number"
    DATETIME = "datetime"
    BOOLEAN = "boolean"
    ENUM = "enum"
    ANY = "any"


class Cardinality(Enum):
    SINGLE = "single"
    MULTIPLE = "multiple"


class SlotSchema(BaseModel):
    """单个槽位的 schema"""

    slot: str
    name: str = ""
    description: str = ""
    value_type: ValueType = ValueType.STRING
    enum_values: list[str] = Field(default_factory=list)
    cardinality: Cardinality = Cardinality.SINGLE
    builtin: bool = False

    def matches(self, value: str) -> bool:
        vt = self.value_type
        if vt in (ValueType.STRING, ValueType.ANY):
            return True
        if vt == ValueType.NUMBER:
            try:
                float(value)
            except ValueError:
                return False
            return True
        if vt == ValueType.DATETIME:
            if value.lstrip("-").isdigit():
                return True
            return any(ch in value for ch in ("T", "-", "年", "月", "日"))
        if vt == ValueType.BOOLEAN:
            return value.lower() in _BOOLEAN_WORDS
        if vt == ValueType.ENUM:
            return any(v.lower() == value.lower() for v in self.enum_values)
        return False

    def validate_value(self, value: str) -> None:
        if not self.matches(value):
            raise SchemaError(
                f"invalid value for '{self.slot}': expected {self.value_type.value}, got '{value}'",
                slot=self.slot,
            )


def _builtin_schemas() -> list[SlotSchema]:
    return [
        SlotSchema(slot="location", name="Location", builtin=True),
        SlotSchema(slot="user_type", name="User Type", builtin=True),
        SlotSchema(slot="workplace", name="Workplace", builtin=True),
        SlotSchema(slot="age", name="Age", value_type=ValueType.NUMBER, builtin=True),
        SlotSchema(slot="birthday", name="Birthday", value_type=ValueType.DATETIME, builtin=True),
        SlotSchema(
            slot="preference", name="Preference",
            cardinality=Cardinality.MULTIPLE, builtin=True,
        ),
        SlotSchema(slot="hobby", name="Hobby", cardinality=Cardinality.MULTIPLE, builtin=True),
        SlotSchema(slot="verified", name="Verified", value_type=ValueType.BOOLEAN, builtin=True),
    ]


class SchemaRegistry:
    """槽位 schema 注册表, 非严格模式下未注册的槽位视为单值字符串"""

    def __init__(
        self,
        schemas: list[SlotSchema] | None = None,
        *,
        multi_valued_keys: list[str] | None = None,
        strict: bool = False,
    ) -> None:
        self._schemas: dict[str, SlotSchema] = {}
        for schema in _builtin_schemas() if schemas is None else schemas:
            self.register(schema)
        self._multi_valued_keys: set[str] = set(multi_valued_keys or [])
        self.strict = strict

    @classmethod
    def from_settings(cls, config: Settings) -> SchemaRegistry:
        return cls(multi_valued_keys=list(config.multi_valued_slots))

    def register(self, schema: SlotSchema) -> None:
        self._schemas[schema.slot] = schema

    def get(self, slot: str) -> SlotSchema | None:
        return self._schemas.get(slot)

    def __contains__(self, slot: str) -> bool:
        return slot in self._schemas

    def is_multi_valued(self, entity: str, slot: str) -> bool:
        if f"{entity}:{slot}" in self._multi_valued_keys:
            return True
        schema = self._schemas.get(slot)
        return schema is not None and schema.cardinality == Cardinality.MULTIPLE

    def validate_card(self, card: Card) -> None:
        """值类型不符或严格模式下槽位未知时抛出 SchemaError"""
        schema = self._schemas.get(card.slot)
        if schema is not None:
            schema.validate_value(card.value)
        elif self.strict:
            raise SchemaError(f"unknown slot: '{card.slot}'", slot=card.slot)
