"""
卡片提取引擎 (规则)

按有序规则列表匹配文本, 每条命中的规则产出一张草稿卡片 (is_active 未设置):
- 模板: entity / slot / value 支持 $1..$9 捕获组替换
- 置信度: base + 匹配覆盖率 * 0.3 + 模板确定性加成 (entity / slot 不含捕获组各 +0.1)
- 同一文本中多条规则命中同一 version_key 时, 保留 priority 高者 (同级取先出现的规则)

纯函数, 无 I/O; 规则非法在构造时抛出 ConfigurationError。
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from ..config import Settings
from ..core.errors import ConfigurationError, SchemaError
from .schema import SchemaRegistry
from .types import Card, CardKind, EngineKind, MemoryFact, Polarity, VersionRelation

logger = logging.getLogger(__name__)

# 值捕获不跨越子句
_ZH = r"[^，。！？；、,.!?;\n]"
_EN = r"[^,.!?;\n]"

_TRAILING_PUNCT = "，。！？；、,.!?;:：…~～ \t\r\n\"'“”‘’）)"

_TEMPLATE_GROUP = re.compile(r"\$([1-9])")


class PatternDef(BaseModel):
    """提取规则定义 (可从 JSON 配置加载)"""

    id: str
    name: str = ""
    pattern: str
    kind: str = "fact"
    entity: str = "user"
    slot: str
    value: str = "$1"
    polarity: str | None = None
    relation: str = "sets"
    priority: int = 0
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


@dataclass(frozen=True)
class CompiledPattern:
    """构建后的规则"""

    id: str
    name: str
    regex: re.Pattern
    kind: CardKind
    entity: str
    slot: str
    value: str
    polarity: Polarity | None
    relation: VersionRelation
    priority: int
    base_confidence: float
    order: int

    @classmethod
    def build(cls, definition: PatternDef, order: int) -> CompiledPattern:
        try:
            regex = re.compile(definition.pattern)
        except re.error as e:
            raise ConfigurationError(f"Pattern '{definition.id}': invalid regex: {e}") from e
        try:
            kind = CardKind(definition.kind.lower())
        except ValueError as e:
            raise ConfigurationError(
                f"Pattern '{definition.id}': invalid card kind: {definition.kind}"
            ) from e
        polarity = None
        if definition.polarity:
            try:
                polarity = Polarity(definition.polarity.lower())
            except ValueError as e:
                raise ConfigurationError(
                    f"Pattern '{definition.id}': invalid polarity: {definition.polarity}"
                ) from e
        try:
            relation = VersionRelation(definition.relation.lower())
        except ValueError as e:
            raise ConfigurationError(
                f"Pattern '{definition.id}': invalid relation: {definition.relation}"
            ) from e
        for template in (definition.entity, definition.slot, definition.value):
            for group in _TEMPLATE_GROUP.findall(template):
                if int(group) > regex.groups:
                    raise ConfigurationError(
                        f"Pattern '{definition.id}': template references ${group} "
                        f"but regex has {regex.groups} group(s)"
                    )
        return cls(
            id=definition.id,
            name=definition.name or definition.id,
            regex=regex,
            kind=kind,
            entity=definition.entity,
            slot=definition.slot,
            value=definition.value,
            polarity=polarity,
            relation=relation,
            priority=definition.priority,
            base_confidence=definition.confidence,
            order=order,
        )


class ExtractionConfig(BaseModel):
    """提取引擎配置"""

    patterns: list[PatternDef] = Field(default_factory=lambda: default_patterns())
    min_confidence: float = Field(default=0.3, ge=0.0, le=1.0)
    engine_version: str = "1.0.0"

    @classmethod
    def from_settings(cls, config: Settings) -> ExtractionConfig:
        patterns = default_patterns()
        path = config.patterns_path
        if path is not None:
            patterns = load_patterns_file(path)
        return cls(
            patterns=patterns,
            min_confidence=config.extraction_min_confidence,
            engine_version=config.extraction_engine_version,
        )


def load_patterns_file(path: str | Path) -> list[PatternDef]:
    """
    从 JSON 文件加载规则

    支持两种格式: 规则数组, 或 {"patterns": [...]}。
    """
    path = Path(path)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigurationError(f"Patterns file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Patterns file is not valid JSON: {path}: {e}") from e

    if isinstance(raw, dict):
        raw = raw.get("patterns", [])
    if not isinstance(raw, list):
        raise ConfigurationError(f"Patterns file must contain a list: {path}")

    try:
        patterns = [PatternDef.model_validate(item) for item in raw]
    except ValidationError as e:
        raise ConfigurationError(f"Invalid pattern definition in {path}: {e}") from e
    logger.info(f"[Extraction] Loaded {len(patterns)} patterns from {path}")
    return patterns


class ExtractionEngine:
    """规则卡片提取引擎"""

    engine_kind = EngineKind.RULES

    def __init__(
        self,
        config: ExtractionConfig | None = None,
        schema: SchemaRegistry | None = None,
    ) -> None:
        self.config = config or ExtractionConfig()
        self.schema = schema
        self.patterns: list[CompiledPattern] = []
        seen: set[str] = set()
        for i, definition in enumerate(self.config.patterns):
            if definition.id in seen:
                raise ConfigurationError(f"Duplicate pattern id: {definition.id}")
            seen.add(definition.id)
            self.patterns.append(CompiledPattern.build(definition, i))
        logger.debug(f"[Extraction] Compiled {len(self.patterns)} patterns")

    @property
    def engine_version(self) -> str:
        return self.config.engine_version

    @classmethod
    def from_settings(cls, config: Settings, schema: SchemaRegistry | None = None) -> ExtractionEngine:
        return cls(ExtractionConfig.from_settings(config), schema=schema)

    def extract(self, text: str, scope: str) -> list[Card]:
        """从文本提取草稿卡片"""
        if not text or not text.strip():
            return []

        winners: dict[str, tuple[CompiledPattern, Card]] = {}
        for pattern in self.patterns:
            card = self._apply_pattern(pattern, text, scope)
            if card is None:
                continue
            if card.confidence < self.config.min_confidence:
                continue
            if self.schema is not None:
                try:
                    self.schema.validate_card(card)
                except SchemaError as e:
                    logger.debug(f"[Extraction] Dropped card from {pattern.id}: {e}")
                    continue

            key = card.version_key
            current = winners.get(key)
            if current is None or pattern.priority > current[0].priority:
                winners[key] = (pattern, card)

        ordered = sorted(winners.values(), key=lambda pc: pc[0].order)
        return [card for _, card in ordered]

    def extract_from_fact(self, fact: MemoryFact) -> list[Card]:
        cards = self.extract(fact.text, fact.scope)
        for card in cards:
            card.source_memory_id = fact.id
        return cards

    # ------------------------------------------------------------------

    def _apply_pattern(self, pattern: CompiledPattern, text: str, scope: str) -> Card | None:
        m = pattern.regex.search(text)
        if m is None:
            return None

        entity = _expand_template(pattern.entity, m).strip()
        slot = _expand_template(pattern.slot, m).strip()
        value = _clean_value(_expand_template(pattern.value, m))
        if not entity or not slot or not value:
            return None

        return Card(
            scope=scope,
            kind=pattern.kind,
            entity=entity,
            slot=slot,
            value=value,
            polarity=pattern.polarity,
            version_relation=pattern.relation,
            engine=self.engine_kind,
            engine_version=self.config.engine_version,
            confidence=_calculate_confidence(pattern, m, text),
        )


def _expand_template(template: str, m: re.Match) -> str:
    return _TEMPLATE_GROUP.sub(lambda g: m.group(int(g.group(1))) or "", template)


def _clean_value(value: str) -> str:
    return value.strip().rstrip(_TRAILING_PUNCT).strip()


def _calculate_confidence(pattern: CompiledPattern, m: re.Match, text: str) -> float:
    confidence = pattern.base_confidence
    confidence += (len(m.group(0)) / len(text)) * 0.3
    if "$" not in pattern.entity:
        confidence += 0.1
    if "$" not in pattern.slot:
        confidence += 0.1
    return min(1.0, confidence)


# ---------------------------------------------------------------------------
# 内置规则
# ---------------------------------------------------------------------------


def default_patterns() -> list[PatternDef]:
    """常见中英文陈述的内置规则"""
    return [
        # 身份
        PatternDef(
            id="user_identity_statement",
            name="user_identity",
            pattern=(
                rf"(?i)我(?:是|算)(?:一个|一名|个)?({_ZH}{{0,20}}?)"
                r"(用户|玩机党|开发者|学生|工程师|设计师|产品经理)"
            ),
            kind="profile",
            slot="user_type",
            value="$1$2",
            priority=20,
        ),
        PatternDef(
            id="user_identity_simple",
            name="user_identity_simple",
            pattern=rf"(?i)我(?:是|属于)({_ZH}{{1,30}})",
            kind="profile",
            slot="identity",
            priority=10,
        ),
        PatternDef(
            id="user_name",
            name="user_name",
            pattern=rf"(?i)我(?:叫|的名字是)({_ZH}{{1,20}})",
            kind="profile",
            slot="name",
            priority=10,
        ),
        # 位置
        PatternDef(
            id="location_retracted",
            name="location_retract",
            pattern=rf"(?i)我(?:已经)?不再(?:住在|住|居住在|生活在)({_ZH}{{1,50}})",
            kind="fact",
            slot="location",
            relation="retracts",
            priority=30,
        ),
        PatternDef(
            id="location_moved_to",
            name="location_moved",
            pattern=rf"(?i)我(?:搬家|搬迁|迁移|搬)(?:到了|到|去了|去)({_ZH}{{1,50}})",
            kind="event",
            slot="location",
            relation="updates",
            priority=20,
        ),
        PatternDef(
            id="location_live_in",
            name="location_live",
            pattern=rf"(?i)我(?:现在)?(?:住在|居住在|生活在|住|居住)({_ZH}{{1,50}})",
            kind="fact",
            slot="location",
            priority=10,
        ),
        # 设备
        PatternDef(
            id="phone_model",
            name="phone_model",
            pattern=r"(?i)我(?:的)?(?:手机|电话|机子)(?:是|用的是|：|:)?\s*([a-zA-Z0-9\u4e00-\u9fff ]{1,30})",
            kind="fact",
            entity="user.phone",
            slot="model",
            priority=10,
        ),
        PatternDef(
            id="device_ownership",
            name="device_own",
            pattern=rf"(?i)我(?:的)?(电脑|平板|笔记本|手表|耳机)(?:是|用的是|：|:)\s*({_ZH}{{1,30}})",
            kind="fact",
            slot="device_$1",
            value="$2",
            priority=5,
        ),
        # 偏好
        PatternDef(
            id="preference_retracted",
            name="preference_retract",
            pattern=rf"(?i)我(?:已经)?不再(?:喜欢|爱|偏爱)({_ZH}{{1,50}})",
            kind="preference",
            slot="preference",
            relation="retracts",
            priority=30,
        ),
        PatternDef(
            id="preference_dislike",
            name="preference_dislike",
            pattern=rf"(?i)我(?:讨厌|不喜欢|厌恶|反感)({_ZH}{{1,50}})",
            kind="preference",
            slot="preference",
            polarity="negative",
            relation="extends",
            priority=15,
        ),
        PatternDef(
            id="preference_like",
            name="preference_like",
            pattern=rf"(?i)我(?:最)?(?:喜欢|爱|偏爱|偏好)({_ZH}{{1,50}})",
            kind="preference",
            slot="preference",
            polarity="positive",
            relation="extends",
            priority=10,
        ),
        # 工作 / 教育
        PatternDef(
            id="work_company",
            name="work_company",
            pattern=rf"(?i)我(?:就职于|任职于|工作于|在)({_ZH}{{1,50}}?)(?:工作|上班|任职)",
            kind="fact",
            slot="workplace",
            priority=10,
        ),
        PatternDef(
            id="education_school",
            name="education_school",
            pattern=rf"(?i)我(?:就读于|就读|毕业于|在读于)({_ZH}{{1,50}})",
            kind="profile",
            slot="education",
            priority=10,
        ),
        # 关系
        PatternDef(
            id="relationship_family",
            name="relationship_family",
            pattern=(
                r"(?i)我(?:的)?(爸爸|妈妈|父亲|母亲|老婆|老公|妻子|丈夫|儿子|女儿|"
                r"哥哥|姐姐|弟弟|妹妹|女朋友|男朋友|朋友)"
                rf"(?:是|叫)({_ZH}{{1,20}})"
            ),
            kind="relationship",
            slot="family_$1",
            value="$2",
            priority=10,
        ),
        # English
        PatternDef(
            id="en_identity",
            name="en_identity",
            pattern=rf"(?i)\bI am (?:an? )?({_EN}{{1,30}})",
            kind="profile",
            slot="identity",
            priority=5,
        ),
        PatternDef(
            id="en_moved",
            name="en_moved",
            pattern=rf"(?i)\bI (?:have )?moved to ({_EN}{{1,50}})",
            kind="event",
            slot="location",
            relation="updates",
            priority=20,
        ),
        PatternDef(
            id="en_location",
            name="en_location",
            pattern=rf"(?i)\bI live in ({_EN}{{1,50}})",
            kind="fact",
            slot="location",
            priority=10,
        ),
        PatternDef(
            id="en_work",
            name="en_work",
            pattern=rf"(?i)\bI work (?:at|for) ({_EN}{{1,50}})",
            kind="fact",
            slot="workplace",
            priority=10,
        ),
        PatternDef(
            id="en_preference_like",
            name="en_preference_like",
            pattern=rf"(?i)\bI (?:really )?(?:like|love|prefer) ({_EN}{{1,50}})",
            kind="preference",
            slot="preference",
            polarity="positive",
            relation="extends",
            priority=10,
        ),
    ]
