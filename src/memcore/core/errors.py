"""
核心异常类
"""


class MemcoreError(Exception):
    """记忆引擎异常基类"""


class ConfigurationError(MemcoreError):
    """配置错误 (提取规则 / 问句模式非法), 仅在启动时抛出。"""


class NotFoundError(MemcoreError):
    """槽位没有有效卡片。

    由 CardVersioner.require_active 抛出; get_active 及 MemoryManager.get_card
    将其映射为 None, 对调用方来说不是错误。

    Attributes:
        key: 查找的 version_key
    """

    def __init__(self, message: str = "", key: str = ""):
        self.key = key
        super().__init__(message or f"No active card for {key}")


class ConflictError(MemcoreError):
    """存储层拒绝写入: 重复的 enrichment 键, 或卡片版本竞争失败。

    Attributes:
        key: 冲突的唯一键 (如 version_key 或 enrichment 四元组)
    """

    def __init__(self, message: str = "", key: str = ""):
        self.key = key
        super().__init__(message or f"Conflict on {key}")


class ProviderError(MemcoreError):
    """Embedding / LLM 提供方调用失败或超时。"""

    def __init__(self, message: str = "", provider: str = ""):
        self.provider = provider
        super().__init__(f"Provider error ({provider}): {message}" if provider else message)


class DataIntegrityError(MemcoreError):
    """不变量被破坏: 同一 version_key 出现多张有效卡片。

    永远不应发生, 发生时记录并向上抛出, 不做静默修复。
    """

    def __init__(self, scope: str = "", version_key: str = "", active_ids: list[str] | None = None):
        self.scope = scope
        self.version_key = version_key
        self.active_ids = active_ids or []
        super().__init__(
            f"{len(self.active_ids)} active cards for {scope}/{version_key}: {self.active_ids}"
        )


class SchemaError(MemcoreError):
    """卡片值与槽位 schema 不符, 或严格模式下槽位未注册。"""

    def __init__(self, message: str = "", slot: str = ""):
        self.slot = slot
        super().__init__(message or f"Schema violation on slot {slot}")
