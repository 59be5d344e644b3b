"""
memcore 配置模块
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """应用配置"""

    # 路径配置
    project_root: Path = Field(
        default_factory=lambda: Path.cwd(),
        description="项目根目录 (默认为当前工作目录)"
    )
    database_path: str = Field(default="data/memcore.db", description="数据库路径")

    # 日志
    log_level: str = Field(default="INFO", description="日志级别")

    # === 提取引擎 ===
    extraction_engine_version: str = Field(default="1.0.0", description="规则提取引擎版本, 变更后触发全量重处理")
    extraction_min_confidence: float = Field(default=0.3, description="卡片最低置信度")
    extraction_patterns_file: str = Field(default="", description="自定义提取规则 JSON 文件 (为空使用内置规则)")
    extract_on_store: bool = Field(default=True, description="写入记忆时是否同步提取卡片")

    # === 卡片版本 ===
    multi_valued_slots: list[str] = Field(
        default_factory=lambda: ["user:preference", "user:hobby"],
        description="允许多个同时有效值的槽位 (entity:slot)",
    )

    # === 去重与评分 ===
    dedup_similarity_threshold: float = Field(default=0.92, description="近似重复的余弦相似度阈值")
    recency_decay_per_day: float = Field(default=0.1, description="新近度按天指数衰减系数")
    weight_relevance: float = Field(default=0.45, description="相关度权重")
    weight_recency: float = Field(default=0.25, description="新近度权重")
    weight_reinforcement: float = Field(default=0.15, description="强化次数权重")
    weight_confidence: float = Field(default=0.15, description="置信度权重")

    # === 检索 ===
    vector_candidate_limit: int = Field(default=20, description="向量召回候选数")
    lexical_candidate_limit: int = Field(default=20, description="词法召回候选数")
    rerank_enabled: bool = Field(default=True, description="是否按问句意图加成排序")
    rerank_keyword_weight: float = Field(default=0.2, description="意图关键词加成权重")
    rerank_recency_weight: float = Field(default=0.15, description="新近问句的时间加成权重")
    rerank_profile_weight: float = Field(default=0.25, description="身份类问句的画像加成权重")

    model_config = {
        "env_prefix": "MEMCORE_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def db_full_path(self) -> Path:
        """数据库完整路径"""
        return self.project_root / self.database_path

    @property
    def patterns_path(self) -> Path | None:
        """自定义规则文件路径"""
        if not self.extraction_patterns_file:
            return None
        return self.project_root / self.extraction_patterns_file


# 全局配置实例
settings = Settings()
