"""
日志配置
"""

from __future__ import annotations

import logging
import sys

from .config import Settings


def setup_logging(config: Settings | None = None) -> None:
    """按配置的日志级别初始化根 logger, 应用启动时调用一次。"""
    if config is None:
        from .config import settings as default_settings
        config = default_settings

    level = getattr(logging, config.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    # jieba 初始化日志过于冗长
    logging.getLogger("jieba").setLevel(logging.WARNING)
