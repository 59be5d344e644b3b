"""
jieba 中文分词

写入索引用 cut_for_search (细粒度, 含子词), 查询用 cut (精确模式)。
"""

from __future__ import annotations

import logging
import re
import threading

import jieba

logger = logging.getLogger(__name__)

_init_lock = threading.Lock()
_initialized = False

# 纯标点 / 空白 token
_PUNCT_RE = re.compile(r"^[\s\W_]+$", re.UNICODE)


def _ensure_initialized() -> None:
    global _initialized
    if _initialized:
        return
    with _init_lock:
        if not _initialized:
            jieba.setLogLevel(logging.WARNING)
            jieba.initialize()
            _initialized = True


def is_content_token(token: str) -> bool:
    return bool(token.strip()) and not _PUNCT_RE.match(token)


def cut(text: str) -> list[str]:
    """精确模式分词, 去掉空白与标点"""
    if not text:
        return []
    _ensure_initialized()
    return [t.strip() for t in jieba.cut(text) if is_content_token(t)]


def cut_for_search(text: str) -> list[str]:
    """搜索引擎模式分词"""
    if not text:
        return []
    _ensure_initialized()
    return [t.strip() for t in jieba.cut_for_search(text) if is_content_token(t)]


def segment_for_index(text: str) -> str:
    """空格分隔的分词文本, 写入 FTS5"""
    return " ".join(cut_for_search(text))
