"""
查询扩展

jieba 分词 -> 去掉空白 / 标点 -> 去停用词 (疑问词、系词、代词) -> 以 " OR " 连接,
作为词法召回的安全网。全部被过滤时回退到未过滤的分词结果, 不返回空查询。
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from .tokenizer import cut

logger = logging.getLogger(__name__)

OR_SEPARATOR = " OR "

DEFAULT_STOPWORDS: tuple[str, ...] = (
    # 中文疑问词 / 语气词 / 系词 / 代词
    "什么", "怎么", "怎么样", "如何", "哪里", "哪儿", "哪个", "多少", "谁",
    "什么时候", "为什么", "咋", "吗", "呢", "吧", "啊", "的", "了", "是",
    "有", "在", "我", "你", "他", "她", "它", "我们", "你们", "什", "么", "怎", "如",
    # English
    "what", "how", "where", "which", "who", "when", "why", "whose",
    "a", "an", "the", "is", "are", "was", "were", "do", "does", "did", "am",
    "i", "my", "me", "you", "your",
)

# 复数 / 集合形式互换
_PLURAL_SUFFIX = "们"
_PLURALIZABLE = ("用户", "设备", "手机")


class QueryExpanderConfig(BaseModel):
    stopwords: list[str] = Field(default_factory=lambda: list(DEFAULT_STOPWORDS))
    enabled: bool = True


class QueryExpander:
    """停用词过滤 + OR 连接的查询扩展器"""

    def __init__(self, config: QueryExpanderConfig | None = None) -> None:
        self.config = config or QueryExpanderConfig()
        self._stopwords = {w.lower() for w in self.config.stopwords}

    def is_stopword(self, token: str) -> bool:
        return token.lower() in self._stopwords

    def tokens(self, query: str) -> list[str]:
        """分词结果 (已去空白与标点, 未去停用词)"""
        return cut(query)

    def remove_stopwords(self, query: str) -> list[str]:
        return [t for t in self.tokens(query) if not self.is_stopword(t)]

    def expand(self, query: str) -> str:
        """
        扩展为词法 OR 查询。

        空白输入返回空字符串; 其余输入总是返回非空查询。
        """
        if not query or not query.strip():
            return ""

        tokens = self.tokens(query)
        if not tokens:
            # 纯标点
            return query.strip()
        if not self.config.enabled:
            return OR_SEPARATOR.join(_unique(tokens))

        kept = [t for t in tokens if not self.is_stopword(t)]
        if not kept:
            logger.debug(f"[QueryExpander] All tokens are stopwords, using raw tokens: {query!r}")
            kept = tokens
        return OR_SEPARATOR.join(_unique(kept))

    def variants(self, query: str) -> list[str]:
        """内容词及其单复数变体, 排序去重"""
        result: set[str] = set()
        for token in self.remove_stopwords(query):
            result.add(token)
            if token.endswith(_PLURAL_SUFFIX) and len(token) > 1:
                result.add(token[: -len(_PLURAL_SUFFIX)])
            elif token in _PLURALIZABLE:
                result.add(token + _PLURAL_SUFFIX)
        return sorted(result)


def _unique(tokens: list[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for t in tokens:
        key = t.lower()
        if key not in seen:
            seen.add(key)
            out.append(t)
    return out
