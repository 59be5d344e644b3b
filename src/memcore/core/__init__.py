"""核心: 异常定义"""

from .errors import (
    ConfigurationError,
    ConflictError,
    DataIntegrityError,
    MemcoreError,
    NotFoundError,
    ProviderError,
    SchemaError,
)

__all__ = [
    "MemcoreError",
    "ConfigurationError",
    "NotFoundError",
    "ConflictError",
    "ProviderError",
    "DataIntegrityError",
    "SchemaError",
]
