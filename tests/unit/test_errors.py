"""L1 Unit Tests: error taxonomy."""

from memcore.core.errors import (
    ConfigurationError,
    ConflictError,
    DataIntegrityError,
    MemcoreError,
    NotFoundError,
    ProviderError,
    SchemaError,
)


class TestErrors:
    def test_hierarchy(self):
        for cls in (ConfigurationError, ConflictError, DataIntegrityError,
                    NotFoundError, ProviderError, SchemaError):
            assert issubclass(cls, MemcoreError)

    def test_provider_error_message(self):
        err = ProviderError("timeout", provider="OpenAIEmbedder")
        assert err.provider == "OpenAIEmbedder"
        assert "OpenAIEmbedder" in str(err)

    def test_data_integrity_error_fields(self):
        err = DataIntegrityError(scope="u1", version_key="user:location", active_ids=["a", "b"])
        assert err.active_ids == ["a", "b"]
        assert "user:location" in str(err)

    def test_conflict_key(self):
        assert ConflictError("lost race", key="user:location").key == "user:location"

    def test_not_found_key(self):
        err = NotFoundError(key="user:location")
        assert err.key == "user:location"
        assert "user:location" in str(err)
