"""Unit tests for pattern stores and store selection.

Tests cover:
- One pattern per (supplier, field), overwrite on relearn
- Ordering of listings
- Redis store encoding, retries and availability (mocked client)
- Factory selection by configuration
"""

from unittest.mock import MagicMock, patch

import pytest
import redis

from intake.extraction.schema import FieldName
from intake.patterns.factory import create_pattern_store
from intake.patterns.redis_store import RedisPatternStore
from intake.patterns.store import InMemoryPatternStore, SupplierPattern
from intake.shared.config import Settings


@pytest.fixture
def settings() -> Settings:
    """Create settings with a test key prefix."""
    return Settings(_env_file=None, redis_key_prefix="test:patterns")


@pytest.fixture
def mock_redis_client() -> MagicMock:
    """Create mock Redis client backed by a dict of hashes."""
    hashes: dict[str, dict[str, str]] = {}
    mock = MagicMock()
    mock.hset.side_effect = lambda key, field, value: hashes.setdefault(key, {}).__setitem__(
        field, value
    )
    mock.hget.side_effect = lambda key, field: hashes.get(key, {}).get(field)
    mock.hgetall.side_effect = lambda key: dict(hashes.get(key, {}))
    mock.ping.return_value = True
    return mock


class TestInMemoryPatternStore:
    """Test the process-local store."""

    def test_upsert_and_get(self) -> None:
        """Stored pattern is returned for its key."""
        store = InMemoryPatternStore()

        stored = store.upsert("S1", FieldName.INVOICE_NUMBER, r"Nr\.\s*")

        assert store.get("S1", FieldName.INVOICE_NUMBER) == stored
        assert stored.supplier_id == "S1"
        assert stored.pattern == r"Nr\.\s*"

    def test_upsert_overwrites(self) -> None:
        """A second upsert for the same key replaces the pattern."""
        store = InMemoryPatternStore()
        store.upsert("S1", FieldName.INVOICE_NUMBER, "old")
        store.upsert("S1", FieldName.INVOICE_NUMBER, "new")

        patterns = store.get_all("S1")

        assert [p.pattern for p in patterns] == ["new"]

    def test_get_missing(self) -> None:
        """Unknown keys return None."""
        assert InMemoryPatternStore().get("S1", FieldName.IBAN) is None

    def test_get_all_ordered_and_scoped(self) -> None:
        """Listing is per supplier and ordered by field name."""
        store = InMemoryPatternStore()
        store.upsert("S1", FieldName.TAX_RATE, "a")
        store.upsert("S1", FieldName.AMOUNT_GROSS, "b")
        store.upsert("S1", FieldName.IBAN, "c")
        store.upsert("S2", FieldName.AMOUNT_NET, "d")

        fields = [p.field_name for p in store.get_all("S1")]

        assert fields == [FieldName.AMOUNT_GROSS, FieldName.IBAN, FieldName.TAX_RATE]

    def test_accepts_field_name_strings(self) -> None:
        """Field names given as their string values are accepted."""
        store = InMemoryPatternStore()
        store.upsert("S1", "InvoiceDate", "x")  # type: ignore[arg-type]

        assert store.get("S1", FieldName.INVOICE_DATE) is not None


class TestRedisPatternStore:
    """Test the Redis-backed store with a mocked client."""

    def test_upsert_writes_hash_field(
        self, settings: Settings, mock_redis_client: MagicMock
    ) -> None:
        """Patterns are stored as JSON in the supplier's hash."""
        store = RedisPatternStore(settings, client=mock_redis_client)

        store.upsert("S1", FieldName.AMOUNT_GROSS, r"Summe:\s*")

        key, field, value = mock_redis_client.hset.call_args.args
        assert key == "test:patterns:S1"
        assert field == "AmountGross"
        assert SupplierPattern.model_validate_json(value).pattern == r"Summe:\s*"

    def test_round_trip_and_overwrite(
        self, settings: Settings, mock_redis_client: MagicMock
    ) -> None:
        """Get returns the latest upsert for the key."""
        store = RedisPatternStore(settings, client=mock_redis_client)
        store.upsert("S1", FieldName.INVOICE_NUMBER, "first")
        store.upsert("S1", FieldName.INVOICE_NUMBER, "second")

        stored = store.get("S1", FieldName.INVOICE_NUMBER)

        assert stored is not None
        assert stored.pattern == "second"
        assert len(store.get_all("S1")) == 1

    def test_get_all_skips_unreadable_entries(
        self, settings: Settings, mock_redis_client: MagicMock
    ) -> None:
        """Corrupt hash entries are dropped, valid ones kept in field order."""
        store = RedisPatternStore(settings, client=mock_redis_client)
        store.upsert("S1", FieldName.TAX_RATE, "t")
        store.upsert("S1", FieldName.AMOUNT_NET, "n")
        mock_redis_client.hset("test:patterns:S1", "Iban", "{not json")

        fields = [p.field_name for p in store.get_all("S1")]

        assert fields == [FieldName.AMOUNT_NET, FieldName.TAX_RATE]

    def test_get_missing(self, settings: Settings, mock_redis_client: MagicMock) -> None:
        """Missing hash fields return None."""
        store = RedisPatternStore(settings, client=mock_redis_client)

        assert store.get("S1", FieldName.IBAN) is None

    @patch("tenacity.nap.time.sleep")
    def test_retries_connection_errors(
        self, mock_sleep: MagicMock, settings: Settings, mock_redis_client: MagicMock
    ) -> None:
        """Transient connection errors are retried."""
        mock_redis_client.hgetall.side_effect = [redis.ConnectionError("reset"), {}]
        store = RedisPatternStore(settings, client=mock_redis_client)

        assert store.get_all("S1") == []
        assert mock_redis_client.hgetall.call_count == 2

    @patch("tenacity.nap.time.sleep")
    def test_reraises_after_last_attempt(
        self, mock_sleep: MagicMock, settings: Settings, mock_redis_client: MagicMock
    ) -> None:
        """Persistent connection errors surface after three attempts."""
        mock_redis_client.hget.side_effect = redis.ConnectionError("down")
        store = RedisPatternStore(settings, client=mock_redis_client)

        with pytest.raises(redis.ConnectionError):
            store.get("S1", FieldName.IBAN)
        assert mock_redis_client.hget.call_count == 3

    def test_is_available(self, settings: Settings, mock_redis_client: MagicMock) -> None:
        """Availability follows PING."""
        store = RedisPatternStore(settings, client=mock_redis_client)
        assert store.is_available() is True

        mock_redis_client.ping.side_effect = redis.ConnectionError("down")
        assert store.is_available() is False


class TestCreatePatternStore:
    """Test store selection."""

    def test_memory_backend(self, settings: Settings) -> None:
        """Default backend is the in-memory store."""
        assert isinstance(create_pattern_store(settings), InMemoryPatternStore)

    def test_redis_backend(self) -> None:
        """Redis backend builds a Redis store even if the server is down."""
        settings = Settings(_env_file=None, pattern_store_backend="redis")

        with patch("intake.patterns.redis_store.redis.Redis.from_url") as mock_from_url:
            mock_from_url.return_value.ping.side_effect = redis.ConnectionError("down")
            store = create_pattern_store(settings)

        assert isinstance(store, RedisPatternStore)
        mock_from_url.assert_called_once_with(settings.redis_url, decode_responses=True)

    def test_unknown_backend(self, settings: Settings) -> None:
        """Unknown backends raise ValueError listing the available ones."""
        settings.pattern_store_backend = "sqlite"  # type: ignore[assignment]

        with pytest.raises(ValueError, match="Unknown pattern store backend"):
            create_pattern_store(settings)
