"""Unit tests for Redis client singleton."""

from unittest.mock import MagicMock, patch

from shared.redis_client import get_redis_client


class TestRedisClient:
    """Tests for Redis client singleton."""

    def test_get_redis_client_returns_instance(self):
        """Test that get_redis_client returns a Redis instance."""
        with patch("shared.redis_client.redis.from_url") as mock_from_url:
            mock_client = MagicMock()
            mock_from_url.return_value = mock_client

            # Clear lru_cache before test
            get_redis_client.cache_clear()

            result = get_redis_client()

            assert result == mock_client
            mock_from_url.assert_called_once()

        get_redis_client.cache_clear()

    def test_get_redis_client_is_singleton(self):
        """Test that get_redis_client returns the same instance (cached)."""
        with patch("shared.redis_client.redis.from_url") as mock_from_url:
            mock_from_url.return_value = MagicMock()
            get_redis_client.cache_clear()

            result1 = get_redis_client()
            result2 = get_redis_client()

            assert result1 is result2
            assert mock_from_url.call_count == 1

        get_redis_client.cache_clear()

    def test_redis_client_configured_with_pool(self):
        """Test the client decodes responses, so rate-limit counters come back as str."""
        with patch("shared.redis_client.redis.from_url") as mock_from_url:
            get_redis_client.cache_clear()

            get_redis_client()

            url = mock_from_url.call_args.args[0]
            kwargs = mock_from_url.call_args.kwargs
            assert url == "redis://localhost:6379/0"
            assert kwargs["decode_responses"] is True
            assert kwargs["max_connections"] == 20

        get_redis_client.cache_clear()
