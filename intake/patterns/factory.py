"""Factory for creating pattern stores based on configuration."""

import logging

from intake.patterns.store import InMemoryPatternStore, PatternStore
from intake.shared.config import Settings

logger = logging.getLogger(__name__)


def create_pattern_store(settings: Settings) -> PatternStore:
    """Factory function to create a pattern store based on configuration.

    Args:
        settings: Application settings with pattern_store_backend field

    Returns:
        Configured pattern store

    Raises:
        ValueError: If configured backend is unknown
    """
    backend = settings.pattern_store_backend

    if backend == "memory":
        logger.info("Created pattern store: memory")
        return InMemoryPatternStore()

    elif backend == "redis":
        from intake.patterns.redis_store import RedisPatternStore

        store = RedisPatternStore(settings)
        if not store.is_available():
            logger.warning(f"Redis pattern store not reachable at {settings.redis_url}")
        logger.info("Created pattern store: redis")
        return store

    else:
        available = ["memory", "redis"]
        raise ValueError(
            f"Unknown pattern store backend: '{backend}'. Available: {', '.join(available)}"
        )
