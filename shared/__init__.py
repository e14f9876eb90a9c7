"""
Shared module for common utilities used by the Topic Gateway.

STRUCTURE:
- shared.config: Configuration
  - settings.py: Environment config (pydantic-settings)
  - logging.py: Structured logging and audit helpers

- shared.infrastructure: Redis and request tracing
  - redis_pool.py: Async Redis connection pool
  - correlation.py: Correlation IDs for HTTP requests and WebSocket connections

IMPORT EXAMPLES:
    from shared.config.settings import settings
    from shared.config.logging import get_logger
    from shared.infrastructure.redis_pool import get_redis_pool
"""
