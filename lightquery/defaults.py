"""
Process-wide wiring. Library code receives clients explicitly; only
application entry points should reach for the default instance.
"""

from functools import lru_cache

from lightquery.core.client import QueryClient
from lightquery.core.types import QueryClientConfig
from lightquery.shared.config import get_settings
from lightquery.shared.logging import configure_logging


@lru_cache(maxsize=1)
def get_default_client() -> QueryClient:
    """Get the process-wide client, built from LIGHTQUERY_* settings."""
    settings = get_settings()
    configure_logging(settings.log_level)
    return QueryClient(QueryClientConfig.from_settings(settings))
