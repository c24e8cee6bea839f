"""Infrastructure layer exports."""

from .cache import CacheEntry, CacheStats, SingleFlightCache
from .fetcher import FetchedFile, WorkbookFetcher
from .llm import (
    LanguageModel,
    OpenAIChatModel,
    UnconfiguredLanguageModel,
    configure_language_model,
    get_language_model,
)
from .store import EphemeralStoreManager, QueryRows, StoreClosedError, StoreHandle, quote_identifier

__all__ = [
    "CacheEntry",
    "CacheStats",
    "EphemeralStoreManager",
    "FetchedFile",
    "LanguageModel",
    "OpenAIChatModel",
    "QueryRows",
    "SingleFlightCache",
    "StoreClosedError",
    "StoreHandle",
    "UnconfiguredLanguageModel",
    "WorkbookFetcher",
    "configure_language_model",
    "get_language_model",
    "quote_identifier",
]
