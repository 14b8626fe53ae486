"""
Source adapters and the adapter factory.

Adapters are selected by the `parser` name in a source's connection. Each
parser is registered for one connection kind; a source whose parser is
unknown, or registered for a different kind, is a configuration error.
"""

from __future__ import annotations

from typing import Any, Callable

from adapters.apify import ApifyStreetEasyAdapter
from adapters.base import (
    Page,
    PagedSourceAdapter,
    RunBasedSourceAdapter,
    RunStatus,
    SourceAdapter,
)
from adapters.broker_api import BrokerApiAdapter
from adapters.craigslist import CraigslistAdapter
from adapters.mock import MockSourceAdapter
from ingestion.errors import ConfigurationError
from ingestion.sources import SourceConfig, SourceKind


AdapterFactory = Callable[..., SourceAdapter]

_ADAPTER_FACTORIES: dict[str, tuple[SourceKind, AdapterFactory]] = {
    "craigslist": (SourceKind.DIRECT_HTML, CraigslistAdapter),
    "apify-streeteasy": (SourceKind.RUN_BASED_SERVICE, ApifyStreetEasyAdapter),
    "broker-api": (SourceKind.API, BrokerApiAdapter),
    "mock": (SourceKind.API, MockSourceAdapter),
}


def register_adapter(parser: str, kind: SourceKind, factory: AdapterFactory) -> None:
    """Register (or replace) the adapter for a parser name."""
    _ADAPTER_FACTORIES[parser] = (kind, factory)


def supported_parsers() -> list[str]:
    return sorted(_ADAPTER_FACTORIES)


def create_adapter(config: SourceConfig, **kwargs: Any) -> SourceAdapter:
    """
    Build the adapter for a source.

    Raises:
        ConfigurationError: Unknown parser, or parser/kind mismatch
    """
    entry = _ADAPTER_FACTORIES.get(config.parser)
    if entry is None:
        raise ConfigurationError(
            f"No adapter for parser {config.parser!r} (source {config.id}); "
            f"supported: {', '.join(supported_parsers())}"
        )

    kind, factory = entry
    if kind != config.kind:
        raise ConfigurationError(
            f"Parser {config.parser!r} expects a {kind.value} source, "
            f"but {config.id} is {config.kind.value}"
        )
    return factory(config, **kwargs)


__all__ = [
    "ApifyStreetEasyAdapter",
    "BrokerApiAdapter",
    "CraigslistAdapter",
    "MockSourceAdapter",
    "Page",
    "PagedSourceAdapter",
    "RunBasedSourceAdapter",
    "RunStatus",
    "SourceAdapter",
    "create_adapter",
    "register_adapter",
    "supported_parsers",
]
