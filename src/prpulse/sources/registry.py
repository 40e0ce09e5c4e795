from __future__ import annotations

from typing import Callable

from prpulse.config import AppConfig

from .base import PullRequestSource

SourceFactory = Callable[[AppConfig, str | None], PullRequestSource]

_REGISTRY: dict[str, SourceFactory] = {}


class SourceRegistrationError(ValueError):
    """Raised when an unknown source type is used."""


def register_source(source_type: str) -> Callable[[SourceFactory], SourceFactory]:
    def decorator(factory: SourceFactory) -> SourceFactory:
        _REGISTRY[source_type] = factory
        return factory

    return decorator


def create_source(app_config: AppConfig, token: str | None) -> PullRequestSource:
    source_type = app_config.source.type
    factory = _REGISTRY.get(source_type)
    if factory is None:
        available = ", ".join(sorted(_REGISTRY)) or "none"
        raise SourceRegistrationError(
            f"Unknown source type '{source_type}'. Registered source types: {available}"
        )
    return factory(app_config, token)


def registered_source_types() -> list[str]:
    return sorted(_REGISTRY)
