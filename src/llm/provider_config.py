"""Queries and validation for the LlmProviderConfig table."""
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from config.settings import settings
from src.persistence.models import LlmProviderConfig


def validate(config: LlmProviderConfig) -> None:
    """
    Validate a provider config before saving.

    Raises:
        ValueError: On the first invalid field
    """
    if not config.name:
        raise ValueError("name is required")
    if config.provider_type not in LlmProviderConfig.PROVIDER_TYPES:
        raise ValueError(
            f"provider_type must be one of {LlmProviderConfig.PROVIDER_TYPES}, got {config.provider_type!r}"
        )
    if not config.llm_model:
        raise ValueError("llm_model is required")
    if config.max_tokens is not None and not 0 < config.max_tokens <= LlmProviderConfig.MAX_TOKENS_LIMIT:
        raise ValueError(f"max_tokens must be in (0, {LlmProviderConfig.MAX_TOKENS_LIMIT}]")
    if config.temperature is not None and not 0 <= config.temperature <= 2:
        raise ValueError("temperature must be between 0 and 2")
    if config.priority is not None and not isinstance(config.priority, int):
        raise ValueError("priority must be an integer")


def api_key_for(provider_type: str) -> Optional[str]:
    """API key from settings; Ollama runs locally and needs none."""
    if provider_type == "openai":
        return settings.openai_api_key
    if provider_type == "anthropic":
        return settings.anthropic_api_key
    if provider_type == "gemini":
        return settings.gemini_api_key
    if provider_type == "ollama":
        return "local"
    return None


def is_ready(config: LlmProviderConfig) -> bool:
    return bool(config.enabled and api_key_for(config.provider_type))


def active_providers(session: Session) -> list[LlmProviderConfig]:
    """Enabled providers, lowest priority number first."""
    stmt = (
        select(LlmProviderConfig)
        .where(LlmProviderConfig.enabled.is_(True))
        .order_by(LlmProviderConfig.priority.asc(), LlmProviderConfig.created_at.asc())
    )
    return list(session.execute(stmt).scalars().all())


def default_provider(session: Session) -> Optional[LlmProviderConfig]:
    providers = active_providers(session)
    return providers[0] if providers else None


def fallback_providers(session: Session) -> list[LlmProviderConfig]:
    return active_providers(session)[1:]


def config_for(session: Session, provider_type: str) -> Optional[LlmProviderConfig]:
    """First enabled config row for a provider type."""
    stmt = (
        select(LlmProviderConfig)
        .where(
            LlmProviderConfig.provider_type == provider_type,
            LlmProviderConfig.enabled.is_(True),
        )
        .order_by(LlmProviderConfig.priority.asc())
        .limit(1)
    )
    return session.execute(stmt).scalar_one_or_none()


def provider_chain(session: Session) -> list[str]:
    """Provider types to try in order.

    Uses the enabled rows of the config table; with an empty table, falls
    back to every provider that has an API key in settings.
    """
    chain: list[str] = []
    for config in active_providers(session):
        if config.provider_type not in chain:
            chain.append(config.provider_type)
    if chain:
        return chain
    return [p for p in ("anthropic", "openai", "gemini") if api_key_for(p)]
