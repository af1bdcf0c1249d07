"""LLM provider table, adapters, call logging and fallback runner."""
from .exceptions import LlmError, ProviderNotConfiguredError, ProviderResponseError, RateLimitedError
from .providers import get_provider
from .response_parser import parse_json_response
from .runner import ProviderRunner

__all__ = [
    "LlmError",
    "ProviderNotConfiguredError",
    "ProviderResponseError",
    "RateLimitedError",
    "ProviderRunner",
    "get_provider",
    "parse_json_response",
]
