"""LLM provider adapters.

Providers only send a prompt and normalize the response. Prompt building
and response parsing live with the callers.
"""
import logging
import time
from typing import Optional

import anthropic
import ollama
import openai
from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types
from sqlalchemy.orm import Session

from config.settings import settings
from src.llm import provider_config
from src.llm.exceptions import ProviderNotConfiguredError
from src.persistence.models import LlmProviderConfig

logger = logging.getLogger(__name__)


class BaseProvider:
    """Common response shaping for all providers.

    ``run`` returns ``{content, model, input_tokens, output_tokens,
    latency_ms}`` on success and ``{content: None, error, error_type,
    rate_limit, latency_ms}`` on failure; it never raises for API errors.
    """

    name = "base"
    default_model = "unknown"

    def __init__(self, config: Optional[LlmProviderConfig] = None):
        self.config = config

    @property
    def api_key(self) -> Optional[str]:
        return provider_config.api_key_for(self.name)

    @property
    def model_name(self) -> str:
        if self.config and self.config.llm_model:
            return self.config.llm_model
        return self.default_model

    def available(self) -> bool:
        if self.config is not None and not self.config.enabled:
            return False
        return bool(self.api_key)

    def max_tokens(self, requested: Optional[int]) -> int:
        return requested or (self.config.max_tokens if self.config else None) or 4096

    def temperature(self, requested: Optional[float]) -> float:
        if requested is not None:
            return requested
        if self.config and self.config.temperature is not None:
            return self.config.temperature
        return 0.0

    def run(
        self,
        prompt: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        system_message: Optional[str] = None,
    ) -> dict:
        started = time.monotonic()
        try:
            result = self._call(
                prompt,
                self.max_tokens(max_tokens),
                self.temperature(temperature),
                system_message,
            )
        except Exception as e:
            latency_ms = int((time.monotonic() - started) * 1000)
            rate_limited = self.is_rate_limit(e)
            if rate_limited:
                logger.warning("%s rate limited: %s", self.name, e)
            else:
                logger.error("%s request failed: %s", self.name, e)
            return self.error_response(str(e), latency_ms, type(e).__name__, rate_limit=rate_limited)

        result["latency_ms"] = int((time.monotonic() - started) * 1000)
        result.setdefault("model", self.model_name)
        result["provider"] = self.name
        return result

    def _call(
        self,
        prompt: str,
        max_tokens: int,
        temperature: float,
        system_message: Optional[str],
    ) -> dict:
        raise NotImplementedError(f"{type(self).__name__} must implement _call")

    def is_rate_limit(self, error: Exception) -> bool:
        return False

    def error_response(
        self, error: str, latency_ms: int, error_type: Optional[str] = None, rate_limit: bool = False
    ) -> dict:
        response = {
            "content": None,
            "error": error,
            "error_type": error_type,
            "provider": self.name,
            "model": self.model_name,
            "latency_ms": latency_ms,
        }
        if rate_limit:
            response["rate_limit"] = True
        return response


class OpenAIProvider(BaseProvider):
    """OpenAI chat completions."""

    name = "openai"

    @property
    def default_model(self) -> str:
        return settings.openai_model

    def _call(self, prompt, max_tokens, temperature, system_message):
        client = openai.OpenAI(api_key=self.api_key)
        messages = []
        if system_message:
            messages.append({"role": "system", "content": system_message})
        messages.append({"role": "user", "content": prompt})

        response = client.chat.completions.create(
            model=self.model_name,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
        )
        usage = response.usage
        return {
            "content": response.choices[0].message.content,
            "model": response.model,
            "input_tokens": usage.prompt_tokens if usage else None,
            "output_tokens": usage.completion_tokens if usage else None,
        }

    def is_rate_limit(self, error: Exception) -> bool:
        return isinstance(error, openai.RateLimitError)


class AnthropicProvider(BaseProvider):
    """Anthropic Messages API."""

    name = "anthropic"

    @property
    def default_model(self) -> str:
        return settings.anthropic_model

    def _call(self, prompt, max_tokens, temperature, system_message):
        client = anthropic.Anthropic(api_key=self.api_key)
        kwargs = {
            "model": self.model_name,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_message:
            kwargs["system"] = system_message

        response = client.messages.create(**kwargs)
        text = "".join(block.text for block in response.content if getattr(block, "type", "") == "text")
        return {
            "content": text,
            "model": response.model,
            "input_tokens": response.usage.input_tokens,
            "output_tokens": response.usage.output_tokens,
        }

    def is_rate_limit(self, error: Exception) -> bool:
        return isinstance(error, anthropic.RateLimitError)


class OllamaProvider(BaseProvider):
    """Local Ollama server; honors the config's api_endpoint."""

    name = "ollama"

    @property
    def default_model(self) -> str:
        return settings.ollama_model

    @property
    def host(self) -> str:
        if self.config and self.config.api_endpoint:
            return self.config.api_endpoint
        return settings.ollama_host

    def _call(self, prompt, max_tokens, temperature, system_message):
        client = ollama.Client(host=self.host)
        messages = []
        if system_message:
            messages.append({"role": "system", "content": system_message})
        messages.append({"role": "user", "content": prompt})

        response = client.chat(
            model=self.model_name,
            messages=messages,
            options={"temperature": temperature, "num_predict": max_tokens},
        )
        return {
            "content": response["message"]["content"],
            "model": response.get("model", self.model_name),
            "input_tokens": response.get("prompt_eval_count"),
            "output_tokens": response.get("eval_count"),
        }

    def is_rate_limit(self, error: Exception) -> bool:
        return isinstance(error, ollama.ResponseError) and getattr(error, "status_code", None) == 429


class GeminiProvider(BaseProvider):
    """Google Gemini via the google-genai client."""

    name = "gemini"

    @property
    def default_model(self) -> str:
        return settings.gemini_model

    def _call(self, prompt, max_tokens, temperature, system_message):
        client = genai.Client(api_key=self.api_key)
        response = client.models.generate_content(
            model=self.model_name,
            contents=prompt,
            config=genai_types.GenerateContentConfig(
                system_instruction=system_message or None,
                max_output_tokens=max_tokens,
                temperature=temperature,
            ),
        )
        usage = response.usage_metadata
        return {
            "content": response.text,
            "model": self.model_name,
            "input_tokens": getattr(usage, "prompt_token_count", None),
            "output_tokens": getattr(usage, "candidates_token_count", None),
        }

    def is_rate_limit(self, error: Exception) -> bool:
        return isinstance(error, genai_errors.APIError) and error.code == 429


PROVIDERS: dict[str, type[BaseProvider]] = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "ollama": OllamaProvider,
    "gemini": GeminiProvider,
}


def get_provider(name: str, session: Optional[Session] = None) -> BaseProvider:
    """
    Build a provider by type name, bound to its config row when one exists.

    Raises:
        ProviderNotConfiguredError: Unknown provider name
    """
    provider_cls = PROVIDERS.get(name)
    if provider_cls is None:
        raise ProviderNotConfiguredError(name)
    config = provider_config.config_for(session, name) if session is not None else None
    return provider_cls(config)
