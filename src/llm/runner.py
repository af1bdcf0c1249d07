"""Run a prompt across the provider chain with logging and fallback."""
import logging
import time
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from src.llm import provider_config
from src.llm.api_logger import ApiLogger
from src.llm.exceptions import LlmError
from src.llm.providers import BaseProvider, get_provider

logger = logging.getLogger(__name__)

# accept(response) -> (parsed, log_data, accepted)
AcceptFn = Callable[[dict], tuple[Any, dict, bool]]


class ProviderRunner:
    """Tries providers in order until one response is accepted.

    Every call is logged to LlmApiLog. Unavailable providers are skipped;
    rate limits, error responses, rejected responses and exceptions move on
    to the next provider.
    """

    def __init__(
        self,
        session: Session,
        operation: str,
        prompt: str,
        system_message: Optional[str] = None,
        content_size: Optional[int] = None,
        loggable: Any = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        provider_chain: Optional[list[str]] = None,
        provider_for: Optional[Callable[[str], BaseProvider]] = None,
    ):
        self.session = session
        self.operation = operation
        self.prompt = prompt
        self.system_message = system_message
        self.content_size = content_size if content_size is not None else len(prompt)
        self.loggable = loggable
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.provider_chain = provider_chain
        self.provider_for = provider_for or (lambda name: get_provider(name, session))

    def chain(self) -> list[str]:
        if self.provider_chain is not None:
            return self.provider_chain
        return provider_config.provider_chain(self.session)

    def run(self, accept: AcceptFn) -> dict:
        """
        Run the chain.

        Args:
            accept: Called with each successful provider response; returns
                (parsed, log_data, accepted). log_data may carry confidence.

        Returns:
            {success: True, provider, model, parsed, llm_api_log_id,
            latency_ms} for the first accepted response, else
            {success: False, error: "All providers failed"}
        """
        for name in self.chain():
            try:
                provider = self.provider_for(name)
            except LlmError as e:
                logger.warning("Skipping provider %s: %s", name, e)
                continue
            if not provider.available():
                logger.debug("Provider %s not available, skipping", name)
                continue

            api_logger = ApiLogger(self.session, self.operation, name, provider.model_name, self.loggable)
            started = time.monotonic()
            try:
                response = provider.run(
                    self.prompt,
                    max_tokens=self.max_tokens,
                    temperature=self.temperature,
                    system_message=self.system_message,
                )

                if response.get("rate_limit") or response.get("error"):
                    api_logger.record_result(
                        response, response.get("latency_ms"), self.prompt, self.content_size
                    )
                    logger.info(
                        "%s via %s failed (%s), trying next provider",
                        self.operation,
                        name,
                        "rate limited" if response.get("rate_limit") else response.get("error"),
                    )
                    continue

                parsed, log_data, accepted = accept(response)
                log_entry = {**response, **(log_data or {}), "parsed": parsed}
                if not accepted:
                    log_entry["low_confidence"] = True
                log = api_logger.record_result(
                    log_entry, response.get("latency_ms"), self.prompt, self.content_size
                )
            except Exception as e:
                latency_ms = int((time.monotonic() - started) * 1000)
                logger.error("%s via %s raised %s: %s", self.operation, name, type(e).__name__, e)
                api_logger.record_error(e, latency_ms, self.prompt, self.content_size)
                continue

            if not accepted:
                logger.info("%s via %s not accepted, trying next provider", self.operation, name)
                continue

            return {
                "success": True,
                "provider": name,
                "model": response.get("model") or provider.model_name,
                "parsed": parsed,
                "llm_api_log_id": log.id,
                "latency_ms": response.get("latency_ms"),
            }

        return {"success": False, "error": "All providers failed"}
