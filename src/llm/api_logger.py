"""Persist one LlmApiLog row per LLM call."""
import logging
from typing import Any, Optional

from sqlalchemy.orm import Session

from src.persistence.models import LlmApiLog

logger = logging.getLogger(__name__)

# Keep stored prompts and raw responses bounded
MAX_PAYLOAD_CHARS = 20_000

RESERVED_RESULT_KEYS = {
    "content",
    "raw_response",
    "input_tokens",
    "output_tokens",
    "confidence",
    "error",
    "error_type",
    "rate_limit",
    "latency_ms",
    "model",
    "provider",
    "low_confidence",
}


def _truncate(value: Optional[str]) -> Optional[str]:
    if value is None or len(value) <= MAX_PAYLOAD_CHARS:
        return value
    return value[:MAX_PAYLOAD_CHARS] + "...[truncated]"


class ApiLogger:
    """Records LLM calls for an operation against a provider/model."""

    def __init__(
        self,
        session: Session,
        operation_type: str,
        provider: str,
        model: str,
        loggable: Any = None,
    ):
        """
        Args:
            session: Database session
            operation_type: e.g. signal_extraction, email_facts, job_extraction
            provider: Provider type name
            model: Model identifier
            loggable: Record being processed (type and id are stored)
        """
        self.session = session
        self.operation_type = operation_type
        self.provider = provider
        self.model = model
        self.loggable_type = type(loggable).__name__ if loggable is not None else None
        self.loggable_id = str(loggable.id) if loggable is not None and getattr(loggable, "id", None) else None
        self.log: Optional[LlmApiLog] = None

    @staticmethod
    def determine_status(result: dict) -> str:
        if result.get("rate_limit"):
            return "rate_limited"
        if result.get("error"):
            return "error"
        if result.get("low_confidence"):
            return "low_confidence"
        return "success"

    @staticmethod
    def extract_field_names(result: dict) -> list[str]:
        parsed = result.get("parsed")
        if isinstance(parsed, dict):
            return sorted(k for k, v in parsed.items() if v not in (None, "", [], {}))
        return sorted(k for k in result if k not in RESERVED_RESULT_KEYS and k != "parsed")

    def record_result(
        self,
        result: dict,
        latency_ms: Optional[int],
        prompt: Optional[str] = None,
        content_size: Optional[int] = None,
    ) -> LlmApiLog:
        """Store a completed call (successful or error response)."""
        input_tokens = result.get("input_tokens")
        output_tokens = result.get("output_tokens")
        total = (input_tokens or 0) + (output_tokens or 0) if (input_tokens or output_tokens) else None
        self.log = LlmApiLog(
            operation_type=self.operation_type,
            provider=self.provider,
            model=result.get("model") or self.model,
            loggable_type=self.loggable_type,
            loggable_id=self.loggable_id,
            status=self.determine_status(result),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=total,
            latency_ms=latency_ms,
            content_size=content_size,
            confidence_score=result.get("confidence"),
            extracted_fields=self.extract_field_names(result),
            request_payload={"prompt": _truncate(prompt)},
            response_payload={"raw_response": _truncate(result.get("content"))},
            error_type=result.get("error_type") if result.get("error") else None,
            error_message=result.get("error"),
        )
        self.session.add(self.log)
        self.session.flush()
        return self.log

    def record_error(
        self,
        error: BaseException,
        latency_ms: Optional[int],
        prompt: Optional[str] = None,
        content_size: Optional[int] = None,
    ) -> LlmApiLog:
        """Store a call that raised."""
        message = str(error)
        lowered = message.lower()
        status = "rate_limited" if "rate" in lowered and "limit" in lowered else "error"
        self.log = LlmApiLog(
            operation_type=self.operation_type,
            provider=self.provider,
            model=self.model,
            loggable_type=self.loggable_type,
            loggable_id=self.loggable_id,
            status=status,
            latency_ms=latency_ms,
            content_size=content_size,
            request_payload={"prompt": _truncate(prompt)},
            response_payload={"exception": type(error).__name__},
            error_type=type(error).__name__,
            error_message=message,
        )
        self.session.add(self.log)
        self.session.flush()
        return self.log
