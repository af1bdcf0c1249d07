"""Step-ordered ScrapingEvent rows for one scraping attempt."""
import logging
import time
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy.orm import Session

from src.persistence.models import ScrapingAttempt, ScrapingEvent, utcnow
from src.signals.recorder import MeasuredStep, OutputOverride, resolve_output

logger = logging.getLogger(__name__)

MAX_PAYLOAD_STRING = 2000


def truncate_payload(payload: Optional[dict]) -> dict:
    """Shorten long strings so HTML never lands in event payloads."""
    result = {}
    for key, value in (payload or {}).items():
        if isinstance(value, str) and len(value) > MAX_PAYLOAD_STRING:
            value = value[:MAX_PAYLOAD_STRING] + "..."
        result[key] = value
    return result


class ScrapingEventRecorder:
    """Records the steps of a scraping attempt.

    Unlike the email pipeline recorder, write failures propagate: the
    attempt and its events share one transaction.
    """

    def __init__(self, session: Session, attempt: ScrapingAttempt):
        self.session = session
        self.attempt = attempt
        self.step_order = len(attempt.events)

    def _create(self, event_type: str, status: str, **fields) -> ScrapingEvent:
        self.step_order += 1
        event = ScrapingEvent(
            scraping_attempt_id=self.attempt.id,
            job_listing_id=self.attempt.job_listing_id,
            event_type=event_type,
            step_order=self.step_order,
            status=status,
            **fields,
        )
        self.session.add(event)
        self.attempt.events.append(event)
        self.session.flush()
        return event

    @contextmanager
    def measure(
        self,
        event_type: str,
        input_payload: Optional[dict] = None,
        output_payload_override: OutputOverride = None,
        metadata: Optional[dict] = None,
    ) -> Iterator[MeasuredStep]:
        """Record a step around a block; exceptions mark the event failed and re-raise."""
        step = MeasuredStep(event_type=event_type)
        event = self._create(
            event_type,
            "started",
            started_at=utcnow(),
            input_payload=truncate_payload(input_payload),
            output_payload={},
            meta=metadata or {},
        )
        started = time.monotonic()
        try:
            yield step
        except Exception as exc:
            event.status = "failed"
            event.completed_at = utcnow()
            event.duration_ms = int(round((time.monotonic() - started) * 1000))
            event.error_type = type(exc).__name__
            event.error_message = str(exc)
            self.session.flush()
            raise

        event.status = "success"
        event.completed_at = utcnow()
        event.duration_ms = int(round((time.monotonic() - started) * 1000))
        event.output_payload = truncate_payload(resolve_output(step.result, output_payload_override))
        if step.metadata:
            event.meta = {**(event.meta or {}), **step.metadata}
        self.session.flush()

    def record(
        self,
        event_type: str,
        status: str,
        input_payload: Optional[dict] = None,
        output_payload: Optional[dict] = None,
        metadata: Optional[dict] = None,
        error_type: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> ScrapingEvent:
        """Point-in-time event (zero duration)."""
        now = utcnow()
        return self._create(
            event_type,
            status,
            started_at=now,
            completed_at=now,
            duration_ms=0,
            input_payload=truncate_payload(input_payload),
            output_payload=truncate_payload(output_payload),
            meta=metadata or {},
            error_type=error_type,
            error_message=error_message,
        )

    def skipped(self, event_type: str, reason: str, metadata: Optional[dict] = None) -> ScrapingEvent:
        return self.record(event_type, "skipped", output_payload={"skipped_reason": reason}, metadata=metadata)

    def completion(self, summary: dict) -> ScrapingEvent:
        return self.record("completion", "success", output_payload=summary, metadata={"total_steps": self.step_order})

    def failure(self, message: str, error_type: Optional[str] = None, details: Optional[dict] = None) -> ScrapingEvent:
        return self.record(
            "failure",
            "failed",
            output_payload=details,
            metadata={"total_steps": self.step_order},
            error_type=error_type,
            error_message=message,
        )
