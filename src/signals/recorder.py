"""Best-effort run/event recorder for the Gmail to signals pipeline."""
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.persistence.models import (
    EmailPipelineEvent,
    EmailPipelineRun,
    SyncedEmail,
    ensure_aware,
    utcnow,
)

logger = logging.getLogger(__name__)

OutputOverride = Union[dict, Callable[[Any], dict], None]


@dataclass
class MeasuredStep:
    """Handle yielded by ``measure``; set ``result`` inside the block."""

    event_type: str
    result: Any = None
    metadata: dict = field(default_factory=dict)


def resolve_output(result: Any, override: OutputOverride) -> dict:
    """Output payload: override (mapping or callable), else the result dict."""
    if callable(override):
        output = override(result)
    else:
        output = override
    if output is None:
        output = result if isinstance(result, dict) else {"result": result}
    return output or {}


class EmailPipelineRecorder:
    """Records EmailPipelineRun / EmailPipelineEvent rows.

    Every write runs in its own SAVEPOINT. A persistence failure rolls back
    only that write and is logged, so the shared session stays usable.
    Errors raised inside ``measure`` blocks are recorded and re-raised.
    """

    def __init__(self, session: Session, run: EmailPipelineRun):
        self.session = session
        self.run = run
        self._step_order = len(run.events) if run.id else 0

    @classmethod
    def start_for(
        cls,
        session: Session,
        synced_email: SyncedEmail,
        trigger: str,
        mode: str,
        metadata: Optional[dict] = None,
    ) -> "EmailPipelineRecorder":
        """Create a ``started`` run for an email and wrap it."""
        run = EmailPipelineRun(
            synced_email_id=synced_email.id,
            user_id=synced_email.user_id,
            connected_account_id=synced_email.connected_account_id,
            status="started",
            trigger=trigger,
            mode=mode,
            started_at=utcnow(),
            meta=dict(metadata or {}),
        )
        session.add(run)
        session.flush()
        return cls(session, run)

    @classmethod
    def for_run(cls, session: Session, run: Optional[EmailPipelineRun]) -> Optional["EmailPipelineRecorder"]:
        if run is None:
            return None
        return cls(session, run)

    def _next_step_order(self) -> int:
        self._step_order += 1
        return self._step_order

    def _new_event(self, event_type: str, status: str, **fields) -> EmailPipelineEvent:
        email = self.run.synced_email
        with self.session.begin_nested():
            event = EmailPipelineEvent(
                run=self.run,
                synced_email_id=self.run.synced_email_id,
                interview_application_id=email.interview_application_id if email else None,
                step_order=self._next_step_order(),
                event_type=event_type,
                status=status,
                **fields,
            )
            self.session.add(event)
            self.session.flush()
        return event

    def _write_failed(self, action: str, error: SQLAlchemyError) -> None:
        # The SAVEPOINT is gone; drop any in-memory reference to the discarded row.
        logger.warning("EmailPipelineRecorder %s failed: run_id=%s %s", action, self.run.id, error)
        self.session.expire(self.run, ["events"])

    def event(
        self,
        event_type: str,
        status: str,
        input_payload: Optional[dict] = None,
        output_payload: Optional[dict] = None,
        error: Optional[BaseException] = None,
        metadata: Optional[dict] = None,
    ) -> Optional[EmailPipelineEvent]:
        """Record a point-in-time event (zero duration)."""
        now = utcnow()
        try:
            return self._new_event(
                event_type,
                status,
                started_at=now,
                completed_at=now,
                duration_ms=0,
                input_payload=input_payload or {},
                output_payload=output_payload or {},
                error_type=type(error).__name__ if error else None,
                error_message=str(error) if error else None,
                meta=metadata or {},
            )
        except SQLAlchemyError as e:
            self._write_failed("event", e)
            return None

    @contextmanager
    def measure(
        self,
        event_type: str,
        input_payload: Optional[dict] = None,
        output_payload_override: OutputOverride = None,
        metadata: Optional[dict] = None,
    ) -> Iterator[MeasuredStep]:
        """Record a step around a block, with duration and outcome.

        Usage::

            with recorder.measure("email_classification") as step:
                step.result = {"email_type": classify()}
        """
        step = MeasuredStep(event_type=event_type)
        started = time.monotonic()
        try:
            event = self._new_event(
                event_type,
                "started",
                started_at=utcnow(),
                input_payload=input_payload or {},
                output_payload={},
                meta=metadata or {},
            )
        except SQLAlchemyError as e:
            self._write_failed("measure", e)
            event = None

        try:
            yield step
        except Exception as exc:
            if event is not None:
                try:
                    with self.session.begin_nested():
                        event.status = "failed"
                        event.completed_at = utcnow()
                        event.duration_ms = int(round((time.monotonic() - started) * 1000))
                        event.error_type = type(exc).__name__
                        event.error_message = str(exc)
                        event.output_payload = {"error": str(exc)}
                        self.session.flush()
                except SQLAlchemyError as update_err:
                    self._write_failed("event update", update_err)
            raise

        if event is not None:
            try:
                with self.session.begin_nested():
                    event.status = "success"
                    event.completed_at = utcnow()
                    event.duration_ms = int(round((time.monotonic() - started) * 1000))
                    event.output_payload = resolve_output(step.result, output_payload_override)
                    if step.metadata:
                        event.meta = {**(event.meta or {}), **step.metadata}
                    self.session.flush()
            except SQLAlchemyError as e:
                self._write_failed("event update", e)

    def finish_success(self, metadata: Optional[dict] = None) -> None:
        self.finish("success", metadata=metadata)

    def finish_failed(self, exc: BaseException, metadata: Optional[dict] = None) -> None:
        self.finish(
            "failed",
            error_type=type(exc).__name__,
            error_message=str(exc),
            metadata=metadata,
        )

    def finish(
        self,
        status: str,
        error_type: Optional[str] = None,
        error_message: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> None:
        """Close the run with a final status, duration and merged metadata."""
        try:
            with self.session.begin_nested():
                completed_at = utcnow()
                started_at = ensure_aware(self.run.started_at)
                self.run.status = status
                self.run.completed_at = completed_at
                if started_at:
                    self.run.duration_ms = int(round((completed_at - started_at).total_seconds() * 1000))
                self.run.error_type = error_type
                self.run.error_message = error_message
                self.run.meta = {**(self.run.meta or {}), **(metadata or {})}
                self.session.flush()
        except SQLAlchemyError as e:
            self._write_failed("finish", e)
