"""Evaluate plan-step preconditions against current database state."""
import re
from typing import Any, Optional

from src.persistence.models import InterviewRound, SyncedEmail
from src.signals.decisioning.input_builder import recent_rounds

PRECONDITION_RE = re.compile(r"^(?P<path>.+?)\s+(?P<op>==|!=)\s+(?P<value>\S+)$")
ANY_RE = re.compile(r"^application\.rounds_recent\.any\((?P<field>\w+)==(?P<value>\w+)\)$")

UNKNOWN = object()


def parse_literal(value: str) -> Any:
    lowered = value.lower()
    if lowered == "null":
        return None
    if lowered in ("true", "false"):
        return lowered == "true"
    return value


def resolve_round(synced_email: SyncedEmail, step: Optional[dict]) -> Optional[InterviewRound]:
    """The round a step targets, by id or by selector (latest_pending, latest)."""
    app = synced_email.interview_application
    if app is None or not step:
        return None
    spec = (step.get("target") or {}).get("round") or {}
    rounds = sorted(app.rounds, key=lambda r: r.position or 0)
    selector = spec.get("selector")

    if spec.get("id") or selector == "by_id":
        return next((r for r in rounds if r.id == spec.get("id")), None)
    if selector == "latest_pending":
        pending = [r for r in rounds if r.result == "pending"]
        return pending[-1] if pending else None
    if selector == "latest":
        return rounds[-1] if rounds else None
    return None


class PreconditionEvaluator:
    """Evaluates ``path op literal`` preconditions such as ``application.status == active``."""

    @classmethod
    def evaluate_all(cls, preconditions: list[str], synced_email: SyncedEmail, step: Optional[dict] = None) -> dict:
        """
        Args:
            preconditions: Expressions from a plan step
            synced_email: Email the plan was built for
            step: The step itself, used to resolve ``round.*`` paths

        Returns:
            {"ok": bool, "failed": [...], "unknown": [...]}; ok only when nothing failed or is unknown
        """
        failed, unknown = [], []
        for expression in preconditions or []:
            outcome = cls.evaluate(expression, synced_email, step)
            if outcome is None:
                unknown.append(expression)
            elif not outcome:
                failed.append(expression)
        return {"ok": not failed and not unknown, "failed": failed, "unknown": unknown}

    @classmethod
    def evaluate(cls, expression: str, synced_email: SyncedEmail, step: Optional[dict] = None) -> Optional[bool]:
        """True/False, or None when the expression can't be evaluated."""
        match = PRECONDITION_RE.match((expression or "").strip())
        if not match:
            return None
        actual = cls.resolve(match.group("path"), synced_email, step)
        if actual is UNKNOWN:
            return None
        expected = parse_literal(match.group("value"))
        if isinstance(actual, str) and isinstance(expected, str):
            equal = actual.lower() == expected.lower()
        else:
            equal = actual == expected
        return equal if match.group("op") == "==" else not equal

    @staticmethod
    def resolve(path: str, synced_email: SyncedEmail, step: Optional[dict]) -> Any:
        if path == "match.matched":
            return synced_email.matched

        if path.startswith("round."):
            interview_round = resolve_round(synced_email, step)
            if interview_round is None:
                return UNKNOWN
            if path == "round.interview_feedback":
                return interview_round.interview_feedback.id if interview_round.interview_feedback else None
            if path == "round.result":
                return interview_round.result
            return UNKNOWN

        app = synced_email.interview_application
        if app is None:
            return UNKNOWN
        if path == "application.status":
            return app.status
        if path == "application.pipeline_stage":
            return app.pipeline_stage
        if path == "application.company_feedback":
            return app.company_feedback.id if app.company_feedback else None

        any_match = ANY_RE.match(path)
        if any_match:
            field, value = any_match.group("field"), any_match.group("value")
            return any(str(getattr(r, field, None)) == value for r in recent_rounds(app))
        return UNKNOWN
