"""Semantic checks on a decision plan: every step must quote the email."""
import re

from src.signals.facts import URL_RE

WHITESPACE_RE = re.compile(r"\s+")
NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


def normalize(text: str) -> str:
    return WHITESPACE_RE.sub(" ", (text or "").lower()).strip()


def alnum(text: str) -> str:
    return NON_ALNUM_RE.sub("", (text or "").lower())


class SemanticValidator:
    """Checks that step evidence is present and appears in the email."""

    def __init__(self, decision_input: dict, plan: dict):
        self.input = decision_input
        self.plan = plan
        event = decision_input.get("event") or {}
        haystack = " ".join(
            part for part in ((event.get("subject") or ""), ((event.get("body") or {}).get("text") or "")) if part
        )
        self._lower = haystack.lower()
        self._normalized = normalize(haystack)
        self._alnum = alnum(haystack)

    def errors(self) -> list[dict]:
        """
        Returns:
            List of {"step_id", "code", "message"} dicts; empty when the plan is grounded
        """
        errors = []
        for step in self.plan.get("plan") or []:
            step_id = step.get("step_id")
            evidence = [e for e in step.get("evidence") or [] if isinstance(e, str) and e.strip()]
            if not evidence:
                errors.append({"step_id": step_id, "code": "missing_evidence", "message": "step has no evidence"})
                continue
            for quote in evidence:
                if not self.grounded(quote):
                    errors.append(
                        {
                            "step_id": step_id,
                            "code": "evidence_not_in_body",
                            "message": f"evidence not found in email: {quote[:100]}",
                        }
                    )
        return errors

    def grounded(self, quote: str) -> bool:
        urls = URL_RE.findall(quote)
        if urls:
            return all(url.lower() in self._lower for url in urls)
        if normalize(quote) in self._normalized:
            return True
        compact = alnum(quote)
        return bool(compact) and compact in self._alnum
