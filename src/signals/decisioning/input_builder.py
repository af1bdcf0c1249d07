"""Build the decision input (event, match, application snapshot, facts) for an email."""
from typing import Optional

from src.persistence.models import InterviewApplication, SyncedEmail
from src.signals.facts import canonical_email_event

VERSION = "2026-01-27"
MAX_SNAPSHOT_ROUNDS = 10
MAX_FACT_LINKS = 20

KIND_BY_EMAIL_TYPE = {
    "scheduling": "scheduling",
    "interview_reminder": "scheduling",
    "interview_invite": "interview_invite",
    "round_feedback": "round_feedback",
    "rejection": "status_update",
    "offer": "status_update",
    "application_confirmation": "application_confirmation",
    "recruiter_outreach": "recruiter_outreach",
    "assessment": "interview_assessment",
}


def map_kind(email_type: Optional[str]) -> str:
    if not email_type:
        return "unknown"
    return KIND_BY_EMAIL_TYPE.get(email_type, "other")


def recent_rounds(app: InterviewApplication) -> list:
    """The last MAX_SNAPSHOT_ROUNDS rounds by position."""
    return sorted(app.rounds, key=lambda r: r.position or 0)[-MAX_SNAPSHOT_ROUNDS:]


def application_snapshot(app: InterviewApplication) -> dict:
    rounds = recent_rounds(app)
    return {
        "id": app.id,
        "status": app.status,
        "pipeline_stage": app.pipeline_stage,
        "company": {
            "id": app.company_id,
            "name": app.company.name if app.company else None,
            "website": app.company.website if app.company else None,
        },
        "job_title": app.job_title,
        "rounds_recent": [
            {
                "id": r.id,
                "position": r.position,
                "stage": r.stage,
                "stage_name": r.stage_name,
                "scheduled_at": r.scheduled_at.isoformat() if r.scheduled_at else None,
                "result": r.result,
                "interviewer_name": r.interviewer_name,
                "source_email_id": r.source_email_id,
            }
            for r in rounds
        ],
    }


class DecisionInputBuilder:
    """Assembles the versioned decision input consumed by the planner."""

    def __init__(self, synced_email: SyncedEmail):
        self.synced_email = synced_email

    @property
    def application(self) -> Optional[InterviewApplication]:
        return self.synced_email.interview_application

    def build(self, facts: Optional[dict] = None) -> dict:
        base = self.build_base()
        base["facts"] = facts if facts is not None else self.build_fallback_facts()
        return base

    def build_base(self) -> dict:
        email = self.synced_email
        app = self.application
        return {
            "version": VERSION,
            "event": canonical_email_event(email),
            "match": {
                "matched": email.matched,
                "match_strategy": None,
                "interview_application_id": app.id if app else None,
                "confidence": 0.5 if email.matched else 0.0,
            },
            "application": application_snapshot(app) if app else None,
        }

    def build_fallback_facts(self) -> dict:
        """Facts derived from the rule-based classification and stored signals, without an LLM."""
        email = self.synced_email
        app = self.application
        company = app.company if app else None
        kind = map_kind(email.email_type)

        links = []
        for link in email.signal_action_links:
            if not isinstance(link, dict) or not link.get("url") or not link.get("action_label"):
                continue
            links.append(
                {"url": str(link["url"]), "action_label": str(link["action_label"]), "priority": int(link.get("priority") or 5)}
            )

        return {
            "extraction": {
                "provider": None,
                "model": None,
                "confidence": float(email.extraction_confidence or 0.0),
                "warnings": [],
            },
            "classification": {
                "kind": kind,
                "confidence": 0.0 if kind == "unknown" else 0.5,
                "evidence": [email.subject or email.snippet or "classified"],
            },
            "entities": {
                "company": {
                    "name": email.signal_company_name or (company.name if company else None),
                    "website": email.signal_company_website or (company.website if company else None),
                },
                "recruiter": {
                    "name": email.signal_recruiter_name,
                    "email": email.signal_recruiter_email,
                    "title": email.signal_recruiter_title,
                },
                "job": {
                    "title": email.signal_job_title or (app.job_title if app else None),
                    "department": email.signal_job_department,
                    "location": email.signal_job_location,
                    "url": email.signal_job_url,
                },
            },
            "action_links": links[:MAX_FACT_LINKS],
            "key_insights": (email.extracted_data or {}).get("key_insights"),
            "is_forwarded": bool((email.extracted_data or {}).get("is_forwarded")),
            "scheduling": {"is_scheduling_related": False, "duration_minutes": 0, "evidence": []},
            "round_feedback": {"has_round_feedback": False, "evidence": []},
            "status_change": self._status_change_stub(),
        }

    def _status_change_stub(self) -> dict:
        email_type = self.synced_email.email_type
        change = email_type if email_type in ("rejection", "offer") else "no_change"
        return {
            "has_status_change": change != "no_change",
            "type": change,
            "is_final": True if email_type == "rejection" else None,
            "effective_date": self.synced_email.email_date.isoformat() if self.synced_email.email_date else None,
            "evidence": [],
        }
