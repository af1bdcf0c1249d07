"""Rule-based planner that turns a decision input into a decision plan."""
import logging
from typing import Optional

logger = logging.getLogger(__name__)

MAX_STEP_EVIDENCE = 3
OPPORTUNITY_MIN_CONFIDENCE = 0.7


class StepFactory:
    """Builds plan steps with sequential ids."""

    def __init__(self):
        self._count = 0

    def step(
        self,
        action: str,
        target: Optional[dict] = None,
        params: Optional[dict] = None,
        preconditions: Optional[list[str]] = None,
        evidence: Optional[list[str]] = None,
        risk: str = "low",
    ) -> dict:
        self._count += 1
        return {
            "step_id": f"step_{self._count}",
            "action": action,
            "target": target or {},
            "params": params or {},
            "preconditions": preconditions or [],
            "evidence": list(evidence or [])[:MAX_STEP_EVIDENCE],
            "risk": risk,
        }


def apply_plan(steps: list[dict], confidence: float, reasons: list[str]) -> dict:
    return {"decision": "apply", "confidence": confidence, "reasons": reasons, "plan": steps}


def noop_plan(reason: str) -> dict:
    return {"decision": "noop", "confidence": 0.0, "reasons": [reason], "plan": []}


class Rule:
    """A planner rule; ``plan`` returns None when the rule does not apply."""

    def __init__(self, decision_input: dict, steps: StepFactory):
        self.input = decision_input
        self.steps = steps
        self.facts = decision_input.get("facts") or {}

    @property
    def matched(self) -> bool:
        return bool((self.input.get("match") or {}).get("matched"))

    @property
    def kind(self) -> Optional[str]:
        return (self.facts.get("classification") or {}).get("kind")

    @property
    def application_id(self) -> Optional[str]:
        return (self.input.get("match") or {}).get("interview_application_id")

    def app_target(self, **extra) -> dict:
        return {"application_id": self.application_id, **extra}

    def plan(self) -> Optional[dict]:
        raise NotImplementedError


class StatusUpdateRule(Rule):
    """Rejection, offer and withdrawal emails for a matched application."""

    def plan(self) -> Optional[dict]:
        if not self.matched or self.kind != "status_update":
            return None

        change = self.facts.get("status_change") or {}
        evidence = (change.get("evidence") or [])[:MAX_STEP_EVIDENCE]
        if not evidence:
            return noop_plan("status_update_without_evidence")

        change_type = change.get("type")
        if change_type == "rejection":
            steps = [
                self.steps.step(
                    "set_application_status",
                    target=self.app_target(),
                    params={"status": "rejected"},
                    preconditions=["application.status == active"],
                    evidence=evidence,
                    risk="high",
                ),
                self.steps.step(
                    "set_pipeline_stage",
                    target=self.app_target(),
                    params={"stage": "closed"},
                    preconditions=["application.pipeline_stage != closed"],
                    evidence=evidence,
                    risk="medium",
                ),
            ]
            return apply_plan(steps, 0.9, ["status_update: rejection"])

        if change_type == "offer":
            offer = change.get("offer_details") or {}
            steps = [
                self.steps.step(
                    "set_pipeline_stage",
                    target=self.app_target(),
                    params={"stage": "offer"},
                    preconditions=["application.pipeline_stage != offer"],
                    evidence=evidence,
                    risk="medium",
                ),
                self.steps.step(
                    "create_company_feedback",
                    target=self.app_target(),
                    params={
                        "feedback_type": "offer",
                        "feedback_text": offer.get("summary") or (change.get("feedback") or {}).get("feedback_text"),
                        "next_steps": offer.get("next_steps"),
                    },
                    preconditions=["application.company_feedback == null"],
                    evidence=evidence,
                ),
            ]
            return apply_plan(steps, 0.85, ["status_update: offer"])

        if change_type == "withdrawal":
            steps = [
                self.steps.step(
                    "set_application_status",
                    target=self.app_target(),
                    params={"status": "archived"},
                    preconditions=["application.status == active"],
                    evidence=evidence,
                    risk="high",
                )
            ]
            return apply_plan(steps, 0.8, ["status_update: withdrawal"])

        return noop_plan(f"status_update_{change_type or 'unknown'}_not_actionable")


class RoundFeedbackRule(Rule):
    """Pass/fail feedback on the latest pending round."""

    RESULTS = ("passed", "failed", "waitlisted")

    def plan(self) -> Optional[dict]:
        if not self.matched or self.kind != "round_feedback":
            return None

        feedback = self.facts.get("round_feedback") or {}
        evidence = (feedback.get("evidence") or [])[:MAX_STEP_EVIDENCE]
        if not evidence:
            return noop_plan("round_feedback_without_evidence")
        result = (feedback.get("result") or "").lower()
        if result not in self.RESULTS:
            return noop_plan("round_feedback_result_unknown")

        round_target = self.app_target(round=self._round_selector())
        steps = [
            self.steps.step(
                "set_round_result",
                target=round_target,
                params={"result": result, "completed_at": feedback.get("date_mentioned")},
                preconditions=["application.rounds_recent.any(result==pending) == true"],
                evidence=evidence,
                risk="high" if result == "failed" else "medium",
            )
        ]

        detail = feedback.get("feedback") or {}
        if detail.get("has_detailed_feedback"):
            steps.append(
                self.steps.step(
                    "create_interview_feedback",
                    target=round_target,
                    params={
                        "went_well": "\n".join(detail.get("strengths") or []) or None,
                        "to_improve": "\n".join(detail.get("improvements") or []) or None,
                        "ai_summary": detail.get("summary"),
                        "interviewer_notes": detail.get("full_feedback_text"),
                    },
                    preconditions=["round.interview_feedback == null"],
                    evidence=evidence,
                )
            )
        return apply_plan(steps, 0.8, [f"round_feedback: {result}"])

    def _round_selector(self) -> dict:
        """Pin the latest pending round by id so later steps still find it once completed."""
        rounds = (self.input.get("application") or {}).get("rounds_recent") or []
        pending = [r for r in rounds if r.get("result") == "pending"]
        if pending:
            return {"selector": "by_id", "id": pending[-1]["id"]}
        return {"selector": "latest_pending"}


class SchedulingRule(Rule):
    """Schedule a round from a confirmed interview time."""

    def plan(self) -> Optional[dict]:
        if not self.matched or self.kind not in ("scheduling", "interview_invite"):
            return None

        scheduling = self.facts.get("scheduling") or {}
        if not scheduling.get("is_scheduling_related") or scheduling.get("is_cancelled"):
            return None
        if not scheduling.get("scheduled_at"):
            return noop_plan("scheduling_without_time")
        evidence = (scheduling.get("evidence") or [])[:MAX_STEP_EVIDENCE]
        if not evidence:
            return noop_plan("scheduling_without_evidence")

        stage = scheduling.get("stage") or scheduling.get("round_type")
        steps = [
            self.steps.step(
                "create_round",
                target=self.app_target(),
                params={
                    "stage": stage,
                    "stage_name": scheduling.get("stage_name"),
                    "scheduled_at": scheduling.get("scheduled_at"),
                    "duration_minutes": scheduling.get("duration_minutes") or None,
                    "interviewer_name": scheduling.get("interviewer_name"),
                    "interviewer_role": scheduling.get("interviewer_role"),
                    "video_link": scheduling.get("video_link"),
                },
                preconditions=["match.matched == true"],
                evidence=evidence,
            )
        ]
        target_stage = "screening" if stage == "screening" else "interviewing"
        steps.append(
            self.steps.step(
                "set_pipeline_stage",
                target=self.app_target(),
                params={"stage": target_stage},
                preconditions=["application.pipeline_stage == applied"],
                evidence=evidence,
            )
        )
        return apply_plan(steps, 0.8, [f"scheduling: {stage or 'other'}"])


class OpportunityRule(Rule):
    """Unmatched recruiter outreach becomes an opportunity."""

    def plan(self) -> Optional[dict]:
        if self.matched or self.kind != "recruiter_outreach":
            return None

        classification = self.facts.get("classification") or {}
        if (classification.get("confidence") or 0.0) < OPPORTUNITY_MIN_CONFIDENCE:
            return noop_plan("recruiter_outreach_low_confidence")

        entities = self.facts.get("entities") or {}
        job = entities.get("job") or {}
        recruiter = entities.get("recruiter") or {}
        job_url = job.get("url") or self._job_link()

        evidence = (classification.get("evidence") or [])[:MAX_STEP_EVIDENCE]
        if not evidence and job_url:
            evidence = [f"job posting: {job_url}"]
        if not evidence:
            return noop_plan("recruiter_outreach_without_evidence")

        steps = [
            self.steps.step(
                "create_opportunity",
                params={
                    "company_name": (entities.get("company") or {}).get("name"),
                    "job_role_title": job.get("title"),
                    "job_url": job_url,
                    "recruiter_name": recruiter.get("name"),
                    "recruiter_email": recruiter.get("email"),
                    "key_details": self.facts.get("key_insights"),
                    "confidence": classification.get("confidence"),
                },
                evidence=evidence,
            )
        ]
        return apply_plan(steps, 0.75, ["recruiter_outreach: opportunity"])

    def _job_link(self) -> Optional[str]:
        for link in self.facts.get("action_links") or []:
            label = (link.get("action_label") or "").lower()
            if "job" in label or "posting" in label or "role" in label:
                return link.get("url")
        return None


class Planner:
    """Runs the rules in order; the first rule that applies decides."""

    RULES = (StatusUpdateRule, RoundFeedbackRule, SchedulingRule, OpportunityRule)

    def __init__(self, decision_input: dict):
        self.input = decision_input

    def plan(self) -> dict:
        steps = StepFactory()
        for rule_class in self.RULES:
            result = rule_class(self.input, steps).plan()
            if result is not None:
                logger.debug("Planner: %s -> %s", rule_class.__name__, result["decision"])
                return result
        return noop_plan("no_rule_matched")
