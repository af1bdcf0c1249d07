"""Facts -> decision input -> plan -> validation -> dispatch, for one email."""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from config.settings import settings
from src.persistence.models import EmailPipelineRun, SyncedEmail, utcnow
from src.signals.contracts import DecisionInput, DecisionPlan, contract_errors
from src.signals.decisioning.dispatcher import Dispatcher
from src.signals.decisioning.input_builder import DecisionInputBuilder
from src.signals.decisioning.planner import Planner
from src.signals.decisioning.validation import SemanticValidator
from src.signals.facts import EmailFactsExtractor, persisted_facts
from src.signals.recorder import EmailPipelineRecorder

logger = logging.getLogger(__name__)

EXECUTION_KEY = "decision_execution_v1"


class ExecutionRunner:
    """Plans and applies state changes for an email when decision execution is enabled."""

    def __init__(
        self,
        session: Session,
        synced_email: SyncedEmail,
        pipeline_run: Optional[EmailPipelineRun] = None,
        facts_extractor_factory=EmailFactsExtractor,
    ):
        self.session = session
        self.synced_email = synced_email
        self.recorder = EmailPipelineRecorder.for_run(session, pipeline_run)
        self.facts_extractor_factory = facts_extractor_factory

    def call(self) -> bool:
        """
        Run the decision pipeline.

        Returns:
            True when the plan was executed (including noop plans), False when
            execution is disabled or any validation stage failed
        """
        if not settings.signals_decision_execution_enabled:
            return False

        email = self.synced_email
        try:
            builder = DecisionInputBuilder(email)
            base = builder.build_base()
            facts = self._facts(builder, base)
            decision_input = {**base, "facts": facts}

            errors = contract_errors(DecisionInput, decision_input)
            if errors:
                return self._finish("decision_input_invalid", errors)

            plan = Planner(decision_input).plan()
            errors = contract_errors(DecisionPlan, plan)
            if errors:
                return self._finish("decision_plan_invalid", errors, plan=plan)

            if plan["decision"] == "apply":
                errors = SemanticValidator(decision_input, plan).errors()
                if errors:
                    return self._finish("semantic_invalid", errors, plan=plan)

            dispatcher = Dispatcher(self.session, email, recorder=self.recorder)
            applied = [dispatcher.dispatch(step) for step in plan["plan"]]
            return self._finish("executed", [], plan=plan, applied=applied)
        except Exception as e:
            logger.error("Decision execution failed: synced_email_id=%s %s: %s", email.id, type(e).__name__, e)
            self._finish("exception", [{"message": str(e), "class": type(e).__name__}])
            return False

    def _facts(self, builder: DecisionInputBuilder, base: dict) -> dict:
        """Stored facts, else freshly extracted facts, else rule-based fallback facts."""
        facts = persisted_facts(self.synced_email)
        if facts is not None:
            return facts
        if settings.signals_email_facts_extraction_enabled:
            result = self.facts_extractor_factory(self.session, self.synced_email, base).call()
            if result.get("success"):
                return result["facts"]
        return builder.build_fallback_facts()

    def _finish(
        self,
        status: str,
        errors: list[dict],
        plan: Optional[dict] = None,
        applied: Optional[list[dict]] = None,
    ) -> bool:
        record = {
            "status": status,
            "errors": errors,
            "decision": (plan or {}).get("decision"),
            "reasons": (plan or {}).get("reasons") or [],
            "applied": applied or [],
            "executed_at": utcnow().isoformat(),
        }
        self.synced_email.merge_extracted_data(**{EXECUTION_KEY: record})
        self.session.flush()

        if self.recorder is not None:
            self.recorder.event(
                "decision_execution",
                "success" if status == "executed" else "failed",
                output_payload=record,
            )
        log = logger.info if status == "executed" else logger.warning
        log("Decision execution %s: synced_email_id=%s errors=%d", status, self.synced_email.id, len(errors))
        return status == "executed"
