"""Canonical email events and LLM-extracted workflow facts."""
import json
import logging
import re
from typing import Optional

from sqlalchemy.orm import Session

from src.gmail.classifier import is_reply_separator
from src.gmail.client import html_to_text
from src.llm import prompts
from src.llm.response_parser import parse_json_response
from src.llm.runner import ProviderRunner
from src.persistence.models import SyncedEmail, utcnow
from src.signals.contracts import EmailFacts, contract_errors

logger = logging.getLogger(__name__)

URL_RE = re.compile(r"https?://[^\s<>\"')]+", re.I)
MAX_LINKS = 50

FACTS_KEY = "email_facts_v1"
FACTS_META_KEY = "email_facts_meta_v1"


def canonicalize_text(text: Optional[str]) -> str:
    """Drop quoted replies and ``>`` lines, then collapse whitespace."""
    if not text:
        return ""
    lines = re.sub(r"\r\n?", "\n", text).split("\n")
    cutoff = next((i for i, line in enumerate(lines) if is_reply_separator(line)), None)
    kept = lines[:cutoff] if cutoff is not None else lines
    kept = [line for line in kept if not line.lstrip().startswith(">")]
    return re.sub(r"\s+", " ", "\n".join(kept)).strip()


def extract_links(text: str) -> list[dict]:
    seen = []
    for url in URL_RE.findall(text or ""):
        if url not in seen:
            seen.append(url)
    return [{"url": url, "label_hint": None} for url in seen[:MAX_LINKS]]


def canonical_email_event(email: SyncedEmail) -> dict:
    """Normalized view of an email used as decision input."""
    if email.body_preview:
        raw, source = email.body_preview, "body_preview"
    elif email.body_html:
        raw, source = html_to_text(email.body_html), "body_html"
    else:
        raw, source = email.snippet or "", "snippet"

    text = canonicalize_text(raw)
    email_date = email.email_date.isoformat() if email.email_date else None
    return {
        "event_type": "email",
        "synced_email_id": email.id,
        "thread_id": email.thread_id,
        "received_at": email_date,
        "email_date": email_date,
        "from": {"email": email.from_email, "name": email.from_name},
        "to": [],
        "subject": email.subject,
        "body": {
            "text": text,
            "source": source,
            "truncated": False,
            "normalization": {
                "replies_removed": True,
                "html_stripped": source == "body_html",
                "whitespace_collapsed": True,
            },
        },
        "links": extract_links(text),
    }


def persisted_facts(email: SyncedEmail) -> Optional[dict]:
    """Previously extracted facts when their meta says ok and they still validate."""
    data = email.extracted_data or {}
    facts = data.get(FACTS_KEY)
    meta = data.get(FACTS_META_KEY)
    if not isinstance(facts, dict) or not isinstance(meta, dict) or meta.get("status") != "ok":
        return None
    if contract_errors(EmailFacts, facts):
        return None
    return facts


class EmailFactsExtractor:
    """Runs the email_facts_extraction prompt and stores validated facts on the email."""

    OPERATION = "email_facts_extraction"

    def __init__(
        self,
        session: Session,
        synced_email: SyncedEmail,
        decision_input_base: dict,
        runner_factory=ProviderRunner,
    ):
        """
        Args:
            session: Database session
            synced_email: Email to extract facts from
            decision_input_base: Decision input without facts (event, match, application)
            runner_factory: ProviderRunner or a compatible factory
        """
        self.session = session
        self.synced_email = synced_email
        self.decision_input_base = decision_input_base
        self.runner_factory = runner_factory

    def call(self) -> dict:
        """
        Extract facts.

        Returns:
            {success: True, facts, llm_api_log_id} or {success: False, error}
        """
        email = self.synced_email
        logger.info("EmailFacts extraction start: synced_email_id=%s", email.id)
        try:
            prompt_system, prompt = self._build_prompt()
            runner = self.runner_factory(
                self.session,
                operation=self.OPERATION,
                prompt=prompt,
                system_message=prompt_system,
                content_size=len(prompt.encode("utf-8")),
                loggable=email,
                max_tokens=2500,
                temperature=0.1,
            )
            result = runner.run(self._accept)

            if not result["success"]:
                logger.warning("EmailFacts extraction failed: synced_email_id=%s error=%s", email.id, result.get("error"))
                self._persist(None, {"status": "failed", "errors": [{"message": result.get("error")}]})
                return {"success": False, "error": result.get("error")}

            facts = result["parsed"]
            self._persist(
                facts,
                {
                    "status": "ok",
                    "provider": result.get("provider"),
                    "model": result.get("model"),
                    "llm_api_log_id": result.get("llm_api_log_id"),
                    "latency_ms": result.get("latency_ms"),
                },
            )
            logger.info(
                "EmailFacts extraction ok: synced_email_id=%s kind=%s",
                email.id,
                (facts.get("classification") or {}).get("kind"),
            )
            return {"success": True, "facts": facts, "llm_api_log_id": result.get("llm_api_log_id")}
        except Exception as e:
            logger.error("EmailFacts extraction exception: synced_email_id=%s %s: %s", email.id, type(e).__name__, e)
            self._persist(None, {"status": "exception", "errors": [{"message": str(e), "class": type(e).__name__}]})
            return {"success": False, "error": str(e)}

    def _build_prompt(self) -> tuple[Optional[str], str]:
        event = self.decision_input_base["event"]
        snapshot = self.decision_input_base.get("application")
        return prompts.render(
            self.OPERATION,
            subject=event.get("subject") or "",
            body=event["body"]["text"],
            from_email=event["from"].get("email") or "",
            from_name=event["from"].get("name") or "",
            email_type=self.synced_email.email_type or "",
            application_snapshot=json.dumps(snapshot, indent=2) if snapshot else "null",
        )

    @staticmethod
    def _accept(response: dict) -> tuple[dict, dict, bool]:
        parsed = parse_json_response(response.get("content")) or {}
        errors = contract_errors(EmailFacts, parsed)
        log_data = {
            "schema_valid": not errors,
            "schema_error_count": len(errors),
            "classification_kind": (parsed.get("classification") or {}).get("kind"),
            "confidence": (parsed.get("extraction") or {}).get("confidence"),
        }
        return parsed, {k: v for k, v in log_data.items() if v is not None}, not errors

    def _persist(self, facts: Optional[dict], meta: dict) -> None:
        self.synced_email.merge_extracted_data(
            **{FACTS_KEY: facts, FACTS_META_KEY: {**meta, "generated_at": utcnow().isoformat()}}
        )
        self.session.flush()
