"""Rule-based email type classification."""
import re
from typing import Iterable, Optional

EMAIL_TYPE_PATTERNS = {
    "interview_invite": [
        r"interview\s+(invitation|invite|scheduled|confirmed)",
        r"schedule\s+(a|an|your|the)\s+interview",
        r"invit(e|ing)\s+you\s+(to|for)\s+(an?\s+)?interview",
        r"would\s+like\s+to\s+interview",
        r"meet\s+with\s+(our|the)\s+team",
        r"phone\s+screen",
        r"technical\s+interview",
        r"on-?site\s+interview",
        r"video\s+interview",
        r"zoom\s+(interview|call|meeting)",
        r"\b(first|initial|final|next|second|third)\s+interview\b",
        r"interview\s+(with|at)\s+\w+",
        r"I\s+recruit",
        r"recruiter\s+(at|for|from)",
        r"set\s+up\s+(a\s+)?time\s+(for\s+us\s+)?to\s+(chat|talk|meet|speak)",
        r"excited\s+to\s+(get\s+to\s+)?know\s+you",
    ],
    "scheduling": [
        r"schedule\s+(a\s+|the\s+)?(call|meeting|time)",
        r"book\s+(a\s+)?time",
        r"calendly",
        r"goodtime\.io",
        r"pick\s+a\s+time",
        r"available\s+times?",
        r"when\s+are\s+you\s+available",
        r"set\s+up\s+(a\s+)?time",
        r"visit\s+this\s+link",
    ],
    "application_confirmation": [
        r"thank\s+you\s+for\s+(applying|your\s+application)",
        r"application\s+(received|submitted|confirmed)",
        r"we\s+(have\s+)?received\s+your\s+application",
        r"successfully\s+applied",
        r"application\s+for\s+.+\s+position",
    ],
    "rejection": [
        r"we\s+(regret|unfortunately|are\s+sorry)",
        r"not\s+(be\s+)?moving\s+forward",
        r"decided\s+(not\s+)?to\s+proceed",
        r"position\s+has\s+been\s+filled",
        r"not\s+a\s+(good\s+)?fit",
        r"won'?t\s+be\s+(moving|proceeding)",
        r"pursuing\s+other\s+candidates",
    ],
    "offer": [
        r"offer\s+(letter|of\s+employment)",
        r"pleased\s+to\s+offer",
        r"extend(ing)?\s+(an?\s+)?offer",
        r"job\s+offer",
        r"congratulations",
        r"welcome\s+to\s+the\s+team",
        r"excited\s+to\s+have\s+you\s+join",
    ],
    "assessment": [
        r"coding\s+(challenge|test|assessment)",
        r"take-?home\s+(assignment|test|project)",
        r"technical\s+assessment",
        r"skills?\s+assessment",
        r"hackerrank",
        r"codility",
        r"leetcode",
        r"complete\s+the\s+(following\s+)?assessment",
    ],
    "follow_up": [
        r"following\s+up",
        r"checking\s+in",
        r"wanted\s+to\s+follow\s+up",
        r"any\s+updates?",
        r"status\s+of\s+(my|your)\s+application",
    ],
    "thank_you": [
        r"thank\s+you\s+for\s+(your\s+time|meeting|interviewing)",
        r"great\s+meeting\s+you",
        r"enjoyed\s+(speaking|talking|meeting)",
    ],
    "recruiter_outreach": [
        r"exciting\s+(opportunity|role|position)",
        r"perfect\s+fit",
        r"great\s+fit",
        r"your\s+(profile|background|experience)",
        r"reaching\s+out",
        r"interested\s+in\s+you",
        r"open\s+position",
        r"hiring\s+for",
        r"would\s+you\s+be\s+interested",
        r"great\s+match",
        r"ideal\s+candidate",
        r"thought\s+of\s+you",
        r"came\s+across\s+your",
        r"found\s+your\s+profile",
        r"saw\s+your\s+resume",
        r"impressive\s+background",
        r"looking\s+for\s+someone",
        r"we\s+have\s+an\s+opening",
        r"new\s+opportunity",
        r"career\s+opportunity",
    ],
    "round_feedback": [
        # Passed / moving forward
        r"you('ve| have)?\s+(passed|cleared|moved forward)",
        r"pleased\s+to\s+inform\s+you",
        r"congratulations.*next\s+(round|stage)",
        r"moving\s+(you\s+)?(forward|ahead)",
        r"advancing\s+to\s+(the\s+)?next",
        r"proceed(ing)?\s+to\s+(the\s+)?(next|final)",
        r"happy\s+to\s+share.*(passed|moved)",
        r"great\s+news.*(passed|next\s+round)",
        # Single-round rejection
        r"unfortunately.*not\s+(moving|proceeding)",
        r"decided\s+not\s+to\s+move\s+forward",
        # Feedback
        r"feedback\s+(from|on)\s+your\s+(interview|round)",
        r"interview\s+feedback",
        r"results?\s+(of|from)\s+(your\s+)?interview",
        r"outcome\s+(of|from)\s+(your\s+)?interview",
        r"update\s+on\s+your\s+(interview|round)",
        # Waitlist
        r"waitlist(ed)?",
        r"hold\s+for\s+now",
        r"keep\s+you\s+in\s+mind",
    ],
}

COMPILED_PATTERNS = {
    email_type: [re.compile(p, re.I) for p in patterns]
    for email_type, patterns in EMAIL_TYPE_PATTERNS.items()
}

# First match wins when several types match
EMAIL_TYPE_PRIORITY = [
    "rejection",
    "round_feedback",
    "offer",
    "assessment",
    "scheduling",
    "interview_invite",
    "application_confirmation",
    "follow_up",
    "thank_you",
    "recruiter_outreach",
]

# A user's own sent mail can't carry these outcomes
SELF_SENT_TYPE_BLACKLIST = {"rejection", "round_feedback", "offer"}

STRONG_OFFER_PATTERNS = [
    re.compile(p, re.I)
    for p in (
        r"offer\s+(letter|of\s+employment)",
        r"pleased\s+to\s+offer",
        r"extend(ing)?\s+(an?\s+)?offer",
        r"welcome\s+to\s+the\s+team",
        r"excited\s+to\s+have\s+you\s+join",
    )
]

REPLY_SEPARATORS = [
    re.compile(p, re.I)
    for p in (
        r"^On .+ wrote:$",
        r"^On .+sent:$",
        r"^On .+wrote$",
        r"^From:\s+",
        r"^Sent:\s+",
        r"^To:\s+",
        r"^Subject:\s+",
        r"^-----Original Message-----",
        r"^----- Forwarded message -----",
        r"^Begin forwarded message:",
    )
]

PROXY_SENDER_DOMAINS = {"linkedin.com", "mail.linkedin.com"}
PROXY_SENDER_EMAILS = {"inmail-hit-reply@linkedin.com"}

GENERIC_DOMAINS = {
    "gmail.com",
    "yahoo.com",
    "hotmail.com",
    "outlook.com",
    "icloud.com",
    "aol.com",
    "mail.com",
    "protonmail.com",
}


def is_reply_separator(line: str) -> bool:
    normalized = line.strip()
    return any(p.search(normalized) for p in REPLY_SEPARATORS)


def primary_body(body: Optional[str]) -> str:
    """Body text above the first quoted-reply separator, minus ``>`` lines.

    Falls back to the full body when trimming leaves nothing.
    """
    if not body or not body.strip():
        return ""
    lines = body.split("\n")
    cutoff = next((i for i, line in enumerate(lines) if is_reply_separator(line)), None)
    kept = lines[:cutoff] if cutoff is not None else lines
    kept = [line for line in kept if not line.lstrip().startswith(">")]
    trimmed = "\n".join(kept).strip()
    return trimmed or body


def matched_types(content: str) -> list[str]:
    """All email types with at least one matching pattern."""
    return [
        email_type
        for email_type, patterns in COMPILED_PATTERNS.items()
        if any(p.search(content) for p in patterns)
    ]


def choose_email_type(types: Iterable[str]) -> Optional[str]:
    types = list(types)
    for email_type in EMAIL_TYPE_PRIORITY:
        if email_type in types:
            return email_type
    return types[0] if types else None


def has_strong_offer_signal(content: str) -> bool:
    return bool(content) and any(p.search(content) for p in STRONG_OFFER_PATTERNS)


def is_proxy_sender(from_email: Optional[str]) -> bool:
    address = (from_email or "").lower()
    if address in PROXY_SENDER_EMAILS:
        return True
    return address.rsplit("@", 1)[-1] in PROXY_SENDER_DOMAINS if "@" in address else False


def is_generic_domain(domain: Optional[str]) -> bool:
    return (domain or "").lower() in GENERIC_DOMAINS


def domains_match(sender_domain: str, company_domain: str) -> bool:
    """Same domain, or one is a subdomain of the other."""
    return (
        sender_domain == company_domain
        or sender_domain.endswith(f".{company_domain}")
        or company_domain.endswith(f".{sender_domain}")
    )


def classify(content: str, self_sent: bool = False, proxy_sender: bool = False) -> Optional[str]:
    """
    Pick an email type from pattern matches.

    Args:
        content: Subject plus primary body
        self_sent: Sender is the user (outcome types are dropped)
        proxy_sender: Relayed by a platform like LinkedIn (weak "offer" dropped)

    Returns:
        Highest-priority matching type, or None when nothing matched
    """
    types = matched_types(content)
    if self_sent:
        types = [t for t in types if t not in SELF_SENT_TYPE_BLACKLIST]
    if proxy_sender and "offer" in types and not has_strong_offer_signal(content):
        types.remove("offer")
    return choose_email_type(types)
