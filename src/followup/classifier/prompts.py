"""Prompt builders and tool definitions for the external AI classifier.

Both calls use forced tool use, so the model always answers through the
tool's JSON schema rather than free text.

Usage:
    from followup.classifier.prompts import CLASSIFY_EMAIL_TOOL, PromptAssembler

    assembler = PromptAssembler(body_max_chars=2000)
    message = assembler.build_classification_message(request)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from datetime import datetime

    from followup.classifier.ai_classifier import AIClassificationRequest
    from followup.classifier.models import EmailRecord
    from followup.config_schema import WorkingHoursConfig

# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------

CLASSIFY_EMAIL_TOOL: dict[str, Any] = {
    "name": "classify_email",
    "description": "Classify an email for follow-up triage",
    "input_schema": {
        "type": "object",
        "properties": {
            "priority": {
                "type": "string",
                "enum": ["CRITICAL", "HIGH", "MEDIUM", "LOW"],
            },
            "category": {
                "type": "string",
                "description": (
                    "One of work, personal, finance, newsletter, shopping, travel, "
                    "support, meeting, other"
                ),
            },
            "labels": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Short labels to apply (e.g. 'PA-Work')",
            },
            "needs_reply": {
                "type": "boolean",
                "description": "The email asks a question or makes a request of the user",
            },
            "waiting_on_others": {
                "type": "boolean",
                "description": "The user is waiting on someone else to act",
            },
            "sentiment": {
                "type": "string",
                "enum": ["POSITIVE", "NEUTRAL", "NEGATIVE", "URGENT", "ANGRY"],
            },
            "key_topics": {
                "type": "array",
                "items": {"type": "string"},
            },
            "suggested_actions": {
                "type": "array",
                "items": {
                    "type": "string",
                    "enum": [
                        "LABEL",
                        "ARCHIVE",
                        "STAR",
                        "FORWARD",
                        "DRAFT",
                        "SNOOZE",
                        "MARK_IMPORTANT",
                    ],
                },
            },
            "confidence": {
                "type": "number",
                "minimum": 0.0,
                "maximum": 1.0,
                "description": "Classification confidence score",
            },
            "reasoning": {
                "type": "string",
                "description": "One sentence explaining the classification",
            },
        },
        "required": [
            "priority",
            "category",
            "labels",
            "needs_reply",
            "sentiment",
            "confidence",
            "reasoning",
        ],
    },
}

SUGGEST_SNOOZE_TOOL: dict[str, Any] = {
    "name": "suggest_snooze",
    "description": "Suggest when the user should next look at an email",
    "input_schema": {
        "type": "object",
        "properties": {
            "suggested_time": {
                "type": "string",
                "description": "ISO 8601 datetime with UTC offset",
            },
            "alternative_times": {
                "type": "array",
                "items": {"type": "string"},
                "minItems": 2,
                "description": "At least two other ISO 8601 datetimes",
            },
            "urgency_level": {
                "type": "string",
                "enum": ["IMMEDIATE", "TODAY", "THIS_WEEK", "NEXT_WEEK", "LATER"],
            },
            "reasoning": {"type": "string"},
        },
        "required": ["suggested_time", "alternative_times", "urgency_level", "reasoning"],
    },
}

_CLASSIFY_PROPS = CLASSIFY_EMAIL_TOOL["input_schema"]["properties"]
VALID_AI_PRIORITIES = frozenset(_CLASSIFY_PROPS["priority"]["enum"])
VALID_AI_SENTIMENTS = frozenset(_CLASSIFY_PROPS["sentiment"]["enum"])
VALID_AI_ACTIONS = frozenset(_CLASSIFY_PROPS["suggested_actions"]["items"]["enum"])
VALID_URGENCY_LEVELS = frozenset(
    SUGGEST_SNOOZE_TOOL["input_schema"]["properties"]["urgency_level"]["enum"]
)

SYSTEM_PROMPT = """\
You are an email triage assistant. You classify incoming email so the user \
knows what needs a reply, what can wait and what can be archived.

Priority guidelines:
- CRITICAL: outages, legal or financial exposure, explicit same-day deadlines
- HIGH: urgent requests, time-sensitive matters, important senders
- MEDIUM: regular business communication, project updates, meeting requests
- LOW: newsletters, notifications, FYI mail, automated messages

needs_reply is true when the email asks the user a question or makes a request.
waiting_on_others is true when the user already asked and is waiting for an answer.
Always answer with the provided tool."""


class PromptAssembler:
    """Builds user messages for classification and snooze requests."""

    def __init__(self, body_max_chars: int = 2000):
        self._body_max_chars = body_max_chars

    def _truncate(self, body: str, limit: int | None = None) -> str:
        limit = limit or self._body_max_chars
        if len(body) <= limit:
            return body
        return body[:limit] + "\n[...truncated]"

    def build_classification_message(self, request: AIClassificationRequest) -> str:
        sections = [
            "Classify the following email.",
            "",
            f"Subject: {request.subject}",
            f"From: {request.sender}",
            f"To: {request.to}",
            "",
            "Body:",
            self._truncate(request.body),
        ]

        if request.previous_emails:
            sections += ["", f"Previous context (last {len(request.previous_emails)} emails):"]
            sections.append("\n---\n".join(request.previous_emails))

        if request.custom_rules:
            sections += ["", "Custom rules to consider:"]
            sections += [f"- {rule}" for rule in request.custom_rules]

        return "\n".join(sections)

    def build_snooze_message(
        self,
        email: EmailRecord,
        now: datetime,
        user_timezone: str,
        working_hours: WorkingHoursConfig | None,
    ) -> str:
        sections = [
            "Suggest when the user should next look at this email.",
            "",
            f"Subject: {email.subject}",
            f"From: {email.sender}",
            f"Received: {email.date.isoformat() if email.date else 'unknown'}",
            f"Current time: {now.isoformat()}",
            f"User timezone: {user_timezone}",
            "",
            "Content preview:",
            self._truncate(email.body, 500),
        ]

        if working_hours is not None:
            sections += ["", "Working hours:"]
            sections += [
                f"- {day}: {hours.start}-{hours.end}" for day, hours in working_hours.days.items()
            ]

        sections += [
            "",
            "All times must be in the future and inside working hours.",
        ]
        return "\n".join(sections)
