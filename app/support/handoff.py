"""Detect when a chat should be handed to a human.

Two signals feed the support router: the tool calls a model makes when it
supports function calling, and a keyword fallback over the last user message
for providers that do not.
"""
from __future__ import annotations

from typing import Iterable, Optional

from .models import MessageRole, Urgency
from .schemas import ChatTurn, SentimentAnalysis, ToolCall

HANDOFF_KEYWORDS = (
    "talk to a person",
    "speak to a human",
    "real person",
    "human agent",
    "talk to human",
    "speak to person",
    "want a person",
    "need a human",
    "customer service",
    "support agent",
    "live agent",
    "not helpful",
    "prata med människa",
    "riktig person",
    "mänsklig support",
)

KEYWORD_TRIGGER = "User explicitly requested human support"

HANDOFF_TOOL = "handoff_to_human"
ESCALATION_TOOL = "create_escalation"
HANDOFF_TOOLS = frozenset({HANDOFF_TOOL, ESCALATION_TOOL})


def last_user_message(messages: Iterable[ChatTurn]) -> str:
    last = ""
    for message in messages:
        if message.role == MessageRole.USER:
            last = message.content or ""
    return last


def detect_handoff_request(messages: Iterable[ChatTurn]) -> SentimentAnalysis:
    text = last_user_message(messages).lower()
    if any(keyword in text for keyword in HANDOFF_KEYWORDS):
        return SentimentAnalysis(
            frustrationLevel=8,
            urgency=Urgency.HIGH,
            humanNeeded=True,
            trigger=KEYWORD_TRIGGER,
        )
    return SentimentAnalysis(humanNeeded=False)


def sentiment_from_tool_call(tool_call: ToolCall) -> Optional[SentimentAnalysis]:
    """Map a ``handoff_to_human``/``create_escalation`` call to a sentiment.

    Other tools return ``None``. An urgency outside the known levels falls
    back to ``normal`` rather than failing the whole chat turn.
    """

    if tool_call.name not in HANDOFF_TOOLS:
        return None
    args = tool_call.arguments or {}
    raw_urgency = args.get("urgency") or args.get("priority") or Urgency.NORMAL.value
    try:
        urgency = Urgency(str(raw_urgency).lower())
    except ValueError:
        urgency = Urgency.NORMAL
    return SentimentAnalysis(
        frustrationLevel=8 if tool_call.name == HANDOFF_TOOL else 5,
        urgency=urgency,
        humanNeeded=True,
        trigger=args.get("reason") or args.get("summary") or "User requested",
    )


def check_handoff(
    messages: Iterable[ChatTurn], tool_call: Optional[ToolCall] = None
) -> SentimentAnalysis:
    """Tool call wins when present; otherwise fall back to keywords."""

    if tool_call is not None:
        sentiment = sentiment_from_tool_call(tool_call)
        if sentiment is not None:
            return sentiment
    return detect_handoff_request(messages)
