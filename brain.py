# requires: google-genai, python-dotenv, pydantic
"""
brain.py — CareGuide guidance assistant
Structured parent guidance from Gemini, plus the chat history around it.
Uses the google-genai SDK; the response is validated with pydantic.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from careguide.logger import log_event

load_dotenv()

# ──────────────────────────────────────────────
# Gemini client (google-genai SDK)
# ──────────────────────────────────────────────

_client = None

MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
TEMPERATURE = 0.9


def _get_client():
    global _client
    if _client is not None:
        return _client

    api_key = os.getenv("GOOGLE_API_KEY", "")
    if not api_key:
        return None

    from google import genai

    _client = genai.Client(api_key=api_key)
    return _client


# ──────────────────────────────────────────────
# Pydantic schemas (camelCase on the wire)
# ──────────────────────────────────────────────

class _Wire(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Support(_Wire):
    emotional_support: str = ""
    validation: str = ""


class AgeSpecificPlan(_Wire):
    autism: list[str] = []
    cerebral_palsy: list[str] = []
    combined: list[str] | None = None


class ActionPlan(_Wire):
    immediate_steps: list[str] = []
    # keyed by age as a string, "5" .. "17"
    age_specific_plans: dict[str, AgeSpecificPlan] = {}
    long_term_strategies: list[str] = []


class GuidanceResponse(_Wire):
    support: Support
    action_plan: ActionPlan
    therapy_suggestions: list[str]


class GuidanceError(BaseModel):
    error: str
    retryable: bool = True


GUIDANCE_FAILED = "Failed to get guidance. Please try again."
NO_API_KEY = "No API key configured. Add GOOGLE_API_KEY to your .env file."

DEFAULT_RESPONSE = GuidanceResponse(
    support=Support(
        emotional_support="We understand this is challenging",
        validation="Your feelings are completely valid",
    ),
    action_plan=ActionPlan(
        immediate_steps=[
            "Take a deep breath and pause for a moment",
            "Write down your most pressing concerns",
            "Reach out to someone you trust",
        ],
        age_specific_plans={
            "5": AgeSpecificPlan(
                autism=["Create visual schedules", "Establish sensory-friendly spaces"],
                cerebral_palsy=["Begin physical therapy", "Explore mobility aids"],
                combined=["Combine OT with PT sessions"],
            ),
        },
        long_term_strategies=[
            "Schedule an evaluation with a specialist",
            "Research local support resources",
            "Create a consistent daily schedule",
        ],
    ),
    therapy_suggestions=[
        "Occupational therapy for daily living skills",
        "Behavioral therapy for skill development",
    ],
)


# ──────────────────────────────────────────────
# 1. One-shot guidance request
# ──────────────────────────────────────────────

_GUIDANCE_SYSTEM = """\
You are a neurodevelopmental expert supporting parents of neurodivergent \
children (autism, cerebral palsy, or both), ages 5 to 17.

RESPONSE FORMAT — valid JSON only:
{"support": {"emotionalSupport": "...", "validation": "..."},
 "actionPlan": {
   "immediateSteps": ["...", "..."],
   "ageSpecificPlans": {"5": {"autism": ["..."], "cerebralPalsy": ["..."], \
"combined": ["..."]}, "...": {}},
   "longTermStrategies": ["...", "..."]},
 "therapySuggestions": ["...", "..."]}
"""


def strip_code_fences(raw: str) -> str:
    """Remove ```json / ``` fences a model may wrap around JSON."""
    return raw.replace("```json", "").replace("```", "").strip()


def parse_guidance(raw: str) -> GuidanceResponse:
    """
    Parse model text into a GuidanceResponse.
    Raises json.JSONDecodeError or pydantic.ValidationError when malformed.
    """
    data = json.loads(strip_code_fences(raw))
    return GuidanceResponse.model_validate(data)


def _guidance_prompt(concern: str, context: str) -> str:
    prompt = f'Current concern: "{concern}"'
    if context:
        prompt += f"\nPrevious context: {context}"
    return prompt


def get_parent_guidance(
    concern: str,
    context: str = "",
    client=None,
) -> GuidanceResponse | GuidanceError:
    """Ask Gemini for structured guidance. Malformed answers become a retryable error."""
    client = client or _get_client()

    if not client:
        log_event("GUIDANCE_ERROR", {"detail": NO_API_KEY})
        return GuidanceError(error=NO_API_KEY, retryable=False)

    try:
        from google.genai import types

        response = client.models.generate_content(
            model=MODEL,
            contents=_guidance_prompt(concern, context),
            config=types.GenerateContentConfig(
                system_instruction=_GUIDANCE_SYSTEM,
                response_mime_type="application/json",
                temperature=TEMPERATURE,
            ),
        )
        return parse_guidance(response.text or "")
    except (json.JSONDecodeError, ValidationError) as exc:
        log_event("GUIDANCE_ERROR", {"detail": f"Malformed response: {exc}"})
    except Exception as exc:
        log_event("GUIDANCE_ERROR", {"detail": f"Gemini API error: {type(exc).__name__}: {exc}"})
    return GuidanceError(error=GUIDANCE_FAILED)


# ──────────────────────────────────────────────
# 2. Chat session
# ──────────────────────────────────────────────

GENERAL_KEYWORDS = ["weather", "time", "capital", "how old", "who is"]
GENERAL_QUERY_REPLY = (
    "I specialize in neurodevelopmental guidance. "
    "For general questions like this, please try a different resource."
)
ERROR_REPLY = "Sorry, I encountered an error. Please try again later."
CONTEXT_TURNS = 3


def is_general_query(text: str) -> bool:
    lowered = text.lower()
    return any(k in lowered for k in GENERAL_KEYWORDS)


@dataclass
class ChatMessage:
    sender: Literal["parent", "guide"]
    content: str | GuidanceResponse
    is_general: bool = False

    def as_text(self) -> str:
        if isinstance(self.content, GuidanceResponse):
            return self.content.model_dump_json(by_alias=True)
        return self.content


def build_context(messages: list[ChatMessage], turns: int = CONTEXT_TURNS) -> str:
    """Last `turns` messages, minus general-query replies, joined with spaces."""
    recent = [m for m in messages[-turns:] if not m.is_general]
    return " ".join(m.as_text() for m in recent)


class GuidanceChat:
    """In-memory chat for one browser session."""

    def __init__(self, ask=None) -> None:
        self.messages: list[ChatMessage] = []
        self._ask = ask or get_parent_guidance

    def send(self, text: str) -> ChatMessage | None:
        text = text.strip()
        if not text:
            return None
        context = build_context(self.messages)
        self.messages.append(ChatMessage(sender="parent", content=text))

        if is_general_query(text):
            reply = ChatMessage(sender="guide", content=GENERAL_QUERY_REPLY, is_general=True)
        else:
            result = self._ask(text, context)
            if isinstance(result, GuidanceError):
                reply = ChatMessage(sender="guide", content=ERROR_REPLY)
            else:
                reply = ChatMessage(sender="guide", content=result)
        self.messages.append(reply)
        return reply

    def clear(self) -> None:
        self.messages.clear()


_CONDITION_FIELDS = {
    "autism": "autism",
    "cerebralPalsy": "cerebral_palsy",
    "combined": "combined",
}


def plan_for(response: GuidanceResponse, age: int | str, condition: str) -> list[str]:
    """Suggestions for one age/condition; empty when the model gave none."""
    plan = response.action_plan.age_specific_plans.get(str(age))
    field = _CONDITION_FIELDS.get(condition)
    if plan is None or field is None:
        return []
    return list(getattr(plan, field) or [])
