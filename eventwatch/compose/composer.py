"""
Turns message units into delivery plans.

The composer builds a deterministic fact sheet, asks the generation
service for one of three reply shapes, and validates the reply. Anything
it cannot validate is replaced by a template built from the facts alone.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from eventwatch.aggregator import MessageUnit, UnitKind
from eventwatch.data.news import Headline
from eventwatch.rules.types import AbnormalEvent
from .nlg import NLGClient, NLGError

logger = logging.getLogger(__name__)

GREETING = "Hey!"
MAX_SEGMENT_WORDS = 110
CALM_MESSAGE = (
    "Markets look pretty normal right now, no unusual moves in your holdings. "
    "I'm watching for big price swings, news surges and sentiment flips, "
    "and you'll hear from me when something interesting happens."
)
LAST_RESORT_MESSAGE = "Some of your holdings are moving. Check the app for details."

# Case-sensitive so all-caps tickers such as HI are never taken for a greeting
_GREETING_RE = re.compile(
    r"^\s*(([Hh]ey|[Hh]i|[Hh]ello)( there| again)?|[Mm]orning|[Gg]ood (morning|afternoon|evening))\b[\s,!.:-]*"
)
_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")

REASON_PHRASES = {
    "price_vs_volatility": "a move well beyond its usual swing",
    "sharp_intraday": "a sharp intraday swing",
    "gap_open": "a gap at the open",
    "news_surge": "a surge in news coverage",
    "sentiment_flip": "a shift in news sentiment",
    "escalation_news": "unusually heavy news flow",
}


class PlanKind(str, Enum):
    TEXT_ONLY = "text_only"
    TEASER_PLUS_SEGMENTS = "teaser_plus_segments"


@dataclass
class DeliveryPlan:
    """What a channel should send, in order."""

    kind: PlanKind
    body: str = ""
    teaser: str = ""
    segments: list[str] = field(default_factory=list)
    from_template: bool = False

    def __post_init__(self):
        if self.kind == PlanKind.TEASER_PLUS_SEGMENTS and not self.segments:
            raise ValueError("Teaser plans need at least one segment")

    @classmethod
    def text_only(cls, body: str, from_template: bool = False) -> "DeliveryPlan":
        return cls(kind=PlanKind.TEXT_ONLY, body=body, from_template=from_template)

    @classmethod
    def teaser_plus_segments(cls, teaser: str, segments: list[str]) -> "DeliveryPlan":
        return cls(kind=PlanKind.TEASER_PLUS_SEGMENTS, teaser=teaser, segments=segments)

    @property
    def lead(self) -> str:
        """The first message every channel sends."""
        return self.body if self.kind == PlanKind.TEXT_ONLY else self.teaser

    @property
    def messages(self) -> list[str]:
        return [self.lead, *self.segments]


@dataclass
class ComposeContext:
    """Facts shared by every unit of a batch."""

    market_headlines: list[Headline] = field(default_factory=list)
    dense: bool = False


# Reply contract with the generation service


class _Reply(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)


class TextOnlyReply(_Reply):
    format: Literal["text_only"]
    body: str = Field(min_length=1)


class TeaserPlusSegmentsReply(_Reply):
    format: Literal["teaser_plus_segments"]
    teaser: str = Field(min_length=1)
    segments: list[str] = Field(min_length=1)


class SummaryToAppReply(_Reply):
    format: Literal["summary_to_app"]
    body: str = Field(min_length=1)


NLGReply = Annotated[
    Union[TextOnlyReply, TeaserPlusSegmentsReply, SummaryToAppReply],
    Field(discriminator="format"),
]
_reply_adapter = TypeAdapter(NLGReply)


SYSTEM_PROMPT = f"""You are a calm, friendly market companion texting a friend about their portfolio.
You receive a JSON fact sheet and must reply with ONE JSON object in exactly one of these shapes:

{{"format": "text_only", "body": "..."}}
  Use when there is one clear cause and no conflicting signals. One short message covering everything.

{{"format": "teaser_plus_segments", "teaser": "...", "segments": ["...", "..."]}}
  Use when there is nuance, several sources, or an unclear cause. The teaser is one sentence.
  Each segment is a spoken explanation of at most {MAX_SEGMENT_WORDS} words (about 45 seconds).

{{"format": "summary_to_app", "body": "..."}}
  Use when the facts are too dense to explain in chat. A calm pointer to the full view in the app.

Rules:
- Only use formats listed in "allowed_formats".
- Mention news sources by name when headlines are given.
- If "greet" is false, do not open with a greeting.
- Never use the em-dash character.
- "message_role" is "summary" for a combined overview of several symbols; keep it to the theme and leave per-symbol detail out.
"""


def clean_text(text: str) -> str:
    """Apply house style: no em-dashes, single spaces."""
    text = re.sub(r"\s*—\s*", ", ", text)
    text = re.sub(r",\s*,", ",", text)
    text = re.sub(r"[ \t]+", " ", text)
    return text.strip()


def strip_greeting(text: str) -> str:
    stripped = _GREETING_RE.sub("", text, count=1).strip()
    if not stripped:
        return text
    return stripped[0].upper() + stripped[1:]


def has_greeting(text: str) -> bool:
    return bool(_GREETING_RE.match(text))


def split_segment(text: str, max_words: int = MAX_SEGMENT_WORDS) -> list[str]:
    """Split text into chunks of at most ``max_words`` words on sentence ends."""
    chunks: list[str] = []
    current: list[str] = []
    for sentence in _SENTENCE_RE.split(text.strip()):
        words = sentence.split()
        while len(words) > max_words:
            if current:
                chunks.append(" ".join(current))
                current = []
            chunks.append(" ".join(words[:max_words]))
            words = words[max_words:]
        if current and len(current) + len(words) > max_words:
            chunks.append(" ".join(current))
            current = []
        current.extend(words)
    if current:
        chunks.append(" ".join(current))
    return chunks


def _signed(value: float) -> str:
    return f"{value:+.1f}%"


class MessageComposer:
    """Builds a DeliveryPlan for each message unit."""

    def __init__(self, nlg: Optional[NLGClient] = None, max_segment_words: int = MAX_SEGMENT_WORDS):
        self.nlg = nlg
        self.max_segment_words = max_segment_words

    def compose(
        self, unit: MessageUnit, context: Optional[ComposeContext] = None
    ) -> DeliveryPlan:
        """
        Compose one unit. Never raises and never returns an empty plan.
        """
        context = context or ComposeContext()
        plan = None

        if self.nlg is not None and self.nlg.configured:
            try:
                raw = self.nlg.generate(SYSTEM_PROMPT, self.build_prompt(unit, context))
                plan = self.parse_reply(raw, dense=context.dense and unit.kind == UnitKind.SUMMARY)
            except NLGError as e:
                logger.info(f"Generation unavailable for {unit.symbols}, using template: {e}")
            except ValidationError as e:
                logger.info(f"Unusable generation reply for {unit.symbols}, using template: {e.error_count()} errors")

        if plan is None:
            plan = self.template(unit, context)

        return self._finish(plan, unit.greet)

    def compose_calm(self, greet: bool = True) -> DeliveryPlan:
        """Reassurance message for manual checks that found nothing."""
        return self._finish(DeliveryPlan.text_only(CALM_MESSAGE, from_template=True), greet)

    def build_prompt(self, unit: MessageUnit, context: ComposeContext) -> str:
        """Deterministic JSON fact sheet for the generation service."""
        dense = context.dense and unit.kind == UnitKind.SUMMARY
        sheet = {
            "message_role": unit.kind.value,
            "greet": unit.greet,
            "allowed_formats": (
                ["summary_to_app"]
                if dense
                else ["text_only", "teaser_plus_segments", "summary_to_app"]
            ),
            "max_segment_words": self.max_segment_words,
            "events": [self._event_facts(event) for event in unit.events],
            "market_headlines": [
                {"headline": h.headline, "source": h.source} for h in context.market_headlines
            ],
        }
        return json.dumps(sheet, sort_keys=True)

    def _event_facts(self, event: AbnormalEvent) -> dict:
        facts = event.facts
        return {
            "symbol": event.symbol,
            "severity": event.severity.label,
            "kinds": [kind.value for kind in event.kinds],
            "reasons": event.reasons,
            "price": facts.get("price"),
            "day_change_pct": facts.get("day_change_pct"),
            "direction": event.direction,
            "volatility_multiple": facts.get("volatility_multiple"),
            "headlines": facts.get("headlines", []),
            "sentiment_delta": facts.get("sentiment_delta"),
            "social": facts.get("social", {}),
        }

    def parse_reply(self, raw: str, dense: bool = False) -> DeliveryPlan:
        """
        Validate a generation reply into a plan.

        Raises:
            ValidationError: If the reply matches none of the three shapes
        """
        reply = _reply_adapter.validate_json(_extract_json(raw))

        if isinstance(reply, TeaserPlusSegmentsReply):
            segments = [s for s in reply.segments if s.strip()]
            if dense or not segments:
                return DeliveryPlan.text_only(reply.teaser)
            return DeliveryPlan.teaser_plus_segments(reply.teaser, segments)

        # text_only and summary_to_app both deliver one message
        return DeliveryPlan.text_only(reply.body)

    def template(self, unit: MessageUnit, context: ComposeContext) -> DeliveryPlan:
        """Deterministic fallback built from structured facts only."""
        try:
            if unit.kind == UnitKind.SUMMARY:
                body = self._summary_template(unit.events, context.dense)
            else:
                body = self._event_template(unit.events[0])
        except Exception as e:
            logger.warning(f"Template failed for {unit.symbols}: {e}")
            body = LAST_RESORT_MESSAGE
        return DeliveryPlan.text_only(body or LAST_RESORT_MESSAGE, from_template=True)

    def _event_template(self, event: AbnormalEvent) -> str:
        facts = event.facts
        price = facts.get("price")
        move = abs(event.day_change_pct)
        parts = [f"{event.symbol} is {event.direction} {move:.1f}% today"]
        if price is not None:
            parts[0] += f" at ${price:.2f}"
        multiple = facts.get("volatility_multiple")
        if multiple:
            parts[0] += f", {multiple:.1f}x its usual daily swing"
        parts[0] += "."

        phrases = [REASON_PHRASES[r] for r in event.reasons if r in REASON_PHRASES]
        if phrases:
            parts.append(f"Flagged for {', '.join(phrases)}.")

        headlines = facts.get("headlines") or []
        if headlines:
            first = headlines[0]
            parts.append(f"{first['source']} reports: {first['headline']}.")
        else:
            parts.append("No major headlines yet, but the market's reacting.")
        parts.append("Check the app for more.")
        return " ".join(parts)

    def _summary_template(self, events: list[AbnormalEvent], dense: bool) -> str:
        moves = ", ".join(f"{e.symbol} {_signed(e.day_change_pct)}" for e in events)
        text = f"{len(events)} of your holdings are moving: {moves}."
        if dense:
            text += " There's a lot going on, so I've summarized it in the app for you."
        else:
            text += " Details for each one below."
        return text

    def _finish(self, plan: DeliveryPlan, greet: bool) -> DeliveryPlan:
        """Apply style rules, segment limits and the greeting decision."""
        lead = clean_text(plan.lead) or LAST_RESORT_MESSAGE
        # Templates never greet, so only generated text is stripped
        if not plan.from_template:
            lead = strip_greeting(lead)
        if greet:
            lead = f"{GREETING} {lead}"

        if plan.kind == PlanKind.TEXT_ONLY:
            return DeliveryPlan.text_only(lead, from_template=plan.from_template)

        segments = []
        for segment in plan.segments:
            segments.extend(split_segment(clean_text(segment), self.max_segment_words))
        segments = [s for s in segments if s]
        if not segments:
            return DeliveryPlan.text_only(lead, from_template=plan.from_template)
        return DeliveryPlan.teaser_plus_segments(lead, segments)


def _extract_json(raw: str) -> str:
    """Drop markdown fences some models wrap around JSON."""
    text = raw.strip()
    if text.startswith("```"):
        text = re.sub(r"^```[a-zA-Z]*\s*", "", text)
        text = re.sub(r"\s*```$", "", text)
    return text
