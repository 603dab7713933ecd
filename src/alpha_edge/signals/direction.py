"""Lexical text scoring and event-vs-question direction resolution."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum

from alpha_edge.events.models import SourceEvent
from alpha_edge.signals.models import Direction

logger = logging.getLogger(__name__)

POSITIVE_KEYWORDS = frozenset({
    # German
    "gewinnt", "steigt", "erfolg", "sieg", "durchbruch", "einigung", "fortschritt",
    "wachstum", "rekord", "boom", "anstieg", "positiv", "optimistisch", "besser",
    "staerkt", "verbessert", "erreicht", "ueberraschend", "unterstuetzt", "bestaetigt",
    "fuehrt", "vorne", "mehrheit", "zustimmung", "genehmigt", "verabschiedet",
    # English
    "wins", "rises", "success", "victory", "breakthrough", "agreement", "progress",
    "growth", "record", "surge", "positive", "optimistic", "better", "stronger",
    "improves", "achieves", "surprising", "supports", "confirms", "leads", "ahead",
    "majority", "approval", "approved", "passed", "bullish", "rally",
})

NEGATIVE_KEYWORDS = frozenset({
    # German
    "verliert", "faellt", "scheitert", "niederlage", "krise", "absturz", "einbruch",
    "rueckgang", "negativ", "pessimistisch", "schlechter", "schwaecht", "verschlechtert",
    "verfehlt", "hinten", "minderheit", "ablehnung", "abgelehnt", "gescheitert",
    "warnung", "gefahr", "risiko", "konflikt", "eskalation", "sanktionen", "stopp",
    # English
    "loses", "falls", "fails", "defeat", "crisis", "crash", "collapse", "decline",
    "negative", "pessimistic", "worse", "weaker", "worsens", "misses", "behind",
    "minority", "rejection", "rejected", "failed", "warning", "danger", "risk",
    "conflict", "escalation", "sanctions", "halt", "bearish", "selloff",
})

BREAKING_INDICATORS = (
    "breaking", "eilmeldung", "just in", "developing", "aktuell", "live",
    "gerade eben", "soeben", "dringend", "urgent", "alert", "exclusive", "exklusiv",
)


def sentiment_score(events: list[SourceEvent]) -> float:
    """(positive - negative) / total keyword hits across events, in [-1, 1]."""
    positive = 0
    negative = 0
    for event in events:
        for word in event.text.lower().split():
            if word in POSITIVE_KEYWORDS:
                positive += 1
            if word in NEGATIVE_KEYWORDS:
                negative += 1
    total = positive + negative
    if total == 0:
        return 0.0
    return (positive - negative) / total


def impact_score(events: list[SourceEvent]) -> float:
    """Share of events carrying at least one breaking-news indicator."""
    if not events:
        return 0.0
    breaking = sum(
        1 for event in events
        if any(indicator in event.text.lower() for indicator in BREAKING_INDICATORS)
    )
    return breaking / len(events)


class EventAction(str, Enum):
    FIRED = "fired"
    RESIGNED = "resigned"
    LEAVES = "leaves"
    DIED = "died"
    ENDED = "ended"
    EXTENDED = "extended"
    SIGNED = "signed"
    WON = "won"
    ELECTED = "elected"
    LOST = "lost"
    FAILED = "failed"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    CEASEFIRE = "ceasefire"
    WAR_ENDS = "war_ends"
    ESCALATION = "escalation"
    UNKNOWN = "unknown"


class QuestionType(str, Enum):
    WILL_HAPPEN = "will_happen"
    WILL_STAY = "will_stay"
    WILL_END = "will_end"
    WILL_WIN = "will_win"
    WILL_NOT = "will_not"
    UNKNOWN = "unknown"


# First match wins, so order matters
_ACTION_PATTERNS: tuple[tuple[re.Pattern[str], EventAction, float], ...] = (
    (re.compile(r"entlass|gefeuert|rausgeworfen|fired|sacked|dismissed", re.I), EventAction.FIRED, -1.0),
    (re.compile(r"rücktritt|zurückgetreten|tritt zurück|resigns?|steps? down", re.I), EventAction.RESIGNED, -1.0),
    (re.compile(r"kündigt|verlässt|leaves|quits", re.I), EventAction.LEAVES, -1.0),
    (re.compile(r"gestorben|tot|stirbt|died|dead|death", re.I), EventAction.DIED, -1.0),
    (re.compile(r"ende|beendet|endet|ends?|over|finished", re.I), EventAction.ENDED, 0.0),
    (re.compile(r"verlängert|vertrag|contract.*extend|renew", re.I), EventAction.EXTENDED, 1.0),
    (re.compile(r"unterschrieb|signed|signs", re.I), EventAction.SIGNED, 1.0),
    (re.compile(r"gewinnt|gewonnen|wins?|won|victory|sieg", re.I), EventAction.WON, 1.0),
    (re.compile(r"gewählt|elected|wiedergewählt|re-?elected", re.I), EventAction.ELECTED, 1.0),
    (re.compile(r"verliert|verloren|loses?|lost|defeat", re.I), EventAction.LOST, -1.0),
    (re.compile(r"scheitert|gescheitert|fails?|failed", re.I), EventAction.FAILED, -1.0),
    (re.compile(r"bestätigt|confirmed|announces?|angekündigt", re.I), EventAction.CONFIRMED, 0.0),
    (re.compile(r"abgesagt|cancelled|canceled|postponed", re.I), EventAction.CANCELLED, -1.0),
    (re.compile(r"waffenstillstand|ceasefire|peace.*deal|friedens", re.I), EventAction.CEASEFIRE, 1.0),
    (re.compile(r"krieg.*ende|war.*end|kriegsende", re.I), EventAction.WAR_ENDS, 1.0),
    (re.compile(r"eskalation|escalat|angriff|attack|invasion", re.I), EventAction.ESCALATION, -1.0),
)

_QUESTION_PATTERNS: tuple[tuple[re.Pattern[str], QuestionType], ...] = (
    (re.compile(r"wird.*entlass|will.*fire|will.*sack|wird.*gefeuert", re.I), QuestionType.WILL_HAPPEN),
    (re.compile(r"bleibt|remain|stay|continues?|weiterhin", re.I), QuestionType.WILL_STAY),
    (re.compile(r"endet|end|beend|over|vorbei", re.I), QuestionType.WILL_END),
    (re.compile(r"gewinnt|win|victory|elected|gewählt", re.I), QuestionType.WILL_WIN),
    (re.compile(r"not|nicht|keine|won't|will not", re.I), QuestionType.WILL_NOT),
)

_PERSON_PATTERNS = (
    re.compile(r"(\w+)\s+(?:entlass|gefeuert|fired|sacked|resigned|tritt zurück)", re.I),
    re.compile(r"(?:entlass|fire|sack)\s+(\w+)", re.I),
)

_DEPARTURES = (EventAction.FIRED, EventAction.RESIGNED, EventAction.LEAVES)

# (action, question type) -> answers YES?
_ANSWER_TABLE: dict[tuple[EventAction, QuestionType], bool] = {
    **{(a, QuestionType.WILL_HAPPEN): True for a in _DEPARTURES},
    **{(a, QuestionType.WILL_STAY): False for a in _DEPARTURES},
    (EventAction.EXTENDED, QuestionType.WILL_STAY): True,
    (EventAction.EXTENDED, QuestionType.WILL_HAPPEN): False,
    (EventAction.SIGNED, QuestionType.WILL_STAY): True,
    (EventAction.SIGNED, QuestionType.WILL_HAPPEN): False,
    (EventAction.WON, QuestionType.WILL_WIN): True,
    (EventAction.ELECTED, QuestionType.WILL_WIN): True,
    (EventAction.LOST, QuestionType.WILL_WIN): False,
    (EventAction.FAILED, QuestionType.WILL_WIN): False,
    (EventAction.CEASEFIRE, QuestionType.WILL_END): True,
    (EventAction.WAR_ENDS, QuestionType.WILL_END): True,
    (EventAction.ESCALATION, QuestionType.WILL_END): False,
    (EventAction.CANCELLED, QuestionType.WILL_HAPPEN): False,
    (EventAction.CONFIRMED, QuestionType.WILL_HAPPEN): True,
}


@dataclass(frozen=True)
class DetectedAction:
    action: EventAction
    sentiment: float
    keyword: str | None = None


def detect_action(events: list[SourceEvent]) -> DetectedAction:
    """Main action described by the events; falls back to lexical sentiment."""
    text = " ".join(event.text for event in events).lower()
    for pattern, action, sentiment in _ACTION_PATTERNS:
        match = pattern.search(text)
        if match:
            return DetectedAction(action, sentiment, match.group(0))
    return DetectedAction(EventAction.UNKNOWN, sentiment_score(events))


def classify_question(question: str) -> QuestionType:
    for pattern, question_type in _QUESTION_PATTERNS:
        if pattern.search(question):
            return question_type
    return QuestionType.UNKNOWN


def _person_fallback(
    action: EventAction, question: str, events: list[SourceEvent],
) -> bool | None:
    """Same person named in headline and question: apply departure semantics."""
    if action not in _DEPARTURES:
        return None
    headlines = " ".join(event.title for event in events).lower()
    for pattern in _PERSON_PATTERNS:
        match = pattern.search(headlines)
        if not match or match.group(1).lower() not in question:
            continue
        if any(w in question for w in ("entlass", "fire", "sack")):
            return True
        if any(w in question for w in ("bleib", "remain", "stay")):
            return False
    return None


def event_answers_yes(
    detected: DetectedAction,
    question_type: QuestionType,
    question: str,
    events: list[SourceEvent],
) -> bool:
    action = detected.action

    if action is EventAction.DIED:
        return False

    answer = _ANSWER_TABLE.get((action, question_type))
    if answer is not None:
        return answer

    answer = _person_fallback(action, question, events)
    if answer is not None:
        return answer

    # Sentiment fallback
    if question_type is QuestionType.WILL_NOT:
        return not detected.sentiment > 0
    if question_type is QuestionType.WILL_HAPPEN and detected.sentiment < 0:
        # Negative news confirms "will X be fired?"-style questions
        return True
    return detected.sentiment >= 0


def resolve_direction(events: list[SourceEvent], question: str) -> Direction:
    """Which outcome the events support for the given market question."""
    q = question.lower()
    detected = detect_action(events)
    question_type = classify_question(q)
    yes = event_answers_yes(detected, question_type, q, events)

    logger.debug(
        "Direction: action=%s question_type=%s answers_yes=%s sentiment=%.2f",
        detected.action.value, question_type.value, yes, detected.sentiment,
    )
    return Direction.YES if yes else Direction.NO
