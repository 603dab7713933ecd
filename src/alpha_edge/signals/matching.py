"""Keyword and entity fuzzy matching of news events to markets."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from alpha_edge.events.models import SourceEvent
from alpha_edge.markets.models import MarketSnapshot

logger = logging.getLogger(__name__)

ENTITY_WEIGHT = 0.6
KEYWORD_WEIGHT = 0.4

STOPWORDS_DE = frozenset({
    "der", "die", "das", "den", "dem", "des", "ein", "eine", "einer", "eines", "einem", "einen",
    "und", "oder", "aber", "denn", "weil", "wenn", "als", "dass", "ob", "wie", "wo", "wer", "was",
    "ich", "du", "er", "sie", "es", "wir", "ihr", "sich", "mich", "dich", "uns", "euch",
    "mein", "dein", "sein", "unser", "euer", "meine", "deine", "seine", "ihre", "unsere", "eure",
    "ist", "sind", "war", "waren", "wird", "werden", "wurde", "wurden", "hat", "haben", "hatte", "hatten",
    "kann", "konnte", "muss", "musste", "soll", "sollte", "will", "wollte", "darf", "durfte",
    "nicht", "kein", "keine", "keiner", "keines", "keinem", "keinen",
    "auch", "noch", "schon", "nur", "immer", "wieder", "sehr", "mehr", "viel", "wenig",
    "hier", "dort", "da", "jetzt", "nun", "dann", "so", "also", "doch", "jedoch",
    "nach", "vor", "mit", "bei", "von", "aus", "zu", "bis", "durch", "um", "gegen", "ohne", "unter", "über",
    "auf", "an", "in", "im", "am", "zum", "zur", "vom", "beim",
    "alle", "alles", "jeder", "jede", "jedes", "dieser", "diese", "dieses", "welcher", "welche", "welches",
})

STOPWORDS_EN = frozenset({
    "the", "a", "an", "and", "or", "but", "if", "then", "else", "when", "where", "who", "what", "how", "why",
    "i", "you", "he", "she", "it", "we", "they", "me", "him", "her", "us", "them",
    "my", "your", "his", "its", "our", "their", "mine", "yours", "hers", "ours", "theirs",
    "is", "are", "was", "were", "be", "been", "being", "have", "has", "had", "having",
    "do", "does", "did", "doing", "will", "would", "could", "should", "may", "might", "must", "shall",
    "not", "no", "nor", "neither", "either", "both", "all", "each", "every", "some", "any", "many", "much",
    "this", "that", "these", "those", "which", "whose", "whom",
    "here", "there", "now", "so", "also", "too", "very", "just", "only", "even", "still", "already",
    "of", "to", "for", "with", "by", "from", "at", "in", "on", "about", "into", "through", "during", "before", "after",
    "above", "below", "between", "under", "over", "again", "further", "once",
    "than", "as", "because", "while", "although", "though", "since", "unless", "until",
})

STOPWORDS = STOPWORDS_DE | STOPWORDS_EN

KNOWN_ENTITIES = (
    # German politics
    "Merz", "Scholz", "Habeck", "Lindner", "Baerbock", "Weidel", "Chrupalla", "Wagenknecht",
    "CDU", "CSU", "SPD", "Gruene", "FDP", "AfD", "Linke", "BSW",
    "Bundestag", "Bundesrat", "Bundesregierung", "Kanzler", "Kanzleramt",
    # US politics
    "Trump", "Biden", "Harris", "Vance", "DeSantis", "Haley", "Ramaswamy", "Newsom", "Musk", "RFK",
    "Democrats", "Republicans", "GOP", "Congress", "Senate", "House",
    # International
    "Putin", "Zelenskyy", "Zelensky", "Macron", "Starmer", "Sunak", "Meloni", "Orban",
    "NATO", "EU", "UN", "WHO", "IMF", "ECB", "Fed", "OPEC",
    "Ukraine", "Russia", "China", "Iran", "Israel", "Gaza", "Taiwan",
    # Crypto and tech
    "Bitcoin", "Ethereum", "BTC", "ETH", "SEC", "Gensler",
    "Apple", "Google", "Microsoft", "Amazon", "Meta", "Tesla", "Nvidia", "OpenAI",
    # Sports
    "FIFA", "UEFA", "DFB", "Bundesliga", "Champions", "Bayern", "Dortmund", "Madrid", "Barcelona",
    "SuperBowl", "NFL", "NBA", "MLB",
)

_KNOWN_ENTITY_PATTERNS = tuple(
    (entity, re.compile(rf"\b{re.escape(entity)}\b", re.IGNORECASE)) for entity in KNOWN_ENTITIES
)
_NON_WORD = re.compile(r"[^\w\säöüß-]")
_CAPITALIZED = re.compile(r"\b[A-ZÄÖÜ][a-zäöüß]{2,}\b")
_ACRONYM = re.compile(r"\b[A-Z]{2,5}\b")


@dataclass
class MatchResult:
    """Fuzzy match of one event against one market."""

    market_id: str
    confidence: float
    matched_keywords: list[str] = field(default_factory=list)
    matched_entities: list[str] = field(default_factory=list)
    reasoning: str = ""


def levenshtein_distance(a: str, b: str) -> int:
    """Case-insensitive edit distance."""
    a = a.lower()
    b = b.lower()
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    previous = list(range(len(a) + 1))
    for i, cb in enumerate(b, start=1):
        current = [i]
        for j, ca in enumerate(a, start=1):
            cost = 0 if ca == cb else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def normalized_similarity(a: str, b: str) -> float:
    """1 - distance / max length, in [0, 1]."""
    max_len = max(len(a), len(b))
    if max_len == 0:
        return 1.0
    return 1.0 - levenshtein_distance(a, b) / max_len


def extract_keywords(text: str) -> list[str]:
    """Lowercased non-stopword tokens longer than two characters, longest first."""
    if not text:
        return []
    tokens = _NON_WORD.sub(" ", text.lower()).split()
    unique = dict.fromkeys(t for t in tokens if len(t) > 2 and t not in STOPWORDS)
    return sorted(unique, key=len, reverse=True)


def extract_entities(text: str) -> list[str]:
    """Known entities, capitalized words and acronyms found in the text."""
    if not text:
        return []

    entities: dict[str, None] = {}

    for entity, pattern in _KNOWN_ENTITY_PATTERNS:
        if pattern.search(text):
            entities[entity] = None

    for match in _CAPITALIZED.finditer(text):
        word = match.group(0)
        # Sentence-initial capitals are not names
        index = text.index(word)
        char_before = text[index - 2] if index > 1 else ""
        if char_before in (".", "!", "?", ":"):
            continue
        if word.lower() in STOPWORDS:
            continue
        entities[word] = None

    for acronym in _ACRONYM.findall(text):
        if acronym.lower() not in STOPWORDS:
            entities[acronym] = None

    return list(entities)


def _match_keywords(event_keywords: list[str], market_keywords: list[str]) -> list[str]:
    matched: list[str] = []
    for event_kw in event_keywords:
        ekw = event_kw.lower()
        for market_kw in market_keywords:
            mkw = market_kw.lower()
            if ekw == mkw:
                matched.append(event_kw)
                break
            if len(ekw) >= 5 and len(mkw) >= 5 and normalized_similarity(ekw, mkw) >= 0.8:
                matched.append(f"{event_kw}~{market_kw}")
                break
            if len(ekw) >= 4 and len(mkw) >= 4 and (ekw in mkw or mkw in ekw):
                matched.append(f"{event_kw}*")
                break
    return matched


def _match_entities(event_entities: list[str], market_entities: list[str]) -> list[str]:
    matched: list[str] = []
    for event_entity in event_entities:
        for market_entity in market_entities:
            if event_entity.lower() == market_entity.lower():
                matched.append(event_entity)
                break
            if normalized_similarity(event_entity, market_entity) >= 0.85:
                matched.append(f"{event_entity}~{market_entity}")
                break
    return matched


def match_confidence(
    matched_keywords: list[str],
    matched_entities: list[str],
    event_keyword_count: int,
    event_entity_count: int,
    market_keyword_count: int,
    market_entity_count: int,
) -> float:
    """Weighted entity/keyword overlap score in [0, 1]."""
    entity_score = 0.0
    if event_entity_count > 0 and market_entity_count > 0:
        entity_score = len(matched_entities) / min(event_entity_count, market_entity_count)
    elif matched_entities:
        entity_score = 0.5

    keyword_score = 0.0
    if event_keyword_count > 0 and market_keyword_count > 0:
        keyword_score = min(
            len(matched_keywords) / min(event_keyword_count, market_keyword_count), 1.0
        )

    confidence = entity_score * ENTITY_WEIGHT + keyword_score * KEYWORD_WEIGHT

    if len(matched_entities) >= 2:
        confidence += 0.1
    if len(matched_keywords) >= 3:
        confidence += 0.05

    # Keyword noise alone is not a match
    if not matched_entities and len(matched_keywords) < 2:
        confidence = 0.0

    return min(confidence, 1.0)


def _match_reasoning(keywords: list[str], entities: list[str], confidence: float) -> str:
    if confidence >= 0.7:
        parts = ["Strong match"]
    elif confidence >= 0.4:
        parts = ["Moderate match"]
    else:
        parts = ["Weak match"]

    if entities:
        parts.append(f"Entities: {', '.join(entities[:5])}")
    if keywords:
        shown = [kw.replace("~", "=").replace("*", "") for kw in keywords[:5]]
        parts.append(f"Keywords: {', '.join(shown)}")
    return " | ".join(parts)


def match_event(event: SourceEvent, markets: list[MarketSnapshot]) -> list[MatchResult]:
    """Match one event against every market.

    Returns matches with confidence > 0, best first.
    """
    text = event.text
    event_keywords = list(dict.fromkeys([*extract_keywords(text), *event.keywords]))
    event_entities = extract_entities(text)

    logger.debug(
        "Matching event %r (%d keywords, %d entities)",
        event.title[:50], len(event_keywords), len(event_entities),
    )

    results: list[MatchResult] = []
    for market in markets:
        market_keywords = extract_keywords(market.question)
        market_entities = extract_entities(market.question)

        keywords = _match_keywords(event_keywords, market_keywords)
        entities = _match_entities(event_entities, market_entities)

        confidence = match_confidence(
            keywords, entities,
            len(event_keywords), len(event_entities),
            len(market_keywords), len(market_entities),
        )
        if confidence <= 0:
            continue

        results.append(MatchResult(
            market_id=market.market_id,
            confidence=confidence,
            matched_keywords=list(dict.fromkeys(keywords)),
            matched_entities=list(dict.fromkeys(entities)),
            reasoning=_match_reasoning(keywords, entities, confidence),
        ))
        logger.debug(
            "Match %r -> confidence=%.2f keywords=%s entities=%s",
            market.question[:40], confidence, keywords[:3], entities,
        )

    results.sort(key=lambda r: r.confidence, reverse=True)
    return results


def batch_match(
    events: list[SourceEvent], markets: list[MarketSnapshot],
) -> dict[str, list[tuple[SourceEvent, MatchResult]]]:
    """Match every event against every market, grouped by market_id."""
    grouped: dict[str, list[tuple[SourceEvent, MatchResult]]] = {}
    for event in events:
        for match in match_event(event, markets):
            grouped.setdefault(match.market_id, []).append((event, match))
    return grouped
