"""
Intent Classifier - turns a free-text query into a search intent.

Intents:
- entity: find this exact thing (paths, identifiers, file names, short lookups)
- temporal: what changed recently
- relationship: what depends on / relates to something
- aspect: conventions, patterns, rules for an area of the project
- exploratory: open-ended natural language (catch-all)

The intent selects a weight vector in memdock.ranking. Rules are kept as
data and evaluated top to bottom; the first match wins.
"""

import re
from dataclasses import dataclass
from typing import Callable, List, Optional

from .records import IntentClassification

SEARCH_INTENTS = ("entity", "aspect", "temporal", "exploratory", "relationship")

TEMPORAL_PATTERN = re.compile(
    r"\b(recent(ly)?|latest|last\s+week|changed|new(ly)?|updated|since|yesterday|today)\b",
    re.IGNORECASE,
)
RELATIONSHIP_PATTERN = re.compile(
    r"\b(related\s+to|depends\s+on|connected|linked|references|impacts|affects)\b",
    re.IGNORECASE,
)
ASPECT_PATTERN = re.compile(
    r"\b(conventions?|rules?|patterns?|how\s+to|best\s+practice|style|strategy)\b",
    re.IGNORECASE,
)
QUESTION_PATTERN = re.compile(r"^(what|how|why|where|when|which|who|show|tell)\b", re.IGNORECASE)

PATH_PATTERN = re.compile(r"[/\\]")
IDENTIFIER_PATTERN = re.compile(r"^[A-Z][a-zA-Z0-9]+$|^[a-z]+(_[a-z]+)+$")
FILE_EXT_PATTERN = re.compile(r"\.\w{1,6}$")

# Context types an aspect query can point at
ASPECT_TYPE_NAMES = (
    "testing",
    "architecture",
    "coding_style",
    "constraints",
    "lessons_learned",
    "file_map",
    "folder_structure",
    "workflows",
    "dependencies",
    "deployment",
    "security",
)

_TERM_STRIP = re.compile(r"[^a-zA-Z0-9/\\_.\-]")


def extract_terms(query: str) -> List[str]:
    """Keep letters, digits, path separators, '.', '-' and '_'; drop 1-char tokens."""
    return [t for t in _TERM_STRIP.sub(" ", query).split() if len(t) > 1]


def suggest_types(query: str) -> Optional[List[str]]:
    """
    Aspect type names mentioned in the query.

    Plain substring containment, so short names can match inside longer
    words ("testing" inside "contesting").
    """
    lower = query.lower()
    matched = [
        name for name in ASPECT_TYPE_NAMES
        if name.replace("_", " ") in lower or name in lower
    ]
    return matched or None


@dataclass(frozen=True)
class _Query:
    """Pre-computed views of a query, shared by every rule."""
    text: str
    words: List[str]
    terms: List[str]
    suggested: Optional[List[str]]


def _has_trigger(q: _Query) -> bool:
    return bool(
        QUESTION_PATTERN.search(q.text)
        or TEMPORAL_PATTERN.search(q.text)
        or RELATIONSHIP_PATTERN.search(q.text)
        or ASPECT_PATTERN.search(q.text)
    )


@dataclass(frozen=True)
class IntentRule:
    """One (predicate, result) row of the classification table."""
    name: str
    matches: Callable[[_Query], bool]
    intent: str
    confidence: float
    suggests_types: bool = False


INTENT_RULES: List[IntentRule] = [
    IntentRule("path", lambda q: bool(PATH_PATTERN.search(q.text)), "entity", 0.9),
    IntentRule(
        "identifier",
        lambda q: len(q.words) == 1 and bool(IDENTIFIER_PATTERN.search(q.words[0])),
        "entity", 0.85,
    ),
    IntentRule("file_extension", lambda q: bool(FILE_EXT_PATTERN.search(q.text)), "entity", 0.8),
    IntentRule("short_lookup", lambda q: len(q.words) <= 3 and not _has_trigger(q), "entity", 0.6),
    IntentRule("temporal", lambda q: bool(TEMPORAL_PATTERN.search(q.text)), "temporal", 0.85),
    IntentRule("relationship", lambda q: bool(RELATIONSHIP_PATTERN.search(q.text)), "relationship", 0.8),
    IntentRule(
        "aspect",
        lambda q: bool(ASPECT_PATTERN.search(q.text)) or q.suggested is not None,
        "aspect", 0.75, suggests_types=True,
    ),
    IntentRule("fallback", lambda q: True, "exploratory", 0.5, suggests_types=True),
]


class IntentClassifier:
    """
    Classifies search queries with an ordered rule table.

    Deterministic and total: every string gets an intent, worst case the
    low-confidence `exploratory` catch-all.
    """

    def __init__(self, rules: Optional[List[IntentRule]] = None):
        self.rules = list(rules) if rules is not None else list(INTENT_RULES)

    def classify(self, query: Optional[str]) -> IntentClassification:
        """
        Classify a query.

        Args:
            query: Free-text search query

        Returns:
            IntentClassification with intent, confidence, extracted terms and,
            for aspect/exploratory, the suggested context types (or None)
        """
        text = (query or "").strip()
        q = _Query(
            text=text,
            words=text.split(),
            terms=extract_terms(text),
            suggested=suggest_types(text),
        )

        for rule in self.rules:
            if rule.matches(q):
                return IntentClassification(
                    intent=rule.intent,
                    confidence=rule.confidence,
                    extracted_terms=q.terms,
                    suggested_types=q.suggested if rule.suggests_types else None,
                )

        return IntentClassification(
            intent="exploratory", confidence=0.5, extracted_terms=q.terms,
            suggested_types=q.suggested,
        )


_default_classifier = IntentClassifier()


def classify_search_intent(query: Optional[str]) -> IntentClassification:
    """Classify with the default rule table."""
    return _default_classifier.classify(query)
