"""
Candidate Extractor - proposes memories from a conversation turn.

Scans user/assistant text line by line for high-signal phrasing (decisions,
constraints, fixes, known issues, ideas, testing notes) and turns the best
lines into CandidateMemory proposals. Generic tool-usage narration yields
nothing. The extractor only proposes: candidates still go through write
admission before anything is stored.
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Pattern, Tuple

from .config import settings
from .records import CandidateMemory

CANDIDATE_TYPES = (
    "constraints",
    "lessons_learned",
    "decisions",
    "known_issues",
    "user_ideas",
    "testing",
    "workflow",
)

MIN_LINE_LENGTH = 20
MAX_LINE_LENGTH = 320
MIN_WORDS = 8
# Questions shorter than this are conversational, not project knowledge
QUESTION_WORD_LIMIT = 15
MIN_SCORE = 5
CONFIDENCE_SCALE = 15.0


@dataclass(frozen=True)
class Signal:
    name: str
    pattern: Pattern
    weight: int
    tag: str


# Evaluated in this order; tags are emitted in this order too
SIGNALS: List[Signal] = [
    Signal(
        "decision",
        re.compile(r"\b(decided|decision|chose|chosen|opted|selected|tradeoff|trade-off|approach)\b"),
        4,
        "signal:decision",
    ),
    Signal(
        "constraint",
        re.compile(r"\b(must|must not|cannot|can't|do not|never|required|requirement|should not|only)\b"),
        4,
        "signal:constraint",
    ),
    Signal(
        "testing",
        re.compile(r"\b(test|coverage|assert|pytest|vitest|jest|e2e)\b"),
        3,
        "signal:testing",
    ),
    Signal(
        "outcome",
        re.compile(
            r"\b(fixed|implemented|added|updated|refactored|migrated|resolved|shipped|created|"
            r"removed|changed|modified|deleted|moved|renamed|replaced|configured|deployed|"
            r"installed|fixing|implementing|adding|updating|creating|removing|changing|"
            r"modifying|deleting|renaming|replacing|configuring|deploying)\b"
        ),
        3,
        "signal:outcome",
    ),
    Signal(
        "idea",
        re.compile(r"\b(want to|should add|would be nice|idea:|feature request|enhancement|plan to add)\b"),
        3,
        "signal:idea",
    ),
    Signal(
        "known_issue",
        re.compile(r"\b(workaround|gotcha|caveat|known issue|breaks when|flaky|intermittent|hack:)\b"),
        4,
        "signal:known-issue",
    ),
    Signal(
        "issue",
        re.compile(r"\b(error|failed|failure|blocked|issue|bug|regression|not working|broke)\b"),
        5,
        "signal:issue",
    ),
]

# (signal, type, priority); first match wins
TYPE_RULES: List[Tuple[Optional[str], str, int]] = [
    ("issue", "lessons_learned", 82),
    ("known_issue", "known_issues", 76),
    ("idea", "user_ideas", 64),
    ("testing", "testing", 68),
    ("constraint", "constraints", 78),
    ("decision", "decisions", 72),
    ("outcome", "workflow", 66),
    (None, "workflow", 60),
]

PROJECT_SIGNAL_WEIGHT = 3
LONG_LINE_BONUS = 1
LONG_LINE_LENGTH = 150

_PROJECT_PATTERNS = (
    re.compile(r"[/_-]"),
    re.compile(r"\b[a-z0-9_-]+\.[a-z0-9_-]+\b"),
    re.compile(
        r"\b(api|route|schema|table|component|hook|migration|branch|mcp|build|ci|file|function|"
        r"module|config|page|layout|server|client|database|endpoint|query|type|interface|class|"
        r"method|middleware|handler|service|model|controller|template|style|store|provider)\b"
    ),
)

_GENERIC_CAPABILITY = re.compile(
    r"(scan(ning)? files?|search(ing)? (for )?patterns?|use (rg|ripgrep|grep)|read files?|"
    r"find files?|use terminal commands?)"
)
_SPECIFIC_DETAIL = (
    re.compile(r"[/_-]"),
    re.compile(r"\b[a-z0-9_-]+\.[a-z0-9_-]+\b"),
    re.compile(
        r"(api|schema|migration|component|endpoint|workflow|billing|auth|branch|test|python|"
        r"docker|mcp|file|function|module|config|page|layout|server|client|database|query|type|"
        r"interface|class|method|middleware|handler|service|model|controller)"
    ),
)

_QUESTION_START = re.compile(r"^(what|why|how|is |are |do |does |can |could |where |when |any )", re.IGNORECASE)
_SENTENCE_BREAK = re.compile(r"(?<=[.!?])\s+")


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "_", value.lower()).strip("_")[:64]
    return slug or "note"


def title_from_content(content: str) -> str:
    trimmed = content[:-1] if content.endswith(".") else content
    return trimmed if len(trimmed) <= 72 else f"{trimmed[:69]}..."


def _sanitize_line(line: str) -> str:
    line = re.sub(r"^[-*]\s+", "", line)
    line = re.sub(r"^#{1,6}\s+", "", line)
    return line.replace("`", "").strip()


def split_lines(text: str) -> List[str]:
    """Split into lines and sentences, strip markdown, keep 20..320-char lines."""
    lines = []
    for raw in text.replace("\r\n", "\n").split("\n"):
        for sentence in _SENTENCE_BREAK.split(raw):
            line = _sanitize_line(sentence)
            if MIN_LINE_LENGTH <= len(line) <= MAX_LINE_LENGTH:
                lines.append(line)
    return lines


def is_generic_capability_noise(line: str) -> bool:
    """Tool-usage narration ("use rg to search...") with nothing project-specific in it."""
    text = line.lower()
    if not _GENERIC_CAPABILITY.search(text):
        return False
    return not any(p.search(text) for p in _SPECIFIC_DETAIL)


def _has_project_signal(text: str) -> bool:
    return any(p.search(text) for p in _PROJECT_PATTERNS)


def classify_line(line: str) -> Optional[Dict]:
    """
    Score one line. Returns {"type", "priority", "tags", "score"} or None
    when the line is too short, a bare question, or too weak a signal.
    """
    text = line.lower()
    words = text.split()
    if len(words) < MIN_WORDS:
        return None
    if len(words) < QUESTION_WORD_LIMIT and _QUESTION_START.match(text.strip()):
        return None

    matched = {s.name for s in SIGNALS if s.pattern.search(text)}
    project_signal = _has_project_signal(text)
    if not project_signal and "issue" not in matched:
        return None

    score = sum(s.weight for s in SIGNALS if s.name in matched)
    if project_signal:
        score += PROJECT_SIGNAL_WEIGHT
    if len(line) > LONG_LINE_LENGTH:
        score += LONG_LINE_BONUS
    if score < MIN_SCORE:
        return None

    candidate_type, priority = next(
        (ctype, prio) for signal, ctype, prio in TYPE_RULES
        if signal is None or signal in matched
    )
    tags = ["hook:auto"] + [s.tag for s in SIGNALS if s.name in matched]
    return {"type": candidate_type, "priority": priority, "tags": tags, "score": score}


class CandidateExtractor:
    """
    Turns conversation text into at most max_candidates proposals.

    Usage:
        extractor = CandidateExtractor()
        candidates = extractor.extract(user_message="...", assistant_message="...")
    """

    def __init__(self, max_candidates: Optional[int] = None):
        self.max_candidates = max_candidates or settings.max_candidates

    def extract(
        self,
        user_message: Optional[str] = None,
        assistant_message: Optional[str] = None,
        force_store: bool = False,
    ) -> List[CandidateMemory]:
        """
        Args:
            user_message: The user's side of the turn
            assistant_message: The assistant's side of the turn
            force_store: Keep generic capability lines too

        Returns:
            Candidates, strongest first (earlier lines win ties); never raises
        """
        parts = [
            m for m in (user_message, assistant_message)
            if isinstance(m, str) and m.strip()
        ]
        if not parts:
            return []

        seen = set()
        candidates: List[CandidateMemory] = []
        for line in split_lines("\n".join(parts)):
            if not force_store and is_generic_capability_noise(line):
                continue

            normalized = line.lower()
            if normalized in seen:
                continue
            seen.add(normalized)

            classified = classify_line(line)
            if classified is None:
                continue

            title = title_from_content(line)
            candidates.append(CandidateMemory(
                type=classified["type"],
                text=line,
                confidence=min(1.0, classified["score"] / CONFIDENCE_SCALE),
                title=title,
                key=f"agent/context/{classified['type']}/hook_{slugify(title)}",
                priority=classified["priority"],
                tags=classified["tags"],
                score=classified["score"],
            ))

        candidates.sort(key=lambda c: c.score, reverse=True)
        return candidates[:self.max_candidates]
