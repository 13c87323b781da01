"""
Scoring strategies for the closing evaluation.

A scorer maps a conversation to the four factor scores (execution, market,
growth, return_potential), each in [0, 100]. The Evaluator clamps and
derives the overall score, so scorers only need to return the factors.
"""

import re
from typing import Dict, List, Mapping, Protocol

from ..models import Category, ConversationState
from .sequencer import category_at

_NUMBER = re.compile(r"\d")
_METRIC = re.compile(
    r"(\d+(\.\d+)?\s*(%|k\b|m\b|b\b|x\b|users|customers|clients|mau|dau|arr|mrr))"
    r"|([$€£]\s?\d)",
    re.IGNORECASE,
)
_LINK = re.compile(r"https?://\S+|\b[\w-]+\.(com|io|ai|xyz|app|co)\b", re.IGNORECASE)
_PROPER_NOUN = re.compile(r"\b[A-Z][a-zA-Z]{2,}")

# Which answered categories feed each factor.
FACTOR_SOURCES: Dict[str, List[Category]] = {
    "execution": [Category.PITCH, Category.TEAM, Category.TECHNOLOGY],
    "market": [Category.MARKET, Category.PROBLEM],
    "growth": [Category.TRACTION, Category.REVENUE],
    "return_potential": [Category.MARKET, Category.REVENUE, Category.TECHNOLOGY],
}


class Scorer(Protocol):
    def __call__(self, state: ConversationState) -> Mapping[str, int]: ...


def rate_answer(text: str) -> int:
    """Rate one answer in [0, 100] on substance, evidence and specificity."""
    text = text.strip()
    if not text:
        return 0
    words = len(text.split())
    substance = min(words, 60) / 60 * 50

    metrics = len(_METRIC.findall(text))
    evidence = min(metrics * 10, 30)
    if not metrics and _NUMBER.search(text):
        evidence = 5

    specifics = len(_PROPER_NOUN.findall(text)) + 2 * len(_LINK.findall(text))
    specificity = min(specifics * 4, 20)
    return int(round(substance + evidence + specificity))


class HeuristicScorer:
    """Deterministic content-based scorer.

    Each factor is the mean rating of the answers given to its source
    categories. A factor with no answered source category scores 0.
    """

    def __init__(self, factor_sources: Mapping[str, List[Category]] | None = None):
        self.factor_sources = dict(factor_sources or FACTOR_SOURCES)

    def answers_by_category(self, state: ConversationState) -> Dict[Category, List[str]]:
        grouped: Dict[Category, List[str]] = {}
        for index, answer in enumerate(state.responses):
            grouped.setdefault(category_at(index), []).append(answer)
        return grouped

    def __call__(self, state: ConversationState) -> Dict[str, int]:
        grouped = self.answers_by_category(state)
        factors: Dict[str, int] = {}
        for factor, sources in self.factor_sources.items():
            ratings = [rate_answer(a) for c in sources for a in grouped.get(c, [])]
            factors[factor] = int(sum(ratings) / len(ratings)) if ratings else 0
        return factors
