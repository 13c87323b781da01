import math
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Mapping

from .exceptions import InvalidStateError


class Stage(str, Enum):
    NOT_STARTED = "not_started"
    COLLECTING = "collecting"
    EVALUATING = "evaluating"
    CLOSED = "closed"


class Category(str, Enum):
    WELCOME = "welcome"
    PITCH = "pitch"
    MARKET = "market"
    TRACTION = "traction"
    TEAM = "team"
    TECHNOLOGY = "technology"
    REVENUE = "revenue"
    PROBLEM = "problem"


# Categories asked after the welcome and pitch questions, in order.
ROTATION: List[Category] = [
    Category.MARKET,
    Category.TRACTION,
    Category.TEAM,
    Category.TECHNOLOGY,
    Category.REVENUE,
    Category.PROBLEM,
]

FACTORS = ("execution", "market", "growth", "return_potential")


@dataclass(frozen=True)
class Scores:
    """Four evaluation factors in [0, 100] plus their floored mean."""

    execution: int
    market: int
    growth: int
    return_potential: int

    @property
    def overall(self) -> int:
        return math.floor(
            (self.execution + self.market + self.growth + self.return_potential) / 4
        )

    @classmethod
    def from_factors(cls, factors: Mapping[str, Any]) -> "Scores":
        """Build Scores from a factor mapping, clamping every value into [0, 100].

        Missing factors count as 0 so a partial scorer result cannot crash a close.
        """
        values = {}
        for name in FACTORS:
            try:
                raw = int(factors.get(name, 0))
            except (TypeError, ValueError):
                raw = 0
            values[name] = max(0, min(100, raw))
        return cls(**values)

    def as_dict(self) -> Dict[str, int]:
        return {
            "execution": self.execution,
            "market": self.market,
            "growth": self.growth,
            "return_potential": self.return_potential,
            "overall": self.overall,
        }


@dataclass
class SubjectFacts:
    """Facts about the startup picked up from the founder's answers."""

    startup_name: str | None = None
    pitch_summary: str | None = None
    links: List[str] = field(default_factory=list)


@dataclass
class ConversationState:
    """Per-counterparty interview state."""

    session_id: str
    stage: Stage = Stage.NOT_STARTED
    question_count: int = 0
    message_count: int = 0
    responses: List[str] = field(default_factory=list)
    asked_categories: List[Category] = field(default_factory=list)
    subject_facts: SubjectFacts = field(default_factory=SubjectFacts)
    app_id: str | None = None
    scores: Scores | None = None
    closed: bool = False
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def copy(self) -> "ConversationState":
        """Return an independent copy; list and fact fields are not shared."""
        return replace(
            self,
            responses=list(self.responses),
            asked_categories=list(self.asked_categories),
            subject_facts=replace(self.subject_facts, links=list(self.subject_facts.links)),
        )


class ActionKind(str, Enum):
    ASK = "ask"
    CLOSE = "close"
    REMIND_CLOSED = "remind_closed"
    REPLY = "reply"


@dataclass(frozen=True)
class Action:
    """What the processor decided to do with an inbound message."""

    kind: ActionKind
    category: Category | None = None
    forced: bool = False

    @classmethod
    def ask(cls, category: Category) -> "Action":
        return cls(ActionKind.ASK, category=category)

    @classmethod
    def close(cls, forced: bool) -> "Action":
        return cls(ActionKind.CLOSE, forced=forced)

    @classmethod
    def remind_closed(cls) -> "Action":
        return cls(ActionKind.REMIND_CLOSED)

    @classmethod
    def reply(cls) -> "Action":
        return cls(ActionKind.REPLY)


@dataclass(frozen=True)
class Outbound:
    """A message that was delivered to the founder."""

    kind: ActionKind
    text: str
    category: Category | None = None
    app_id: str | None = None
    scores: Scores | None = None
    qualified: bool | None = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "text": self.text,
            "category": self.category.value if self.category else None,
            "app_id": self.app_id,
            "scores": self.scores.as_dict() if self.scores else None,
            "qualified": self.qualified,
        }


def state_to_dict(state: ConversationState) -> Dict[str, Any]:
    """Serialize ConversationState to a JSON-serializable dict."""
    return {
        "session_id": state.session_id,
        "stage": state.stage.value,
        "question_count": state.question_count,
        "message_count": state.message_count,
        "responses": list(state.responses),
        "asked_categories": [c.value for c in state.asked_categories],
        "subject_facts": {
            "startup_name": state.subject_facts.startup_name,
            "pitch_summary": state.subject_facts.pitch_summary,
            "links": list(state.subject_facts.links),
        },
        "app_id": state.app_id,
        "scores": state.scores.as_dict() if state.scores else None,
        "closed": state.closed,
        "created_at": state.created_at,
        "updated_at": state.updated_at,
    }


def state_from_dict(data: Mapping[str, Any]) -> ConversationState:
    """Build ConversationState from a dict (e.g. from Redis), validating as it goes.

    Raises InvalidStateError when the data cannot describe a valid state.
    """
    try:
        session_id = str(data["session_id"])
        responses = [str(r) for r in data.get("responses", [])]
        question_count = int(data.get("question_count", 0))
        message_count = int(data.get("message_count", 0))
        stage = Stage(data.get("stage", Stage.NOT_STARTED.value))
        asked = [Category(c) for c in data.get("asked_categories", [])]
        facts = data.get("subject_facts") or {}
        raw_scores = data.get("scores")
        scores = Scores.from_factors(raw_scores) if raw_scores else None
        now = time.time()
        state = ConversationState(
            session_id=session_id,
            stage=stage,
            question_count=question_count,
            message_count=message_count,
            responses=responses,
            asked_categories=asked,
            subject_facts=SubjectFacts(
                startup_name=facts.get("startup_name"),
                pitch_summary=facts.get("pitch_summary"),
                links=[str(link) for link in facts.get("links") or []],
            ),
            app_id=data.get("app_id"),
            scores=scores,
            closed=bool(data.get("closed", False)),
            created_at=float(data.get("created_at", now)),
            updated_at=float(data.get("updated_at", now)),
        )
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise InvalidStateError(f"Invalid conversation state: {e}") from e

    if question_count < 0 or message_count < 0:
        raise InvalidStateError("Counters must not be negative")
    if state.closed and (state.app_id is None or state.scores is None):
        raise InvalidStateError("Closed session without app_id or scores")
    return state
