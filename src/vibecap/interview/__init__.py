"""Interview package: the conversation state machine for VibeCap evaluations.

The sequencer, processor and evaluator are pure over ConversationState; the
guard and service add concurrency control and delivery around them.
"""

from .evaluator import ClosingResult, Evaluator, generate_app_id
from .guard import GuardState, SessionGuard
from .processor import MessageProcessor, coerce_inbound
from .scoring import HeuristicScorer, Scorer
from .sequencer import NextQuestion, category_at, next_question
from .service import InterviewService, build_interview_service

__all__ = [
    "ClosingResult",
    "Evaluator",
    "GuardState",
    "HeuristicScorer",
    "InterviewService",
    "MessageProcessor",
    "NextQuestion",
    "Scorer",
    "SessionGuard",
    "build_interview_service",
    "category_at",
    "coerce_inbound",
    "generate_app_id",
    "next_question",
]
