import logging
import secrets
import string
import time
from dataclasses import dataclass

from ..models import ConversationState, Scores, Stage
from .scoring import HeuristicScorer, Scorer

logger = logging.getLogger(__name__)

APP_ID_PREFIX = "VC"
HIBISCUS = "\U0001F33A"

_BASE36 = string.digits + string.ascii_uppercase


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_app_id() -> str:
    """Return a new application id: time component plus 48 random bits.

    Safe to call concurrently from unrelated sessions without coordination.
    """
    millis = time.time_ns() // 1_000_000
    return f"{APP_ID_PREFIX}-{_base36(millis)}-{secrets.token_hex(6).upper()}"


@dataclass(frozen=True)
class ClosingResult:
    state: ConversationState
    app_id: str
    scores: Scores
    message: str
    already_closed: bool = False


class Evaluator:
    """Closes sessions: assigns the app id and scores exactly once."""

    def __init__(
        self,
        scorer: Scorer | None = None,
        qualify_threshold: int = 84,
        invite_link: str | None = None,
    ) -> None:
        self.scorer = scorer or HeuristicScorer()
        self.qualify_threshold = qualify_threshold
        self.invite_link = invite_link

    def qualifies(self, scores: Scores) -> bool:
        return scores.overall >= self.qualify_threshold

    def close(self, state: ConversationState, forced: bool) -> ClosingResult:
        """Close the session, or re-report the existing outcome if already closed.

        An app id and scores already on the state (a pending close) are reused,
        never regenerated. The input state is not mutated; the closed copy is
        returned in the result.
        """
        if state.closed:
            logger.info(
                "Close requested for concluded session %s (app_id=%s); no-op",
                state.session_id,
                state.app_id,
            )
            return ClosingResult(
                state=state,
                app_id=state.app_id,
                scores=state.scores,
                message=self.reminder(state),
                already_closed=True,
            )

        new_state = state.copy()
        if state.app_id is not None and state.scores is not None:
            # A close that was persisted but never delivered keeps its outcome.
            scores = state.scores
            logger.info(
                "Resuming close of session %s with app_id=%s",
                state.session_id,
                state.app_id,
            )
        else:
            scores = Scores.from_factors(self.scorer(state))
            new_state.app_id = generate_app_id()
        new_state.scores = scores
        new_state.closed = True
        new_state.stage = Stage.CLOSED
        new_state.message_count += 1
        new_state.updated_at = time.time()

        logger.info(
            "Session %s closed (forced=%s) app_id=%s overall=%d",
            state.session_id,
            forced,
            new_state.app_id,
            scores.overall,
        )
        return ClosingResult(
            state=new_state,
            app_id=new_state.app_id,
            scores=scores,
            message=self.closing_message(new_state),
        )

    def closing_message(self, state: ConversationState) -> str:
        scores = state.scores
        name = state.subject_facts.startup_name
        lines = [
            f"Thank you for walking me through {name}!" if name
            else "Thank you for your time today!",
            "",
            f"Your application ID is {state.app_id}. Please keep it for reference.",
            "",
            "Evaluation summary:",
            f"- Execution: {scores.execution}/100",
            f"- Market: {scores.market}/100",
            f"- Growth: {scores.growth}/100",
            f"- Return potential: {scores.return_potential}/100",
            f"Overall: {scores.overall}/100",
            "",
        ]
        if self.qualifies(scores):
            lines.append(
                "Your startup looks like a strong fit for the program."
            )
            if self.invite_link:
                lines.append(
                    f"Join the private chat to learn about next steps: {self.invite_link}"
                )
        else:
            lines.append(
                "We'll keep your application on file and reach out if there is a fit."
            )
        lines.append("")
        lines.append(f"Best of luck with what you're building {HIBISCUS}")
        return "\n".join(lines)

    def pending(self, result: ClosingResult) -> ConversationState:
        """The state to persist before the closing message is sent.

        It carries the final app id and scores but is not yet closed, so a
        failed delivery is retried with the same outcome.
        """
        state = result.state.copy()
        state.closed = False
        state.stage = Stage.EVALUATING
        state.message_count -= 1
        return state

    def reminder(self, state: ConversationState) -> str:
        return (
            "This evaluation session has already concluded. "
            f"Your application ID is {state.app_id}. {HIBISCUS}"
        )
