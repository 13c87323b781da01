from dataclasses import dataclass

from ..models import ROTATION, Category, ConversationState

DEFAULT_QUESTION_LIMIT = 15


@dataclass(frozen=True)
class NextQuestion:
    """Sequencer decision: the category to ask, or done when the limit is reached."""

    category: Category | None
    done: bool = False


def next_question(
    state: ConversationState, limit: int = DEFAULT_QUESTION_LIMIT
) -> NextQuestion:
    """Pick the category of the next question for the given state.

    Welcome comes first, then the pitch, then the fixed rotation repeats until
    the limit. Topics repeat once the rotation is exhausted; there is no
    content-aware deduplication. Pure: recording the category is the caller's
    job, after the question has been delivered.
    """
    if state.question_count >= limit:
        return NextQuestion(category=None, done=True)
    return NextQuestion(category_at(state.question_count))


def category_at(index: int) -> Category:
    """Category of the question asked after `index` answers."""
    if index == 0:
        return Category.WELCOME
    if index == 1:
        return Category.PITCH
    return ROTATION[(index - 2) % len(ROTATION)]
