import json
import logging
import re
import time
from typing import Any, List, Mapping, Tuple

from ..models import Action, ConversationState, Stage
from .sequencer import DEFAULT_QUESTION_LIMIT, next_question

logger = logging.getLogger(__name__)

DEFAULT_MESSAGE_CAP = 25

_NAME_SPLIT = re.compile(r"[,.;:!?\n]| - | – ")
_MAX_NAME_LEN = 80
_MAX_PITCH_LEN = 280
_MAX_LINKS = 10

_URL = re.compile(
    r"https?://[^\s<>\"']+"
    r"|\b(?:[a-z0-9-]+\.)+(?:com|io|ai|app|co|dev|org|net|xyz|vc)\b(?:/[^\s<>\"']*)?",
    re.IGNORECASE,
)

# Phrases that mark a question about how the founder's data is handled.
PRIVACY_PHRASES = (
    "data privacy",
    "privacy policy",
    "protect my data",
    "my data",
    "my information",
    "who sees my answers",
    "who will see",
    "confidential",
)


def coerce_inbound(payload: Any) -> str:
    """Turn any inbound payload into answer text. Never raises.

    Structured selections (poll answers and the like) are flattened so they
    count as an ordinary answer.
    """
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload.strip()
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload).decode("utf-8", errors="replace").strip()
    if isinstance(payload, Mapping):
        for key in ("text", "message", "answer"):
            value = payload.get(key)
            if isinstance(value, str):
                return value.strip()
        options = payload.get("option_texts") or payload.get("options")
        if isinstance(options, (list, tuple)):
            return ", ".join(str(o) for o in options)
        try:
            return json.dumps(payload, default=str, sort_keys=True)
        except (TypeError, ValueError):
            return str(payload)
    if isinstance(payload, (list, tuple)):
        return ", ".join(coerce_inbound(p) for p in payload)
    return str(payload).strip()


def extract_startup_name(answer: str) -> str | None:
    """Best-effort startup name: the leading phrase of the welcome answer."""
    head = _NAME_SPLIT.split(answer.strip(), maxsplit=1)[0].strip()
    if not head:
        return None
    return head[:_MAX_NAME_LEN]


def extract_links(text: str) -> List[str]:
    """URLs and bare domains mentioned in text, in order, without duplicates."""
    links = []
    for match in _URL.finditer(text):
        link = match.group(0).rstrip(".,;:!?)]}")
        if link and link not in links:
            links.append(link)
    return links


def is_privacy_question(text: str) -> bool:
    """True when text asks how the founder's data is handled.

    Only questions count, so an answer that merely mentions privacy (a data
    privacy startup, say) is still recorded as an answer.
    """
    lowered = text.lower()
    if "?" not in lowered:
        return False
    return any(phrase in lowered for phrase in PRIVACY_PHRASES)


class MessageProcessor:
    """Consumes one inbound message and decides the next action.

    process() never mutates its input; it returns an updated copy and leaves
    committing it to the caller.
    """

    def __init__(
        self,
        question_limit: int = DEFAULT_QUESTION_LIMIT,
        message_cap: int = DEFAULT_MESSAGE_CAP,
    ) -> None:
        self.question_limit = question_limit
        self.message_cap = message_cap

    def process(
        self, state: ConversationState, inbound: Any
    ) -> Tuple[ConversationState, Action]:
        if state.closed:
            logger.info("Session %s already closed; reminding", state.session_id)
            return state, Action.remind_closed()

        text = coerce_inbound(inbound)
        new_state = state.copy()
        new_state.updated_at = time.time()

        if new_state.stage is Stage.EVALUATING:
            # A close was started but its message never went out; finish it.
            logger.info("Session %s has a pending close; resuming", state.session_id)
            return new_state, Action.close(forced=True)

        if is_privacy_question(text):
            if not self._has_room_for_reply(new_state):
                logger.info(
                    "Session %s asked about privacy at the message cap; closing",
                    state.session_id,
                )
                new_state.stage = Stage.EVALUATING
                return new_state, Action.close(forced=True)
            # Answered, but neither recorded nor counted as an answer.
            new_state.message_count += 1
            logger.info("Session %s asked about data privacy", state.session_id)
            return new_state, Action.reply()

        if new_state.stage is Stage.NOT_STARTED:
            # The opening message is not an answer to anything.
            new_state.stage = Stage.COLLECTING
        elif new_state.question_count >= self.question_limit:
            logger.info(
                "Session %s at question limit without close; closing",
                state.session_id,
            )
            new_state.stage = Stage.EVALUATING
            return new_state, Action.close(forced=True)
        else:
            self._record_answer(new_state, text)

        if new_state.question_count >= self.question_limit:
            logger.info(
                "Session %s reached %d answers; closing",
                state.session_id,
                new_state.question_count,
            )
            new_state.stage = Stage.EVALUATING
            return new_state, Action.close(forced=True)

        if not self._has_room_for_reply(new_state):
            logger.info(
                "Session %s hit message cap (%d sent); closing",
                state.session_id,
                new_state.message_count,
            )
            new_state.stage = Stage.EVALUATING
            return new_state, Action.close(forced=True)

        decision = next_question(new_state, self.question_limit)
        category = decision.category
        if category not in new_state.asked_categories:
            new_state.asked_categories.append(category)
        new_state.message_count += 1
        logger.debug(
            "Session %s: asking %s (answered=%d)",
            state.session_id,
            category.value,
            new_state.question_count,
        )
        return new_state, Action.ask(category)

    def _has_room_for_reply(self, state: ConversationState) -> bool:
        # One more message now, and the closing message after it.
        return state.message_count + 2 <= self.message_cap

    def _record_answer(self, state: ConversationState, text: str) -> None:
        if not text:
            logger.warning("Session %s: empty answer recorded", state.session_id)
        state.responses.append(text)
        state.question_count = len(state.responses)

        facts = state.subject_facts
        if state.question_count == 1 and facts.startup_name is None:
            facts.startup_name = extract_startup_name(text)
        elif state.question_count == 2 and facts.pitch_summary is None:
            facts.pitch_summary = text[:_MAX_PITCH_LEN] or None

        for link in extract_links(text):
            if len(facts.links) >= _MAX_LINKS:
                break
            if link not in facts.links:
                facts.links.append(link)
