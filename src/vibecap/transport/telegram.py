import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, List, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..exceptions import RateLimitError, TransportError
from ..settings import get_settings

logger = logging.getLogger(__name__)


class Transport(Protocol):
    async def send(self, session_id: str, text: str) -> None: ...


# -----------------------------------------------------------------------------
# Update schema (only the fields we read)
# -----------------------------------------------------------------------------


class TelegramUser(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    username: str | None = None


class TelegramChat(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int


class TelegramPollOption(BaseModel):
    model_config = ConfigDict(extra="ignore")

    text: str


class TelegramPoll(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    question: str = ""
    options: List[TelegramPollOption] = Field(default_factory=list)


class TelegramMessage(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    message_id: int
    chat: TelegramChat
    from_user: TelegramUser | None = Field(default=None, alias="from")
    text: str | None = None
    caption: str | None = None
    poll: TelegramPoll | None = None


class TelegramPollAnswer(BaseModel):
    model_config = ConfigDict(extra="ignore")

    poll_id: str
    user: TelegramUser | None = None
    option_ids: List[int] = Field(default_factory=list)


class TelegramUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    update_id: int
    message: TelegramMessage | None = None
    poll: TelegramPoll | None = None
    poll_answer: TelegramPollAnswer | None = None


class PollRegistry:
    """Option texts of polls seen recently, so poll answers read as text.

    Telegram's poll_answer carries only option indices; the options arrive
    with the poll itself (a `poll` update or a message carrying the poll).
    Bounded: the oldest polls are forgotten first.
    """

    def __init__(self, max_polls: int = 1000) -> None:
        self.max_polls = max_polls
        self._options: "OrderedDict[str, List[str]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._options)

    def remember(self, poll: TelegramPoll) -> None:
        self._options[poll.id] = [option.text for option in poll.options]
        self._options.move_to_end(poll.id)
        while len(self._options) > self.max_polls:
            self._options.popitem(last=False)

    def option_texts(self, poll_id: str, option_ids: List[int]) -> List[str] | None:
        """Texts for the chosen options, or None if the poll or an option is unknown."""
        options = self._options.get(poll_id)
        if options is None:
            return None
        if any(i < 0 or i >= len(options) for i in option_ids):
            return None
        return [options[i] for i in option_ids]


@dataclass(frozen=True)
class InboundMessage:
    session_id: str
    payload: Any


def parse_update(raw: Dict[str, Any]) -> TelegramUpdate | None:
    """Validate a raw update. Returns None if it is not a Telegram update at all."""
    try:
        return TelegramUpdate.model_validate(raw)
    except ValidationError as e:
        logger.warning("Ignoring malformed Telegram update: %s", e.error_count())
        return None


def inbound_from_update(
    update: TelegramUpdate, polls: PollRegistry | None = None
) -> InboundMessage | None:
    """Map an update to an inbound message keyed by chat id.

    Text and captioned media become text; poll answers become a selection
    payload, with option texts when the poll is known to `polls`. Polls
    themselves are remembered in `polls`. Updates with nothing to answer
    (joins, edits, poll state, ...) map to None.
    """
    if update.poll is not None:
        if polls is not None:
            polls.remember(update.poll)
        return None
    if update.message is not None:
        msg = update.message
        if msg.poll is not None and polls is not None:
            polls.remember(msg.poll)
        content = msg.text if msg.text is not None else msg.caption
        if content is None:
            return None
        return InboundMessage(session_id=str(msg.chat.id), payload=content)
    if update.poll_answer is not None and update.poll_answer.user is not None:
        answer = update.poll_answer
        texts = None
        if polls is not None:
            texts = polls.option_texts(answer.poll_id, answer.option_ids)
        if texts is not None:
            payload = {"option_texts": texts}
        else:
            logger.info("Poll %s unknown; passing option indices", answer.poll_id)
            payload = {"options": [str(o) for o in answer.option_ids]}
        return InboundMessage(session_id=str(answer.user.id), payload=payload)
    return None


# -----------------------------------------------------------------------------
# Bot API client
# -----------------------------------------------------------------------------


class TelegramTransport:
    """Minimal Telegram Bot API client: sendMessage and getUpdates."""

    def __init__(
        self,
        token: str,
        api_base: str = "https://api.telegram.org",
        client: httpx.AsyncClient | None = None,
        timeout: float = 40.0,
    ) -> None:
        self._base = f"{api_base.rstrip('/')}/bot{token}"
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _call(self, method: str, payload: Dict[str, Any]) -> Any:
        try:
            response = await self._client.post(f"{self._base}/{method}", json=payload)
        except httpx.HTTPError as e:
            raise TransportError(f"Telegram {method} failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code == 429 or body.get("error_code") == 429:
            retry_after = (body.get("parameters") or {}).get("retry_after")
            raise RateLimitError(
                f"Telegram {method} rate limited",
                retry_after=float(retry_after) if retry_after is not None else None,
            )
        if response.status_code >= 400 or not body.get("ok", False):
            description = body.get("description") or response.reason_phrase
            raise TransportError(
                f"Telegram {method} error {response.status_code}: {description}"
            )
        return body.get("result")

    async def send(self, session_id: str, text: str) -> None:
        await self._call("sendMessage", {"chat_id": session_id, "text": text})
        logger.debug("Sent %d chars to chat %s", len(text), session_id)

    async def get_updates(self, offset: int, timeout: int = 30) -> List[TelegramUpdate]:
        result = await self._call(
            "getUpdates",
            {
                "offset": offset,
                "timeout": timeout,
                "allowed_updates": ["message", "poll", "poll_answer"],
            },
        )
        updates = []
        for raw in result or []:
            update = parse_update(raw)
            if update is not None:
                updates.append(update)
        return updates


def get_telegram_transport() -> TelegramTransport | None:
    """Return a Telegram transport if a bot token is configured, else None."""
    settings = get_settings()
    if not settings.telegram_bot_token:
        return None
    return TelegramTransport(
        token=settings.telegram_bot_token,
        api_base=settings.telegram_api_base,
        timeout=settings.poll_timeout_seconds + 10,
    )
