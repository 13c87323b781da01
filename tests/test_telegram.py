import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from vibecap.exceptions import RateLimitError, StoreUnavailableError, TransportError
from vibecap.transport.poller import Backoff, TelegramPoller
from vibecap.transport.telegram import (
    PollRegistry,
    TelegramTransport,
    inbound_from_update,
    parse_update,
)


def _message_update(update_id: int = 1, text: str | None = "hello", chat_id: int = 42) -> dict:
    message = {
        "message_id": 7,
        "chat": {"id": chat_id, "type": "private"},
        "from": {"id": chat_id, "is_bot": False, "username": "founder"},
        "date": 0,
    }
    if text is not None:
        message["text"] = text
    return {"update_id": update_id, "message": message}


def _transport(handler) -> TelegramTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TelegramTransport(token="TOKEN", client=client)


def test_text_update_maps_to_chat_session() -> None:
    update = parse_update(_message_update(text="Acme Inc"))
    inbound = inbound_from_update(update)
    assert inbound.session_id == "42"
    assert inbound.payload == "Acme Inc"
    assert update.message.from_user.username == "founder"


def test_poll_answer_maps_to_selection() -> None:
    update = parse_update(
        {
            "update_id": 3,
            "poll_answer": {"poll_id": "p1", "user": {"id": 42, "is_bot": False}, "option_ids": [0, 2]},
        }
    )
    inbound = inbound_from_update(update)
    assert inbound.session_id == "42"
    assert inbound.payload == {"options": ["0", "2"]}


_POLL = {
    "id": "p1",
    "question": "Which stage are you at?",
    "options": [
        {"text": "Idea", "voter_count": 0},
        {"text": "MVP", "voter_count": 0},
        {"text": "Revenue", "voter_count": 0},
    ],
}


def _poll_answer(option_ids: list, poll_id: str = "p1") -> dict:
    return {
        "update_id": 4,
        "poll_answer": {"poll_id": poll_id, "user": {"id": 42, "is_bot": False}, "option_ids": option_ids},
    }


def test_poll_answer_maps_to_option_text_when_poll_known() -> None:
    polls = PollRegistry()
    assert inbound_from_update(parse_update({"update_id": 3, "poll": _POLL}), polls) is None
    assert len(polls) == 1

    inbound = inbound_from_update(parse_update(_poll_answer([0, 2])), polls)
    assert inbound.session_id == "42"
    assert inbound.payload == {"option_texts": ["Idea", "Revenue"]}


def test_poll_sent_in_message_is_remembered() -> None:
    polls = PollRegistry()
    raw = _message_update(text=None)
    raw["message"]["poll"] = _POLL
    assert inbound_from_update(parse_update(raw), polls) is None

    inbound = inbound_from_update(parse_update(_poll_answer([1])), polls)
    assert inbound.payload == {"option_texts": ["MVP"]}


def test_poll_answer_falls_back_to_indices() -> None:
    polls = PollRegistry()
    polls.remember(parse_update({"update_id": 3, "poll": _POLL}).poll)

    unknown_poll = inbound_from_update(parse_update(_poll_answer([0], poll_id="other")), polls)
    assert unknown_poll.payload == {"options": ["0"]}
    out_of_range = inbound_from_update(parse_update(_poll_answer([7])), polls)
    assert out_of_range.payload == {"options": ["7"]}


def test_poll_registry_forgets_oldest() -> None:
    polls = PollRegistry(max_polls=2)
    for poll_id in ("a", "b", "c"):
        polls.remember(parse_update({"update_id": 1, "poll": {**_POLL, "id": poll_id}}).poll)
    assert len(polls) == 2
    assert polls.option_texts("a", [0]) is None
    assert polls.option_texts("c", [0]) == ["Idea"]


def test_update_without_text_is_ignored() -> None:
    assert inbound_from_update(parse_update(_message_update(text=None))) is None
    assert inbound_from_update(parse_update({"update_id": 9})) is None


def test_malformed_update_is_rejected() -> None:
    assert parse_update({"message": {"text": "no ids"}}) is None


@pytest.mark.asyncio
async def test_send_posts_message() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"ok": True, "result": {}})

    await _transport(handler).send("42", "Hi there")
    assert seen["url"].endswith("/botTOKEN/sendMessage")
    assert seen["body"] == {"chat_id": "42", "text": "Hi there"}


@pytest.mark.asyncio
async def test_rate_limit_raises_with_retry_after() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            429,
            json={"ok": False, "error_code": 429, "parameters": {"retry_after": 7}},
        )

    with pytest.raises(RateLimitError) as exc:
        await _transport(handler).send("42", "Hi")
    assert exc.value.retry_after == 7.0


@pytest.mark.asyncio
async def test_api_error_raises_transport_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"ok": False, "description": "chat not found"})

    with pytest.raises(TransportError) as exc:
        await _transport(handler).send("42", "Hi")
    assert "chat not found" in str(exc.value)
    assert not isinstance(exc.value, RateLimitError)


@pytest.mark.asyncio
async def test_network_error_raises_transport_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(TransportError):
        await _transport(handler).send("42", "Hi")


@pytest.mark.asyncio
async def test_get_updates_skips_malformed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert body["offset"] == 5
        assert body["allowed_updates"] == ["message", "poll", "poll_answer"]
        return httpx.Response(
            200, json={"ok": True, "result": [_message_update(5), {"garbage": True}]}
        )

    updates = await _transport(handler).get_updates(5, timeout=0)
    assert [u.update_id for u in updates] == [5]


def test_backoff_grows_and_decays() -> None:
    backoff = Backoff(minimum=12, maximum=60, factor=1.5)
    assert backoff.on_rate_limit() == 18
    assert backoff.on_rate_limit() == 27
    assert backoff.on_rate_limit(retry_after=50) == 50
    assert backoff.on_rate_limit(retry_after=500) == 60
    for _ in range(10):
        backoff.on_success()
    assert backoff.current == 12
    assert backoff.hits == 0


@pytest.mark.asyncio
async def test_poller_advances_offset_and_dispatches() -> None:
    transport = MagicMock(spec=TelegramTransport)
    transport.get_updates = AsyncMock(
        return_value=[parse_update(_message_update(10, "a")), parse_update(_message_update(11, "b"))]
    )
    service = MagicMock()
    service.handle_message = AsyncMock(return_value=None)
    poller = TelegramPoller(transport=transport, service=service)

    assert await poller.poll_once() == 2
    assert poller.offset == 12
    assert service.handle_message.await_count == 2
    service.handle_message.assert_any_await("42", "a", transport=transport)


@pytest.mark.asyncio
async def test_poller_keeps_offset_on_rate_limit() -> None:
    """A rate-limited update is not acknowledged, so Telegram delivers it again."""
    transport = MagicMock(spec=TelegramTransport)
    transport.get_updates = AsyncMock(
        return_value=[parse_update(_message_update(10, "a")), parse_update(_message_update(11, "b"))]
    )
    service = MagicMock()
    service.handle_message = AsyncMock(side_effect=[None, RateLimitError("slow", retry_after=3)])
    poller = TelegramPoller(transport=transport, service=service)

    with pytest.raises(RateLimitError):
        await poller.poll_once()
    assert poller.offset == 11


@pytest.mark.asyncio
async def test_poller_drops_update_on_other_delivery_errors() -> None:
    transport = MagicMock(spec=TelegramTransport)
    transport.get_updates = AsyncMock(return_value=[parse_update(_message_update(10, "a"))])
    service = MagicMock()
    service.handle_message = AsyncMock(side_effect=TransportError("chat not found"))
    poller = TelegramPoller(transport=transport, service=service)

    assert await poller.poll_once() == 1
    assert poller.offset == 11


@pytest.mark.asyncio
async def test_poller_run_backs_off_then_stops() -> None:
    transport = MagicMock(spec=TelegramTransport)
    poller = TelegramPoller(
        transport=transport, service=MagicMock(), backoff=Backoff(minimum=0.01, maximum=0.02)
    )

    async def rate_limited(offset, timeout):
        poller.stop()
        raise RateLimitError("slow")

    transport.get_updates = AsyncMock(side_effect=rate_limited)
    await poller.run()
    assert poller.backoff.hits == 1


@pytest.mark.asyncio
async def test_poller_drops_only_the_update_that_crashed() -> None:
    transport = MagicMock(spec=TelegramTransport)
    transport.get_updates = AsyncMock(
        return_value=[parse_update(_message_update(10, "a")), parse_update(_message_update(11, "b"))]
    )
    service = MagicMock()
    service.handle_message = AsyncMock(side_effect=[ValueError("boom"), None])
    poller = TelegramPoller(transport=transport, service=service)

    assert await poller.poll_once() == 2
    assert poller.offset == 12
    assert service.handle_message.await_count == 2


@pytest.mark.asyncio
async def test_poller_keeps_offset_when_store_unavailable() -> None:
    transport = MagicMock(spec=TelegramTransport)
    transport.get_updates = AsyncMock(return_value=[parse_update(_message_update(10, "a"))])
    service = MagicMock()
    service.handle_message = AsyncMock(side_effect=StoreUnavailableError("redis down"))
    poller = TelegramPoller(transport=transport, service=service)

    with pytest.raises(StoreUnavailableError):
        await poller.poll_once()
    assert poller.offset == 0


@pytest.mark.asyncio
async def test_poller_run_survives_unexpected_errors() -> None:
    transport = MagicMock(spec=TelegramTransport)
    poller = TelegramPoller(
        transport=transport, service=MagicMock(), backoff=Backoff(minimum=0.01, maximum=0.02)
    )
    calls = []

    async def flaky(offset, timeout):
        calls.append(offset)
        if len(calls) == 1:
            raise KeyError("unexpected")
        if len(calls) == 2:
            raise StoreUnavailableError("redis down")
        poller.stop()
        return []

    transport.get_updates = AsyncMock(side_effect=flaky)
    await poller.run()
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_poller_maps_poll_answers_to_option_text() -> None:
    transport = MagicMock(spec=TelegramTransport)
    transport.get_updates = AsyncMock(
        return_value=[
            parse_update({"update_id": 20, "poll": _POLL}),
            parse_update({**_poll_answer([1]), "update_id": 21}),
        ]
    )
    service = MagicMock()
    service.handle_message = AsyncMock(return_value=None)
    poller = TelegramPoller(transport=transport, service=service)

    assert await poller.poll_once() == 2
    service.handle_message.assert_awaited_once_with(
        "42", {"option_texts": ["MVP"]}, transport=transport
    )
