import asyncio
import logging

from ..exceptions import RateLimitError, StoreUnavailableError, TransportError
from ..interview.service import InterviewService
from ..settings import get_settings
from .telegram import PollRegistry, TelegramTransport, TelegramUpdate, inbound_from_update

logger = logging.getLogger(__name__)


class Backoff:
    """Delay that grows on rate limits and decays back on success."""

    def __init__(self, minimum: float = 12.0, maximum: float = 60.0, factor: float = 1.5) -> None:
        self.minimum = minimum
        self.maximum = maximum
        self.factor = factor
        self.current = minimum
        self.hits = 0

    def on_rate_limit(self, retry_after: float | None = None) -> float:
        self.hits += 1
        self.current = min(self.maximum, self.current * self.factor)
        if retry_after is not None:
            self.current = min(self.maximum, max(self.current, retry_after))
        logger.warning("Rate limited; delay now %.1fs (hits=%d)", self.current, self.hits)
        return self.current

    def on_success(self) -> None:
        if self.hits > 0:
            self.hits -= 1
            self.current = max(self.minimum, self.current / self.factor)


class TelegramPoller:
    """Long-polls getUpdates and feeds each update to the interview service."""

    def __init__(
        self,
        transport: TelegramTransport,
        service: InterviewService,
        backoff: Backoff | None = None,
        poll_timeout: int = 30,
        polls: PollRegistry | None = None,
    ) -> None:
        self.transport = transport
        self.service = service
        self.backoff = backoff or Backoff()
        self.poll_timeout = poll_timeout
        self.polls = polls if polls is not None else PollRegistry()
        self.offset = 0
        self._stopped = asyncio.Event()

    def stop(self) -> None:
        self._stopped.set()

    async def dispatch(self, update: TelegramUpdate) -> None:
        """Handle one update. Rate limits propagate; other delivery errors drop the turn."""
        inbound = inbound_from_update(update, self.polls)
        if inbound is None:
            return
        try:
            await self.service.handle_message(
                inbound.session_id, inbound.payload, transport=self.transport
            )
        except RateLimitError:
            raise
        except TransportError as e:
            logger.error("Reply to %s failed: %s", inbound.session_id, e)

    async def poll_once(self) -> int:
        """Fetch and dispatch one batch. Returns the number of updates seen.

        Rate limits and an unavailable store stop the batch without moving the
        offset, so Telegram redelivers the update. Any other error drops only
        the update that raised it.
        """
        updates = await self.transport.get_updates(self.offset, timeout=self.poll_timeout)
        for update in updates:
            try:
                await self.dispatch(update)
            except (RateLimitError, StoreUnavailableError):
                raise
            except Exception as e:
                logger.exception("Dropping update %s after unexpected error: %s", update.update_id, e)
            self.offset = max(self.offset, update.update_id + 1)
        self.backoff.on_success()
        return len(updates)

    async def run(self) -> None:
        logger.info("Starting Telegram polling")
        while not self._stopped.is_set():
            try:
                await self.poll_once()
            except RateLimitError as e:
                await self._sleep(self.backoff.on_rate_limit(e.retry_after))
            except TransportError as e:
                logger.error("Polling error: %s", e)
                await self._sleep(self.backoff.current)
            except StoreUnavailableError as e:
                logger.warning("Session store unavailable, retrying: %s", e)
                await self._sleep(self.backoff.current)
            except Exception as e:
                logger.exception("Unexpected polling error: %s", e)
                await self._sleep(self.backoff.current)
        logger.info("Telegram polling stopped")

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass


def build_poller(
    transport: TelegramTransport,
    service: InterviewService,
    polls: PollRegistry | None = None,
) -> TelegramPoller:
    settings = get_settings()
    return TelegramPoller(
        transport=transport,
        service=service,
        backoff=Backoff(
            minimum=settings.backoff_min_seconds,
            maximum=settings.backoff_max_seconds,
            factor=settings.backoff_factor,
        ),
        poll_timeout=settings.poll_timeout_seconds,
        polls=polls,
    )
