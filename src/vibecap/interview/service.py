import logging
from typing import Any

from ..exceptions import (
    InvalidStateError,
    SessionBusyError,
    StoreUnavailableError,
    TransportError,
)
from ..models import ActionKind, Category, ConversationState, Outbound
from ..services.composer import QuestionComposer, privacy_reply
from ..services.records import ApplicationRecordStore
from ..services.session_store import SessionStore
from ..settings import Settings, get_settings
from ..transport.telegram import Transport
from .evaluator import Evaluator
from .guard import SessionGuard
from .processor import MessageProcessor

logger = logging.getLogger(__name__)


class InterviewService:
    """Runs one inbound message through guard, processor, composer and transport.

    Questions and replies are saved only after they have been delivered, so a
    failed delivery leaves the session exactly as it was and the same inbound
    message can be retried safely. Closing is the exception: the outcome
    (app id and scores) is saved before the closing message goes out, so a
    retry re-sends the same outcome instead of producing a second one.
    """

    def __init__(
        self,
        store: SessionStore,
        processor: MessageProcessor,
        evaluator: Evaluator,
        composer: QuestionComposer,
        guard: SessionGuard,
        records: ApplicationRecordStore,
        transport: Transport | None = None,
    ) -> None:
        self.store = store
        self.processor = processor
        self.evaluator = evaluator
        self.composer = composer
        self.guard = guard
        self.records = records
        self.transport = transport

    def _transport(self, transport: Transport | None) -> Transport:
        chosen = transport or self.transport
        if chosen is None:
            raise TransportError("No transport configured for outbound messages")
        return chosen

    async def handle_message(
        self,
        session_id: str,
        inbound: Any,
        transport: Transport | None = None,
    ) -> Outbound | None:
        """Process one inbound message and deliver the reply.

        Args:
            session_id: Stable counterparty identifier (str).
            inbound: Message payload; anything that is not text is coerced to text.
            transport: Channel to reply on; defaults to the service transport.

        Returns:
            Outbound: What was delivered, or None if the turn was dropped
                (session busy or unreadable stored state).

        Raises:
            TransportError: Delivery failed. Nothing was saved, except that a
                close keeps its outcome pending so the retry re-sends it.
            StoreUnavailableError: The store could not be read or written;
                the stored session is unchanged and the message can be retried.
        """
        out = self._transport(transport)
        try:
            async with self.guard.hold(session_id):
                return await self._process(session_id, inbound, out)
        except SessionBusyError:
            logger.info("Dropped message for busy session %s", session_id)
            return None
        except InvalidStateError as e:
            logger.error("Session %s has unreadable state, dropping turn: %s", session_id, e)
            return None

    async def close_session(
        self, session_id: str, transport: Transport | None = None
    ) -> Outbound:
        """Close a session on request (not forced by the limits).

        Raises SessionBusyError, InvalidStateError or StoreUnavailableError
        when the session cannot be closed right now, and TransportError when
        the closing message could not be delivered.
        """
        out = self._transport(transport)
        async with self.guard.hold(session_id):
            state = await self.store.load_or_create(session_id)
            return await self._close(state, out, forced=False)

    async def _process(
        self, session_id: str, inbound: Any, out: Transport
    ) -> Outbound:
        state = await self.store.load_or_create(session_id)
        new_state, action = self.processor.process(state, inbound)

        if action.kind is ActionKind.REMIND_CLOSED:
            text = self.evaluator.reminder(state)
            await self._deliver(out, session_id, text)
            return Outbound(kind=action.kind, text=text, app_id=state.app_id, scores=state.scores)

        if action.kind is ActionKind.CLOSE:
            return await self._close(new_state, out, forced=action.forced)

        if action.kind is ActionKind.REPLY:
            text = privacy_reply(new_state)
            await self._deliver(out, session_id, text)
            await self._save(new_state)
            return Outbound(kind=action.kind, text=text)

        previous_app_id = None
        if action.category is Category.WELCOME:
            previous_app_id = await self.records.latest_app_id(session_id)
            if previous_app_id:
                logger.info("Session %s is a returning founder (%s)", session_id, previous_app_id)
        text = await self.composer.compose_question(new_state, action.category, previous_app_id)
        await self._deliver(out, session_id, text)
        await self._save(new_state)
        logger.info(
            "Session %s asked %s (answers=%d, messages=%d)",
            session_id,
            action.category.value,
            new_state.question_count,
            new_state.message_count,
        )
        return Outbound(kind=action.kind, text=text, category=action.category)

    async def _close(
        self, state: ConversationState, out: Transport, forced: bool
    ) -> Outbound:
        result = self.evaluator.close(state, forced=forced)
        qualified = self.evaluator.qualifies(result.scores)

        if result.already_closed:
            await self._deliver(out, state.session_id, result.message)
            return Outbound(
                kind=ActionKind.REMIND_CLOSED,
                text=result.message,
                app_id=result.app_id,
                scores=result.scores,
                qualified=qualified,
            )

        # The outcome must be durable before anyone is told about it.
        pending = self.evaluator.pending(result)
        await self._save(pending)
        if not await self.records.upsert(pending):
            raise StoreUnavailableError(f"Could not save application record {result.app_id}")

        await self._deliver(out, state.session_id, result.message)

        if not await self.store.save(result.state):
            logger.error(
                "Session %s: closing message sent but not marked closed; "
                "the next message re-sends it with app_id %s",
                state.session_id,
                result.app_id,
            )
        elif not await self.records.upsert(result.state):
            logger.error("Application record %s not marked closed", result.app_id)

        return Outbound(
            kind=ActionKind.CLOSE,
            text=result.message,
            app_id=result.app_id,
            scores=result.scores,
            qualified=qualified,
        )

    async def _save(self, state: ConversationState) -> None:
        if not await self.store.save(state):
            raise StoreUnavailableError(f"Could not save session {state.session_id}")

    async def _deliver(self, out: Transport, session_id: str, text: str) -> None:
        try:
            await out.send(session_id, text)
        except TransportError as e:
            logger.warning("Delivery to session %s failed: %s", session_id, e)
            raise


def build_interview_service(
    store: SessionStore,
    records: ApplicationRecordStore,
    transport: Transport | None = None,
    settings: Settings | None = None,
    composer: QuestionComposer | None = None,
) -> InterviewService:
    """Wire an InterviewService from settings."""
    settings = settings or get_settings()
    return InterviewService(
        store=store,
        processor=MessageProcessor(
            question_limit=settings.question_limit,
            message_cap=settings.message_cap,
        ),
        evaluator=Evaluator(
            qualify_threshold=settings.qualify_threshold,
            invite_link=settings.invite_link,
        ),
        composer=composer or QuestionComposer(),
        guard=SessionGuard(single_worker=settings.single_worker),
        records=records,
        transport=transport,
    )
