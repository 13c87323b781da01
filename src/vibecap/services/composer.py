import logging
from typing import Dict, List

import openai
from openai import AsyncOpenAI

from ..exceptions import ComposerError
from ..models import ROTATION, Category, ConversationState, Stage
from ..settings import get_settings

logger = logging.getLogger(__name__)


TOPICS: Dict[Category, str] = {
    Category.WELCOME: "greet the founder and ask for the startup's name and what it does",
    Category.PITCH: "ask for the one-paragraph pitch: who the customer is and why now",
    Category.MARKET: "size the opportunity: target market, TAM and competitors",
    Category.TRACTION: "product-market fit evidence: users today, daily actives, growth plans",
    Category.TEAM: "the team's experience, expertise and ability to execute",
    Category.TECHNOLOGY: "novelty of the technology and how easily users onboard",
    Category.REVENUE: "revenue, fundraising to date and the business model",
    Category.PROBLEM: "the problem being solved and how painful it is for customers",
}

# One list per category; repeats of a category walk down its list.
TEMPLATES: Dict[Category, List[str]] = {
    Category.WELCOME: [
        "Hi, and welcome! I'm the VibeCap venture analyst. I'll ask you a few "
        "questions about your startup, one at a time. To begin: what's your "
        "startup called, and what does it do?",
    ],
    Category.PITCH: [
        "Great to meet you! Give me your pitch in a few sentences: who is your "
        "customer and why is now the right time?",
    ],
    Category.MARKET: [
        "How big is the market you're going after, and who are you up against?",
        "Which customer segment will you win first, and how large is it on its own?",
        "If everything goes right, what does the market look like for you in five years?",
    ],
    Category.TRACTION: [
        "What traction do you have so far? How many users, and how many are active daily?",
        "How fast are you growing month over month, and what is driving it?",
    ],
    Category.TEAM: [
        "Tell me about the team. What have you built before, and why are you the right people for this?",
        "What key hire or skill is the team still missing?",
    ],
    Category.TECHNOLOGY: [
        "What is new about your technology or approach compared to what exists today?",
        "How does a new user get started, and how long until they see value?",
    ],
    Category.REVENUE: [
        "Are you generating revenue yet, and have you raised any money?",
        "How will you make money at scale, and what are your unit economics?",
    ],
    Category.PROBLEM: [
        "What problem are you solving, and how are people coping with it today?",
        "What evidence do you have that customers will pay to make this problem go away?",
    ],
}


WELCOME_BACK = (
    "Welcome back! Your last application with us is {app_id}, and it stays on "
    "file. Let's run a fresh evaluation, one question at a time. To begin: "
    "what's your startup called today, and what does it do?"
)

PRIVACY_REPLY = (
    "Good question. Your answers are used only to evaluate your application "
    "to VibeCap. They are stored with your application ID and are not shared "
    "outside the investment team."
)


def template_question(
    state: ConversationState, category: Category, previous_app_id: str | None = None
) -> str:
    """Fixed wording for a category, varied across repeats of the same topic."""
    if category is Category.WELCOME and previous_app_id:
        return WELCOME_BACK.format(app_id=previous_app_id)
    options = TEMPLATES[category]
    if category not in ROTATION:
        return options[0]
    repeat = max(state.question_count - 2, 0) // len(ROTATION)
    return options[repeat % len(options)]


def privacy_reply(state: ConversationState) -> str:
    """Answer to a data-privacy question, pointing back to the interview."""
    if state.stage is Stage.NOT_STARTED:
        follow_up = "Send any message when you're ready to start."
    else:
        follow_up = "Whenever you're ready, just answer my last question."
    return f"{PRIVACY_REPLY} {follow_up}"


def _make_client() -> AsyncOpenAI | None:
    """Construct an OpenAI client for question wording, or None when no key is configured."""
    settings = get_settings()
    if not settings.openai_api_key:
        return None
    return AsyncOpenAI(
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
        timeout=settings.composer_timeout_seconds,
    )


class QuestionComposer:
    """Renders question wording with an LLM, falling back to templates."""

    def __init__(self, client: AsyncOpenAI | None = None, use_llm: bool = True) -> None:
        self._client = client if client is not None else (_make_client() if use_llm else None)

    def _build_messages(
        self,
        state: ConversationState,
        category: Category,
        previous_app_id: str | None = None,
    ) -> List[Dict[str, str]]:
        settings = get_settings()
        facts = state.subject_facts
        context = [f"Topic: {category.value} - {TOPICS[category]}."]
        if facts.startup_name:
            context.append(f"Startup: {facts.startup_name}")
        if facts.pitch_summary:
            context.append(f"Pitch: {facts.pitch_summary}")
        if previous_app_id:
            context.append(
                f"The founder applied before (application {previous_app_id}); welcome them back "
                "and mention that application ID."
            )
        if state.responses:
            context.append("Founder's recent answers:")
            for answer in state.responses[-3:]:
                preview = answer[:200] + "..." if len(answer) > 200 else answer
                context.append(f"- {preview}")
        context.append(
            f"This is question {state.question_count + 1}; "
            f"topics already covered: {', '.join(c.value for c in state.asked_categories) or 'none'}."
        )
        return [
            {"role": "system", "content": settings.question_system_prompt},
            {"role": "user", "content": "\n".join(context)},
        ]

    async def _generate(
        self, state: ConversationState, category: Category, previous_app_id: str | None
    ) -> str:
        settings = get_settings()
        try:
            response = await self._client.chat.completions.create(
                model=settings.model,
                messages=self._build_messages(state, category, previous_app_id),
                temperature=settings.temperature,
            )
        except (openai.APIError, TimeoutError, ConnectionError) as e:
            raise ComposerError(f"Question generation failed: {e}") from e

        try:
            content = response.choices[0].message.content or ""
        except (AttributeError, IndexError) as e:
            raise ComposerError(f"Unexpected completion shape: {e}") from e
        content = content.strip()
        if not content:
            raise ComposerError("Empty completion")
        return content

    async def compose_question(
        self,
        state: ConversationState,
        category: Category,
        previous_app_id: str | None = None,
    ) -> str:
        """Return the text of the next question for category.

        previous_app_id marks a returning founder and changes the welcome.

        Never fails: any LLM problem falls back to the template wording.
        """
        if self._client is None:
            return template_question(state, category, previous_app_id)
        try:
            return await self._generate(state, category, previous_app_id)
        except ComposerError as e:
            logger.warning(
                "Session %s: %s; using template for %s",
                state.session_id,
                e,
                category.value,
            )
            return template_question(state, category, previous_app_id)
