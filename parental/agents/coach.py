import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Sequence, Union

from dotenv import load_dotenv
from pydantic_ai import Agent
from pydantic_ai.messages import (
    ModelMessage,
    ModelRequest,
    ModelResponse,
    SystemPromptPart,
    TextPart,
    UserPromptPart,
)
from pydantic_ai.models import Model
from pydantic_ai.models.google import GoogleModel
from pydantic_ai.models.groq import GroqModel
from pydantic_ai.providers.google import GoogleProvider
from pydantic_ai.providers.groq import GroqProvider
from pydantic_ai.settings import ModelSettings

from parental.database.schema import ChatTurn
from parental.errors import ProviderError

# Force dotenv to load from project root
env_path = Path(__file__).resolve().parent.parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

LLM_PROVIDER = os.getenv("LLM_PROVIDER", "groq")
CHAT_MODEL = os.getenv("CHAT_MODEL", "llama-3.1-8b-instant")
CHAT_MAX_TOKENS = int(os.getenv("CHAT_MAX_TOKENS", "1024"))
CHAT_TEMPERATURE = float(os.getenv("CHAT_TEMPERATURE", "0.5"))
GROQ_API_KEY = os.getenv("GROQ_API_KEY")
GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY")

logger = logging.getLogger("parental.coach")

SYSTEM_PROMPT = """You are a compassionate and knowledgeable relationship and parenting coach named Parental. Your role is to help couples improve their relationship with each other and their children by providing empathetic, practical, and personalized advice. Use a warm, supportive tone, and ensure your responses are specific, actionable, and grounded in principles of healthy communication.

When responding:
- Ask follow-up questions to clarify the couple's situation if needed (e.g., specific issues, number and ages of children).
- Provide clear, step-by-step recommendations tailored to the user's input.
- Avoid generic advice; focus on the couple's unique context.
- Do not offer medical, legal, or crisis intervention advice. If the situation seems serious (e.g., abuse), gently suggest seeking professional help from a licensed therapist or counselor.
- Keep responses concise (150-300 words) unless the user requests more detail.

Example user input: "We argue a lot about parenting our 5-year-old, and it's straining our relationship."
Example response: "I'm sorry to hear you're facing tension over parenting. That can be really tough. It sounds like you both care deeply about your 5-year-old, which is a great foundation. Can you share what specific parenting issues spark these arguments? In the meantime, try setting aside 10 minutes daily to calmly discuss one parenting topic, using 'I feel' statements to express your views. This can help you both feel heard and reduce conflict."
"""

CONTEXT_MARKER = "Context: {context}\n\n"

Turn = Union[ChatTurn, Dict[str, str]]


def build_user_prompt(utterance: str, context: Optional[str] = "") -> str:
    if context:
        return CONTEXT_MARKER.format(context=context) + utterance
    return utterance


def _role_and_content(turn: Turn):
    if isinstance(turn, ChatTurn):
        return turn.role, turn.content
    return (turn.get("role") or "").lower(), turn.get("content") or ""


def build_prompt(history: Sequence[Turn], utterance: str, context: Optional[str] = "") -> List[Dict[str, str]]:
    """Outbound message list: system prompt, prior turns, then the latest user message."""
    prompt = [{"role": "system", "content": SYSTEM_PROMPT}]
    for turn in history or []:
        role, content = _role_and_content(turn)
        if role in ("assistant", "ai"):
            prompt.append({"role": "assistant", "content": content})
        elif role == "user":
            prompt.append({"role": "user", "content": content})
        # any other role, including client-sent system turns, is dropped
    prompt.append({"role": "user", "content": build_user_prompt(utterance, context)})
    return prompt


def to_model_messages(prompt: List[Dict[str, str]]) -> List[ModelMessage]:
    messages: List[ModelMessage] = []
    for item in prompt:
        if item["role"] == "assistant":
            messages.append(ModelResponse(parts=[TextPart(content=item["content"])]))
            continue
        if item["role"] == "system":
            part = SystemPromptPart(content=item["content"])
        else:
            part = UserPromptPart(content=item["content"])
        if messages and isinstance(messages[-1], ModelRequest):
            messages[-1] = ModelRequest(parts=[*messages[-1].parts, part])
        else:
            messages.append(ModelRequest(parts=[part]))
    return messages


class ChatGateway:
    """Streams the coach's reply for one turn straight from the completion provider."""

    def __init__(
        self,
        model: Union[Model, str],
        *,
        max_tokens: int = CHAT_MAX_TOKENS,
        temperature: float = CHAT_TEMPERATURE,
    ):
        # the system prompt travels inside the message history
        self.agent = Agent(model, output_type=str, name="parental")
        self.model_settings = ModelSettings(max_tokens=max_tokens, temperature=temperature)

    async def stream(
        self, history: Sequence[Turn], utterance: str, context: Optional[str] = ""
    ) -> AsyncIterator[str]:
        """Yield reply fragments in arrival order.

        Raises ``ProviderError`` if nothing was produced. A failure after the
        first fragment only ends the stream early.
        """
        prompt = build_prompt(history, utterance, context)
        logger.info(
            "Opening completion stream: history_turns=%s context=%s",
            len(prompt) - 2,
            bool(context),
        )
        started = False
        try:
            # with no new user prompt the agent sends the history as-is, latest request last
            async with self.agent.run_stream(
                message_history=to_model_messages(prompt),
                model_settings=self.model_settings,
            ) as result:
                async for fragment in result.stream_text(delta=True, debounce_by=None):
                    if not fragment:
                        continue
                    started = True
                    yield fragment
        except Exception as exc:
            if not started:
                logger.exception("Completion provider failed before streaming")
                raise ProviderError(str(exc)) from exc
            logger.warning("Completion stream ended early: %s", exc)
        if not started:
            logger.error("Completion provider returned no text")
            raise ProviderError("provider returned no output")


def build_model() -> Model:
    if LLM_PROVIDER == "google":
        provider = GoogleProvider(api_key=GOOGLE_API_KEY)
        return GoogleModel(CHAT_MODEL, provider=provider)
    if LLM_PROVIDER == "groq":
        provider = GroqProvider(api_key=GROQ_API_KEY)
        return GroqModel(CHAT_MODEL, provider=provider)
    raise RuntimeError(f"Unsupported LLM_PROVIDER: {LLM_PROVIDER}")


@lru_cache(maxsize=1)
def get_gateway() -> ChatGateway:
    return ChatGateway(build_model())
