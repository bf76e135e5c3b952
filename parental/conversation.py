import logging
from typing import AsyncIterator, List, Optional

from pydantic import BaseModel, Field

from parental.agents.coach import ChatGateway
from parental.database.schema import ChatTurn
from parental.database.store import ConversationStore
from parental.errors import StoreError, ValidationError

logger = logging.getLogger("parental.conversation")


class ConversationState(BaseModel):
    """Everything one chat turn needs, owned by the caller between turns."""

    user_id: int
    session_id: Optional[int] = None
    context: str = ""
    transcript: List[ChatTurn] = Field(default_factory=list)


def _persist(store: ConversationStore, session_id: Optional[int], sender: str, content: str) -> None:
    if session_id is None:
        return
    try:
        store.insert_message(session_id, sender, content)
    except StoreError:
        # the chat keeps going without this row
        logger.exception("Could not persist %s message for session %s", sender, session_id)


async def run_turn(
    state: ConversationState,
    utterance: str,
    gateway: ChatGateway,
    store: ConversationStore,
) -> AsyncIterator[str]:
    if not utterance or not utterance.strip():
        raise ValidationError("message must not be empty")

    try:
        state.session_id = store.ensure_session(state.user_id, state.session_id)
    except StoreError:
        logger.exception("Could not open a session for user %s", state.user_id)
        state.session_id = None

    # the first utterance becomes the context for the rest of the conversation
    if not state.context:
        state.context = utterance

    _persist(store, state.session_id, "user", utterance)

    fragments = []
    async for fragment in gateway.stream(state.transcript, utterance, state.context):
        fragments.append(fragment)
        yield fragment

    reply = "".join(fragments)
    state.transcript.append(ChatTurn(role="user", content=utterance))
    state.transcript.append(ChatTurn(role="assistant", content=reply))
    _persist(store, state.session_id, "ai", reply)
