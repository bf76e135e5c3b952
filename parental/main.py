import logging
import os
from typing import List

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import sessionmaker

from parental.agents.coach import ChatGateway, get_gateway
from parental.auth.dependencies import Identity, get_current_user, get_identity
from parental.conversation import ConversationState, run_turn
from parental.database import models, schema
from parental.database.db import Base, engine, get_session_factory
from parental.database.store import ConversationStore, get_store
from parental.errors import GENERIC_ERROR_MESSAGE, ProviderError, StoreError, ValidationError
from parental.utils.relay import prefetch

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="[%(asctime)s] %(levelname)s - %(message)s",
)
logger = logging.getLogger("parental")

app = FastAPI(title="Parental", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure this properly for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Session-Id"],
)

Base.metadata.create_all(bind=engine)


# ---------------------------
# Error handlers
# ---------------------------
@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError):
    logger.error("Provider error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"error": GENERIC_ERROR_MESSAGE})


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    logger.error("Store error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"error": GENERIC_ERROR_MESSAGE})


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"error": str(exc)})


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    logger.info("Rejected malformed body on %s", request.url.path)
    return JSONResponse(status_code=422, content={"error": "Invalid request body", "detail": jsonable_encoder(exc.errors())})


# ---------------------------
# Routes
# ---------------------------
@app.get('/')
async def health():
    return {'messages': "API is working well"}


@app.post('/api/chatbot')
async def chatbot(body: schema.ChatRequest, gateway: ChatGateway = Depends(get_gateway)):
    *history, latest = body.messages
    if latest.role != "user":
        raise ValidationError("the last message must come from the user")
    context = (body.data.context if body.data else "") or ""
    logger.info("Incoming chat: history_turns=%s context=%s", len(history), bool(context))

    fragments = await prefetch(gateway.stream(history, latest.content, context))
    return StreamingResponse(fragments, media_type="text/plain; charset=utf-8")


@app.post('/api/users/me', response_model=schema.UserOut)
def sign_in(identity: Identity = Depends(get_identity), store: ConversationStore = Depends(get_store)):
    return store.upsert_user(identity.external_id, identity.email)


@app.get('/me', response_model=schema.UserOut)
def read_me(current_user: models.User = Depends(get_current_user)):
    return current_user


@app.get('/api/sessions', response_model=List[schema.SessionOut])
def list_sessions(
    current_user: models.User = Depends(get_current_user),
    store: ConversationStore = Depends(get_store),
):
    return store.list_sessions(current_user.id)


@app.post('/api/sessions', response_model=schema.SessionOut)
def ensure_session(
    body: schema.SessionEnsure,
    current_user: models.User = Depends(get_current_user),
    store: ConversationStore = Depends(get_store),
):
    session_id = store.ensure_session(current_user.id, body.session_id)
    return store.get_session(session_id)


def _owned_session(store: ConversationStore, session_id: int, user: models.User) -> models.ChatSession:
    chat_session = store.get_session(session_id)
    if chat_session is None or chat_session.user_id != user.id:
        raise HTTPException(status_code=404, detail="Session not found")
    return chat_session


@app.get('/api/sessions/{session_id}/messages', response_model=List[schema.MessageOut])
def list_messages(
    session_id: int,
    current_user: models.User = Depends(get_current_user),
    store: ConversationStore = Depends(get_store),
):
    _owned_session(store, session_id, current_user)
    return store.list_messages(session_id)


@app.post('/api/sessions/{session_id}/messages', response_model=schema.MessageOut)
def add_message(
    session_id: int,
    message: schema.MessageCreate,
    current_user: models.User = Depends(get_current_user),
    store: ConversationStore = Depends(get_store),
):
    _owned_session(store, session_id, current_user)
    return store.insert_message(session_id, message.sender, message.content)


@app.post('/api/conversation')
async def conversation_turn(
    body: schema.TurnRequest,
    current_user: models.User = Depends(get_current_user),
    gateway: ChatGateway = Depends(get_gateway),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    state = ConversationState(
        user_id=current_user.id,
        session_id=body.session_id,
        context=body.context,
        transcript=body.transcript,
    )

    async def turn():
        # the request-scoped session may close before the body finishes streaming
        with session_factory() as db:
            async for fragment in run_turn(state, body.message, gateway, ConversationStore(db)):
                yield fragment

    fragments = await prefetch(turn())
    headers = {"X-Session-Id": str(state.session_id)} if state.session_id is not None else {}
    return StreamingResponse(fragments, media_type="text/plain; charset=utf-8", headers=headers)
