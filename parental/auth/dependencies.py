import os
from typing import Optional

from dotenv import load_dotenv
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from parental.database import models
from parental.database.store import ConversationStore, get_store

load_dotenv()
SECRET_KEY = os.getenv("AUTH_SECRET_KEY")
ALGORITHM = os.getenv("AUTH_ALGORITHM", "HS256")

bearer_scheme = HTTPBearer(auto_error=False)


class Identity(BaseModel):
    """What the identity provider vouches for: a stable id and maybe an email."""

    external_id: str
    email: Optional[str] = None


def get_identity(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> Identity:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None or not SECRET_KEY:
        raise credentials_exception
    try:
        payload = jwt.decode(credentials.credentials, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise credentials_exception
    external_id = payload.get("sub")
    if not external_id:
        raise credentials_exception
    return Identity(external_id=str(external_id), email=payload.get("email"))


def get_current_user(
    identity: Identity = Depends(get_identity),
    store: ConversationStore = Depends(get_store),
) -> models.User:
    # signing in is what creates the row, so every authenticated call upserts
    return store.upsert_user(identity.external_id, identity.email)
