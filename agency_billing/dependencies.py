"""Dependency helpers.

Resolves the acting user from the session cookie for FastAPI routes. Whether
that user may act on a given task or project is decided upstream; routes only
scope lookups to the user's workspace.
"""

from fastapi import Cookie, Depends, HTTPException, status
from sqlalchemy.orm import Session

from agency_billing.database import get_db
from agency_billing.models import User
from agency_billing.security import read_session_token


def get_current_user(session_token: str | None = Cookie(default=None), db: Session = Depends(get_db)) -> User:
    if not session_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    user_id = read_session_token(session_token)
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Session expired")
    user = db.get(User, user_id)
    if not user or not user.active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid user")
    return user
