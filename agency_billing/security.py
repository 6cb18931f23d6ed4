"""Session token helpers.

The billing service does not log anyone in; an upstream auth layer issues a
signed session token naming the acting user and this module verifies it.
"""

from datetime import datetime, timedelta, timezone

from itsdangerous import BadSignature, URLSafeSerializer

from agency_billing.config import settings

# Signed serializer protects session payload integrity.
serializer = URLSafeSerializer(settings.secret_key, salt="agency-billing-session")


def create_session_token(user_id: int) -> str:
    payload = {
        "sub": user_id,
        "exp": (datetime.now(timezone.utc) + timedelta(hours=settings.session_max_age_hours)).timestamp(),
    }
    return serializer.dumps(payload)


def read_session_token(token: str) -> int | None:
    try:
        payload = serializer.loads(token)
    except BadSignature:
        return None
    if payload.get("exp", 0) < datetime.now(timezone.utc).timestamp():
        return None
    return payload.get("sub")
