from typing import Optional

from fastapi import Header

from .errors import unauthorized


def user_from_header(authorization: Optional[str]) -> str:
    """Current user id.

    Identity is verified upstream; the bearer token received here is the
    opaque user id handed over by that collaborator.
    """
    prefix = "Bearer "
    if not authorization or not authorization.startswith(prefix):
        raise unauthorized()
    user_id = authorization[len(prefix) :].strip()
    if not user_id:
        raise unauthorized()
    return user_id


def get_current_user(authorization: Optional[str] = Header(default=None)) -> str:
    return user_from_header(authorization)
