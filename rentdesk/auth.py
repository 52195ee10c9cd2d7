"""Resolve the acting user for a request.

Sign-in happens in front of this service; it passes the signed-in user's id
in the ``X-User-Id`` header.
"""

from functools import wraps

from flask import request

from .errors import Unauthorized
from .models import User, db
from .permissions import Actor


def current_user() -> User:
    raw = request.headers.get('X-User-Id', '').strip()
    if not raw.isdigit():
        raise Unauthorized("Authentication required")
    user = db.session.get(User, int(raw))
    if user is None:
        raise Unauthorized("Unknown user")
    return user


def current_actor() -> Actor:
    return Actor.from_user(current_user())


def requires(permission: str):
    """View decorator: the acting user must hold ``permission``."""
    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            current_actor().require(permission)
            return view(*args, **kwargs)
        return wrapper
    return decorator
