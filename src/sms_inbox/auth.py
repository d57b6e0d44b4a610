"""
Volunteer identity and authorization.

Sessions are issued by the identity provider as signed tokens of the form
``<volunteer_id>.<hex HMAC-SHA256(volunteer_id, SESSION_SECRET)>``. The gate
only trusts the volunteer id it recovers from a valid token and re-reads the
volunteer record on every call; approval and admin flags never come from the
client.
"""

from __future__ import annotations

import hashlib
import hmac
import logging

from .db import Volunteer
from .errors import Forbidden, Unauthenticated
from .store import VolunteerStore

logger = logging.getLogger(__name__)


def _sign(volunteer_id: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), volunteer_id.encode("utf-8"), hashlib.sha256).hexdigest()


def issue_session_token(volunteer_id: str, secret: str) -> str:
    return f"{volunteer_id}.{_sign(volunteer_id, secret)}"


def verify_session_token(token: str | None, secret: str | None) -> str:
    """Return the volunteer id carried by ``token`` or raise ``Unauthenticated``."""
    if not secret:
        logger.error("SESSION_SECRET is not configured; refusing all sessions")
        raise Unauthenticated()
    if not token:
        raise Unauthenticated()

    volunteer_id, sep, signature = token.rpartition(".")
    if not sep or not volunteer_id or not signature:
        raise Unauthenticated()

    if not hmac.compare_digest(_sign(volunteer_id, secret), signature):
        logger.warning("Rejected session token with bad signature")
        raise Unauthenticated()
    return volunteer_id


def token_from_headers(authorization: str | None, session_cookie: str | None) -> str | None:
    if authorization:
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
    return session_cookie or None


class IdentityGate:
    def __init__(self, volunteers: VolunteerStore) -> None:
        self.volunteers = volunteers

    def require_approved(self, volunteer_id: str) -> Volunteer:
        volunteer = self.volunteers.get(volunteer_id)
        if volunteer is None or not volunteer.approved:
            raise Forbidden("Forbidden - Volunteer approval required")
        return volunteer

    def require_admin(self, volunteer_id: str) -> Volunteer:
        volunteer = self.volunteers.get(volunteer_id)
        if volunteer is None or not volunteer.approved or not volunteer.is_admin:
            raise Forbidden("Forbidden - Admin privileges required")
        return volunteer
