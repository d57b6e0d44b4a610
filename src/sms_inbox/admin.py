from __future__ import annotations

import logging
from collections.abc import Sequence

from .auth import IdentityGate
from .db import Volunteer
from .errors import Forbidden, NotFound
from .store import VolunteerStore

logger = logging.getLogger(__name__)


class ApprovalWorkflow:
    """Admin-only approve/reject transitions on volunteer records."""

    def __init__(self, gate: IdentityGate, volunteers: VolunteerStore) -> None:
        self.gate = gate
        self.volunteers = volunteers

    def _target(self, volunteer_id: str) -> Volunteer:
        target = self.volunteers.get(volunteer_id)
        if target is None:
            raise NotFound("Volunteer not found")
        return target

    def approve(self, requester_id: str, target_id: str) -> Volunteer:
        """Mark ``target_id`` approved. Approving an approved volunteer is a no-op."""
        self.gate.require_admin(requester_id)
        target = self._target(target_id)
        self.volunteers.approve(target)
        logger.info(f"Volunteer {target_id} approved by {requester_id}")
        return target

    def reject(self, requester_id: str, target_id: str) -> None:
        """
        Delete ``target_id`` entirely so the applicant can never sign in again.

        Self-rejection is refused before anything else, admin or not.
        """
        if requester_id == target_id:
            raise Forbidden("Cannot reject yourself")
        self.gate.require_admin(requester_id)
        target = self._target(target_id)
        self.volunteers.delete(target)
        logger.info(f"Volunteer {target_id} rejected and removed by {requester_id}")

    def pending(self, requester_id: str) -> Sequence[Volunteer]:
        self.gate.require_admin(requester_id)
        return self.volunteers.list_pending()
