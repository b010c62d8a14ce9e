"""Session pricing: individual versus group rates."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from .. import models
from ..db_types import to_money
from ..repository import WorkspaceRepository

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionPrice:
    """Resolved price of one appointment."""

    amount: Decimal
    is_group: bool
    participant_count: int
    description: str


def describe_session(start_time: Optional[datetime], *, is_group: bool) -> str:
    label = "Group training session" if is_group else "Training session"
    if start_time is None:
        return label
    return f"{label} on {start_time:%b} {start_time.day}, {start_time.year}"


class RateResolver:
    """Prices appointments for a workspace.

    A session counts as a group session when at least two distinct clients
    share its time window under the trainer's matching policy. Group sessions
    use the client's group rate, then the trainer's default group rate, then
    the client's individual rate.
    """

    def __init__(self, repository: WorkspaceRepository) -> None:
        self.repository = repository

    def matching_policy(self, trainer_id: str) -> models.GroupSessionMatching:
        settings = self.repository.get_trainer_settings(trainer_id)
        if settings is None or settings.group_session_matching is None:
            return models.GroupSessionMatching.EXACT_MATCH
        return models.GroupSessionMatching(settings.group_session_matching)

    def participant_count(self, appointment: models.Appointment) -> int:
        policy = self.matching_policy(appointment.trainer_id)
        peers = self.repository.find_session_peers(appointment, policy)
        clients = {str(appointment.client_id)}
        clients.update(str(peer.client_id) for peer in peers)
        return len(clients)

    def price_appointment(
        self,
        appointment: models.Appointment,
        profile: models.ClientProfile,
    ) -> SessionPrice:
        participants = self.participant_count(appointment)
        is_group = participants > 1
        amount = (
            self._group_rate(profile, appointment.trainer_id)
            if is_group
            else to_money(profile.session_rate)
        )
        LOGGER.debug(
            "Priced appointment %s at %s (%s participants)",
            appointment.id,
            amount,
            participants,
        )
        return SessionPrice(
            amount=amount,
            is_group=is_group,
            participant_count=participants,
            description=describe_session(appointment.start_time, is_group=is_group),
        )

    def _group_rate(self, profile: models.ClientProfile, trainer_id: str) -> Decimal:
        if profile.group_session_rate is not None:
            return to_money(profile.group_session_rate)
        settings = self.repository.get_trainer_settings(trainer_id)
        if settings is not None and settings.default_group_session_rate is not None:
            return to_money(settings.default_group_session_rate)
        return to_money(profile.session_rate)
