"""Passenger participant: registers passengers."""

from __future__ import annotations

from ticketflow.bus.interface import Ack
from ticketflow.participants.base import Originator
from ticketflow.topics import PASSENGERS_REGISTERED, Role


def passenger_key(passenger_id: object) -> str:
    return f"passenger-{passenger_id}"


class PassengerService(Originator):
    """Publishes ``passengers.registered`` keyed ``passenger-<id>``."""

    role = Role.PASSENGER

    async def register_passenger(self, passenger_id: int | str, name: str) -> Ack:
        """
        Announce a registered passenger.

        Raises:
            MalformedPayloadError: If ``name`` is empty.
            DeliveryError: If the append still failed after retrying.
        """
        return await self._publish(
            PASSENGERS_REGISTERED,
            passenger_key(passenger_id),
            {"passengerId": passenger_id, "name": name},
        )
