"""Transport participant: announces trip status changes."""

from __future__ import annotations

from ticketflow.bus.interface import Ack
from ticketflow.participants.base import Originator
from ticketflow.topics import TRIPS_UPDATED, Role


def trip_key(trip_id: object) -> str:
    return f"trip-{trip_id}"


class TransportService(Originator):
    """Publishes ``trips.updated`` keyed ``trip-<id>``."""

    role = Role.TRANSPORT

    async def update_trip(self, trip_id: int | str, status: str) -> Ack:
        """
        Announce a trip status change (e.g. ``DELAYED``).

        All updates of one trip share a key, so consumers see them in order.

        Raises:
            MalformedPayloadError: If ``status`` is empty.
            DeliveryError: If the append still failed after retrying.
        """
        return await self._publish(
            TRIPS_UPDATED,
            trip_key(trip_id),
            {"tripId": trip_id, "status": status},
        )
