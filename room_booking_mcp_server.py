from __future__ import annotations

from typing import Any

from mcp.server.fastmcp import FastMCP

from room_booking import (
    AuthorizationGuard,
    ReservationService,
    ReservationYamlRepository,
    RoomCatalogService,
    load_config,
)
from room_booking.auth import TokenService

mcp = FastMCP(
    "Room Booking MCP Server",
    instructions="Browse rooms and their schedules, and book a room with a bearer token.",
    json_response=True,
)

CONFIG = load_config()
REPOSITORY = ReservationYamlRepository(CONFIG.data_dir)
GUARD = AuthorizationGuard()
TOKENS = TokenService(CONFIG)
ROOMS = RoomCatalogService(REPOSITORY, GUARD)
RESERVATIONS = ReservationService(REPOSITORY, GUARD)


@mcp.tool()
def list_rooms(active_only: bool = True) -> list[dict[str, Any]]:
    """List rooms in the catalog."""
    return [room.to_dict() for room in ROOMS.list_rooms() if room.is_active or not active_only]


@mcp.tool()
def list_room_bookings(room_id: str) -> list[dict[str, Any]]:
    """Return the non-cancelled bookings of a room ordered by start time."""
    return [record.to_dict() for record in RESERVATIONS.list_room_bookings(room_id)]


@mcp.tool()
def create_booking(token: str, room_id: str, start_time: str, end_time: str) -> dict[str, Any]:
    """Book a room for [start_time, end_time) using RFC 3339 timestamps with an offset."""
    actor = TOKENS.decode(token)
    created = RESERVATIONS.create_booking(actor, room_id, start_time, end_time)
    return created.to_dict()


@mcp.tool()
def cancel_booking(token: str, booking_id: str) -> dict[str, Any]:
    """Cancel a booking owned by the token holder; admins may cancel any booking."""
    actor = TOKENS.decode(token)
    cancelled = RESERVATIONS.cancel_booking(actor, booking_id)
    return cancelled.to_dict()


def main() -> None:
    mcp.run()


if __name__ == "__main__":
    main()
