from __future__ import annotations

from datetime import datetime
from typing import Any, Callable
import logging

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from .auth import AuthService, TokenService
from .authorization import Actor, AuthorizationGuard
from .config import AppConfig, load_config
from .errors import BookingError, ValidationError
from .service import ReservationService, RoomCatalogService
from .yaml_store import BookingRecord, ReservationYamlRepository, RoomRecord, UserYamlRepository

logger = logging.getLogger(__name__)


def create_app(
    config: AppConfig,
    now_provider: Callable[[], datetime] | None = None,
) -> Flask:
    app = Flask(__name__)
    repository = ReservationYamlRepository(config.data_dir)
    users = UserYamlRepository(config.data_dir)
    tokens = TokenService(config)
    guard = AuthorizationGuard()

    auth_service = AuthService(users, tokens)
    reservations = ReservationService(repository, guard, clock=now_provider)
    rooms = RoomCatalogService(repository, guard)

    app.extensions["room_booking"] = {
        "repository": repository,
        "users": users,
        "tokens": tokens,
        "reservations": reservations,
        "rooms": rooms,
    }

    def _current_actor() -> Actor | None:
        return tokens.actor_from_header(request.headers.get("Authorization"))

    def _json_body() -> dict[str, Any]:
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            raise ValidationError("request body must be a JSON object")
        return payload

    @app.after_request
    def add_cors_headers(response: Any) -> Any:
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.headers["Access-Control-Allow-Methods"] = "GET,POST,PATCH,DELETE,OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
        return response

    @app.errorhandler(BookingError)
    def handle_booking_error(error: BookingError) -> Any:
        if error.http_status >= 500:
            logger.error("request failed: %s %s: %s", request.method, request.path, error.message, exc_info=error)
        return jsonify(error.to_dict()), error.http_status

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException) -> Any:
        return jsonify({"ok": False, "error": "http_error", "message": error.description}), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception) -> Any:
        logger.exception("unexpected error on %s %s", request.method, request.path)
        return jsonify({"ok": False, "error": "internal_error", "message": "internal error"}), 500

    @app.post("/api/register")
    def register() -> Any:
        payload = _json_body()
        user = auth_service.register(payload.get("email"), payload.get("password"))
        return jsonify({"id": user.user_id, "email": user.email, "role": user.role}), 201

    @app.post("/api/login")
    def login() -> Any:
        payload = _json_body()
        token = auth_service.login(payload.get("email"), payload.get("password"))
        return jsonify({"token": token})

    @app.get("/api/rooms")
    def list_rooms() -> Any:
        return jsonify([_serialize_room(room) for room in rooms.list_rooms()])

    @app.get("/api/rooms/<room_id>")
    def get_room(room_id: str) -> Any:
        return jsonify(_serialize_room(rooms.get_room(room_id)))

    @app.get("/api/rooms/<room_id>/bookings")
    def room_bookings(room_id: str) -> Any:
        return jsonify([_serialize_booking(record) for record in reservations.list_room_bookings(room_id)])

    @app.post("/api/rooms")
    def create_room() -> Any:
        actor = _current_actor()
        room = rooms.create_room(actor, _json_body())
        return jsonify({"id": room.room_id}), 201

    @app.patch("/api/rooms/<room_id>")
    def update_room(room_id: str) -> Any:
        actor = _current_actor()
        rooms.update_room(actor, room_id, _json_body())
        return jsonify({"status": "updated"})

    @app.delete("/api/rooms/<room_id>")
    def delete_room(room_id: str) -> Any:
        actor = _current_actor()
        rooms.delete_room(actor, room_id)
        return jsonify({"status": "deleted"})

    @app.get("/api/bookings/my")
    def my_bookings() -> Any:
        actor = _current_actor()
        return jsonify([_serialize_booking(record) for record in reservations.list_my_bookings(actor)])

    @app.post("/api/bookings")
    def create_booking() -> Any:
        actor = _current_actor()
        payload = request.get_json(silent=True)
        payload = payload if isinstance(payload, dict) else {}
        record = reservations.create_booking(
            actor,
            payload.get("room_id"),
            payload.get("start_time"),
            payload.get("end_time"),
        )
        return jsonify({"id": record.booking_id}), 201

    @app.get("/api/bookings/<booking_id>")
    def get_booking(booking_id: str) -> Any:
        actor = _current_actor()
        return jsonify(_serialize_booking(reservations.get_booking(actor, booking_id)))

    @app.patch("/api/bookings/<booking_id>")
    def update_booking(booking_id: str) -> Any:
        actor = _current_actor()
        payload = request.get_json(silent=True)
        status = payload.get("status") if isinstance(payload, dict) else None
        reservations.update_booking_status(actor, booking_id, status)
        return jsonify({"status": "updated"})

    @app.delete("/api/bookings/<booking_id>")
    def cancel_booking(booking_id: str) -> Any:
        actor = _current_actor()
        reservations.cancel_booking(actor, booking_id)
        return jsonify({"status": "cancelled"})

    return app


def _serialize_room(room: RoomRecord) -> dict[str, Any]:
    return {
        "id": room.room_id,
        "name": room.name,
        "description": room.description,
        "capacity": room.capacity,
        "photo_url": room.photo_url,
        "is_active": room.is_active,
        "created_at": room.created_at.isoformat(timespec="seconds"),
    }


def _serialize_booking(record: BookingRecord) -> dict[str, Any]:
    return {
        "id": record.booking_id,
        "room_id": record.room_id,
        "user_id": record.owner_id,
        "start_time": record.start.isoformat(),
        "end_time": record.end.isoformat(),
        "status": record.status.value,
        "created_at": record.created_at.isoformat(timespec="seconds"),
    }


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    settings = load_config()
    app = create_app(settings)
    app.run(host=settings.host, port=settings.port, debug=False)
