from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .errors import AuthenticationError, ForbiddenError
from .yaml_store import ROLE_ADMIN, BookingRecord


class Action(str, Enum):
    READ = "read"
    VIEW_BOOKING = "view_booking"
    CREATE_BOOKING = "create_booking"
    UPDATE_STATUS = "update_status"
    CANCEL = "cancel"
    CREATE_RESOURCE = "create_resource"
    UPDATE_RESOURCE = "update_resource"
    DELETE_RESOURCE = "delete_resource"


OWNER_OR_ADMIN_ACTIONS = frozenset({Action.VIEW_BOOKING, Action.UPDATE_STATUS, Action.CANCEL})
RESOURCE_MUTATIONS = frozenset({Action.CREATE_RESOURCE, Action.UPDATE_RESOURCE, Action.DELETE_RESOURCE})


@dataclass(frozen=True)
class Actor:
    """Identity asserted by a validated bearer token.

    The role is whatever the token carried when it was issued; it is not re-read
    from the user store.
    """

    user_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


class AuthorizationGuard:
    def authenticate(self, actor: Actor | None) -> Actor:
        if actor is None:
            raise AuthenticationError("authentication required")
        return actor

    def check(self, actor: Actor | None, action: Action, booking: BookingRecord | None = None) -> Actor | None:
        if action is Action.READ:
            return actor

        if actor is None:
            raise AuthenticationError("authentication required")

        if action is Action.CREATE_BOOKING:
            return actor

        if action in OWNER_OR_ADMIN_ACTIONS:
            if booking is None:
                raise ValueError(f"{action.value} requires the target booking")
            if actor.is_admin or actor.user_id == booking.owner_id:
                return actor
            raise ForbiddenError("access denied")

        if action in RESOURCE_MUTATIONS:
            if actor.is_admin:
                return actor
            raise ForbiddenError("admin access required")

        raise ForbiddenError(f"unsupported action: {action.value}")

