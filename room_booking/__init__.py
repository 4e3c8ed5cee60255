from .authorization import Action, Actor, AuthorizationGuard
from .booking import Interval, can_reserve, find_conflict, has_time_overlap, parse_instant
from .config import AppConfig, load_config
from .errors import (
	AuthenticationError,
	BookingError,
	ConflictError,
	ForbiddenError,
	InvalidTransitionError,
	NotFoundError,
	StorageError,
	ValidationError,
)
from .lifecycle import ACTIVE_STATUSES, BookingStatus, apply_transition, parse_status, validate_transition
from .service import ReservationService, RoomCatalogService
from .yaml_store import (
	BookingRecord,
	ReservationYamlRepository,
	RoomRecord,
	UserRecord,
	UserYamlRepository,
)

__all__ = [
	"Action",
	"Actor",
	"AuthorizationGuard",
	"Interval",
	"can_reserve",
	"find_conflict",
	"has_time_overlap",
	"parse_instant",
	"AppConfig",
	"load_config",
	"AuthenticationError",
	"BookingError",
	"ConflictError",
	"ForbiddenError",
	"InvalidTransitionError",
	"NotFoundError",
	"StorageError",
	"ValidationError",
	"ACTIVE_STATUSES",
	"BookingStatus",
	"apply_transition",
	"parse_status",
	"validate_transition",
	"ReservationService",
	"RoomCatalogService",
	"BookingRecord",
	"ReservationYamlRepository",
	"RoomRecord",
	"UserRecord",
	"UserYamlRepository",
]
