from __future__ import annotations

from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt
from passlib.context import CryptContext

from .authorization import Actor
from .config import AppConfig
from .errors import AuthenticationError, ValidationError
from .yaml_store import ROLE_USER, UserRecord, UserYamlRepository

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def normalize_email(email: object) -> str:
    return str(email or "").strip().lower()


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


class TokenService:
    def __init__(self, config: AppConfig) -> None:
        self._secret = config.jwt_secret
        self._algorithm = config.jwt_algorithm
        self._ttl = timedelta(minutes=config.token_ttl_minutes)

    def issue(self, user: UserRecord, now: datetime | None = None) -> str:
        issued_at = now or datetime.now(timezone.utc)
        claims = {
            "sub": user.user_id,
            "user_id": user.user_id,
            "role": user.role,
            "iat": issued_at,
            "exp": issued_at + self._ttl,
        }
        return jwt.encode(claims, self._secret, algorithm=self._algorithm)

    def decode(self, token: str) -> Actor:
        try:
            payload = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except JWTError as error:
            raise AuthenticationError("invalid or expired token") from error

        user_id = payload.get("user_id")
        role = payload.get("role")
        if not user_id or not role:
            raise AuthenticationError("invalid or expired token")
        return Actor(user_id=str(user_id), role=str(role))

    def actor_from_header(self, header: str | None) -> Actor | None:
        """Return None for a missing header; raise on a malformed or invalid one."""
        if not header:
            return None
        parts = header.split(" ", 1)
        if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
            raise AuthenticationError("malformed Authorization header")
        return self.decode(parts[1].strip())


class AuthService:
    def __init__(self, users: UserYamlRepository, tokens: TokenService) -> None:
        self._users = users
        self._tokens = tokens

    def register(self, email: object, password: object, role: str = ROLE_USER) -> UserRecord:
        normalized = normalize_email(email)
        secret = str(password or "")
        if not normalized or not secret:
            raise ValidationError("email and password are required")
        return self._users.add_user(normalized, hash_password(secret), role=role)

    def login(self, email: object, password: object) -> str:
        normalized = normalize_email(email)
        secret = str(password or "")
        if not normalized or not secret:
            raise ValidationError("email and password are required")

        user = self._users.find_by_email(normalized)
        if user is None or not verify_password(secret, user.password_hash):
            raise AuthenticationError("invalid credentials")
        return self._tokens.issue(user)
