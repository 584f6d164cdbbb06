import uuid
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, NamedTuple, Optional

from jose import ExpiredSignatureError, JWTError, jwt

from errors import TokenExpired, TokenInvalid

logger = logging.getLogger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class TokenPair(NamedTuple):
    access_token: str
    refresh_token: str


class AccessClaims(NamedTuple):
    user_id: int
    email: str
    role: str
    plan: str
    jti: str
    exp: datetime


class RefreshClaims(NamedTuple):
    user_id: int
    jti: str
    exp: datetime


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TokenDenylist:
    """Process-local set of revoked token ids.

    Each entry lives only until the token it names would have expired anyway,
    so the set never grows beyond the tokens still in their lifetime.
    """

    def __init__(self, clock: Callable[[], datetime] = _utc_now):
        self._entries: Dict[str, datetime] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def revoke(self, jti: str, expires_at: datetime):
        with self._lock:
            self._purge()
            self._entries[jti] = expires_at

    def is_revoked(self, jti: str) -> bool:
        with self._lock:
            self._purge()
            return jti in self._entries

    def __len__(self):
        with self._lock:
            self._purge()
            return len(self._entries)

    def _purge(self):
        now = self._clock()
        for jti in [j for j, exp in self._entries.items() if exp <= now]:
            del self._entries[jti]


class TokenCodec:
    """Signs and verifies access/refresh JWTs. Holds no state besides keys."""

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        algorithm: str = "HS256",
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        denylist: Optional[TokenDenylist] = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        if access_secret == refresh_secret:
            logger.warning("Access and refresh tokens share a signing secret")
        self.access_secret = access_secret
        self.refresh_secret = refresh_secret
        self.algorithm = algorithm
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.denylist = denylist
        self._clock = clock

    def issue(self, user) -> TokenPair:
        now = self._clock()
        access_payload = {
            "sub": str(user.id),
            "email": user.email,
            "role": getattr(user.role, "value", user.role) or "USER",
            "plan": getattr(user.plan, "value", user.plan) or "FREE",
            "type": ACCESS,
            "jti": uuid.uuid4().hex,
            "iat": now,
            "exp": now + self.access_ttl,
        }
        refresh_payload = {
            "sub": str(user.id),
            "type": REFRESH,
            "jti": uuid.uuid4().hex,
            "iat": now,
            "exp": now + self.refresh_ttl,
        }
        return TokenPair(
            access_token=jwt.encode(access_payload, self.access_secret, algorithm=self.algorithm),
            refresh_token=jwt.encode(refresh_payload, self.refresh_secret, algorithm=self.algorithm),
        )

    def verify_access(self, token: str) -> AccessClaims:
        payload = self._decode(token, self.access_secret, ACCESS)
        try:
            return AccessClaims(
                user_id=int(payload["sub"]),
                email=payload["email"],
                role=payload["role"],
                plan=payload["plan"],
                jti=payload["jti"],
                exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            )
        except (KeyError, TypeError, ValueError):
            raise TokenInvalid("Malformed access token")

    def verify_refresh(self, token: str) -> RefreshClaims:
        payload = self._decode(token, self.refresh_secret, REFRESH)
        try:
            return RefreshClaims(
                user_id=int(payload["sub"]),
                jti=payload["jti"],
                exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            )
        except (KeyError, TypeError, ValueError):
            raise TokenInvalid("Malformed refresh token")

    def revoke(self, claims) -> bool:
        """Denylist a verified token until its natural expiry."""
        if self.denylist is None:
            return False
        self.denylist.revoke(claims.jti, claims.exp)
        return True

    def _decode(self, token: str, secret: str, expected_type: str) -> dict:
        if not token or not isinstance(token, str):
            raise TokenInvalid()
        try:
            payload = jwt.decode(token, secret, algorithms=[self.algorithm])
        except ExpiredSignatureError:
            raise TokenExpired()
        except JWTError as e:
            logger.warning(f"Rejected {expected_type} token: {e}")
            raise TokenInvalid()

        if payload.get("type") != expected_type:
            raise TokenInvalid(f"Wrong token type, expected {expected_type}")
        if self.denylist is not None and self.denylist.is_revoked(payload.get("jti", "")):
            raise TokenInvalid("Token has been revoked")
        return payload
