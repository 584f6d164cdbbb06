import logging
from datetime import timedelta
from typing import Optional, Tuple

from fastapi import Depends, Request, Response
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from config import Settings
from credit_ledger import CreditLedger
from database import get_db
from errors import (
    AppError,
    EmailExists,
    Forbidden,
    InvalidCredentials,
    Unauthorized,
)
from models import Role, User
from tokens import AccessClaims, TokenCodec, TokenDenylist, TokenPair

logger = logging.getLogger(__name__)

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"

pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")

# auto_error=False: the cookie is the primary transport, the header a fallback
security = HTTPBearer(auto_error=False)

token_denylist = TokenDenylist()
token_codec = TokenCodec(
    access_secret=Settings.JWT_SECRET,
    refresh_secret=Settings.JWT_REFRESH_SECRET,
    algorithm=Settings.JWT_ALGORITHM,
    access_ttl=timedelta(minutes=Settings.ACCESS_TOKEN_EXPIRE_MINUTES),
    refresh_ttl=timedelta(days=Settings.REFRESH_TOKEN_EXPIRE_DAYS),
    denylist=token_denylist,
)


def get_token_codec() -> TokenCodec:
    return token_codec


def normalize_email(email: str) -> str:
    return email.strip().lower()


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    """Verify a plain password against its hash. OAuth-only accounts have no hash."""
    if not hashed_password:
        return False
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except (ValueError, TypeError):
        return False


def get_password_hash(password: str) -> str:
    """Generate password hash using argon2."""
    return pwd_context.hash(password)


def register_user(db: Session, ledger: CreditLedger, email: str, password: str, name: str = None) -> User:
    email = normalize_email(email)
    if db.query(User).filter(User.email == email).first():
        raise EmailExists()

    user = User(email=email, name=name, hashed_password=get_password_hash(password))
    ledger.open_account(db, user)
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"User registered: {user.id}")
    return user


def authenticate_user(db: Session, email: str, password: str) -> User:
    user = db.query(User).filter(User.email == normalize_email(email)).first()
    if not user or not verify_password(password, user.hashed_password):
        raise InvalidCredentials()
    if not user.is_active:
        raise Forbidden("Inactive user")
    return user


def _cookie_options() -> dict:
    production = Settings.is_production()
    return {
        "httponly": True,
        "secure": production,
        # "none" is required for cross-origin cookies over HTTPS
        "samesite": "none" if production else "lax",
        "path": "/",
    }


def set_auth_cookies(response: Response, tokens: TokenPair, codec: TokenCodec):
    options = _cookie_options()
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access_token,
        max_age=int(codec.access_ttl.total_seconds()),
        **options,
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        max_age=int(codec.refresh_ttl.total_seconds()),
        **options,
    )


def clear_auth_cookies(response: Response):
    options = _cookie_options()
    response.delete_cookie(ACCESS_COOKIE, **options)
    response.delete_cookie(REFRESH_COOKIE, **options)


def extract_access_token(
    request: Request, credentials: Optional[HTTPAuthorizationCredentials] = None
) -> Optional[str]:
    token = request.cookies.get(ACCESS_COOKIE)
    if token:
        return token
    if credentials and credentials.scheme.lower() == "bearer":
        return credentials.credentials
    return None


def refresh_session(db: Session, codec: TokenCodec, refresh_token: Optional[str]) -> Tuple[User, TokenPair]:
    """Rotate a refresh token into a fresh pair; the presented token is retired."""
    if not refresh_token:
        raise Unauthorized("Refresh token is required")

    claims = codec.verify_refresh(refresh_token)
    user = db.get(User, claims.user_id)
    if user is None or not user.is_active:
        raise Unauthorized("User not found")

    codec.revoke(claims)
    return user, codec.issue(user)


def force_logout(request: Request, response: Response, codec: TokenCodec,
                 credentials: Optional[HTTPAuthorizationCredentials] = None) -> int:
    """Clear the auth cookies and denylist whichever presented tokens still verify.

    Never fails: an expired or garbled token is already unusable.
    """
    revoked = 0
    access = extract_access_token(request, credentials)
    refresh = request.cookies.get(REFRESH_COOKIE)

    for token, verify in ((access, codec.verify_access), (refresh, codec.verify_refresh)):
        if not token:
            continue
        try:
            claims = verify(token)
        except AppError:
            continue
        if codec.revoke(claims):
            revoked += 1

    clear_auth_cookies(response)
    return revoked


async def get_current_claims(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    codec: TokenCodec = Depends(get_token_codec),
) -> AccessClaims:
    token = extract_access_token(request, credentials)
    if not token:
        raise Unauthorized()
    return codec.verify_access(token)


async def get_current_user(
    claims: AccessClaims = Depends(get_current_claims),
    db: Session = Depends(get_db),
) -> User:
    user = db.get(User, claims.user_id)
    if user is None:
        raise Unauthorized("User not found")
    if not user.is_active:
        raise Forbidden("Inactive user")
    return user


async def require_admin(current_user: User = Depends(get_current_user)) -> User:
    if current_user.role != Role.ADMIN:
        raise Forbidden("Admin access required")
    return current_user
