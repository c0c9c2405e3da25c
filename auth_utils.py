"""
Authentication helpers: admin password, admin sessions, scoped API tokens.

Raw session tokens and API tokens are returned to the caller exactly once and
never stored. Admin sessions keep a sha256 of the token; API tokens keep a
salted werkzeug hash of the secret plus a short public lookup key.
"""

import enum
import hashlib
import hmac
import logging
import math
import secrets
from dataclasses import dataclass, field
from datetime import timedelta
from functools import lru_cache
from typing import Dict, List, Optional, Union

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import check_password_hash, generate_password_hash

from errors import AuthError, ForbiddenError, NotFoundError, ValidationError
from models import AdminSession, ApiToken, new_id, to_iso, utcnow
from schemas import TokenCreate, parse_model

logger = logging.getLogger(__name__)

SESSION_PREFIX = "csa_"
TOKEN_PREFIX = "cs_"
LOOKUP_KEY_BYTES = 6
SECRET_BYTES = 24
DISPLAY_PREFIX_LENGTH = 7

SOURCE_OPEN = "open"
SOURCE_SESSION = "admin_session"
SOURCE_TOKEN = "api_token"


class Scope(enum.Flag):
    """Permission bits a credential can carry."""

    NONE = 0
    READ = 1
    WRITE = 2
    ADMIN = 4
    MCP = 8
    ALL = READ | WRITE | ADMIN | MCP

    @classmethod
    def parse(cls, value: Union[str, "Scope"]) -> "Scope":
        if isinstance(value, cls):
            return value
        member = cls.__members__.get(str(value).upper())
        if member is None or member is cls.NONE:
            raise ValidationError(f"Unknown scope: {value!r}")
        return member

    @classmethod
    def from_names(cls, names) -> "Scope":
        flags = cls.NONE
        for name in names or ():
            member = cls.__members__.get(str(name).upper())
            if member is not None and member not in (cls.NONE, cls.ALL):
                flags |= member
        return flags

    def names(self) -> List[str]:
        """Scope names in canonical order."""
        order = (Scope.READ, Scope.WRITE, Scope.ADMIN, Scope.MCP)
        return [member.name.lower() for member in order if member in self]


@dataclass
class AuthResult:
    """Outcome of checking one credential."""

    authenticated: bool
    scopes: List[str] = field(default_factory=list)
    source: Optional[str] = None
    expires_at: Optional[str] = None
    token_id: Optional[str] = None

    @property
    def scope(self) -> Scope:
        return Scope.from_names(self.scopes)

    def to_dict(self) -> Dict:
        data = {
            "authenticated": self.authenticated,
            "source": self.source,
            "scopes": list(self.scopes),
        }
        if self.source == SOURCE_SESSION:
            data["expires_at"] = self.expires_at
        if self.token_id:
            data["token_id"] = self.token_id
        return data


def _denied(source: Optional[str] = None) -> AuthResult:
    return AuthResult(authenticated=False, source=source)


def _sha256(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


@lru_cache(maxsize=8)
def _dummy_hash(method: str) -> str:
    """Hash checked when no token row matches, so misses cost the same as hits."""
    return generate_password_hash(secrets.token_hex(SECRET_BYTES), method=method)


def is_auth_enabled(store) -> bool:
    """False when no admin password is configured (open mode)."""
    return bool(store.config.ADMIN_PASSWORD)


def check_admin_password(store, password: str) -> bool:
    """
    Compare a password with the configured one in constant time.

    Both values are reduced to fixed-length digests first, so neither the
    length nor the position of the first differing character affects timing.
    """
    configured = store.config.ADMIN_PASSWORD or ""
    if not configured or not isinstance(password, str):
        return False
    supplied = hashlib.sha256(password.encode("utf-8")).digest()
    expected = hashlib.sha256(configured.encode("utf-8")).digest()
    return hmac.compare_digest(supplied, expected)


def login(store, password: str) -> Dict:
    """
    Exchange the admin password for a session token.

    Returns:
        ``{"token", "expires_at"}``; in open mode the token is empty

    Raises:
        ValidationError: If no password was supplied
        AuthError: If the password is wrong
    """
    if not is_auth_enabled(store):
        return {
            "token": "",
            "expires_at": None,
            "message": "No ADMIN_PASSWORD configured - open access mode",
        }
    if not password or not isinstance(password, str):
        raise ValidationError("Password is required")
    if not check_admin_password(store, password):
        logger.warning("Failed admin login attempt")
        raise AuthError("Invalid password")
    return create_admin_session(store)


# Admin sessions ----------------------------------------------------------------
def _session_hours(store, hours) -> float:
    if hours is None:
        hours = store.config.ADMIN_SESSION_HOURS
    try:
        hours = float(hours)
    except (TypeError, ValueError):
        return 24.0
    return hours if math.isfinite(hours) else 24.0


def create_admin_session(store, hours: Optional[float] = None) -> Dict:
    """
    Mint an admin session token.

    Args:
        hours: Lifetime; defaults to ``ADMIN_SESSION_HOURS``. Zero or less
            means the session never expires.

    Returns:
        ``{"token", "expires_at"}``
    """
    hours = _session_hours(store, hours)
    token = SESSION_PREFIX + secrets.token_hex(SECRET_BYTES)
    now = utcnow()
    expires_at = now + timedelta(hours=hours) if hours > 0 else None

    with store.transaction() as session:
        session.add(AdminSession(
            id=new_id(),
            token_hash=_sha256(token),
            created_at=now,
            expires_at=expires_at,
        ))

    logger.info("Admin session created (expires %s)", to_iso(expires_at) or "never")
    return {"token": token, "expires_at": to_iso(expires_at)}


def validate_admin_session(store, token: str) -> AuthResult:
    """
    Check a session token. Valid sessions carry every scope.

    An expired session is reported as unauthenticated and removed.
    """
    if not token or not token.startswith(SESSION_PREFIX):
        return _denied(SOURCE_SESSION)

    token_hash = _sha256(token)
    try:
        with store.session() as session:
            row = session.scalar(select(AdminSession).where(AdminSession.token_hash == token_hash))
            found = row is not None
            expired = found and row.is_expired(utcnow())
            expires_at = to_iso(row.expires_at) if found else None
    except SQLAlchemyError as exc:
        logger.error("Admin session lookup failed: %s", exc)
        return _denied(SOURCE_SESSION)

    if not found:
        return _denied(SOURCE_SESSION)
    if expired:
        _discard_session(store, token_hash)
        return _denied(SOURCE_SESSION)
    return AuthResult(
        authenticated=True,
        scopes=Scope.ALL.names(),
        source=SOURCE_SESSION,
        expires_at=expires_at,
    )


def _discard_session(store, token_hash: str) -> None:
    try:
        with store.transaction() as session:
            session.execute(delete(AdminSession).where(AdminSession.token_hash == token_hash))
    except SQLAlchemyError as exc:
        logger.warning("Could not remove expired admin session: %s", exc)


def delete_admin_session(store, token: str) -> bool:
    """Log out. Idempotent; returns whether a session was removed."""
    if not token:
        return False
    with store.transaction() as session:
        result = session.execute(
            delete(AdminSession).where(AdminSession.token_hash == _sha256(token))
        )
    return result.rowcount > 0


def clean_expired_sessions(store) -> int:
    """Delete expired admin sessions. Safe to run at any time."""
    with store.transaction() as session:
        result = session.execute(
            delete(AdminSession).where(
                AdminSession.expires_at.is_not(None),
                AdminSession.expires_at <= utcnow(),
            )
        )
    removed = result.rowcount or 0
    if removed:
        logger.info("Removed %d expired admin session(s)", removed)
    return removed


# API tokens --------------------------------------------------------------------
def create_api_token(store, label: str = "", scopes: Optional[List[str]] = None) -> Dict:
    """
    Mint a scoped API token.

    The returned ``token`` is the only time the secret is visible; only a
    salted hash of it is stored.

    Returns:
        ``{"id", "token", "label", "scopes", "token_prefix", "created_at"}``
    """
    payload = {"label": label}
    if scopes is not None:
        payload["scopes"] = scopes
    data = parse_model(TokenCreate, payload)

    lookup_key = secrets.token_hex(LOOKUP_KEY_BYTES)
    token = TOKEN_PREFIX + lookup_key + secrets.token_hex(SECRET_BYTES)
    row = ApiToken(
        id=new_id(),
        label=data.label,
        lookup_key=lookup_key,
        token_hash=generate_password_hash(token, method=store.config.TOKEN_HASH_METHOD),
        token_prefix=token[:DISPLAY_PREFIX_LENGTH],
        scopes=list(data.scopes),
        created_at=utcnow(),
    )
    with store.transaction() as session:
        session.add(row)
        result = row.to_dict()

    logger.info("API token created: %s (%s) scopes=%s", row.id, row.token_prefix, ",".join(data.scopes))
    result["token"] = token
    return result


def list_api_tokens(store) -> List[Dict]:
    """Token descriptions, newest first. Secrets are never included."""
    with store.session() as session:
        rows = session.scalars(
            select(ApiToken).order_by(ApiToken.created_at.desc(), ApiToken.id.asc())
        ).all()
        return [row.to_dict() for row in rows]


def has_any_tokens(store) -> bool:
    with store.session() as session:
        return (session.scalar(select(func.count(ApiToken.id))) or 0) > 0


def delete_api_token(store, token_id: str) -> bool:
    """
    Revoke a token. Replaying it afterwards fails.

    Raises:
        NotFoundError: If no token has this id
    """
    with store.transaction() as session:
        result = session.execute(delete(ApiToken).where(ApiToken.id == token_id))
    if not result.rowcount:
        raise NotFoundError("Token not found", token_id=token_id)
    logger.info("API token revoked: %s", token_id)
    return True


def validate_api_token(store, token: str) -> AuthResult:
    """
    Check an API token and record its use.

    The secret is verified with the salted hash even when the lookup key
    matches nothing, so a miss takes as long as a wrong secret.
    """
    if not token or not token.startswith(TOKEN_PREFIX):
        return _denied(SOURCE_TOKEN)

    method = store.config.TOKEN_HASH_METHOD
    lookup_key = token[len(TOKEN_PREFIX):len(TOKEN_PREFIX) + LOOKUP_KEY_BYTES * 2]
    try:
        with store.session() as session:
            row = session.scalar(select(ApiToken).where(ApiToken.lookup_key == lookup_key))
            stored_hash = row.token_hash if row is not None else _dummy_hash(method)
            token_id = row.id if row is not None else None
            scopes = Scope.from_names(row.scopes).names() if row is not None else []
    except SQLAlchemyError as exc:
        logger.error("API token lookup failed: %s", exc)
        return _denied(SOURCE_TOKEN)

    if not check_password_hash(stored_hash, token) or token_id is None:
        return _denied(SOURCE_TOKEN)

    _touch_token(store, token_id)
    return AuthResult(authenticated=True, scopes=scopes, source=SOURCE_TOKEN, token_id=token_id)


def _touch_token(store, token_id: str) -> None:
    try:
        with store.transaction() as session:
            session.execute(
                update(ApiToken).where(ApiToken.id == token_id).values(last_used_at=utcnow())
            )
    except SQLAlchemyError as exc:
        logger.warning("Could not update last_used_at for token %s: %s", token_id, exc)


# Request-level checks ------------------------------------------------------------
def validate_auth(store, token: str) -> AuthResult:
    """
    Validate a bearer credential.

    The token prefix picks exactly one validation path: ``csa_`` for admin
    sessions, ``cs_`` for API tokens.
    """
    if not token:
        return _denied()
    if token.startswith(SESSION_PREFIX):
        return validate_admin_session(store, token)
    if token.startswith(TOKEN_PREFIX):
        return validate_api_token(store, token)
    return _denied(SOURCE_TOKEN)


def authenticate(store, token: Optional[str]) -> AuthResult:
    """Resolve the caller's scopes; open mode grants every scope."""
    if not is_auth_enabled(store):
        return AuthResult(authenticated=True, scopes=Scope.ALL.names(), source=SOURCE_OPEN)
    return validate_auth(store, token)


def has_scope(auth: AuthResult, scope: Union[str, Scope]) -> bool:
    """
    Whether ``auth`` grants ``scope``.

    ``admin`` implies every scope and ``write`` implies ``read``; ``mcp``
    is independent of both.
    """
    if not auth.authenticated:
        return False
    required = Scope.parse(scope)
    granted = auth.scope
    if Scope.ADMIN in granted or required in granted:
        return True
    return required is Scope.READ and Scope.WRITE in granted


def require_scope(auth: AuthResult, scope: Union[str, Scope]) -> AuthResult:
    """
    Raises:
        AuthError: If the caller is not authenticated
        ForbiddenError: If the credential lacks ``scope``
    """
    if not auth.authenticated:
        raise AuthError("Authentication required")
    if not has_scope(auth, scope):
        required = Scope.parse(scope)
        raise ForbiddenError(
            f"Missing required scope: {required.name.lower()}",
            scopes=list(auth.scopes),
        )
    return auth
