"""
Authentication module: admin secret, user sessions and per-service API keys.

Three independent credential schemes:
- Admin: ``x-admin-token`` header compared against ``ADMIN_TOKEN``; fails
  closed when no token is configured
- Session: ``Authorization: Bearer <token>`` issued at login, fixed 24h life
- API key: ``x-api-key`` bound to one service and one approved user
"""
import hmac
import secrets
from typing import Callable, Optional, Tuple

from fastapi import Depends, HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext

from api_relay_server.entities import (
    ApiKey,
    Session,
    User,
    UserStatus,
    generate_secret,
    now_ms,
)
from api_relay_server.logging_config import get_logger, log_credential_rejected
from api_relay_server.repositories import Repositories

logger = get_logger(__name__)

# Password hashing context
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

# Header schemes
admin_token_header = APIKeyHeader(name="x-admin-token", auto_error=False)
session_bearer = HTTPBearer(auto_error=False)

API_KEY_HEADER = "x-api-key"


def generate_salt() -> str:
    return secrets.token_hex(16)


def hash_password(password: str, salt: str) -> str:
    """Opaque digest of ``password`` under ``salt``."""
    return pwd_context.hash(f"{salt}{password}")


def verify_password(password: str, salt: str, digest: str) -> bool:
    if not digest:
        return False
    try:
        return pwd_context.verify(f"{salt}{password}", digest)
    except ValueError:
        # Digest not produced by this context
        return False


class CredentialGuard:
    """Validate credentials against the repositories."""

    def __init__(
        self,
        repos: Repositories,
        admin_token: Optional[str] = None,
        session_ttl_hours: int = 24,
        clock: Callable[[], int] = now_ms,
    ):
        """
        Initialize the guard

        Args:
            repos: Repository bundle bound to the active store
            admin_token: Configured admin secret (None = admin disabled)
            session_ttl_hours: Lifetime of sessions issued by ``login``
            clock: Returns the current time in epoch milliseconds
        """
        self.repos = repos
        self.admin_token = admin_token
        self.session_ttl_ms = session_ttl_hours * 60 * 60 * 1000
        self.clock = clock

    def check_admin_token(self, token: Optional[str]) -> bool:
        """Exact, constant-time comparison against the configured secret."""
        if not self.admin_token or not token:
            return False
        return hmac.compare_digest(token.encode("utf-8"), self.admin_token.encode("utf-8"))

    async def register(self, username: str, password: str) -> User:
        """
        Create a PENDING account.

        Raises:
            HTTPException: 400 if the username is taken
        """
        if await self.repos.users.get(username):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Username sudah digunakan"
            )

        salt = generate_salt()
        user = User(
            username=username,
            password_hash=hash_password(password, salt),
            salt=salt,
            status=UserStatus.PENDING,
        )
        await self.repos.users.save(user)
        logger.info("user_registered", username=username)
        return user

    async def login(self, username: str, password: str) -> Session:
        """
        Issue a session for an APPROVED account.

        Raises:
            HTTPException: 401 on bad credentials, 403 if not approved
        """
        user = await self.repos.users.get(username)
        if not user or not verify_password(password, user.salt, user.password_hash):
            log_credential_rejected("password", "invalid_credentials", username=username)
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Username atau password salah"
            )

        if user.status != UserStatus.APPROVED:
            log_credential_rejected("password", "not_approved", username=username, user_status=user.status.value)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Akun belum disetujui admin"
            )

        session = Session(
            token=generate_secret(nbytes=32),
            username=username,
            expires_at=self.clock() + self.session_ttl_ms,
        )
        await self.repos.sessions.save(session)
        logger.info("session_issued", username=username, expires_at=session.expires_at)
        return session

    async def authenticate_session(self, token: Optional[str]) -> Session:
        """
        Resolve a bearer token to a live session.

        The owner's status is not re-checked here: a user demoted after login
        keeps the session until it expires or an admin revokes it.

        Raises:
            HTTPException: 401 if missing, unknown or expired
        """
        session = await self.repos.sessions.get(token) if token else None
        if not session or not session.is_valid(self.clock()):
            log_credential_rejected("session", "invalid_or_expired", token)
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Session tidak valid atau kedaluwarsa"
            )
        return session

    async def authorize_api_key(self, key: Optional[str], service_id: str) -> Tuple[ApiKey, User]:
        """
        Validate an API key for one service.

        The owner is read fresh on every call so that a status change takes
        effect immediately for keys already issued.

        Raises:
            HTTPException: 401 if missing, unknown or bound to another
                service; 403 if the owner is missing or not approved
        """
        if not key:
            log_credential_rejected("api_key", "missing", service_id=service_id)
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="API key wajib diisi"
            )

        api_key = await self.repos.api_keys.get(key)
        if not api_key or api_key.service_id != service_id:
            log_credential_rejected("api_key", "invalid", key, service_id=service_id)
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="API key tidak valid"
            )

        user = await self.repos.users.get(api_key.username)
        if not user or user.status != UserStatus.APPROVED:
            log_credential_rejected("api_key", "owner_not_approved", key, service_id=service_id)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Akun belum disetujui admin"
            )

        return api_key, user

    async def revoke_sessions(self, username: str) -> int:
        revoked = await self.repos.sessions.delete_for_user(username)
        logger.info("sessions_revoked", username=username, revoked=revoked)
        return revoked


# FastAPI dependencies

def get_repositories(request: Request) -> Repositories:
    """Repository bundle bound to the app's store handle."""
    return Repositories(
        request.app.state.store,
        max_log_entries=request.app.state.settings.max_log_entries,
    )


def get_guard(request: Request, repos: Repositories = Depends(get_repositories)) -> CredentialGuard:
    settings = request.app.state.settings
    return CredentialGuard(
        repos,
        admin_token=settings.admin_token,
        session_ttl_hours=settings.session_ttl_hours,
        clock=request.app.state.clock,
    )


async def require_admin(
    token: Optional[str] = Security(admin_token_header),
    guard: CredentialGuard = Depends(get_guard),
) -> None:
    """
    FastAPI dependency guarding the admin API

    Usage:
        router = APIRouter(dependencies=[Depends(require_admin)])
    """
    if not guard.check_admin_token(token):
        log_credential_rejected("admin", "invalid_admin_token", token)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized admin"
        )


async def require_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(session_bearer),
    guard: CredentialGuard = Depends(get_guard),
) -> Session:
    """FastAPI dependency resolving the caller's session"""
    token = credentials.credentials if credentials else None
    return await guard.authenticate_session(token)
