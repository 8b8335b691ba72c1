"""
Token Manager for the unisrv CLI.

This module owns the in-memory session for one command invocation, decides
when the access token must be refreshed, and persists refreshed sessions
through the credential store.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Callable

from ..exceptions import AuthenticationExpired, CredentialStoreError, ErrorCode
from ..interfaces import ICredentialStore
from ..logging_config import AuditLogger
from ..models import Session

logger = logging.getLogger(__name__)

DEFAULT_SAFETY_MARGIN_SECONDS = 30


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenManager:
    """
    Manages the authenticated session with on-demand refresh.

    The session is read from the credential store on first use. An access
    token within ``safety_margin_seconds`` of expiry is refreshed before it is
    handed out. At most one refresh happens per invocation.
    """

    def __init__(
        self,
        credential_store: ICredentialStore,
        api_client=None,
        safety_margin_seconds: float = DEFAULT_SAFETY_MARGIN_SECONDS,
        clock: Callable[[], datetime] = _utcnow
    ):
        self.credential_store = credential_store
        self.api_client = api_client
        self.safety_margin_seconds = safety_margin_seconds
        self._clock = clock
        self.audit = AuditLogger()

        self._session: Optional[Session] = None
        self._loaded = False
        self._refreshed = False

    @property
    def session(self) -> Optional[Session]:
        """Current session, loading it from storage if necessary."""
        self.load()
        return self._session

    def load(self) -> Optional[Session]:
        """Load the stored session once per invocation."""
        if not self._loaded:
            self._session = self.credential_store.load()
            self._loaded = True
            if self._session:
                logger.debug(f"Loaded stored session for user {self._session.user_id}")
            else:
                logger.debug("No stored session")
        return self._session

    def is_authenticated(self) -> bool:
        """Check whether a session exists whose refresh token has not expired."""
        session = self.session
        return session is not None and not session.is_refresh_token_expired(self._clock())

    def _clear_session(self, reason: str) -> None:
        user_id = self._session.user_id if self._session else None
        self.credential_store.clear()
        self._session = None
        self._loaded = True
        self.audit.log_session_cleared(user_id, reason)

    def start_session(self, login_response: Dict[str, Any]) -> Session:
        """
        Create a session from a login response and persist it.

        Any prior session is overwritten.

        Args:
            login_response: Decoded body of the login endpoint

        Returns:
            The new session
        """
        session = Session.from_login_response(login_response)
        self.credential_store.save(session)
        self._session = session
        self._loaded = True
        self._refreshed = False
        logger.info(f"Session started for user {session.user_id}, expires at {session.expires_at.isoformat()}")
        return session

    def logout(self) -> bool:
        """
        Clear the stored session.

        Returns:
            True if a session existed
        """
        try:
            session = self.session
        except CredentialStoreError as e:
            logger.warning(f"Stored session is unreadable, removing it: {e.message}")
            session = None
            self._loaded = True
        self.credential_store.clear()
        self._session = None
        self.audit.log_logout(session.user_id if session else None)
        return session is not None

    async def get_valid_access_token(self) -> str:
        """
        Return an access token valid for at least the safety margin.

        Raises:
            AuthenticationExpired: no session exists, the refresh token has
                expired, or the server rejected the refresh
        """
        session = self.session
        if session is None:
            raise AuthenticationExpired(
                "Not logged in",
                error_code=ErrorCode.AUTH_SESSION_MISSING,
                user_message="You are not logged in."
            )

        if session.is_access_token_valid(self._clock(), self.safety_margin_seconds):
            return session.access_token

        logger.debug("Access token expired or about to expire, refreshing session")
        return await self._refresh()

    async def force_refresh(self) -> str:
        """
        Refresh regardless of the access token expiry.

        Used after the server rejected an access token.
        """
        if self.session is None:
            raise AuthenticationExpired(
                "Not logged in",
                error_code=ErrorCode.AUTH_SESSION_MISSING,
                user_message="You are not logged in."
            )
        return await self._refresh()

    async def _refresh(self) -> str:
        session = self._session

        if self._refreshed:
            raise AuthenticationExpired(
                "Access token was rejected after the session was refreshed",
                error_code=ErrorCode.AUTH_TOKEN_REJECTED,
                user_message="Your session was rejected by the server."
            )

        if session.is_refresh_token_expired(self._clock()):
            self._clear_session("refresh token expired")
            raise AuthenticationExpired(
                "Refresh token expired",
                user_message="Your session has expired."
            )

        if self.api_client is None:
            raise RuntimeError("TokenManager has no API client to refresh the session with")

        self._refreshed = True
        try:
            response = await self.api_client.refresh_session(session)
        except AuthenticationExpired as e:
            self.audit.log_refresh(session.user_id, success=False, failure_reason=e.message)
            self._clear_session("refresh rejected")
            raise

        try:
            refreshed = Session.from_login_response(response)
        except ValueError as e:
            self.audit.log_refresh(session.user_id, success=False, failure_reason=str(e))
            self._clear_session("refresh response invalid")
            raise AuthenticationExpired(
                f"Invalid refresh response: {e}",
                error_code=ErrorCode.AUTH_REFRESH_REJECTED,
                cause=e,
                user_message="Your session could not be renewed."
            )

        if refreshed.user_id is None:
            refreshed.user_id = session.user_id

        self.credential_store.save(refreshed)
        self._session = refreshed
        self.audit.log_refresh(refreshed.user_id, success=True, expires_at=refreshed.expires_at)
        logger.info(f"Session refreshed, new expiry {refreshed.expires_at.isoformat()}")
        return refreshed.access_token
