"""
HTTP API Client for the unisrv CLI.

This module provides the request/response layer for the provisioning API:
bearer authentication through the token manager, JSON bodies, status code to
error mapping, and WebSocket log streaming.
"""

import asyncio
import json
import logging
from typing import Optional, Dict, Any, List, Tuple, AsyncIterator

import aiohttp
from aiohttp import ClientSession, ClientTimeout, ClientError, WSMsgType

from . import __version__
from .auth.token_manager import TokenManager
from .config import ClientConfiguration
from .exceptions import (
    AuthenticationExpired, NotFound, ValidationError, ServiceUnavailable,
    NetworkTimeout, ErrorCode
)
from .models import (
    ResourceKind, ResourceSummary, Session, Instance, Service, Network,
    InstanceLogMessage
)

logger = logging.getLogger(__name__)

_SUMMARY_PARSERS = {
    ResourceKind.INSTANCE: Instance,
    ResourceKind.SERVICE: Service,
    ResourceKind.NETWORK: Network,
}


def _error_reason(body: Any, status: int) -> str:
    """Extract the server's reason from an error response body."""
    if isinstance(body, dict):
        for key in ('reason', 'detail', 'message', 'error'):
            if body.get(key):
                return str(body[key])
        return json.dumps(body)
    if isinstance(body, str) and body.strip():
        return body.strip()
    return f"HTTP {status}"


class UnisrvAPIClient:
    """
    HTTP API client for the unisrv provisioning API.

    Every call is awaited to completion before the next one starts. The only
    retry is a single refresh-and-retry after the server rejects an access
    token with 401.
    """

    def __init__(
        self,
        config: ClientConfiguration,
        token_manager: Optional[TokenManager] = None,
        timeout: Optional[float] = None
    ):
        self.config = config
        self.token_manager = token_manager
        self.timeout = ClientTimeout(total=timeout or config.get_timeout())
        self._session: Optional[ClientSession] = None

        if token_manager is not None and token_manager.api_client is None:
            token_manager.api_client = self

        logger.debug(f"API client initialized for host: {config.get_api_host()}")

    async def __aenter__(self):
        """Async context manager entry."""
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def _ensure_session(self) -> None:
        """Ensure HTTP session is available."""
        if self._session is None or self._session.closed:
            self._session = ClientSession(
                timeout=self.timeout,
                headers={'User-Agent': f'unisrv-cli/{__version__}'}
            )

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def _read_body(self, response: aiohttp.ClientResponse) -> Any:
        text = await response.text()
        if not text:
            return None
        try:
            return json.loads(text)
        except ValueError:
            return text

    async def _send(
        self,
        method: str,
        path: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        auth: Optional[aiohttp.BasicAuth] = None
    ) -> Tuple[int, Any]:
        """
        Perform one HTTP exchange.

        Returns:
            Tuple of status code and decoded body

        Raises:
            NetworkTimeout: the request timed out
            ServiceUnavailable: the server could not be reached
        """
        await self._ensure_session()
        url = self.config.get_api_url(path)
        logger.debug(f"{method} {url}")

        try:
            async with self._session.request(
                method=method,
                url=url,
                json=data,
                params=params,
                headers=headers,
                auth=auth
            ) as response:
                body = await self._read_body(response)
                logger.debug(f"{method} {url} -> {response.status}")
                return response.status, body

        except asyncio.TimeoutError as e:
            raise NetworkTimeout(
                f"Request {method} {path} timed out after {self.timeout.total}s",
                cause=e,
                context={'path': path}
            )
        except (ClientError, OSError) as e:
            raise ServiceUnavailable(
                f"Could not reach {self.config.get_api_host()}: {e}",
                error_code=ErrorCode.NETWORK_CONNECTION_FAILED,
                cause=e,
                context={'path': path}
            )

    def _raise_for_status(self, status: int, body: Any, path: str) -> None:
        """Map a non-2xx status to the matching error kind."""
        if 200 <= status < 300:
            return

        reason = _error_reason(body, status)
        context = {'path': path, 'status': status}

        if status == 404:
            raise NotFound(f"Not found: {reason}", context=context)
        if 400 <= status < 500:
            raise ValidationError(
                reason,
                error_code=ErrorCode.VALIDATION_CONFLICT if status == 409 else ErrorCode.VALIDATION_REJECTED_BY_SERVER,
                context=context
            )
        raise ServiceUnavailable(f"Server error ({status}): {reason}", context=context)

    async def _make_request(
        self,
        method: str,
        path: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> Any:
        """
        Make an authenticated request.

        A 401 response triggers one forced session refresh and one retry; a
        second 401 raises AuthenticationExpired.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE)
            path: API path relative to the host
            data: Request body data
            params: Query parameters

        Returns:
            Decoded response body
        """
        if self.token_manager is None:
            raise AuthenticationExpired("Not logged in", error_code=ErrorCode.AUTH_SESSION_MISSING)

        token = await self.token_manager.get_valid_access_token()
        status, body = await self._send(
            method, path, data=data, params=params,
            headers={'Authorization': f'Bearer {token}'}
        )

        if status == 401:
            logger.info(f"Access token rejected on {method} {path}, refreshing session")
            token = await self.token_manager.force_refresh()
            status, body = await self._send(
                method, path, data=data, params=params,
                headers={'Authorization': f'Bearer {token}'}
            )
            if status == 401:
                raise AuthenticationExpired(
                    f"Access token rejected after refresh: {_error_reason(body, status)}",
                    error_code=ErrorCode.AUTH_TOKEN_REJECTED,
                    user_message="The server rejected your session."
                )

        self._raise_for_status(status, body, path)
        return body

    # Authentication

    async def login(self, username: str, password: str) -> Dict[str, Any]:
        """
        Authenticate with username and password.

        Returns:
            The login response: user_id, token, expires_at, refresh_session_id,
            refresh_token and refresh_expires_at

        Raises:
            AuthenticationExpired: the credentials were rejected
        """
        logger.info(f"Logging in as {username}")
        status, body = await self._send(
            'POST', '/auth/login/basic',
            auth=aiohttp.BasicAuth(username, password)
        )
        if status in (401, 403):
            reason = _error_reason(body, status)
            raise AuthenticationExpired(
                f"Login failed: {reason}",
                error_code=ErrorCode.AUTH_LOGIN_FAILED,
                user_message=f"Login failed: {reason}"
            )
        self._raise_for_status(status, body, '/auth/login/basic')
        if not isinstance(body, dict):
            raise ServiceUnavailable("Invalid login response", error_code=ErrorCode.NETWORK_INVALID_RESPONSE)
        return body

    async def refresh_session(self, session: Session) -> Dict[str, Any]:
        """
        Exchange the refresh token for a new access token.

        Raises:
            AuthenticationExpired: the server rejected the refresh
        """
        status, body = await self._send(
            'POST', '/auth/refresh',
            data={'id': session.refresh_session_id, 'token': session.refresh_token},
            headers={'Authorization': f'Bearer {session.refresh_token}'}
        )
        if not 200 <= status < 300:
            if isinstance(body, dict) and body.get('reason'):
                message = f"Failed to refresh session: {body['reason']}"
            else:
                message = f"Failed to refresh session (HTTP {status})"
            raise AuthenticationExpired(
                message,
                error_code=ErrorCode.AUTH_REFRESH_REJECTED,
                context={'status': status},
                user_message=f"{message}. Please log in again."
            )
        if not isinstance(body, dict):
            raise AuthenticationExpired(
                "Invalid refresh response",
                error_code=ErrorCode.AUTH_REFRESH_REJECTED
            )
        return body

    # Resource operations

    async def create(self, kind: ResourceKind, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Create a resource and return the response body."""
        return await self._make_request('POST', kind.create_path, data=payload) or {}

    async def list(self, kind: ResourceKind, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """List resources of a kind as raw dictionaries."""
        body = await self._make_request('GET', kind.list_path, params=params) or {}
        if not isinstance(body, dict):
            raise ServiceUnavailable(
                f"Invalid {kind.value} list response",
                error_code=ErrorCode.NETWORK_INVALID_RESPONSE
            )
        return body.get(kind.list_key, [])

    async def get(self, kind: ResourceKind, resource_id: str,
                  params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Get one resource by identifier."""
        return await self._make_request('GET', kind.item_path(resource_id), params=params) or {}

    async def delete(self, kind: ResourceKind, resource_id: str,
                     payload: Optional[Dict[str, Any]] = None) -> None:
        """Delete one resource by identifier."""
        await self._make_request('DELETE', kind.item_path(resource_id), data=payload)

    async def update(self, kind: ResourceKind, resource_id: str, payload: Dict[str, Any]) -> Any:
        """Replace the configuration of one resource."""
        return await self._make_request('PUT', kind.item_path(resource_id), data=payload)

    async def list_summaries(self, kind: ResourceKind) -> List[ResourceSummary]:
        """List resources of a kind reduced to id, name and status."""
        params = {'include_instance_count': 'false'} if kind == ResourceKind.NETWORK else None
        parser = _SUMMARY_PARSERS[kind]
        return [parser.from_dict(item).to_summary() for item in await self.list(kind, params=params)]

    # Service targets

    async def add_service_target(self, service_id: str, instance_id: str, instance_port: int,
                                 group: Optional[str] = None) -> str:
        """Attach an instance port to a service and return the target id."""
        payload = {'instance_id': instance_id, 'instance_port': instance_port}
        if group:
            payload['group'] = group
        body = await self._make_request('POST', f'/service/{service_id}/target', data=payload) or {}
        return str(body.get('target_id', ''))

    async def delete_service_target(self, service_id: str, target_id: str) -> None:
        await self._make_request('DELETE', f'/service/{service_id}/target/{target_id}')

    # Log streaming

    async def stream_logs(self, instance_id: str) -> AsyncIterator[InstanceLogMessage]:
        """
        Stream log messages of an instance until the server closes the socket.

        Args:
            instance_id: Full instance identifier

        Yields:
            Decoded log messages
        """
        if self.token_manager is None:
            raise AuthenticationExpired("Not logged in", error_code=ErrorCode.AUTH_SESSION_MISSING)

        await self._ensure_session()
        path = f'/instance/{instance_id}/logs/stream'
        url = self.config.get_ws_url(path)
        token = await self.token_manager.get_valid_access_token()

        try:
            try:
                ws = await self._session.ws_connect(url, headers={'Authorization': f'Bearer {token}'})
            except aiohttp.WSServerHandshakeError as e:
                if e.status != 401:
                    raise
                token = await self.token_manager.force_refresh()
                ws = await self._session.ws_connect(url, headers={'Authorization': f'Bearer {token}'})
        except aiohttp.WSServerHandshakeError as e:
            if e.status == 401:
                raise AuthenticationExpired(
                    "Log stream rejected the session",
                    error_code=ErrorCode.AUTH_TOKEN_REJECTED
                )
            if e.status == 404:
                raise NotFound(f"Instance {instance_id} not found", kind='instance', reference=instance_id)
            raise ServiceUnavailable(f"Log stream handshake failed ({e.status}): {e.message}", cause=e)
        except asyncio.TimeoutError as e:
            raise NetworkTimeout("Connecting to the log stream timed out", cause=e)
        except (ClientError, OSError) as e:
            raise ServiceUnavailable(
                f"Could not open log stream: {e}",
                error_code=ErrorCode.NETWORK_CONNECTION_FAILED,
                cause=e
            )

        logger.debug(f"Log stream connected: {url}")
        async with ws:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    try:
                        yield InstanceLogMessage.from_dict(json.loads(msg.data))
                    except (ValueError, KeyError) as e:
                        logger.warning(f"Skipping malformed log message: {e}")
                elif msg.type == WSMsgType.ERROR:
                    raise ServiceUnavailable(f"Log stream failed: {ws.exception()}")
        logger.debug("Log stream closed by server")
