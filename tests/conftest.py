"""
Shared fixtures for the unisrv CLI tests.

Provides an in-memory credential store, session factories and a local fake of
the provisioning API served by aiohttp's TestServer.
"""

import asyncio
import base64
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from unisrv.api_client import UnisrvAPIClient
from unisrv.auth.token_manager import TokenManager
from unisrv.config import ClientConfiguration
from unisrv.interfaces import ICredentialStore
from unisrv.logging_config import AUDIT_LOGGER_NAME
from unisrv.models import Session


class InMemoryCredentialStore(ICredentialStore):
    """Credential store fake that keeps the serialized session in memory."""

    def __init__(self, session: Optional[Session] = None):
        self.data: Optional[Dict[str, Any]] = session.to_dict() if session else None
        self.save_count = 0
        self.clear_count = 0

    def save(self, session: Session) -> None:
        self.data = session.to_dict()
        self.save_count += 1

    def load(self) -> Optional[Session]:
        return Session.from_dict(self.data) if self.data else None

    def clear(self) -> None:
        self.data = None
        self.clear_count += 1


def make_session(
    access_token: str = "access-token",
    refresh_token: str = "refresh-token",
    expires_in: float = 3600,
    refresh_expires_in: float = 86400,
    refresh_session_id: str = "8c1b9f0e-2a64-4c1e-9b52-0d6f1e9a7c11"
) -> Session:
    now = datetime.now(timezone.utc)
    return Session(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=now + timedelta(seconds=expires_in),
        user_id="b7e3c2a1-5d4f-4e6a-8b9c-1a2b3c4d5e6f",
        refresh_session_id=refresh_session_id,
        refresh_expires_at=now + timedelta(seconds=refresh_expires_in),
    )


class FakeUnisrvAPI:
    """In-process stand-in for the provisioning API."""

    USERNAME = "alice"
    PASSWORD = "secret"
    SESSION_ID = "8c1b9f0e-2a64-4c1e-9b52-0d6f1e9a7c11"

    def __init__(self):
        self.requests: List[Tuple[str, str]] = []
        self.bodies: List[Tuple[str, str, Any]] = []
        self.valid_tokens = set()
        self.refresh_token: Optional[str] = None
        self.refresh_calls = 0
        self.reject_refresh = False
        self.always_unauthorized = False
        self.fail_with_status: Optional[int] = None
        self.response_delay = 0.0
        self.login_response: Optional[Dict[str, Any]] = None
        self._counter = 0

        self.instances: List[Dict[str, Any]] = []
        self.instance_details: Dict[str, Dict[str, Any]] = {}
        self.services: Dict[str, Dict[str, Any]] = {}
        self.networks: Dict[str, Dict[str, Any]] = {}
        self.log_messages: List[Dict[str, Any]] = []

    def issue_tokens(self, expires_in: float = 3600) -> Dict[str, Any]:
        self._counter += 1
        now = datetime.now(timezone.utc)
        access = f"access-{self._counter}"
        self.refresh_token = f"refresh-{self._counter}"
        self.valid_tokens.add(access)
        return {
            'user_id': "b7e3c2a1-5d4f-4e6a-8b9c-1a2b3c4d5e6f",
            'token': access,
            'expires_at': (now + timedelta(seconds=expires_in)).isoformat(),
            'refresh_session_id': self.SESSION_ID,
            'refresh_token': self.refresh_token,
            'refresh_expires_at': (now + timedelta(days=30)).isoformat(),
        }

    def seed_session(self, store: InMemoryCredentialStore, expires_in: float = 3600,
                     access_valid: bool = True) -> Session:
        """Store a session whose refresh token this server accepts."""
        response = self.issue_tokens(expires_in)
        if not access_valid:
            self.valid_tokens.discard(response['token'])
        session = Session.from_login_response(response)
        store.save(session)
        store.save_count = 0
        return session

    def add_instance(self, instance_id: str, state: str = "active", name: Optional[str] = None,
                     image: str = "nginx:latest") -> None:
        self.instances.append({
            'id': instance_id,
            'name': name,
            'configuration': {'container_image': image},
            'state': state,
            'created_at': "2024-05-01T10:00:00",
        })

    def add_service(self, service_id: str, name: str, locations: Optional[List[Dict]] = None,
                    targets: Optional[List[Dict]] = None) -> None:
        self.services[service_id] = {
            'id': service_id,
            'name': name,
            'type': 'http',
            'configuration': {
                'locations': locations if locations is not None else [
                    {'path': '/', 'override_404': None, 'target': {'type': 'instance', 'group': 'default'}}
                ],
                'allow_http': False,
            },
            'user_id': "b7e3c2a1-5d4f-4e6a-8b9c-1a2b3c4d5e6f",
            'created_at': "2024-05-01T10:00:00",
            'updated_at': "2024-05-01T10:00:00",
            'providers': [],
            'targets': targets or [],
        }

    def add_network(self, network_id: str, name: str, cidr: str = "10.0.0.0/24",
                    instances: Optional[List[Dict[str, str]]] = None) -> None:
        self.networks[network_id] = {
            'id': network_id,
            'name': name,
            'ipv4_cidr': cidr,
            'created_at': "2024-05-01T10:00:00",
            'instances': instances or [],
        }

    def count(self, method: str, path: str) -> int:
        return self.requests.count((method, path))

    # aiohttp application

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[self._middleware])
        app.router.add_post('/auth/login/basic', self._login)
        app.router.add_post('/auth/refresh', self._refresh)
        app.router.add_get('/instance/list', self._list_instances)
        app.router.add_post('/instance', self._create_instance)
        app.router.add_get('/instance/{id}/logs/stream', self._stream_logs)
        app.router.add_get('/instance/{id}', self._get_instance)
        app.router.add_delete('/instance/{id}', self._delete_instance)
        app.router.add_get('/services', self._list_services)
        app.router.add_post('/service', self._create_service)
        app.router.add_get('/service/{id}', self._get_service)
        app.router.add_put('/service/{id}', self._update_service)
        app.router.add_delete('/service/{id}', self._delete_service)
        app.router.add_post('/service/{id}/target', self._add_target)
        app.router.add_delete('/service/{id}/target/{target_id}', self._delete_target)
        app.router.add_get('/networks', self._list_networks)
        app.router.add_post('/network', self._create_network)
        app.router.add_get('/network/{id}', self._get_network)
        app.router.add_delete('/network/{id}', self._delete_network)
        return app

    @web.middleware
    async def _middleware(self, request: web.Request, handler):
        self.requests.append((request.method, request.path))
        if request.can_read_body:
            self.bodies.append((request.method, request.path, await request.json()))

        if self.response_delay:
            await asyncio.sleep(self.response_delay)

        if self.fail_with_status:
            return web.json_response({'reason': 'Injected failure'}, status=self.fail_with_status)

        if not request.path.startswith('/auth/'):
            token = request.headers.get('Authorization', '')[len('Bearer '):]
            if self.always_unauthorized or token not in self.valid_tokens:
                return web.json_response({'reason': 'Invalid access token'}, status=401)
        return await handler(request)

    async def _login(self, request: web.Request) -> web.Response:
        header = request.headers.get('Authorization', '')
        expected = base64.b64encode(f"{self.USERNAME}:{self.PASSWORD}".encode()).decode()
        if header != f"Basic {expected}":
            return web.json_response({'reason': 'Invalid username or password'}, status=401)
        if self.login_response is not None:
            return web.json_response(self.login_response)
        return web.json_response(self.issue_tokens())

    async def _refresh(self, request: web.Request) -> web.Response:
        self.refresh_calls += 1
        body = await request.json()
        bearer = request.headers.get('Authorization', '')[len('Bearer '):]
        if (self.reject_refresh or body.get('id') != self.SESSION_ID
                or body.get('token') != self.refresh_token or bearer != self.refresh_token):
            return web.json_response({'reason': 'Refresh session revoked'}, status=401)
        return web.json_response(self.issue_tokens())

    async def _list_instances(self, request: web.Request) -> web.Response:
        return web.json_response({'instances': self.instances})

    async def _create_instance(self, request: web.Request) -> web.Response:
        return web.json_response({'id': "f0e1d2c3-b4a5-4968-8776-655443322110"}, status=201)

    async def _get_instance(self, request: web.Request) -> web.Response:
        detail = self.instance_details.get(request.match_info['id'])
        if detail is None:
            return web.json_response({'reason': 'Instance not found'}, status=404)
        return web.json_response(detail)

    async def _delete_instance(self, request: web.Request) -> web.Response:
        return web.Response(status=204)

    async def _stream_logs(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        for message in self.log_messages:
            await ws.send_json(message)
        await ws.close()
        return ws

    async def _list_services(self, request: web.Request) -> web.Response:
        return web.json_response({'services': [
            {'id': s['id'], 'name': s['name'], 'type': s['type']} for s in self.services.values()
        ]})

    async def _create_service(self, request: web.Request) -> web.Response:
        return web.json_response({'service_id': "0a1b2c3d-4e5f-4a6b-8c7d-9e0f1a2b3c4d"}, status=201)

    async def _get_service(self, request: web.Request) -> web.Response:
        service = self.services.get(request.match_info['id'])
        if service is None:
            return web.json_response({'reason': 'Service not found'}, status=404)
        return web.json_response(service)

    async def _update_service(self, request: web.Request) -> web.Response:
        service = self.services[request.match_info['id']]
        service['configuration'] = await request.json()
        return web.Response(status=200)

    async def _delete_service(self, request: web.Request) -> web.Response:
        self.services.pop(request.match_info['id'], None)
        return web.Response(status=204)

    async def _add_target(self, request: web.Request) -> web.Response:
        return web.json_response({'target_id': "7d6c5b4a-3928-4716-8504-f3e2d1c0b9a8"}, status=201)

    async def _delete_target(self, request: web.Request) -> web.Response:
        return web.Response(status=204)

    async def _list_networks(self, request: web.Request) -> web.Response:
        return web.json_response({'networks': [
            {'id': n['id'], 'name': n['name'], 'ipv4_cidr': n['ipv4_cidr'], 'instance_count': len(n['instances'])}
            for n in self.networks.values()
        ]})

    async def _create_network(self, request: web.Request) -> web.Response:
        return web.Response(status=201)

    async def _get_network(self, request: web.Request) -> web.Response:
        network = self.networks.get(request.match_info['id'])
        if network is None:
            return web.json_response({'reason': 'Network not found'}, status=404)
        return web.json_response(network)

    async def _delete_network(self, request: web.Request) -> web.Response:
        self.networks.pop(request.match_info['id'], None)
        return web.Response(status=204)


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch, tmp_path):
    """Keep tests independent of the developer's environment and home directory."""
    for var in ('API_HOST', 'UNISRV_ENVIRONMENT', 'UNISRV_TIMEOUT', 'UNISRV_LOG_LEVEL',
                'UNISRV_CREDENTIAL_STORAGE'):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv('HOME', str(tmp_path / 'home'))
    monkeypatch.setenv('COLUMNS', '200')


@pytest.fixture
def credential_store():
    return InMemoryCredentialStore()


@pytest.fixture
def fake_api():
    return FakeUnisrvAPI()


@pytest_asyncio.fixture
async def api_server(fake_api):
    server = TestServer(fake_api.build_app())
    await server.start_server()
    yield server
    await server.close()


@pytest.fixture
def config(tmp_path, api_server):
    configuration = ClientConfiguration(str(tmp_path / 'cli.conf'))
    configuration.set_override('api_host', str(api_server.make_url('')))
    return configuration


@pytest_asyncio.fixture
async def api_client(config, credential_store):
    token_manager = TokenManager(credential_store)
    client = UnisrvAPIClient(config, token_manager, timeout=5)
    async with client:
        yield client


@pytest.fixture
def restore_logging():
    """Undo changes setup_logging makes to the root and audit loggers."""
    root = logging.getLogger()
    audit = logging.getLogger(AUDIT_LOGGER_NAME)
    aiohttp_logger = logging.getLogger('aiohttp')
    saved = (root.handlers[:], root.level, audit.handlers[:], audit.level, audit.propagate,
             aiohttp_logger.level)
    yield
    for handler in root.handlers + audit.handlers:
        if handler not in saved[0] and handler not in saved[2]:
            handler.close()
    root.handlers[:], root.level = saved[0], saved[1]
    audit.handlers[:], audit.level, audit.propagate = saved[2], saved[3], saved[4]
    aiohttp_logger.setLevel(saved[5])
