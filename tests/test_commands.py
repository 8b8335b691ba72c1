"""
End-to-end tests of the CLI commands against the fake provisioning API.

Commands are parsed with the real argument parser and dispatched through
run_command, the same path main() takes.
"""

import io
import json
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from unisrv.api_client import UnisrvAPIClient
from unisrv.auth.token_manager import TokenManager
from unisrv.commands import CommandContext
from unisrv.exceptions import (
    AuthenticationExpired, AmbiguousReference, NotFound, ServiceUnavailable, ValidationError, ErrorCode
)
from unisrv.main import main, parse_arguments, run_command
from unisrv.resolver import ResourceResolver

from conftest import InMemoryCredentialStore


WEB_ID = "3f2b8c1e-9d4a-4e7b-a1c2-5f6e7d8c9b0a"
DB_ID = "9a8b7c6d-5e4f-4a3b-8c2d-1e0f9a8b7c6d"
OLD_ID = "3f2b0000-1111-4222-8333-444455556666"
SERVICE_ID = "0a1b2c3d-4e5f-4a6b-8c7d-9e0f1a2b3c4d"
NETWORK_ID = "5c4b3a29-1807-4f6e-9d5c-4b3a29180716"
TARGET_1 = "aa11bb22-cc33-4d44-8e55-ff6677889900"
TARGET_2 = "bb22cc33-dd44-4e55-8f66-0077889900aa"


async def run_cli(argv, config, store):
    """Run one CLI invocation and return (exit code, stdout, stderr)."""
    args = parse_arguments(argv)
    out, err = io.StringIO(), io.StringIO()
    code = await run_command(args, config, store, out=out, err=err)
    return code, out.getvalue(), err.getvalue()


@pytest.fixture
def logged_in(fake_api, credential_store):
    fake_api.seed_session(credential_store)
    return credential_store


class TestAuthCommands:
    """Test login, logout and auth token."""

    @pytest.mark.asyncio
    async def test_login_stores_session(self, config, credential_store, fake_api):
        code, out, _ = await run_cli(['login', '-u', 'alice', '-p', 'secret'], config, credential_store)

        assert code == 0
        assert 'Logged in as alice' in out
        session = credential_store.load()
        assert session.access_token in fake_api.valid_tokens
        assert session.expires_at > datetime.now(timezone.utc)

    @pytest.mark.asyncio
    async def test_login_rejected(self, config, credential_store):
        with pytest.raises(AuthenticationExpired) as exc_info:
            await run_cli(['login', '-u', 'alice', '-p', 'nope'], config, credential_store)

        assert exc_info.value.error_code == ErrorCode.AUTH_LOGIN_FAILED
        assert credential_store.load() is None

    @pytest.mark.asyncio
    async def test_login_with_malformed_response(self, config, credential_store, fake_api):
        fake_api.login_response = {'user_id': 'user-1', 'token': 'opaque'}

        with pytest.raises(ServiceUnavailable) as exc_info:
            await run_cli(['login', '-u', 'alice', '-p', 'secret'], config, credential_store)

        assert exc_info.value.error_code == ErrorCode.NETWORK_INVALID_RESPONSE
        assert exc_info.value.exit_code == 6
        assert credential_store.load() is None

    @pytest.mark.asyncio
    async def test_logout(self, config, logged_in):
        code, out, _ = await run_cli(['logout'], config, logged_in)
        assert code == 0
        assert 'Logged out' in out
        assert logged_in.load() is None

        _, out, _ = await run_cli(['logout'], config, logged_in)
        assert 'Not logged in' in out

    @pytest.mark.asyncio
    async def test_auth_token(self, config, logged_in):
        _, out, _ = await run_cli(['auth', 'token'], config, logged_in)
        assert out.strip() == logged_in.load().access_token

        _, out, _ = await run_cli(['auth', 'token', '--json'], config, logged_in)
        document = json.loads(out)
        assert document['token'] == logged_in.load().access_token
        assert 'expires_at' in document

    @pytest.mark.asyncio
    async def test_missing_session_fails_before_any_request(self, config, credential_store, fake_api):
        with pytest.raises(AuthenticationExpired) as exc_info:
            await run_cli(['instance', 'list'], config, credential_store)

        assert exc_info.value.error_code == ErrorCode.AUTH_SESSION_MISSING
        assert fake_api.requests == []


class TestMain:
    """Test exit codes of the process entry point."""

    def test_not_logged_in_exits_with_2(self, tmp_path, capsys, restore_logging):
        argv = ['--config', str(tmp_path / 'cli.conf'), '--api-host', 'http://127.0.0.1:9', 'instance', 'list']
        with patch('unisrv.main.create_credential_store', return_value=InMemoryCredentialStore()):
            code = main(argv)

        assert code == 2
        captured = capsys.readouterr()
        assert 'error: You are not logged in.' in captured.err
        assert 'unisrv login' in captured.err

    def test_unreachable_host_exits_with_6(self, tmp_path, capsys, restore_logging):
        argv = ['--config', str(tmp_path / 'cli.conf'), '--api-host', 'http://127.0.0.1:9',
                'login', '-u', 'alice', '-p', 'secret']
        with patch('unisrv.main.create_credential_store', return_value=InMemoryCredentialStore()):
            code = main(argv)

        assert code == 6

    def test_quiet_and_verbose_conflict(self):
        with pytest.raises(SystemExit) as exc_info:
            parse_arguments(['-q', '-v', 'instance', 'list'])
        assert exc_info.value.code == 2

    def test_missing_command(self):
        with pytest.raises(SystemExit) as exc_info:
            parse_arguments([])
        assert exc_info.value.code == 2


class TestInstanceCommands:
    """Test instance run, stop, list, show and logs."""

    @pytest.mark.asyncio
    async def test_list_shows_only_active_by_default(self, config, logged_in, fake_api):
        fake_api.add_instance(WEB_ID, name='web')
        fake_api.add_instance(OLD_ID, state='stopped', name='old')

        code, out, _ = await run_cli(['instance', 'list'], config, logged_in)
        assert code == 0
        assert WEB_ID in out
        assert OLD_ID not in out
        assert 'nginx:latest' in out

        _, out, _ = await run_cli(['vm', 'ls', '-a'], config, logged_in)
        assert OLD_ID in out

    @pytest.mark.asyncio
    async def test_bare_instance_command_lists(self, config, logged_in, fake_api):
        _, _, err = await run_cli(['instance'], config, logged_in)
        assert 'No running instances found.' in err

        _, _, err = await run_cli(['instance', 'list', '-a'], config, logged_in)
        assert 'No instances found. How about running one?' in err

    @pytest.mark.asyncio
    async def test_stop_by_name(self, config, logged_in, fake_api):
        fake_api.add_instance(WEB_ID, name='web')

        code, out, _ = await run_cli(['instance', 'stop', 'web'], config, logged_in)

        assert code == 0
        assert f'Successfully stopped instance {WEB_ID}' in out
        assert ('DELETE', f'/instance/{WEB_ID}', {'timeout_ms': 5000}) in fake_api.bodies

    @pytest.mark.asyncio
    async def test_stop_with_ambiguous_prefix(self, config, logged_in, fake_api):
        fake_api.add_instance(WEB_ID, name='web')
        fake_api.add_instance(OLD_ID, name='web-2')

        with pytest.raises(AmbiguousReference):
            await run_cli(['instance', 'rm', '3f2b'], config, logged_in)
        assert fake_api.count('DELETE', f'/instance/{WEB_ID}') == 0

    @pytest.mark.asyncio
    async def test_stop_rejects_invalid_timeout(self, config, logged_in, fake_api):
        with pytest.raises(ValidationError):
            await run_cli(['instance', 'stop', 'web', '-t', '700000'], config, logged_in)
        assert fake_api.requests == []

    @pytest.mark.asyncio
    async def test_run_creates_instance_and_follows_logs(self, config, logged_in, fake_api):
        fake_api.log_messages = [
            {'log_type': 'state', 'timestamp_ms': 1, 'state': 'online'},
            {'log_type': 'stdout', 'timestamp_ms': 2, 'message': 'listening on :80'},
            {'log_type': 'stderr', 'timestamp_ms': 3, 'message': 'warning: no config'},
        ]

        code, out, err = await run_cli(
            ['instance', 'run', '-m', '512M', '-e', 'MODE=prod', '-e', 'URL=a=b', '-n', 'web',
             'nginx:latest', 'nginx', '-g', 'daemon off;'],
            config, logged_in
        )

        assert code == 0
        created = [body for method, path, body in fake_api.bodies if (method, path) == ('POST', '/instance')]
        assert created == [{
            'region': 'dev',
            'vcpu_ratio': 1.0,
            'vcpu_count': 1,
            'memory_mb': 512,
            'name': 'web',
            'configuration': {
                'container_image': 'nginx:latest',
                'args': ['nginx', '-g', 'daemon off;'],
                'env': {'MODE': 'prod', 'URL': 'a=b'},
            },
        }]
        assert 'f0e1d2c3-b4a5-4968-8776-655443322110' in out
        assert 'listening on :80' in out
        assert 'warning: no config' in err
        assert 'Instance is online' in err
        assert 'f0e1d2c3 started successfully' in err

    @pytest.mark.asyncio
    async def test_run_assigns_free_network_address(self, config, logged_in, fake_api):
        fake_api.add_network(NETWORK_ID, 'backend', '10.0.0.0/24',
                             instances=[{'id': WEB_ID, 'internal_ip': '10.0.0.1'}])

        await run_cli(['instance', 'run', '--network', 'backend', 'redis:7'], config, logged_in)

        created = [body for method, path, body in fake_api.bodies if (method, path) == ('POST', '/instance')]
        assert created[0]['network'] == {'network_id': NETWORK_ID, 'instance_ip': '10.0.0.2'}

    @pytest.mark.asyncio
    async def test_run_rejects_invalid_memory(self, config, logged_in, fake_api):
        with pytest.raises(ValidationError):
            await run_cli(['instance', 'run', '-m', '64M', 'nginx:latest'], config, logged_in)
        assert fake_api.count('POST', '/instance') == 0

    @pytest.mark.asyncio
    async def test_show(self, config, logged_in, fake_api):
        fake_api.add_instance(WEB_ID, name='web')
        fake_api.instance_details[WEB_ID] = {
            'id': WEB_ID, 'name': 'web', 'state': 'active', 'node_id': 'node-7',
            'configuration': {'container_image': 'nginx:latest'},
            'service_targets': [{'service_id': SERVICE_ID, 'service_type': 'http',
                                 'service_name': 'blog', 'instance_port': 80}],
        }

        code, out, _ = await run_cli(['instance', 'show', 'web'], config, logged_in)

        assert code == 0
        assert 'node-7' in out
        assert 'blog' in out

    @pytest.mark.asyncio
    async def test_logs(self, config, logged_in, fake_api):
        fake_api.log_messages = [{'log_type': 'system', 'timestamp_ms': 0, 'message': 'booting'}]

        _, _, err = await run_cli(['instance', 'logs', WEB_ID], config, logged_in)

        assert '[Instance] 1970-01-01 00:00:00 - booting' in err


class TestServiceCommands:
    """Test service management."""

    @pytest.mark.asyncio
    async def test_new_expands_subdomain(self, config, logged_in, fake_api):
        code, out, _ = await run_cli(['service', 'new', 'blog', 'blog', '--allow-http'], config, logged_in)

        assert code == 0
        body = [b for method, path, b in fake_api.bodies if (method, path) == ('POST', '/service')][0]
        assert body['host'] == 'blog.unisrv.dev'
        assert body['configuration'] == {
            'locations': [{'path': '/', 'override_404': None, 'target': {'type': 'instance', 'group': 'default'}}],
            'allow_http': True,
        }
        assert f'Service created with ID: {SERVICE_ID}' in out

    @pytest.mark.asyncio
    async def test_list_and_show(self, config, logged_in, fake_api):
        fake_api.add_service(SERVICE_ID, 'blog')

        _, out, _ = await run_cli(['srv', 'ls'], config, logged_in)
        assert 'blog' in out

        _, out, _ = await run_cli(['service', 'show', 'blog'], config, logged_in)
        assert 'No targets configured for this service' in out

    @pytest.mark.asyncio
    async def test_delete(self, config, logged_in, fake_api):
        fake_api.add_service(SERVICE_ID, 'blog')

        await run_cli(['service', 'delete', 'blog'], config, logged_in)

        assert fake_api.count('DELETE', f'/service/{SERVICE_ID}') == 1

    @pytest.mark.asyncio
    async def test_target_add(self, config, logged_in, fake_api):
        fake_api.add_service(SERVICE_ID, 'blog')
        fake_api.add_instance(WEB_ID, name='web')

        code, out, _ = await run_cli(['service', 'target', 'add', 'blog', 'web:8080', '-g', 'blue'],
                                     config, logged_in)

        assert code == 0
        assert ('POST', f'/service/{SERVICE_ID}/target',
                {'instance_id': WEB_ID, 'instance_port': 8080, 'group': 'blue'}) in fake_api.bodies
        assert 'Target 7d6c5b4a added' in out

    @pytest.mark.asyncio
    async def test_target_add_rejects_bad_port(self, config, logged_in, fake_api):
        with pytest.raises(ValidationError):
            await run_cli(['service', 'target', 'add', 'blog', 'web:99999'], config, logged_in)
        assert fake_api.requests == []

    @pytest.mark.asyncio
    async def test_target_delete_by_prefix(self, config, logged_in, fake_api):
        fake_api.add_service(SERVICE_ID, 'blog', targets=[
            {'id': TARGET_1, 'instance_id': WEB_ID, 'instance_port': 80, 'target_group': None},
            {'id': TARGET_2, 'instance_id': DB_ID, 'instance_port': 80, 'target_group': 'blue'},
        ])

        await run_cli(['service', 'target', 'rm', 'blog', 'bb22'], config, logged_in)

        assert fake_api.count('DELETE', f'/service/{SERVICE_ID}/target/{TARGET_2}') == 1

    @pytest.mark.asyncio
    async def test_target_delete_prompts_for_selection(self, config, logged_in, fake_api):
        fake_api.add_service(SERVICE_ID, 'blog', targets=[
            {'id': TARGET_1, 'instance_id': WEB_ID, 'instance_port': 80, 'target_group': None},
            {'id': TARGET_2, 'instance_id': DB_ID, 'instance_port': 80, 'target_group': 'blue'},
        ])
        prompts = []

        def answer(text):
            prompts.append(text)
            return '2'

        args = parse_arguments(['service', 'target', 'delete', 'blog'])
        async with UnisrvAPIClient(config, TokenManager(logged_in)) as client:
            ctx = CommandContext(
                api_client=client,
                token_manager=client.token_manager,
                resolver=ResourceResolver(client),
                out=io.StringIO(),
                err=io.StringIO(),
                prompt=answer
            )
            await args.handler(args, ctx)

        assert prompts == ['Select target to delete [1-2]: ']
        assert 'aa11bb22' in ctx.err.getvalue()
        assert fake_api.count('DELETE', f'/service/{SERVICE_ID}/target/{TARGET_2}') == 1

    @pytest.mark.asyncio
    async def test_location_list_by_lone_reference(self, config, logged_in, fake_api):
        fake_api.add_service(SERVICE_ID, 'blog')

        _, out, _ = await run_cli(['service', 'location', 'blog'], config, logged_in)

        assert 'instance group default' in out
        assert 'HTTP allowed: no' in out

    @pytest.mark.asyncio
    async def test_location_add(self, config, logged_in, fake_api):
        fake_api.add_service(SERVICE_ID, 'blog')

        await run_cli(['service', 'loc', 'add', 'blog', '/docs', 'url', 'https://docs.example.com',
                       '--override-404', '/404.html'], config, logged_in)

        locations = fake_api.services[SERVICE_ID]['configuration']['locations']
        assert [loc['path'] for loc in locations] == ['/', '/docs']
        assert locations[1] == {
            'path': '/docs',
            'override_404': '/404.html',
            'target': {'type': 'url', 'url': 'https://docs.example.com'},
        }

    @pytest.mark.asyncio
    async def test_location_add_duplicate_path(self, config, logged_in, fake_api):
        fake_api.add_service(SERVICE_ID, 'blog')

        with pytest.raises(ValidationError) as exc_info:
            await run_cli(['service', 'location', 'add', 'blog', '/', 'inst'], config, logged_in)

        assert exc_info.value.error_code == ErrorCode.VALIDATION_CONFLICT
        assert fake_api.count('PUT', f'/service/{SERVICE_ID}') == 0

    @pytest.mark.asyncio
    async def test_location_delete(self, config, logged_in, fake_api):
        fake_api.add_service(SERVICE_ID, 'blog')

        await run_cli(['service', 'location', 'delete', 'blog', '/'], config, logged_in)
        assert fake_api.services[SERVICE_ID]['configuration']['locations'] == []

        with pytest.raises(NotFound):
            await run_cli(['service', 'location', 'rm', 'blog', '/missing'], config, logged_in)


class TestNetworkCommands:
    """Test network management."""

    @pytest.mark.asyncio
    async def test_new_with_default_cidr(self, config, logged_in, fake_api):
        code, out, _ = await run_cli(['network', 'new', 'backend'], config, logged_in)

        assert code == 0
        assert ('POST', '/network', {'name': 'backend', 'ipv4_cidr': '10.0.0.0/8'}) in fake_api.bodies
        assert "Network 'backend' created successfully with CIDR 10.0.0.0/8" in out

    @pytest.mark.asyncio
    async def test_new_rejects_invalid_cidr(self, config, logged_in, fake_api):
        with pytest.raises(ValidationError):
            await run_cli(['network', 'new', 'backend', '10.0.0.1/8'], config, logged_in)
        assert fake_api.requests == []

    @pytest.mark.asyncio
    async def test_list_show_delete(self, config, logged_in, fake_api):
        fake_api.add_network(NETWORK_ID, 'backend', instances=[{'id': WEB_ID, 'internal_ip': '10.0.0.1'}])

        _, out, _ = await run_cli(['net', 'ls'], config, logged_in)
        assert 'backend' in out

        _, out, _ = await run_cli(['network', 'show', 'backend'], config, logged_in)
        assert '10.0.0.1' in out

        await run_cli(['network', 'rm', 'backend'], config, logged_in)
        assert fake_api.count('DELETE', f'/network/{NETWORK_ID}') == 1

    @pytest.mark.asyncio
    async def test_empty_list(self, config, logged_in):
        _, _, err = await run_cli(['network', 'list'], config, logged_in)
        assert 'No networks found.' in err
