"""
Login, logout and access token commands.
"""

import json
import logging

from ..exceptions import AuthenticationExpired, ServiceUnavailable, ValidationError, ErrorCode
from ..logging_config import AuditLogger
from . import CommandContext

logger = logging.getLogger(__name__)


def register(subparsers) -> None:
    login_parser = subparsers.add_parser('login', help='Log in with username and password')
    login_parser.add_argument('-u', '--username', required=True, help='Account username')
    login_parser.add_argument('-p', '--password', help='Account password (prompted when omitted)')
    login_parser.set_defaults(handler=handle_login, requires_session=False)

    logout_parser = subparsers.add_parser('logout', help='Remove the stored session')
    logout_parser.set_defaults(handler=handle_logout, requires_session=False)

    auth_parser = subparsers.add_parser('auth', help='Inspect the current session')
    auth_subparsers = auth_parser.add_subparsers(dest='auth_command', metavar='COMMAND')
    auth_subparsers.required = True

    token_parser = auth_subparsers.add_parser('token', help='Print a valid access token')
    token_parser.add_argument('--json', action='store_true', help='Print token and expiry as JSON')
    token_parser.set_defaults(handler=handle_token)


async def handle_login(args, ctx: CommandContext) -> int:
    """Exchange username and password for a session and store it."""
    password = args.password
    if password is None:
        password = ctx.read_password('Password: ')
    if not password:
        raise ValidationError("Password cannot be empty", field_name='password')

    audit = AuditLogger()
    try:
        response = await ctx.api_client.login(args.username, password)
    except AuthenticationExpired as e:
        audit.log_login(args.username, success=False, failure_reason=e.message)
        raise

    try:
        session = ctx.token_manager.start_session(response)
    except ValueError as e:
        raise ServiceUnavailable(
            f"Invalid login response: {e}",
            error_code=ErrorCode.NETWORK_INVALID_RESPONSE,
            cause=e
        )
    audit.log_login(args.username, user_id=session.user_id)
    print(f"Logged in as {args.username}", file=ctx.out)
    return 0


async def handle_logout(args, ctx: CommandContext) -> int:
    if ctx.token_manager.logout():
        print("Logged out", file=ctx.out)
    else:
        print("Not logged in", file=ctx.out)
    return 0


async def handle_token(args, ctx: CommandContext) -> int:
    """Print an access token, refreshing the session if needed."""
    token = await ctx.token_manager.get_valid_access_token()
    if args.json:
        session = ctx.token_manager.session
        print(json.dumps({'token': token, 'expires_at': session.expires_at.isoformat()}), file=ctx.out)
    else:
        print(token, file=ctx.out)
    return 0
