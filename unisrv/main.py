"""
Main entry point for the unisrv CLI.

This module parses the command line, configures logging, wires the credential
store, token manager and API client together, dispatches to the command
handler and maps errors to process exit codes.
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional, List, TextIO

from . import __version__
from .api_client import UnisrvAPIClient
from .auth.credential_store import create_credential_store
from .auth.token_manager import TokenManager
from .commands import CommandContext, auth, instances, services, networks
from .config import ClientConfiguration
from .exceptions import (
    UnisrvError, AuthenticationExpired, ErrorCode, handle_exception
)
from .interfaces import ICredentialStore
from .logging_config import LogLevel, LogFormat, setup_logging, log_structured_error
from .resolver import ResourceResolver

logger = logging.getLogger(__name__)

EXIT_CODE_HELP = """
Exit Codes:
  0   - Success
  1   - Unexpected error
  2   - Not logged in, or the session expired or was rejected
  3   - Resource not found
  4   - Ambiguous resource reference
  5   - Invalid input or request rejected by the server
  6   - Service unavailable
  7   - Request timed out
  8   - Credential storage or configuration error
  130 - Cancelled by user (Ctrl+C)
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='unisrv',
        description="Manage unisrv instances, services and networks",
        epilog="""
Examples:
  %(prog)s login -u alice
  %(prog)s instance run nginx:latest --memory 512M --name web
  %(prog)s instance list -a
  %(prog)s service new blog blog --allow-http
  %(prog)s service target add blog web:80
  %(prog)s network new backend 10.1.0.0/16
""" + EXIT_CODE_HELP,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    config_group = parser.add_argument_group('Configuration')
    config_group.add_argument('--config', type=str, metavar='FILE',
                              help='Path to configuration file (default: ~/.unisrv/cli.conf)')
    config_group.add_argument('--api-host', type=str, metavar='URL',
                              help='Override the API host')

    output_group = parser.add_argument_group('Output')
    output_group.add_argument('--verbose', '-v', action='store_true', help='Enable verbose logging')
    output_group.add_argument('--quiet', '-q', action='store_true', help='Only log errors')

    debug_group = parser.add_argument_group('Debug')
    debug_group.add_argument('--debug', action='store_true', help='Enable debug logging')
    debug_group.add_argument('--log-file', type=str, metavar='FILE', help='Also log to a file')

    subparsers = parser.add_subparsers(dest='command', metavar='COMMAND')
    subparsers.required = True
    auth.register(subparsers)
    instances.register(subparsers)
    services.register(subparsers)
    networks.register(subparsers)
    return parser


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.quiet and (args.verbose or args.debug):
        parser.error("--quiet cannot be combined with --verbose or --debug")

    return args


def load_configuration(args: argparse.Namespace) -> ClientConfiguration:
    config = ClientConfiguration(args.config)
    config.set_override('api_host', args.api_host)
    return config


def configure_logging(args: argparse.Namespace, config: ClientConfiguration) -> None:
    """Configure logging from command line flags, falling back to configuration."""
    if args.debug:
        level = LogLevel.DEBUG
    elif args.verbose:
        level = LogLevel.INFO
    elif args.quiet:
        level = LogLevel.ERROR
    else:
        try:
            level = LogLevel(config.get_log_level())
        except ValueError:
            level = LogLevel.WARNING

    try:
        log_format = LogFormat(config.get_log_format())
    except ValueError:
        log_format = LogFormat.STANDARD
    if args.debug and log_format == LogFormat.STANDARD:
        log_format = LogFormat.DETAILED

    setup_logging(
        log_level=level,
        log_format=log_format,
        log_file=args.log_file or config.get_log_file(),
        max_file_size=int(config.get_config('logging.max_size', 10485760)),
        backup_count=int(config.get_config('logging.backup_count', 3)),
        audit_file=config.get_config('logging.audit_file')
    )


async def run_command(
    args: argparse.Namespace,
    config: ClientConfiguration,
    credential_store: Optional[ICredentialStore] = None,
    out: Optional[TextIO] = None,
    err: Optional[TextIO] = None
) -> int:
    """
    Run the selected command handler.

    Returns:
        Exit code of the handler
    """
    credential_store = credential_store or create_credential_store(config)
    token_manager = TokenManager(credential_store)

    async with UnisrvAPIClient(config, token_manager) as api_client:
        ctx = CommandContext(
            api_client=api_client,
            token_manager=token_manager,
            resolver=ResourceResolver(api_client),
            out=out or sys.stdout,
            err=err or sys.stderr
        )

        if getattr(args, 'requires_session', True) and token_manager.session is None:
            raise AuthenticationExpired(
                "Not logged in",
                error_code=ErrorCode.AUTH_SESSION_MISSING,
                user_message="You are not logged in."
            )

        return await args.handler(args, ctx)


def render_error(error: UnisrvError, err: TextIO) -> None:
    """Print an error for the user on stderr."""
    print(f"error: {error.user_message}", file=err)
    if isinstance(error, AuthenticationExpired):
        print("hint: run 'unisrv login -u <username>' to log in", file=err)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    args = parse_arguments(argv)

    try:
        config = load_configuration(args)
        configure_logging(args, config)
        return asyncio.run(run_command(args, config))

    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return 130
    except UnisrvError as e:
        log_structured_error(logger, e, level=logging.DEBUG)
        render_error(e, sys.stderr)
        return e.exit_code
    except Exception as e:
        logger.debug("Unexpected error in main", exc_info=True)
        error = handle_exception(e, context={'command': args.command})
        render_error(error, sys.stderr)
        return error.exit_code


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
