"""
Command handlers for the unisrv CLI.

Each submodule registers its argparse subcommands and provides async handlers
with the signature ``handler(args, ctx) -> int`` returning an exit code.
"""

import getpass
import sys
from dataclasses import dataclass, field
from typing import Callable, TextIO

from ..api_client import UnisrvAPIClient
from ..auth.token_manager import TokenManager
from ..resolver import ResourceResolver


def _stdout() -> TextIO:
    return sys.stdout


def _stderr() -> TextIO:
    return sys.stderr


@dataclass
class CommandContext:
    """Collaborators shared by all handlers of one invocation."""
    api_client: UnisrvAPIClient
    token_manager: TokenManager
    resolver: ResourceResolver
    out: TextIO = field(default_factory=_stdout)
    err: TextIO = field(default_factory=_stderr)
    prompt: Callable[[str], str] = input
    read_password: Callable[[str], str] = getpass.getpass


def short_id(identifier: str) -> str:
    """First eight characters of an identifier, as shown in listings."""
    return str(identifier)[:8]
