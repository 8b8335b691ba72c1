"""
Secure Session Storage for the unisrv CLI.

This module persists the authenticated session in the system keyring, or in
an encrypted file when no usable keyring backend exists.
"""

import os
import json
import logging
from pathlib import Path
from typing import Optional

import keyring
from keyring.backends import fail
from keyring.errors import KeyringError, PasswordDeleteError
from cryptography.fernet import Fernet, InvalidToken

from ..config import ClientConfiguration
from ..exceptions import CredentialStoreError, ErrorCode
from ..interfaces import ICredentialStore
from ..models import Session

logger = logging.getLogger(__name__)

SERVICE_NAME = "unisrv-cli"
SESSION_KEY = "auth_session"


def _decode_session(value: str) -> Session:
    try:
        return Session.from_dict(json.loads(value))
    except (ValueError, KeyError, TypeError) as e:
        raise CredentialStoreError(
            f"Stored session is corrupt: {e}",
            error_code=ErrorCode.STORAGE_READ_FAILED,
            cause=e,
            user_message="The stored session could not be read. Run 'unisrv logout' and log in again."
        )


def keyring_available() -> bool:
    """Check whether a real system keyring backend is configured."""
    try:
        backend = keyring.get_keyring()
    except KeyringError as e:
        logger.debug(f"Keyring not available: {e}")
        return False
    return not isinstance(backend, fail.Keyring)


class KeyringCredentialStore(ICredentialStore):
    """
    Session storage in the system keyring.

    The session is stored as one JSON document under service ``unisrv-cli``
    and key ``auth_session``.
    """

    def __init__(self, service_name: str = SERVICE_NAME, key: str = SESSION_KEY):
        self.service_name = service_name
        self.key = key

    def save(self, session: Session) -> None:
        try:
            keyring.set_password(self.service_name, self.key, json.dumps(session.to_dict()))
        except KeyringError as e:
            logger.error(f"Failed to store session in keyring: {e}")
            raise CredentialStoreError(f"Failed to store session in keyring: {e}", cause=e)
        logger.debug("Session stored in system keyring")

    def load(self) -> Optional[Session]:
        try:
            value = keyring.get_password(self.service_name, self.key)
        except KeyringError as e:
            raise CredentialStoreError(
                f"Failed to read session from keyring: {e}",
                error_code=ErrorCode.STORAGE_READ_FAILED,
                cause=e
            )
        if not value:
            return None
        return _decode_session(value)

    def clear(self) -> None:
        try:
            keyring.delete_password(self.service_name, self.key)
        except PasswordDeleteError:
            logger.debug("No session stored in keyring")
        except KeyringError as e:
            raise CredentialStoreError(f"Failed to delete session from keyring: {e}", cause=e)


class EncryptedFileCredentialStore(ICredentialStore):
    """
    Session storage in a Fernet-encrypted file.

    The key lives next to the encrypted session; both files are created with
    mode 0600.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.storage_path = self.directory / 'session.enc'
        self.key_path = self.directory / 'session.key'

    def _write_private(self, path: Path, data: bytes) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
        os.chmod(path, 0o600)

    def _get_fernet(self, create: bool) -> Optional[Fernet]:
        if self.key_path.exists():
            return Fernet(self.key_path.read_bytes().strip())
        if not create:
            return None
        key = Fernet.generate_key()
        self._write_private(self.key_path, key)
        return Fernet(key)

    def save(self, session: Session) -> None:
        try:
            fernet = self._get_fernet(create=True)
            encrypted = fernet.encrypt(json.dumps(session.to_dict()).encode())
            self._write_private(self.storage_path, encrypted)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to store session file: {e}")
            raise CredentialStoreError(f"Failed to store session in {self.storage_path}: {e}", cause=e)
        logger.debug(f"Session stored in {self.storage_path}")

    def load(self) -> Optional[Session]:
        if not self.storage_path.exists():
            return None
        try:
            fernet = self._get_fernet(create=False)
            if fernet is None:
                raise CredentialStoreError(
                    f"Session key {self.key_path} is missing",
                    error_code=ErrorCode.STORAGE_READ_FAILED
                )
            value = fernet.decrypt(self.storage_path.read_bytes()).decode()
        except (OSError, ValueError, InvalidToken) as e:
            raise CredentialStoreError(
                f"Failed to read session from {self.storage_path}: {e}",
                error_code=ErrorCode.STORAGE_READ_FAILED,
                cause=e
            )
        return _decode_session(value)

    def clear(self) -> None:
        try:
            if self.storage_path.exists():
                self.storage_path.unlink()
        except OSError as e:
            raise CredentialStoreError(f"Failed to delete {self.storage_path}: {e}", cause=e)


def create_credential_store(config: ClientConfiguration) -> ICredentialStore:
    """
    Create the credential store selected by configuration.

    ``auto`` uses the system keyring when a usable backend exists and falls
    back to the encrypted file store otherwise.
    """
    storage = config.get_credential_storage()

    if storage == 'keyring':
        if not keyring_available():
            raise CredentialStoreError(
                "No usable system keyring backend is available",
                error_code=ErrorCode.STORAGE_UNAVAILABLE
            )
        return KeyringCredentialStore()

    if storage == 'auto' and keyring_available():
        return KeyringCredentialStore()

    logger.debug("Using encrypted file session storage")
    return EncryptedFileCredentialStore(config.get_config_dir())
