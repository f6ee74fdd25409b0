"""Keyring-backed refresh token storage."""

import logging
import os
from typing import Optional

import keyring
import keyring.errors

log = logging.getLogger(__name__)


def _keyring_service_name() -> str:
    """Use a separate keyring namespace when EVM_CONFIG_DIR is set (tests, sandboxes)."""
    if os.environ.get("EVM_CONFIG_DIR", "").strip():
        return "DotEVM-Isolated"
    return "DotEVM"


class CredentialsStore:
    """
    Stores the refresh token per email in the OS keyring (Windows Credential
    Manager, macOS Keychain, Linux Secret Service). Passwords are never stored.
    """

    def get_refresh_token(self, email: str) -> Optional[str]:
        """Return the stored refresh token or None (also on keyring read errors)."""
        try:
            return keyring.get_password(_keyring_service_name(), email)
        except Exception as e:
            log.warning("Could not read stored credentials: %s", e)
            return None

    def set_refresh_token(self, email: str, refresh_token: str) -> None:
        try:
            keyring.set_password(_keyring_service_name(), email, refresh_token)
        except keyring.errors.KeyringError as e:
            log.warning("Could not store refresh token (no usable keyring?): %s", e)

    def clear(self, email: str) -> None:
        """Remove the stored refresh token."""
        try:
            keyring.delete_password(_keyring_service_name(), email)
        except keyring.errors.PasswordDeleteError:
            pass
        except keyring.errors.KeyringError as e:
            log.warning("Could not clear stored credentials: %s", e)
