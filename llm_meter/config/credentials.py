"""
API key storage.

Keys live in the system keyring, addressed by provider name, with an
environment variable fallback for read access.
"""

import logging
import os
import threading
from typing import Dict, Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from llm_meter.core.errors import ConfigurationError, CredentialNotFoundError
from .loader import SERVICE_NAME, normalize_provider_name

logger = logging.getLogger(__name__)


def env_var_name(provider: str) -> str:
    """Environment variable consulted for a provider's key, e.g. OPENAI_API_KEY."""
    return normalize_provider_name(provider).upper().replace("-", "_") + "_API_KEY"


def _not_found(provider: str) -> CredentialNotFoundError:
    return CredentialNotFoundError(
        f"No API key found for provider '{provider}'. "
        "Configure in TUI key manager or set env var."
    )


class KeyringCredentialStore:
    """Credential store backed by the ``keyring`` library.

    Secrets are stored under service ``llm-meter`` with username
    ``provider:<name>``. Values are never logged.
    """

    def __init__(self, service_name: str = SERVICE_NAME):
        self.service_name = service_name

    def _username(self, provider: str) -> str:
        return f"provider:{normalize_provider_name(provider)}"

    def _stored(self, provider: str) -> Optional[str]:
        try:
            return keyring.get_password(self.service_name, self._username(provider))
        except KeyringError as e:
            raise ConfigurationError(f"Failed reading keychain: {e}") from e

    def get(self, provider: str) -> str:
        """Get the key for a provider from the keyring or environment.

        Raises:
            CredentialNotFoundError: If neither source has a non-empty key
        """
        name = normalize_provider_name(provider)
        value = self._stored(name)
        if value:
            return value
        value = os.environ.get(env_var_name(name))
        if value:
            return value
        raise _not_found(name)

    def set(self, provider: str, secret: str) -> None:
        try:
            keyring.set_password(self.service_name, self._username(provider), secret)
        except KeyringError as e:
            raise ConfigurationError(f"Failed to save key: {e}") from e
        logger.debug("Stored API key for '%s'", normalize_provider_name(provider))

    def delete(self, provider: str) -> None:
        """Delete the key for a provider; succeeds when no key exists."""
        try:
            keyring.delete_password(self.service_name, self._username(provider))
        except PasswordDeleteError:
            return
        except KeyringError as e:
            raise ConfigurationError(f"Failed to delete key: {e}") from e

    def has(self, provider: str) -> bool:
        """Check whether the keyring holds a key (environment not consulted)."""
        return bool(self._stored(provider))


class InMemoryCredentialStore:
    """Process-local credential store with the same interface.

    Safe to call from the UI thread and the background test thread.
    """

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._lock = threading.Lock()
        self._secrets: Dict[str, str] = {}
        for provider, secret in (initial or {}).items():
            self.set(provider, secret)

    def get(self, provider: str) -> str:
        name = normalize_provider_name(provider)
        with self._lock:
            value = self._secrets.get(name)
        if not value:
            raise _not_found(name)
        return value

    def set(self, provider: str, secret: str) -> None:
        with self._lock:
            self._secrets[normalize_provider_name(provider)] = secret

    def delete(self, provider: str) -> None:
        with self._lock:
            self._secrets.pop(normalize_provider_name(provider), None)

    def has(self, provider: str) -> bool:
        with self._lock:
            return bool(self._secrets.get(normalize_provider_name(provider)))
