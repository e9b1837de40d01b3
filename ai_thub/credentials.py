"""
Secure Credentials Manager
==========================
Provider API keys are kept out of the plain JSON store. Backends are tried
in priority order:
1. System keyring (OS credential store), one entry per ``{provider}_api_key``
2. Fernet-encrypted file keyed from the machine identity
3. Environment variables (read-mostly fallback)

``SecureStore`` plugs the manager into the key/value contract, so the
registry and hub read and write keys exactly like any other setting.
"""

import asyncio
import base64
import getpass
import hashlib
import json
import logging
import os
import sys
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
import keyring
from keyring.backends import fail
from keyring.errors import KeyringError, PasswordDeleteError

from .errors import StorageError
from .providers import ProviderId
from .storage import API_KEY_SUFFIX, KeyValueStore, api_key_key, get_storage_path

logger = logging.getLogger(__name__)

SERVICE_NAME = "ai_thub"
CREDENTIALS_FILE = "credentials.enc"
KDF_SALT = b"ai_thub_v1"
KDF_ITERATIONS = 480000


@dataclass(frozen=True)
class APICredential:
    """A provider key plus the backend it came from; never printed in full"""
    provider: str
    _key: str
    source: str = "unknown"

    def get_key(self) -> str:
        logger.debug(f"API key accessed for provider: {self.provider}")
        return self._key

    def masked(self) -> str:
        """Last four characters only, for the settings screen"""
        if len(self._key) <= 4:
            return "****"
        return f"****{self._key[-4:]}"

    def __repr__(self) -> str:
        return f"APICredential(provider={self.provider}, source={self.source}, key=****)"

    def __str__(self) -> str:
        return self.__repr__()


class CredentialBackend(ABC):
    """Where provider keys can live"""

    @abstractmethod
    def get(self, provider: str) -> Optional[str]:
        """Stored key for ``provider`` or None"""

    @abstractmethod
    def set(self, provider: str, api_key: str) -> bool:
        """Store the key; False when the backend refused"""

    @abstractmethod
    def delete(self, provider: str) -> bool:
        """Forget the key; True when nothing is left behind"""

    @property
    @abstractmethod
    def is_available(self) -> bool:
        pass

    @property
    def is_secure(self) -> bool:
        return True

    @property
    def name(self) -> str:
        return type(self).__name__


class KeyringBackend(CredentialBackend):
    """OS keychain; accounts are named like the store keys (``groq_api_key``)"""

    def __init__(self, service_name: str = SERVICE_NAME):
        self.service_name = service_name
        self._available: Optional[bool] = None

    @property
    def name(self) -> str:
        return "keyring"

    @property
    def is_available(self) -> bool:
        if self._available is None:
            try:
                self._available = not isinstance(keyring.get_keyring(), fail.Keyring)
            except KeyringError as e:
                logger.debug(f"Keyring unavailable: {e}")
                self._available = False
        return self._available

    def get(self, provider: str) -> Optional[str]:
        if not self.is_available:
            return None
        try:
            return keyring.get_password(self.service_name, api_key_key(provider))
        except KeyringError as e:
            logger.warning(f"Keyring read failed for {provider}: {e}")
            return None

    def set(self, provider: str, api_key: str) -> bool:
        if not self.is_available:
            return False
        try:
            keyring.set_password(self.service_name, api_key_key(provider), api_key)
        except KeyringError as e:
            logger.error(f"Keyring write failed for {provider}: {e}")
            return False
        logger.info(f"Stored {provider} API key in keyring")
        return True

    def delete(self, provider: str) -> bool:
        if not self.is_available:
            return True
        try:
            keyring.delete_password(self.service_name, api_key_key(provider))
        except PasswordDeleteError:
            pass
        except KeyringError as e:
            logger.warning(f"Keyring delete failed for {provider}: {e}")
            return False
        return True


class EncryptedFileBackend(CredentialBackend):
    """``~/.ai_thub/credentials.enc``: a Fernet token over a JSON provider -> key map"""

    def __init__(self, path: Optional[Path] = None):
        self.path = path or get_storage_path() / CREDENTIALS_FILE
        self._lock = threading.Lock()
        self._fernet: Optional[Fernet] = self._build_fernet()

    @property
    def name(self) -> str:
        return "encrypted_file"

    @property
    def is_available(self) -> bool:
        return self._fernet is not None

    @staticmethod
    def _machine_secret() -> bytes:
        parts = []
        if sys.platform == "linux":
            try:
                parts.append(Path("/etc/machine-id").read_text().strip())
            except OSError:
                pass
        parts.append(getpass.getuser())
        parts.append(os.uname().nodename if hasattr(os, "uname") else "unknown")
        return hashlib.sha256(":".join(parts).encode()).digest()

    def _build_fernet(self) -> Optional[Fernet]:
        try:
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=32,
                salt=KDF_SALT,
                iterations=KDF_ITERATIONS,
            )
            return Fernet(base64.urlsafe_b64encode(kdf.derive(self._machine_secret())))
        except (OSError, KeyError, ValueError) as e:
            logger.error(f"Encrypted credential file disabled: {e}")
            return None

    def _read(self) -> Dict[str, str]:
        if not self.is_available or not self.path.exists():
            return {}
        try:
            decrypted = self._fernet.decrypt(self.path.read_bytes())
            loaded = json.loads(decrypted.decode())
        except (OSError, InvalidToken, ValueError) as e:
            logger.error(f"Could not read {self.path}: {e}")
            return {}
        return {k: v for k, v in loaded.items() if isinstance(v, str)}

    def _write(self, creds: Dict[str, str]) -> bool:
        try:
            self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            temp_file = self.path.with_suffix(".tmp")
            temp_file.write_bytes(self._fernet.encrypt(json.dumps(creds).encode()))
            os.chmod(temp_file, 0o600)
            temp_file.replace(self.path)
        except OSError as e:
            logger.error(f"Could not write {self.path}: {e}")
            return False
        return True

    def get(self, provider: str) -> Optional[str]:
        with self._lock:
            return self._read().get(provider)

    def set(self, provider: str, api_key: str) -> bool:
        if not self.is_available:
            return False
        with self._lock:
            creds = self._read()
            creds[provider] = api_key
            if not self._write(creds):
                return False
        logger.info(f"Stored {provider} API key in encrypted file")
        return True

    def delete(self, provider: str) -> bool:
        if not self.is_available:
            return True
        with self._lock:
            creds = self._read()
            if provider not in creds:
                return True
            del creds[provider]
            return self._write(creds)


class EnvironmentBackend(CredentialBackend):
    """``{PROVIDER}_API_KEY`` environment variables; process-local writes"""

    ALIASES: Dict[str, Tuple[str, ...]] = {
        ProviderId.GOOGLE.value: ("GEMINI_API_KEY",),
    }

    @property
    def name(self) -> str:
        return "environment"

    @property
    def is_available(self) -> bool:
        return True

    @property
    def is_secure(self) -> bool:
        return False

    @staticmethod
    def env_var(provider: str) -> str:
        return f"{provider.upper()}{API_KEY_SUFFIX.upper()}"

    def get(self, provider: str) -> Optional[str]:
        for var in (self.env_var(provider), *self.ALIASES.get(provider, ())):
            value = os.environ.get(var)
            if value:
                return value
        return None

    def set(self, provider: str, api_key: str) -> bool:
        os.environ[self.env_var(provider)] = api_key
        logger.warning(f"{provider} API key only set for this process ({self.env_var(provider)})")
        return True

    def delete(self, provider: str) -> bool:
        for var in (self.env_var(provider), *self.ALIASES.get(provider, ())):
            os.environ.pop(var, None)
        return True


class CredentialManager:
    """Reads from the first backend holding a key; writes to the most secure one"""

    def __init__(self, backends: Optional[List[CredentialBackend]] = None):
        if backends is None:
            backends = [KeyringBackend(), EncryptedFileBackend(), EnvironmentBackend()]
        self._backends = backends
        self._cache: Dict[str, APICredential] = {}

        available = [b.name for b in backends if b.is_available]
        logger.info(f"Available credential backends: {available}")
        if not any(b.is_secure and b.is_available for b in backends):
            logger.warning(
                "No secure credential storage available; API keys will only "
                "live in environment variables for this process."
            )

    def get_credential(self, provider: str) -> Optional[APICredential]:
        provider = provider.lower()
        if provider in self._cache:
            return self._cache[provider]

        for backend in self._backends:
            if not backend.is_available:
                continue
            api_key = backend.get(provider)
            if api_key:
                credential = APICredential(provider, api_key, backend.name)
                self._cache[provider] = credential
                logger.debug(f"Found {provider} API key in {backend.name}")
                return credential
        return None

    def set_credential(self, provider: str, api_key: str) -> bool:
        provider = provider.lower()
        if not api_key:
            logger.error(f"Refusing to store an empty API key for {provider}")
            return False

        self._cache.pop(provider, None)
        ordered = sorted(
            (b for b in self._backends if b.is_available),
            key=lambda b: not b.is_secure,
        )
        for backend in ordered:
            if backend.set(provider, api_key):
                return True
        return False

    def delete_credential(self, provider: str) -> bool:
        """Remove the key from every backend so no stale copy resurfaces"""
        provider = provider.lower()
        self._cache.pop(provider, None)
        results = [b.delete(provider) for b in self._backends if b.is_available]
        return all(results)

    def get_api_key(self, provider: str) -> Optional[str]:
        credential = self.get_credential(provider)
        return credential.get_key() if credential else None

    def sources(self) -> Dict[str, str]:
        """provider -> backend name for every provider with a stored key"""
        found = {}
        for provider in ProviderId:
            credential = self.get_credential(provider.value)
            if credential is not None:
                found[provider.value] = credential.source
        return found

    def clear_cache(self):
        self._cache.clear()


class SecureStore(KeyValueStore):
    """Routes ``*_api_key`` entries to a CredentialManager, the rest to ``inner``"""

    def __init__(self, inner: KeyValueStore, manager: Optional[CredentialManager] = None):
        self.inner = inner
        self.manager = manager or CredentialManager()

    @staticmethod
    def _provider_for(key: str) -> Optional[str]:
        if key.endswith(API_KEY_SUFFIX):
            return key[: -len(API_KEY_SUFFIX)]
        return None

    async def get(self, key: str) -> Optional[str]:
        provider = self._provider_for(key)
        if provider is None:
            return await self.inner.get(key)
        return await asyncio.to_thread(self.manager.get_api_key, provider)

    async def set(self, key: str, value: str) -> None:
        provider = self._provider_for(key)
        if provider is None:
            await self.inner.set(key, value)
            return
        if not await asyncio.to_thread(self.manager.set_credential, provider, value):
            raise StorageError(f"Failed to store API key for {provider}")

    async def remove(self, key: str) -> None:
        provider = self._provider_for(key)
        if provider is None:
            await self.inner.remove(key)
            return
        if not await asyncio.to_thread(self.manager.delete_credential, provider):
            raise StorageError(f"Failed to delete API key for {provider}")
