"""
Tests for key/value stores and secure credential storage
========================================================

Security note: These tests use placeholder keys only.
"""

import json
import os
import sys
from typing import Dict, Optional
from unittest.mock import patch

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from ai_thub.credentials import (
    CredentialBackend,
    CredentialManager,
    EncryptedFileBackend,
    EnvironmentBackend,
    SecureStore,
)
from ai_thub.errors import StorageError
from ai_thub.storage import JsonFileStore, MemoryStore, api_key_key, tool_models_key


class DictBackend(CredentialBackend):
    """In-memory credential backend"""

    def __init__(self, secure: bool = True, accept_writes: bool = True):
        self.data: Dict[str, str] = {}
        self._secure = secure
        self.accept_writes = accept_writes

    @property
    def is_available(self) -> bool:
        return True

    @property
    def is_secure(self) -> bool:
        return self._secure

    def get(self, provider: str) -> Optional[str]:
        return self.data.get(provider)

    def set(self, provider: str, api_key: str) -> bool:
        if not self.accept_writes:
            return False
        self.data[provider] = api_key
        return True

    def delete(self, provider: str) -> bool:
        if not self.accept_writes:
            return False
        self.data.pop(provider, None)
        return True


class TestStorageKeys:
    """Key naming"""

    def test_key_names(self):
        """Keys follow the app's established layout"""
        assert api_key_key("groq") == "groq_api_key"
        assert tool_models_key("box1") == "box1_selected_models"


class TestMemoryStore:
    """In-memory store"""

    @pytest.mark.asyncio
    async def test_set_get_remove(self):
        """Basic operations"""
        store = MemoryStore()
        await store.set("k", "v")
        assert await store.get("k") == "v"
        await store.remove("k")
        assert await store.get("k") is None
        await store.remove("missing")

    @pytest.mark.asyncio
    async def test_fail_writes(self):
        """Simulated persistence failures raise StorageError and change nothing"""
        store = MemoryStore({"k": "v"})
        store.fail_writes = True
        with pytest.raises(StorageError):
            await store.set("k", "other")
        with pytest.raises(StorageError):
            await store.remove("k")
        assert store.data == {"k": "v"}

    @pytest.mark.asyncio
    async def test_malformed_json_reads_as_none(self):
        """Corrupt JSON values are ignored"""
        store = MemoryStore({"verified_models": "{not json"})
        assert await store.get_json("verified_models") is None
        await store.set_json("current_models", {"groq": "llama3-8b-8192"})
        assert await store.get_json("current_models") == {"groq": "llama3-8b-8192"}


class TestJsonFileStore:
    """Single-file JSON store"""

    @pytest.mark.asyncio
    async def test_persists_across_instances(self, tmp_path):
        """Values survive a new store instance"""
        path = tmp_path / "store.json"
        await JsonFileStore(path).set("selected_provider", "groq")
        assert await JsonFileStore(path).get("selected_provider") == "groq"
        assert not path.with_suffix(".tmp").exists()

    @pytest.mark.asyncio
    async def test_sees_external_writes(self, tmp_path):
        """A file rewritten by another writer is reread"""
        path = tmp_path / "store.json"
        store = JsonFileStore(path)
        await store.set("selected_provider", "groq")

        path.write_text(json.dumps({"selected_provider": "openai"}), encoding="utf-8")
        stat = path.stat()
        os.utime(path, (stat.st_atime, stat.st_mtime + 5))

        assert await store.get("selected_provider") == "openai"

    @pytest.mark.asyncio
    async def test_corrupt_file_raises(self, tmp_path):
        """An unreadable document is a storage failure"""
        path = tmp_path / "store.json"
        path.write_text("[1, 2", encoding="utf-8")
        with pytest.raises(StorageError):
            await JsonFileStore(path).get("anything")

    @pytest.mark.asyncio
    async def test_remove(self, tmp_path):
        """Removing a key rewrites the document without it"""
        path = tmp_path / "store.json"
        store = JsonFileStore(path)
        await store.set("a", "1")
        await store.set("b", "2")
        await store.remove("a")
        assert json.loads(path.read_text(encoding="utf-8")) == {"b": "2"}


class TestCredentialBackends:
    """Test credential storage backends"""

    def test_environment_backend_get(self):
        """Environment backend should read from env vars"""
        backend = EnvironmentBackend()

        with patch.dict(os.environ, {"GROQ_API_KEY": "test-key"}):
            assert backend.get("groq") == "test-key"

    def test_environment_backend_missing(self):
        """Should return None for missing env vars"""
        backend = EnvironmentBackend()

        with patch.dict(os.environ, {}, clear=True):
            assert backend.get("openrouter") is None

    def test_environment_backend_alias(self):
        """Google keys are also read from GEMINI_API_KEY"""
        backend = EnvironmentBackend()

        with patch.dict(os.environ, {"GEMINI_API_KEY": "test-gemini"}, clear=True):
            assert backend.get("google") == "test-gemini"
            assert backend.get("groq") is None

    def test_environment_backend_delete_clears_alias(self):
        """Deleting the Google key also drops GEMINI_API_KEY"""
        backend = EnvironmentBackend()

        with patch.dict(os.environ, {"GEMINI_API_KEY": "test-gemini"}, clear=True):
            assert backend.delete("google") is True
            assert "GEMINI_API_KEY" not in os.environ
            assert backend.get("google") is None

    @pytest.mark.asyncio
    async def test_removed_alias_key_is_gone_from_store(self):
        """remove() on google_api_key leaves no key behind in the environment"""
        store = SecureStore(MemoryStore(), CredentialManager([EnvironmentBackend()]))

        with patch.dict(os.environ, {"GEMINI_API_KEY": "test-gemini"}, clear=True):
            assert await store.get("google_api_key") == "test-gemini"
            await store.remove("google_api_key")
            assert await store.get("google_api_key") is None

    def test_environment_backend_set(self, monkeypatch):
        """Should set env vars (non-persistent)"""
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        backend = EnvironmentBackend()
        assert backend.set("anthropic", "test-value") is True
        assert os.environ.get("ANTHROPIC_API_KEY") == "test-value"
        backend.delete("anthropic")
        assert "ANTHROPIC_API_KEY" not in os.environ

    def test_encrypted_file_roundtrip(self, tmp_path):
        """Keys are stored encrypted and read back"""
        path = tmp_path / "credentials.enc"
        backend = EncryptedFileBackend(path)
        assert backend.is_available

        assert backend.set("openai", "test-openai-key") is True
        assert b"test-openai-key" not in path.read_bytes()
        assert EncryptedFileBackend(path).get("openai") == "test-openai-key"

        assert backend.delete("openai") is True
        assert backend.get("openai") is None


class TestCredentialManager:
    """Backend fallback chain"""

    def test_prefers_secure_backend(self):
        """Writes go to the first secure backend"""
        secure, insecure = DictBackend(), DictBackend(secure=False)
        manager = CredentialManager([secure, insecure])
        assert manager.set_credential("groq", "test-key") is True
        assert secure.data == {"groq": "test-key"}
        assert insecure.data == {}

    def test_falls_back_to_insecure_backend(self):
        """When secure backends refuse, the insecure one is used"""
        secure, insecure = DictBackend(accept_writes=False), DictBackend(secure=False)
        manager = CredentialManager([secure, insecure])
        assert manager.set_credential("groq", "test-key") is True
        assert insecure.data == {"groq": "test-key"}

    def test_reads_in_priority_order(self):
        """The first backend holding a key wins"""
        first, second = DictBackend(), DictBackend()
        second.data["openai"] = "second-key"
        manager = CredentialManager([first, second])
        assert manager.get_api_key("openai") == "second-key"

    def test_empty_key_rejected(self):
        """Empty keys are not stored"""
        backend = DictBackend()
        assert CredentialManager([backend]).set_credential("groq", "") is False
        assert backend.data == {}

    def test_credential_repr_hides_key(self):
        """The secret never shows up in repr/str"""
        backend = DictBackend()
        backend.data["openai"] = "test-secret-value"
        credential = CredentialManager([backend]).get_credential("openai")
        assert "test-secret-value" not in repr(credential)
        assert "test-secret-value" not in str(credential)
        assert credential.get_key() == "test-secret-value"

    def test_masked_and_source(self):
        """Only the last four characters are shown"""
        backend = DictBackend()
        backend.data["groq"] = "test-key-1234"
        credential = CredentialManager([backend]).get_credential("groq")
        assert credential.masked() == "****1234"
        assert credential.source == "DictBackend"

    def test_sources(self):
        """Reports which backend holds each provider's key"""
        first, second = DictBackend(), DictBackend(secure=False)
        first.data["openai"] = "test-key"
        second.data["groq"] = "test-key"
        manager = CredentialManager([first, second])
        assert manager.sources() == {"openai": "DictBackend", "groq": "DictBackend"}


class TestSecureStore:
    """Routing API keys away from the plain store"""

    @pytest.mark.asyncio
    async def test_api_keys_go_to_credentials(self):
        """*_api_key entries never reach the inner store"""
        backend = DictBackend()
        inner = MemoryStore()
        store = SecureStore(inner, CredentialManager([backend]))

        await store.set("groq_api_key", "test-key")
        await store.set("selected_provider", "groq")

        assert backend.data == {"groq": "test-key"}
        assert inner.data == {"selected_provider": "groq"}
        assert await store.get("groq_api_key") == "test-key"

        await store.remove("groq_api_key")
        assert await store.get("groq_api_key") is None

    @pytest.mark.asyncio
    async def test_failed_key_write_raises(self):
        """A backend refusing the key is a storage failure"""
        store = SecureStore(MemoryStore(), CredentialManager([DictBackend(accept_writes=False)]))
        with pytest.raises(StorageError):
            await store.set("openai_api_key", "test-key")
