"""Tests for credential encryption and resolution."""

from __future__ import annotations

import uuid

import pytest

from alpsci.core.encryption import DecryptionError, decrypt, encrypt
from alpsci.dao.access_token_dao import AccessTokenDAO
from alpsci.services import NotFoundError, ValidationError
from alpsci.services.token_service import (
    AccessTokenService,
    CredentialError,
    TokenResolutionService,
)

KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"


@pytest.fixture(autouse=True)
def _encryption_key(monkeypatch):
    monkeypatch.setenv("ALPSCI_ENCRYPTION_KEY", KEY)


@pytest.fixture
def resolver():
    return TokenResolutionService(AccessTokenDAO())


@pytest.fixture
def access_tokens():
    return AccessTokenService(AccessTokenDAO())


# ── TestEncryption ────────────────────────────────────────────────────────


class TestEncryption:
    def test_roundtrip(self):
        ciphertext = encrypt("ghp_secret")
        assert ciphertext.count(":") == 2
        assert "ghp_secret" not in ciphertext
        assert decrypt(ciphertext) == "ghp_secret"

    def test_fresh_iv_per_call(self):
        assert encrypt("same") != encrypt("same")

    def test_tampered_data_rejected(self):
        iv, data, tag = encrypt("ghp_secret").split(":")
        with pytest.raises(DecryptionError):
            decrypt(f"{iv}:{tag}:{tag}")

    def test_malformed_format(self):
        with pytest.raises(DecryptionError, match="iv:data:tag"):
            decrypt("not-a-ciphertext")

    def test_bad_base64(self):
        with pytest.raises(DecryptionError):
            decrypt("!!:!!:!!")

    def test_missing_key(self, monkeypatch):
        monkeypatch.delenv("ALPSCI_ENCRYPTION_KEY")
        with pytest.raises(RuntimeError, match="not set"):
            encrypt("x")

    def test_short_key(self, monkeypatch):
        monkeypatch.setenv("ALPSCI_ENCRYPTION_KEY", "abcd")
        with pytest.raises(RuntimeError, match="64 hex"):
            encrypt("x")

    def test_non_hex_key(self, monkeypatch):
        monkeypatch.setenv("ALPSCI_ENCRYPTION_KEY", "z" * 64)
        with pytest.raises(RuntimeError, match="64 hex"):
            encrypt("x")


# ── TestTokenResolution ───────────────────────────────────────────────────


class TestTokenResolution:
    @pytest.mark.anyio
    async def test_inline_token(self, session, build, resolver):
        assert await resolver.resolve_token(session, build) == "ghp_inline"

    @pytest.mark.anyio
    async def test_neither_reference(self, session, build, resolver):
        build.personal_access_token = None
        with pytest.raises(CredentialError, match="must be provided"):
            await resolver.resolve_token(session, build)

    @pytest.mark.anyio
    async def test_both_references(self, session, build, resolver, access_tokens):
        stored = await access_tokens.create(session, build.tenant_id, "ci", "ghp_managed", "ops")
        build.access_token_id = stored.id
        with pytest.raises(CredentialError, match="both"):
            await resolver.resolve_token(session, build)

    @pytest.mark.anyio
    async def test_managed_token_decrypted_and_touched(
        self, session, build, resolver, access_tokens
    ):
        stored = await access_tokens.create(session, build.tenant_id, "ci", "ghp_managed", "ops")
        assert stored.encrypted_token != "ghp_managed"
        build.personal_access_token = None
        build.access_token_id = stored.id

        assert await resolver.resolve_token(session, build) == "ghp_managed"

        [listed] = await access_tokens.list(session, build.tenant_id)
        assert listed["last_used"] is not None

    @pytest.mark.anyio
    async def test_managed_token_of_other_tenant(self, session, build, resolver, access_tokens):
        foreign = await access_tokens.create(session, uuid.uuid4(), "ci", "ghp_other", "ops")
        build.personal_access_token = None
        build.access_token_id = foreign.id

        with pytest.raises(NotFoundError):
            await resolver.resolve_token(session, build)


# ── TestAccessTokenService ────────────────────────────────────────────────


class TestAccessTokenService:
    @pytest.mark.anyio
    async def test_create_strips_and_encrypts(self, session, tenant_id, access_tokens):
        stored = await access_tokens.create(session, tenant_id, "  deploy  ", " ghp_x ", "ops")

        assert stored.name == "deploy"
        assert decrypt(stored.encrypted_token) == "ghp_x"

    @pytest.mark.anyio
    async def test_create_requires_name_and_token(self, session, tenant_id, access_tokens):
        with pytest.raises(ValidationError, match="name"):
            await access_tokens.create(session, tenant_id, " ", "ghp_x", "ops")
        with pytest.raises(ValidationError, match="token"):
            await access_tokens.create(session, tenant_id, "deploy", "  ", "ops")

    @pytest.mark.anyio
    async def test_list_hides_ciphertext(self, session, tenant_id, access_tokens):
        await access_tokens.create(session, tenant_id, "a", "ghp_a", "ops")
        await access_tokens.create(session, uuid.uuid4(), "b", "ghp_b", "ops")

        listed = await access_tokens.list(session, tenant_id)

        assert [t["name"] for t in listed] == ["a"]
        assert "encrypted_token" not in listed[0]
        assert listed[0]["last_used"] is None
