"""Credential resolution and managed access tokens."""

from __future__ import annotations

import uuid

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from alpsci.core.encryption import decrypt, encrypt
from alpsci.dao.access_token_dao import AccessTokenDAO
from alpsci.models.access_token import AccessToken
from alpsci.models.build import Build
from alpsci.services import NotFoundError, ValidationError

log = structlog.get_logger("alpsci.services")


class CredentialError(ValidationError):
    """Build's credential reference is missing or ambiguous."""


class TokenResolutionService:
    """Turn a build's credential reference into a plaintext GitHub token.

    A build carries either an inline ``personal_access_token`` or an
    ``access_token_id`` pointing at a managed, encrypted token; exactly
    one of the two is set. Managed tokens are decrypted only here.
    """

    def __init__(self, access_token_dao: AccessTokenDAO) -> None:
        self._token_dao = access_token_dao

    async def resolve_token(self, session: AsyncSession, build: Build) -> str:
        """Return the plaintext token for *build*.

        Raises :class:`CredentialError` for an invalid reference and
        :class:`NotFoundError` when the managed token does not exist for
        the build's tenant.
        """
        token_id = build.access_token_id
        inline = build.personal_access_token

        if not token_id and not inline:
            raise CredentialError("either access_token_id or an inline token must be provided")
        if token_id and inline:
            raise CredentialError("cannot specify both access_token_id and an inline token")

        if inline:
            return inline

        access_token = await self._token_dao.get(session, build.tenant_id, token_id)
        if access_token is None:
            raise NotFoundError("access token not found")

        plaintext = decrypt(access_token.encrypted_token)
        await self._token_dao.touch_last_used(session, build.tenant_id, token_id)
        log.debug("token.resolved", build_id=str(build.id), access_token_id=str(token_id))
        return plaintext


class AccessTokenService:
    """Stateless service for managed access tokens."""

    def __init__(self, access_token_dao: AccessTokenDAO) -> None:
        self._token_dao = access_token_dao

    async def create(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        name: str,
        token: str,
        created_by: str,
    ) -> AccessToken:
        """Store *token* encrypted at rest.

        Raises :class:`ValidationError` for an empty name or token.
        """
        name = (name or "").strip()
        if not name:
            raise ValidationError("name is required")
        if not token or not token.strip():
            raise ValidationError("token is required")

        return await self._token_dao.create(
            session,
            tenant_id=tenant_id,
            name=name,
            encrypted_token=encrypt(token.strip()),
            created_by=created_by,
        )

    async def list(self, session: AsyncSession, tenant_id: uuid.UUID) -> list[dict]:
        """Return the tenant's tokens without their ciphertext."""
        tokens = await self._token_dao.list_for_tenant(session, tenant_id)
        return [
            {
                "id": t.id,
                "name": t.name,
                "created_by": t.created_by,
                "last_used": t.last_used,
                "created_at": t.created_at,
            }
            for t in tokens
        ]
