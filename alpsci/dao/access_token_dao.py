"""AccessTokenDAO — access_tokens table operations."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from alpsci.dao.base import BaseDAO
from alpsci.models.access_token import AccessToken


class AccessTokenDAO(BaseDAO[AccessToken]):
    model = AccessToken

    async def touch_last_used(
        self, session: AsyncSession, tenant_id: uuid.UUID, pk: uuid.UUID
    ) -> None:
        self._require_pk(pk)
        stmt = (
            update(AccessToken)
            .where(AccessToken.tenant_id == tenant_id, AccessToken.id == pk)
            .values(last_used=datetime.now(timezone.utc))
            .execution_options(synchronize_session="fetch")
        )
        await session.execute(stmt)
