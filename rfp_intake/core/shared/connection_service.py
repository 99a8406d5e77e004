"""
Provider credential lookup.

Resolution order for an organization's API key:
    1. Default active connection of the requested type
    2. Most recently updated active connection of that type
    3. Environment fallback from settings (SAM_API_KEY / DIBBS_API_KEY)
"""

import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rfp_intake.config import settings
from rfp_intake.core.database.models import Connection

logger = logging.getLogger("rfp_intake.connections")

SAM_GOV = "sam_gov"
DIBBS = "dibbs"

_ENV_FALLBACK = {
    SAM_GOV: lambda: settings.sam_api_key,
    DIBBS: lambda: settings.dibbs_api_key,
}


class ConnectionService:

    async def get_default_connection(
        self,
        session: AsyncSession,
        organization_id: UUID,
        connection_type: str,
    ) -> Optional[Connection]:
        """
        Get the active connection for a type, preferring the default one.

        Args:
            session: Database session
            organization_id: Organization UUID
            connection_type: ``sam_gov`` or ``dibbs``

        Returns:
            Connection or None
        """
        result = await session.execute(
            select(Connection)
            .where(
                Connection.organization_id == organization_id,
                Connection.connection_type == connection_type,
                Connection.is_active.is_(True),
            )
            .order_by(Connection.is_default.desc(), Connection.updated_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_api_key(
        self,
        session: AsyncSession,
        organization_id: UUID,
        connection_type: str,
    ) -> Optional[str]:
        """Return the organization's API key for a provider, or None."""
        connection = await self.get_default_connection(session, organization_id, connection_type)
        if connection:
            api_key = (connection.config or {}).get("api_key")
            if api_key:
                return api_key
            logger.warning(
                f"Connection {connection.id} ({connection_type}) for org {organization_id} has no api_key"
            )

        fallback = _ENV_FALLBACK.get(connection_type)
        api_key = fallback() if fallback else None
        if api_key:
            logger.debug(f"Using environment {connection_type} key for org {organization_id}")
        return api_key or None


connection_service = ConnectionService()
