import asyncio
import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol, Tuple

from sqlalchemy import select, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import structlog

from eventpulse.core.errors import AuthenticationError, ExecutionError
from eventpulse.models.tenant import ApiKey, Project

logger = structlog.get_logger()


@dataclass(frozen=True)
class Tenant:
    tenant_id: str
    name: str
    permissions: Tuple[str, ...] = ()


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def generate_api_key(prefix: str = "ak") -> str:
    return f"{prefix}_{secrets.token_hex(32)}"


class TenantResolver(Protocol):
    async def resolve(self, credential: str) -> Optional[Tenant]:
        ...


async def require_tenant(resolver: TenantResolver, credential: Optional[str]) -> Tenant:
    """Resolve a credential or fail with AuthenticationError"""
    if not credential:
        raise AuthenticationError("API key required")
    tenant = await resolver.resolve(credential)
    if tenant is None:
        raise AuthenticationError("Invalid, inactive or expired API key")
    return tenant


class SqlTenantResolver:
    """Looks API keys up by SHA-256 hash in the relational store"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], timeout: float = 5.0):
        self.session_factory = session_factory
        self.timeout = timeout

    async def resolve(self, credential: str) -> Optional[Tenant]:
        try:
            return await asyncio.wait_for(self._resolve(credential), self.timeout)
        except asyncio.TimeoutError:
            logger.error("tenant_resolution_timeout")
            raise ExecutionError("Tenant resolution timed out")
        except SQLAlchemyError as e:
            logger.error("tenant_resolution_failed", error=str(e))
            raise ExecutionError("Tenant resolution failed")

    async def _resolve(self, credential: str) -> Optional[Tenant]:
        now = datetime.now(timezone.utc)
        stmt = (
            select(ApiKey, Project)
            .join(Project, ApiKey.project_id == Project.id)
            .where(
                ApiKey.key_hash == hash_api_key(credential),
                ApiKey.is_active.is_(True),
                Project.is_active.is_(True),
                or_(ApiKey.expires_at.is_(None), ApiKey.expires_at > now)
            )
        )

        async with self.session_factory() as session:
            row = (await session.execute(stmt)).first()
            if row is None:
                return None

            api_key, project = row
            api_key.last_used_at = now
            await session.commit()

            return Tenant(
                tenant_id=str(project.id),
                name=project.name,
                permissions=tuple(api_key.permissions or ())
            )
