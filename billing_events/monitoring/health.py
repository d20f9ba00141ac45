"""
Health checks for liveness/readiness probes.

Checks:
- Database connectivity
- Redis connectivity
- Payment processor reachability (reported, not required for readiness)
"""
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """Checks the dependencies the pipeline needs to accept traffic."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis_client: aioredis.Redis,
        processor_ping: Optional[Callable[[], Awaitable[bool]]] = None,
    ):
        """
        Args:
            session_factory: Database session factory
            redis_client: Client used by the lock manager
            processor_ping: Optional coroutine function checking the processor API
        """
        self.session_factory = session_factory
        self.redis_client = redis_client
        self.processor_ping = processor_ping

    async def check_database(self) -> Dict[str, Any]:
        """
        Raises:
            HealthCheckError: If the database is unreachable
        """
        try:
            async with self.session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {e}") from e

        return {"status": "healthy", "service": "database"}

    async def check_redis(self) -> Dict[str, Any]:
        """
        Raises:
            HealthCheckError: If Redis does not answer a ping
        """
        try:
            await self.redis_client.ping()
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {e}") from e

        return {"status": "healthy", "service": "redis"}

    async def check_processor(self) -> Dict[str, Any]:
        if self.processor_ping is None:
            return {"status": "skipped", "service": "processor"}
        try:
            await self.processor_ping()
        except Exception as e:
            logger.error("processor_health_check_failed", error=str(e))
            raise HealthCheckError(f"Processor health check failed: {e}") from e

        return {"status": "healthy", "service": "processor"}

    async def _run(
        self, name: str, check: Callable[[], Awaitable[Dict[str, Any]]]
    ) -> Dict[str, Any]:
        try:
            return await check()
        except HealthCheckError as e:
            return {"status": "unhealthy", "service": name, "error": str(e)}

    async def check_all(self, include_processor: bool = True) -> Dict[str, Any]:
        """
        Run the health checks.

        Returns:
            Dict[str, Any]: Overall status plus one entry per check
        """
        checks = {
            "database": await self._run("database", self.check_database),
            "redis": await self._run("redis", self.check_redis),
        }
        all_healthy = all(check["status"] == "healthy" for check in checks.values())
        if include_processor:
            checks["processor"] = await self._run("processor", self.check_processor)

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """Application is running; external dependencies are not checked."""
        return {"status": "alive", "message": "Application is running"}

    async def readiness(self) -> Dict[str, Any]:
        return await self.check_all(include_processor=False)
