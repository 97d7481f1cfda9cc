"""
Health checks for readiness/liveness probes.

Checks:
- Database connectivity
- Payment gateway configuration
"""
from typing import Any, Dict, Mapping

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from seat_redemption.core.records import OrderKind
from seat_redemption.integrations.gateway import GatewayClient

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for the engine's dependencies.

    Provides:
    - Database connectivity check
    - Gateway configuration report (informational, never fails readiness)
    - Overall system health status
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateways: Mapping[OrderKind, GatewayClient],
    ) -> None:
        self.session_factory = session_factory
        self.gateways = gateways

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            Dict[str, Any]: Database health status

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            async with self.session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()

                return {
                    "status": "healthy",
                    "service": "database",
                    "message": "Database connection successful",
                }

        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

    def check_gateways(self) -> Dict[str, Any]:
        return {
            kind.value: {"configured": client.is_configured}
            for kind, client in self.gateways.items()
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks: Dict[str, Any] = {}
        all_healthy = True

        try:
            checks["database"] = await self.check_database()
        except HealthCheckError as e:
            checks["database"] = {
                "status": "unhealthy",
                "service": "database",
                "error": str(e),
            }
            all_healthy = False

        checks["gateways"] = self.check_gateways()

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe endpoint.

        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        return await self.check_all()
