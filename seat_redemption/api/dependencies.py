"""FastAPI dependencies: engine services and admin authentication."""
import hmac

import structlog
from fastapi import HTTPException, Request, status

from seat_redemption.services import EngineServices

logger = structlog.get_logger(__name__)


def get_services(request: Request) -> EngineServices:
    return request.app.state.services


def require_admin(request: Request) -> None:
    """
    Check the shared admin key.

    Raises:
        HTTPException: 403 when the key is missing, wrong, or no key is configured
    """
    settings = request.app.state.services.settings
    expected = settings.admin_api_key
    supplied = request.headers.get(settings.admin_api_key_header, "")
    if not expected or not hmac.compare_digest(supplied.encode(), expected.encode()):
        logger.warning("admin_auth_rejected", path=request.url.path, has_key=bool(supplied))
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin key required")
