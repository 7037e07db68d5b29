"""
Bearer-token authentication for the webhook operator endpoints.

Each endpoint family has its own token setting:

    @router.post("/process-queue")
    async def process_queue(
        ...,
        _: None = Depends(require_queue_processor_token),
    ):
        ...
"""
import hmac
from typing import Awaitable, Callable

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)


def bearer_token_dependency(setting_name: str) -> Callable[..., Awaitable[None]]:
    """
    Build a dependency that checks ``Authorization: Bearer <token>`` against
    ``settings.<setting_name>``.

    403 when the token is not configured (endpoint disabled), 401 when the
    header is missing or the token does not match.
    """

    async def _require_token(
        credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    ) -> None:
        expected = getattr(settings, setting_name)
        if not expected:
            logger.warning(
                "Operator endpoint rejected, token not configured",
                extra_data={"setting": setting_name},
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"{setting_name} is not configured",
            )

        if credentials is None or not credentials.credentials:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Missing bearer token",
                headers={"WWW-Authenticate": "Bearer"},
            )

        if not hmac.compare_digest(credentials.credentials.encode(), expected.encode()):
            logger.warning(
                "Operator endpoint rejected, invalid token",
                extra_data={"setting": setting_name},
            )
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid bearer token",
                headers={"WWW-Authenticate": "Bearer"},
            )

    _require_token.__name__ = f"require_{setting_name.lower()}"
    return _require_token


require_queue_processor_token = bearer_token_dependency("WEBHOOK_QUEUE_PROCESSOR_TOKEN")
require_reconciliation_token = bearer_token_dependency("WEBHOOK_RECONCILIATION_TOKEN")
require_status_token = bearer_token_dependency("WEBHOOK_STATUS_TOKEN")
