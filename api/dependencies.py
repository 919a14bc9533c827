"""FastAPI dependency injection for the caller identity and shared pipeline."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import Header, HTTPException, Request, status

from knowledge_qa.orchestrator import RagOrchestrator

logger = logging.getLogger(__name__)


async def get_current_user(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
) -> str:
    """Return the caller's user id.

    Identity is asserted by the fronting gateway through ``X-User-Id``.

    Raises:
        HTTPException 401: If the header is missing or blank.
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )
    return x_user_id.strip()


async def get_orchestrator(request: Request) -> RagOrchestrator:
    """Shared orchestrator built during application startup."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="RAG pipeline not initialised",
        )
    return orchestrator
