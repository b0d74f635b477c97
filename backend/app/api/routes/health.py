"""Health check endpoints.

- /health: process liveness
- /healthz: database connectivity with component details
"""

import json
from typing import Any

from fastapi import APIRouter, Response
from sqlalchemy import text

from backend.app.config import Settings, get_settings
from backend.app.db.engine import create_async_engine_from_settings

router = APIRouter()


async def check_db(settings: Settings) -> tuple[bool, str]:
    """Check database connectivity.

    Returns:
        (is_ok, status_message)
    """
    try:
        engine = create_async_engine_from_settings(settings)
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        finally:
            await engine.dispose()

        return (True, "ok")
    except Exception as e:
        return (False, f"error: {type(e).__name__}")


def check_llm(settings: Settings) -> tuple[bool, str]:
    """Report which model backend is configured (not a network check).

    Returns:
        (is_ok, status_message)
    """
    api_key = settings.openai_api_key
    if api_key and api_key.get_secret_value():
        return (True, "openai")
    return (True, "stub")


@router.get("/health")
async def health() -> dict[str, str]:
    """Simple health check for Docker/k8s.

    Returns:
        200 OK always (application is running)
    """
    return {"status": "ok"}


@router.get("/healthz", response_model=None)
async def healthz() -> dict[str, Any] | Response:
    """Health check endpoint.

    Returns:
        200 with component status if the database is reachable
        503 otherwise
    """
    settings = get_settings()

    db_ok, db_status = await check_db(settings)
    _, llm_status = check_llm(settings)

    response_body = {
        "status": "ok" if db_ok else "degraded",
        "components": {
            "db": db_status,
            "llm": llm_status,
        },
    }

    if not db_ok:
        return Response(
            content=json.dumps(response_body),
            status_code=503,
            media_type="application/json",
        )

    return response_body
