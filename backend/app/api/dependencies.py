"""FastAPI dependencies for services and repositories."""

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Request

from backend.app.config import get_settings
from backend.app.db.repositories import Repositories
from backend.app.services import PipelineServices, build_default_services


def get_services(request: Request) -> PipelineServices:
    """Application-wide services, built on first use."""
    services: PipelineServices | None = getattr(request.app.state, "services", None)
    if services is None:
        services = build_default_services(get_settings())
        request.app.state.services = services
    return services


async def get_repositories(
    services: Annotated[PipelineServices, Depends(get_services)],
) -> AsyncGenerator[Repositories, None]:
    """Repositories sharing one unit of work for the duration of a request."""
    async with services.unit_of_work() as repos:
        yield repos
