"""
FastAPI dependency: the process-wide service container built in the lifespan.
"""
from fastapi import Request

from bloodmatch.services.container import ServiceContainer


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container
