"""
Dependency Injection for the host engine API.

Manage request handler dependencies using FastAPI Depends.
"""

from typing import Annotated
from uuid import UUID

from fastapi import Depends, Request

from ..core.exceptions import InvalidAppIdError
from ..services.orchestrator import FunctionAppOrchestrator


# ==========================================
# 1. Service Accessors
# ==========================================


def get_orchestrator(request: Request) -> FunctionAppOrchestrator:
    return request.app.state.orchestrator


# Service Dependency Type Aliases
OrchestratorDep = Annotated[FunctionAppOrchestrator, Depends(get_orchestrator)]


# ==========================================
# 2. Logic Dependencies (Parsing)
# ==========================================


def parse_app_id(id: str) -> UUID:
    """
    Parse the ``{id}`` path parameter.

    Raises:
        InvalidAppIdError: 400 when the id is not a UUID
    """
    try:
        return UUID(id.strip())
    except ValueError:
        raise InvalidAppIdError(id) from None


# Logic Dependency Type Aliases
AppIdDep = Annotated[UUID, Depends(parse_app_id)]
