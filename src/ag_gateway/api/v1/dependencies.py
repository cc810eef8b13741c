"""Shared API dependencies for the protocol endpoint."""

from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from ag_gateway.db.session import get_db
from ag_gateway.services.orchestrator import ProtocolOrchestrator

# Type alias for database session dependency
SessionDep = Annotated[Session, Depends(get_db)]


def get_orchestrator(request: Request) -> ProtocolOrchestrator:
    """Return the orchestrator wired at application startup.

    Args:
        request: Incoming request, used to reach application state

    Returns:
        The process-wide protocol orchestrator
    """
    orchestrator: ProtocolOrchestrator = request.app.state.orchestrator
    return orchestrator


# Type alias for orchestrator dependency
OrchestratorDep = Annotated[ProtocolOrchestrator, Depends(get_orchestrator)]
