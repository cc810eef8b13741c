"""Single multiplexed protocol endpoint.

Clients POST a JSON body whose ``type`` field selects the operation; the
request is handed unchanged (raw bytes and headers) to the orchestrator.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from ag_gateway.api.v1.dependencies import OrchestratorDep, SessionDep
from ag_gateway.core.errors import OriginRejected
from ag_gateway.services.orchestrator import HEADER_ORIGIN, InboundRequest

PREFLIGHT_MAX_AGE_SECONDS = 86_400

router = APIRouter(tags=["protocol"])


@router.post("/index")
async def protocol_index(
    request: Request,
    db: SessionDep,
    orchestrator: OrchestratorDep,
) -> JSONResponse:
    """Dispatch one protocol request.

    Args:
        request: Raw HTTP request; the body is read as bytes so webhook
            signatures are checked against exactly what was sent
        db: Database session
        orchestrator: Protocol orchestrator

    Returns:
        JSON response with the status code chosen by the pipeline
    """
    inbound = InboundRequest.build(
        await request.body(),
        request.headers,
        request.client.host if request.client else None,
    )
    outcome = await orchestrator.dispatch(db, inbound)
    return JSONResponse(
        status_code=outcome.status_code,
        content=outcome.body,
        headers=outcome.headers,
    )


@router.options("/index")
async def protocol_preflight(request: Request, orchestrator: OrchestratorDep) -> Response:
    """Answer CORS preflight requests for the protocol endpoint."""
    policy = orchestrator.origin_policy
    try:
        headers = policy.check(request.headers.get(HEADER_ORIGIN))
    except OriginRejected as exc:
        return JSONResponse(
            status_code=exc.http_status,
            content=exc.as_body(),
            headers=policy.base_headers(),
        )
    headers["Access-Control-Max-Age"] = str(PREFLIGHT_MAX_AGE_SECONDS)
    return Response(status_code=204, headers=headers)
