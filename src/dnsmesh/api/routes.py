"""
REST API routes for the policy query service.

Agents look a policy up by the fingerprint of their own labels:

    GET /api/policies?hash=<selector hash>

Only GET is routed, so any other method on these paths is answered
with 405 by the router.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from dnsmesh.api.schemas import ErrorResponse, HealthCheck, PolicyResponse
from dnsmesh.policy.index import PolicyIndex

logger = logging.getLogger(__name__)

# API Router with prefix
router = APIRouter(prefix="/api")

# Probes live at the root
health_router = APIRouter()


# ============================================================================
# Dependencies
# ============================================================================


def get_index(request: Request) -> PolicyIndex:
    """Get the policy index attached to the application."""
    index = getattr(request.app.state, "index", None)
    if index is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Policy index not initialized",
        )
    return index


# ============================================================================
# Health Check Endpoints
# ============================================================================


@health_router.get("/healthz", response_model=HealthCheck, tags=["Health"])
async def healthz(request: Request) -> HealthCheck:
    """
    Liveness probe.

    Always 200; reports the number of indexed policies (0 before an
    index is attached).
    """
    index = getattr(request.app.state, "index", None)
    return HealthCheck(status="ok", indexed_policies=index.size() if index is not None else 0)


# ============================================================================
# Policy Endpoints
# ============================================================================


@router.get(
    "/policies",
    response_model=PolicyResponse,
    response_model_exclude_none=True,
    responses={
        400: {"model": ErrorResponse, "description": "Missing hash parameter"},
        404: {"model": ErrorResponse, "description": "No policy for this hash"},
    },
    tags=["Policies"],
)
async def get_policy(
    selector_hash: str | None = Query(
        None,
        alias="hash",
        description="Selector hash computed from the caller's labels",
    ),
    index: PolicyIndex = Depends(get_index),
) -> PolicyResponse:
    """
    Look up the policy owning a selector hash.

    Returns the indexed snapshot of the policy, including its status.
    """
    if not selector_hash:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="missing hash parameter",
        )

    policy = index.get(selector_hash)
    if policy is None:
        logger.debug("Policy lookup miss for hash %s", selector_hash)
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="policy not found",
        )

    logger.debug("Serving %s for hash %s", policy.identity, selector_hash)
    return PolicyResponse.from_policy_dict(policy.to_dict())
