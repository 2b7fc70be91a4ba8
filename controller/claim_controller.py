# controller/claim_controller.py
from fastapi import APIRouter, Depends, status
from model.api import (
    ClaimErrorResponse,
    ClaimListResponse,
    ClaimQueuedResponse,
    ClaimsHealthResponse,
    ResetClaimResponse,
)
from service.claim_admission_service import ClaimAdmissionService
from service.claim_status_service import ClaimStatusService
from util.constants import InternalURIs
from controller.controller_dependencies import (
    get_admission_service,
    get_authenticated_wallet,
    get_status_service,
    ip_rate_limiter,
    require_admin_token,
    require_admin_token_in_prod,
)

claim_router = APIRouter(dependencies=[Depends(ip_rate_limiter)])


@claim_router.post(
    InternalURIs.CLAIM,
    response_model=ClaimQueuedResponse,
    status_code=status.HTTP_200_OK,
    responses={
        400: {"model": ClaimErrorResponse},
        401: {"model": ClaimErrorResponse},
        409: {"model": ClaimErrorResponse},
        429: {"model": ClaimErrorResponse},
    },
)
async def submit_claim(
    wallet: str = Depends(get_authenticated_wallet),
    service: ClaimAdmissionService = Depends(get_admission_service),
) -> ClaimQueuedResponse:
    # Rejections surface as AdmissionRejected and are rendered in main.
    return await service.admit(wallet)


@claim_router.get(InternalURIs.CLAIMS, response_model=ClaimListResponse)
async def list_claims(
    wallet: str = Depends(get_authenticated_wallet),
    service: ClaimStatusService = Depends(get_status_service),
) -> ClaimListResponse:
    return await service.list_for_wallet(wallet)


@claim_router.get(
    InternalURIs.HEALTH_CLAIMS,
    response_model=ClaimsHealthResponse,
    dependencies=[Depends(require_admin_token_in_prod)],
)
async def claims_health(
    service: ClaimStatusService = Depends(get_status_service),
) -> ClaimsHealthResponse:
    return await service.health()


@claim_router.post(
    InternalURIs.ADMIN_RESET_CLAIM,
    response_model=ResetClaimResponse,
    dependencies=[Depends(require_admin_token)],
)
async def reset_claim(
    claim_id: str,
    service: ClaimStatusService = Depends(get_status_service),
) -> ResetClaimResponse:
    return await service.reset_failed(claim_id)
