from fastapi import APIRouter, Depends, HTTPException, status

from portal.core.security import get_human_principal
from portal.schemas.invites import RedeemInviteCodeOut, RedeemInviteCodeRequest
from portal.services.invites import (
    InviteCodeInputError,
    InviteCodeUnavailableError,
    redeem_invite_code,
)
from portal.services.repository import (
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


@router.post("/redeem", response_model=RedeemInviteCodeOut)
async def redeem(
    payload: RedeemInviteCodeRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> RedeemInviteCodeOut:
    try:
        principal.require_scopes({"supplier:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if not principal.actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")

    try:
        redemption = await redeem_invite_code(repository, payload.code, user_id=principal.actor_id)
    except (InviteCodeInputError, RepositoryValidationError) as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except InviteCodeUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return RedeemInviteCodeOut(
        invite_code_id=redemption.invite_code_id,
        status=redemption.status,
        used_count=redemption.used_count,
    )
