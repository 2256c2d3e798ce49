from fastapi import APIRouter, Depends, HTTPException, status

from portal.core.config import Settings, get_settings
from portal.core.security import get_human_principal
from portal.schemas.duplicates import (
    AutoResolveOut,
    DuplicateGroupOut,
    DuplicateGroupsOut,
    DuplicateSupplierOut,
    ManualReviewOut,
    ResolveDuplicateGroupOut,
    ResolveDuplicateGroupRequest,
    SupplierActionRequest,
)
from portal.services.accounts import AccountDirectoryError, get_account_directory
from portal.services.duplicates import DuplicateGroup
from portal.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)
from portal.services.resolution import (
    DuplicateGroupNotFoundError,
    DuplicateResolutionInputError,
    ResolutionExecutor,
)

router = APIRouter()


def get_resolution_executor(
    repository=Depends(get_repository),
    accounts=Depends(get_account_directory),
    settings: Settings = Depends(get_settings),
) -> ResolutionExecutor:
    return ResolutionExecutor(
        repository,
        accounts,
        import_email_pattern=settings.import_account_email_pattern,
    )


@router.get("/duplicates", response_model=DuplicateGroupsOut)
async def list_duplicate_groups(
    principal=Depends(get_human_principal),
    executor: ResolutionExecutor = Depends(get_resolution_executor),
) -> DuplicateGroupsOut:
    try:
        principal.require_scopes({"admin:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        groups = await executor.list_duplicate_groups()
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except AccountDirectoryError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

    return DuplicateGroupsOut(groups=[_group_out(group) for group in groups])


@router.patch("/duplicates", response_model=ResolveDuplicateGroupOut)
async def resolve_duplicate_group(
    payload: ResolveDuplicateGroupRequest,
    principal=Depends(get_human_principal),
    executor: ResolutionExecutor = Depends(get_resolution_executor),
) -> ResolveDuplicateGroupOut:
    try:
        principal.require_scopes({"admin:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        resolution = await executor.resolve_duplicate_group(payload.keep_supplier_id)
    except DuplicateResolutionInputError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except (RepositoryNotFoundError, DuplicateGroupNotFoundError) as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except AccountDirectoryError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

    return ResolveDuplicateGroupOut(approved_id=resolution.approved_id, rejected_ids=resolution.rejected_ids)


@router.post("/actions", response_model=AutoResolveOut)
async def run_supplier_action(
    payload: SupplierActionRequest,
    principal=Depends(get_human_principal),
    executor: ResolutionExecutor = Depends(get_resolution_executor),
) -> AutoResolveOut:
    try:
        principal.require_scopes({"admin:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if payload.action != "resolve_duplicates":
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"unsupported action: {payload.action}")

    try:
        result = await executor.auto_resolve_duplicates()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except AccountDirectoryError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

    return AutoResolveOut(
        rejected_ids=result.rejected_ids,
        manual_review=[
            ManualReviewOut(company_name=entry.company_name, supplier_ids=entry.supplier_ids, reason=entry.reason)
            for entry in result.manual_review
        ],
    )


def _group_out(group: DuplicateGroup) -> DuplicateGroupOut:
    return DuplicateGroupOut(
        company_name_key=group.company_name_key,
        company_name=group.company_name,
        count=group.count,
        recommended_supplier_id=group.recommended_supplier_id,
        review_reason=group.review_reason,
        metadata=group.metadata,
        suppliers=[
            DuplicateSupplierOut(
                supplier_id=record.supplier_id,
                user_id=record.user_id,
                supplier_type=record.supplier_type,
                status=record.status,
                company_name=record.company_name,
                has_invite_code=record.has_invite_code,
                is_imported=record.is_imported,
                is_user_filled=record.is_user_filled,
                created_at=record.created_at,
                submitted_at=record.submitted_at,
            )
            for record in group.suppliers
        ],
    )
