from fastapi import APIRouter, Depends, HTTPException, Query, status

from domain_watch.core.auth import ALERTS_READ, Principal
from domain_watch.core.security import get_principal, require_scope
from domain_watch.schemas.alerts import (
    DeliveryRecordOut,
    DeliveryRecordPage,
    DeliveryStatsOut,
    DeliveryStatusName,
    MonitoringStatsOut,
    RegistryCountOut,
)
from domain_watch.services.repository import (
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


@router.get("", response_model=DeliveryRecordPage)
async def list_alerts(
    principal: Principal = Depends(get_principal),
    repository=Depends(get_repository),
    entry_id: int | None = Query(default=None, ge=1),
    target_id: int | None = Query(default=None, ge=1),
    status_filter: DeliveryStatusName | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> DeliveryRecordPage:
    require_scope(principal, ALERTS_READ)

    try:
        rows, total = await repository.list_delivery_records(
            entry_id=entry_id,
            target_id=target_id,
            status=status_filter,
            limit=limit,
            offset=offset,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return DeliveryRecordPage(items=[DeliveryRecordOut(**row) for row in rows], total=total)


@router.get("/stats", response_model=MonitoringStatsOut)
async def get_alert_stats(
    principal: Principal = Depends(get_principal),
    repository=Depends(get_repository),
) -> MonitoringStatsOut:
    require_scope(principal, ALERTS_READ)

    try:
        deliveries = await repository.get_delivery_stats()
        registry = await repository.get_registry_counts()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return MonitoringStatsOut(
        watchlist_entries=RegistryCountOut(**registry["watchlist_entries"]),
        callback_targets=RegistryCountOut(**registry["callback_targets"]),
        deliveries=DeliveryStatsOut(**deliveries),
    )
