from fastapi import APIRouter, Depends, status

from domain_watch.core.auth import INGEST_WRITE, Principal
from domain_watch.core.security import get_principal, require_scope
from domain_watch.schemas.devices import DeviceIngestedOut, DeviceIngestedRequest
from domain_watch.services.monitor import get_monitor

router = APIRouter()


@router.post(
    "/{device_id}/ingested",
    response_model=DeviceIngestedOut,
    status_code=status.HTTP_202_ACCEPTED,
)
async def device_ingested(
    device_id: str,
    payload: DeviceIngestedRequest,
    principal: Principal = Depends(get_principal),
    monitor=Depends(get_monitor),
) -> DeviceIngestedOut:
    require_scope(principal, INGEST_WRITE)
    monitor.schedule(device_id, payload.upload_batch)
    return DeviceIngestedOut(device_id=device_id, upload_batch=payload.upload_batch)
