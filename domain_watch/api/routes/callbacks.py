from fastapi import APIRouter, Depends, HTTPException, status

from domain_watch.core.auth import CALLBACKS_TEST, Principal
from domain_watch.core.security import get_principal, require_scope
from domain_watch.schemas.callbacks import WebhookTestOut
from domain_watch.services.monitor import get_monitor
from domain_watch.services.repository import (
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    get_repository,
)

router = APIRouter()


@router.post("/{target_id}/test", response_model=WebhookTestOut)
async def test_callback_target(
    target_id: int,
    principal: Principal = Depends(get_principal),
    repository=Depends(get_repository),
    monitor=Depends(get_monitor),
) -> WebhookTestOut:
    require_scope(principal, CALLBACKS_TEST)

    try:
        target = await repository.get_callback_target(target_id)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    result = await monitor.dispatcher.send_test(target)
    if result.success:
        message = f"webhook test successful (HTTP {result.status_code})"
    else:
        message = f"webhook test failed: {result.error}"
    return WebhookTestOut(
        success=result.success,
        status_code=result.status_code,
        error=result.error,
        message=message,
    )
