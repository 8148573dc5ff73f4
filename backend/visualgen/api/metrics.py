from typing import Any, Dict

from fastapi import APIRouter, Depends

from visualgen.api.deps import get_services, verify_token
from visualgen.services.factory import Services

router = APIRouter()


@router.get("/metrics/retries")
async def retry_metrics(
    services: Services = Depends(get_services),
    _: None = Depends(verify_token),
) -> Dict[str, Any]:
    return services.invoker.metrics.snapshot()
