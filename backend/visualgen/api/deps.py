from fastapi import HTTPException, Request

from visualgen.core.config import BACKEND_TOKEN
from visualgen.services.factory import Services


async def verify_token(request: Request) -> None:
    if BACKEND_TOKEN and request.headers.get("X-Backend-Token") != BACKEND_TOKEN:
        raise HTTPException(status_code=401, detail="unauthorized")


async def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="backend not ready")
    return services
