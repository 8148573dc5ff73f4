from typing import Any, Dict

from fastapi import APIRouter, Depends

from visualgen.api.deps import verify_token
from visualgen.core.config import missing_credentials
from visualgen.utils.time import utc_now

router = APIRouter()


@router.get("/health")
async def health(_: None = Depends(verify_token)) -> Dict[str, Any]:
    return {
        "status": "ok",
        "time": utc_now(),
        "missing_credentials": missing_credentials(),
    }
