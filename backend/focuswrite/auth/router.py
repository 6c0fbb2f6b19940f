"""Identity endpoints."""
from typing import Optional

from fastapi import APIRouter, Depends

from .service import get_caller

router = APIRouter(prefix="/auth", tags=["Authentication"])


@router.get("/me")
async def read_caller(caller: Optional[str] = Depends(get_caller)):
    """Report who the store will treat the request as coming from."""
    return {"uid": caller, "authenticated": caller is not None}
