"""Generation history router."""

from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AccountContext, get_current_account
from services.artifacts import list_generations, serialize_generation

router = APIRouter()


@router.get("")
async def generation_history(
    media_type: Optional[Literal["image", "video", "audio"]] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    account: AccountContext = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    """List the caller's generation jobs, newest first."""
    jobs = await list_generations(db, account.id, media_type=media_type, limit=limit)
    return {"generations": [serialize_generation(job) for job in jobs]}
