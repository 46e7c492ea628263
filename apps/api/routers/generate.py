"""Credit-metered generation tool endpoints."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AccountContext, get_current_account
from routers.deps import get_generation_provider
from routers.rate_limit import rate_limit
from services.generation import invoke
from services.model_catalog import resolve_tool_model
from services.providers import GenerationProvider

router = APIRouter()


class GenerateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    model_id: Optional[str] = Field(default=None, alias="modelId")
    input: Dict[str, Any] = Field(default_factory=dict)


@router.post("/{tool}")
async def generate(
    tool: str,
    request: GenerateRequest,
    _rate_limit: None = Depends(rate_limit("generate", limit=60, window_seconds=60)),
    account: AccountContext = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
    provider: GenerationProvider = Depends(get_generation_provider),
):
    spec = resolve_tool_model(tool, request.model_id)
    result = await invoke(db, provider, account.id, spec.model_id, request.input)
    return {
        "success": True,
        "imageUrl": result.image_url,
        "mediaUrls": result.media_urls,
        "remainingCredits": result.remaining_credits,
        "jobId": result.job_id,
        "cost": result.cost,
    }
