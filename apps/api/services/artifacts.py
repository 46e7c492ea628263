"""Artifact storage for generated media and the generation job log."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlparse

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.generation_job import GenerationJob
from services.errors import ServiceError
from services.providers import GenerationProvider

logger = logging.getLogger(__name__)

EXTENSION_BY_MIME = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/webp": ".webp",
    "image/gif": ".gif",
    "video/mp4": ".mp4",
    "video/webm": ".webm",
    "video/quicktime": ".mov",
    "audio/mpeg": ".mp3",
    "audio/wav": ".wav",
    "audio/x-wav": ".wav",
}
DEFAULT_EXTENSION_BY_MEDIA = {"image": ".png", "video": ".mp4", "audio": ".mp3"}
KNOWN_EXTENSIONS = set(EXTENSION_BY_MIME.values()) | {".jpeg"}


def _extension(content_type: str, source_url: Optional[str], media_type: str) -> str:
    if content_type in EXTENSION_BY_MIME:
        return EXTENSION_BY_MIME[content_type]
    suffix = Path(urlparse(source_url or "").path).suffix.lower()
    if suffix in KNOWN_EXTENSIONS:
        return ".jpg" if suffix == ".jpeg" else suffix
    return DEFAULT_EXTENSION_BY_MEDIA.get(media_type, ".bin")


def _write_once(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "xb") as handle:
        handle.write(data)


async def store_media(
    data: bytes,
    content_type: str,
    *,
    media_type: str = "image",
    source_url: Optional[str] = None,
) -> str:
    """Write media to a new UUID-named file and return its public URL."""
    filename = f"{uuid.uuid4()}{_extension(content_type, source_url, media_type)}"
    path = Path(settings.GENERATIONS_DIR) / filename
    await asyncio.to_thread(_write_once, path, data)
    return f"{settings.GENERATIONS_URL_PREFIX.rstrip('/')}/{filename}"


async def persist_remote_media(provider: GenerationProvider, url: str, media_type: str = "image") -> str:
    data, content_type = await provider.download(url)
    local_url = await store_media(data, content_type, media_type=media_type, source_url=url)
    logger.info("Stored generated %s at %s", media_type, local_url)
    return local_url


async def keep_remote_media(provider: Optional[GenerationProvider], url: str, media_type: str = "image") -> str:
    """Copy provider media into the store, falling back to the provider URL."""
    if provider is None:
        return url
    try:
        return await persist_remote_media(provider, url, media_type)
    except (ServiceError, OSError) as exc:
        logger.warning("Keeping provider URL %s, copy failed: %s", url, exc)
        return url


def delete_stored_media(local_url: Optional[str]) -> None:
    """Best-effort removal of a stored file that was never logged."""
    if not local_url:
        return
    path = Path(settings.GENERATIONS_DIR) / Path(local_url).name
    try:
        path.unlink(missing_ok=True)
    except OSError:
        logger.warning("Could not cleanup orphaned media %s", path)


async def record_generation(
    db: AsyncSession,
    *,
    account_id: str,
    model: str,
    prompt: str,
    cost: int,
    status: str,
    media_type: str = "image",
    media_url: Optional[str] = None,
    job_id: Optional[str] = None,
    provider_request_id: Optional[str] = None,
    status_url: Optional[str] = None,
    response_url: Optional[str] = None,
    error_message: Optional[str] = None,
) -> GenerationJob:
    job = GenerationJob(
        id=job_id or str(uuid.uuid4()),
        account_id=account_id,
        media_type=media_type,
        prompt=prompt or "Generation",
        model=model,
        media_url=media_url,
        cost=int(cost),
        status=status,
        provider_request_id=provider_request_id,
        status_url=status_url,
        response_url=response_url,
        error_message=error_message[:1000] if error_message else None,
        completed_at=datetime.now(timezone.utc) if status != "processing" else None,
    )
    db.add(job)
    await db.commit()
    return job


async def list_generations(
    db: AsyncSession,
    account_id: str,
    *,
    media_type: Optional[str] = None,
    limit: int = 100,
) -> List[GenerationJob]:
    query = select(GenerationJob).where(GenerationJob.account_id == account_id)
    if media_type:
        query = query.where(GenerationJob.media_type == media_type)
    result = await db.execute(query.order_by(GenerationJob.created_at.desc()).limit(limit))
    return list(result.scalars().all())


def serialize_generation(job: GenerationJob) -> dict:
    return {
        "id": job.id,
        "media_type": job.media_type,
        "prompt": job.prompt,
        "model": job.model,
        "media_url": job.media_url,
        "cost": job.cost,
        "status": job.status,
        "error_message": job.error_message,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
    }
