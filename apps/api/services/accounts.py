"""Account lifecycle operations."""

import logging

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import selectinload

from config import settings
from models.account import Account
from services.artifacts import delete_stored_media
from services.errors import AccountNotFound

logger = logging.getLogger(__name__)


def _is_stored_media(media_url: str) -> bool:
    return media_url.startswith(f"{settings.GENERATIONS_URL_PREFIX.rstrip('/')}/")


async def delete_account(db: AsyncSession, account_id: str) -> int:
    """Delete the account with its transactions and generation jobs.

    Stored media files of the account's jobs are removed after the rows are
    gone. Returns how many files were removed.
    """
    result = await db.execute(
        select(Account)
        .options(selectinload(Account.transactions), selectinload(Account.generation_jobs))
        .where(Account.id == account_id)
        .execution_options(populate_existing=True)
    )
    account = result.scalar_one_or_none()
    if account is None:
        raise AccountNotFound()

    media_urls = [job.media_url for job in account.generation_jobs if job.media_url and _is_stored_media(job.media_url)]
    await db.delete(account)
    await db.commit()

    for media_url in media_urls:
        delete_stored_media(media_url)
    logger.info("Deleted account %s and %d stored files", account_id, len(media_urls))
    return len(media_urls)
