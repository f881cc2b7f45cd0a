"""
Progress Sync — integration audit log

One row per handled webhook: what kind of sync ran, how it ended and how many
records it touched. Entries are appended inside the caller's session; the
caller commits.
"""

from datetime import datetime, timezone

from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import sync_log

COMPLETED = "completed"
WARNING = "warning"
FAILED = "failed"


async def append_entry(
    session: AsyncSession,
    sync_type: str,
    status: str,
    items_synced: int = 0,
    error_message: str | None = None,
) -> None:
    await session.execute(
        insert(sync_log).values(
            sync_type=sync_type,
            status=status,
            items_synced=items_synced,
            error_message=error_message,
            completed_at=datetime.now(timezone.utc),
        )
    )
