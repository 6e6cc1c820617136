from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from jobboard_api.services.repository import PostgresRepository

logger = logging.getLogger(__name__)


class JobQueueExpirationScheduler:
    """Arms posting expirations as delayed ``expire_posting`` jobs.

    The job row is the durable timer: it survives restarts and is delivered to
    the worker at least once after ``next_run_at``. Arming twice for the same
    posting is a no-op.
    """

    def __init__(self, repository: PostgresRepository) -> None:
        self.repository = repository

    async def arm_after(self, posting_id: str, delay: timedelta) -> None:
        due_at = datetime.now(timezone.utc) + max(delay, timedelta(0))
        armed = await self.repository.enqueue_expiration_job(posting_id=posting_id, due_at=due_at)
        if armed:
            logger.info("expiration armed posting_id=%s due_at=%s", posting_id, due_at.isoformat())
        else:
            logger.debug("expiration already armed posting_id=%s", posting_id)
