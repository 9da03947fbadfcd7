"""Periodic unseen-mail polling on top of a connected client."""

from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from mailstream.client import Client
from mailstream.utils.errors import ConfigurationError, MailstreamError
from mailstream.utils.logging import async_log_call, get_logger

POLL_JOB_ID = "mailstream_poll"

logger = get_logger(__name__)


class MailMonitor:
    """Polls a client for unseen mail on a fixed interval."""

    def __init__(
        self,
        client: Client,
        interval_seconds: float = 60,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        if interval_seconds <= 0:
            raise ConfigurationError(
                f"Invalid poll interval: {interval_seconds} (must be positive)",
                details={"interval_seconds": interval_seconds},
            )
        self.client = client
        self.interval_seconds = interval_seconds
        self.scheduler = scheduler or AsyncIOScheduler()
        self.polls = 0

    @property
    def running(self) -> bool:
        return self.scheduler.running

    @async_log_call
    async def start(self) -> None:
        """Run one poll now, then schedule the rest. Must run inside the event loop."""
        await self.poll()

        self.scheduler.add_job(
            self.poll,
            "interval",
            seconds=self.interval_seconds,
            id=POLL_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if not self.scheduler.running:
            self.scheduler.start()
        logger.info("Mail monitor started", extra={"interval_seconds": self.interval_seconds})

    async def poll(self) -> None:
        """Check for unseen mail once. Errors are logged, not raised."""
        self.polls += 1
        try:
            await self.client.get_unseen_mails()
        except MailstreamError as e:
            logger.error("Unseen mail poll failed", extra={"error": e.message, "details": e.details})
        except Exception as e:
            logger.exception(f"Unexpected error polling for mail: {e}")

    async def stop(self, close_client: bool = True) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Mail monitor stopped")
        if close_client:
            await self.client.close()
