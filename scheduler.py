import logging
from typing import Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from errors import PersistenceFailure, ReconciliationInProgress, UpstreamUnavailable
from provider import PlaidRecurringClient, RecurringStreamProvider
from services import ReconciliationService, connected_owner_ids


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(
        self,
        provider_factory: Callable[[], RecurringStreamProvider] = PlaidRecurringClient,
    ) -> None:
        settings = get_settings()
        self.settings = settings
        self.provider_factory = provider_factory
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> int:
        logger.info(f"scheduler_run: source={source}")
        with session_scope() as session:
            owners = connected_owner_ids(session)
        provider = self.provider_factory()
        synced = 0
        for owner_id in owners:
            # Fresh session per owner; one owner's failure must not stop the rest.
            with session_scope() as session:
                service = ReconciliationService(session, owner_id)
                try:
                    result = service.detect(provider)
                except (
                    UpstreamUnavailable,
                    PersistenceFailure,
                    ReconciliationInProgress,
                ) as exc:
                    logger.warning(
                        f"scheduler_run: source={source} owner={owner_id} "
                        f"failed={exc.__class__.__name__} error={exc}"
                    )
                    continue
            synced += 1
            logger.info(
                f"scheduler_run: source={source} owner={owner_id} "
                f"detected={result.detected}"
            )
        logger.info(f"scheduler_run: source={source} owners_synced={synced}")
        return synced

    def start(self) -> None:
        if not self.settings.scheduler_enabled:
            logger.info("Scheduler disabled")
            return

        trigger = IntervalTrigger(hours=self.settings.sync_interval_hours)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["interval"],
            id="recurring_sync",
            replace_existing=True,
            misfire_grace_time=3600,
            max_instances=1,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with {self.settings.sync_interval_hours}h sync interval"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
