"""
Scheduler Service
Background service that releases executions suspended on a delay or a
reply timeout once their scheduled time has passed. Each tick also triggers
due campaign reminders and closes campaigns whose executions have all finished.
"""
import asyncio
import traceback
from typing import Optional

# Utils
from utils.log_utils import LogUtil

# Database
from database.campaign_db import CampaignDB

# Services
from services.execution_service import ExecutionService
from services.campaign_service import CampaignService
from services.reminder_service import ReminderService

# Models
from models.scheduled_job_data import ScheduledJobData

# Exceptions
from exceptions.campaign_exception import NotFoundException

MAX_JOB_ATTEMPTS = 5


class SchedulerService:
    """
    Polls the scheduled jobs every check_interval_seconds. Nothing here ever
    sleeps inside a node; a suspended execution is only persisted state.
    """

    def __init__(
        self,
        log_util: LogUtil,
        campaign_db: CampaignDB,
        execution_service: ExecutionService,
        campaign_service: Optional[CampaignService] = None,
        reminder_service: Optional[ReminderService] = None,
        check_interval_seconds: float = 20,
        max_job_attempts: int = MAX_JOB_ATTEMPTS
    ):
        self.log_util = log_util
        self.campaign_db = campaign_db
        self.execution_service = execution_service
        self.campaign_service = campaign_service
        self.reminder_service = reminder_service
        self.check_interval_seconds = check_interval_seconds
        self.max_job_attempts = max_job_attempts
        self._running = False
        self._task = None

    async def start(self):
        if self._running:
            self.log_util.warning(
                service_name="SchedulerService",
                message="Scheduler is already running"
            )
            return

        self._running = True
        self._task = asyncio.create_task(self._scheduler_loop())
        self.log_util.info(
            service_name="SchedulerService",
            message=f"Scheduler started, checking every {self.check_interval_seconds} seconds"
        )

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.log_util.info(
            service_name="SchedulerService",
            message="Scheduler stopped"
        )

    async def _scheduler_loop(self):
        while self._running:
            try:
                await self.run_once()
                await asyncio.sleep(self.check_interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.log_util.error(
                    service_name="SchedulerService",
                    message=f"Error in scheduler loop: {str(e)}"
                )
                self.log_util.error(
                    service_name="SchedulerService",
                    message=f"Traceback: {traceback.format_exc()}"
                )
                await asyncio.sleep(self.check_interval_seconds)

    async def run_once(self) -> int:
        """
        Process every due job and reminder, then sweep finished campaigns.
        Returns the number of jobs acted on.
        """
        handled = await self.process_due_jobs()
        if self.reminder_service is not None:
            await self.reminder_service.trigger_due_reminders()
        if self.campaign_service is not None:
            await self.campaign_service.complete_finished_campaigns()
        return handled

    async def process_due_jobs(self) -> int:
        due_jobs = await self.campaign_db.get_due_jobs()
        if not due_jobs:
            return 0

        self.log_util.info(
            service_name="SchedulerService",
            message=f"Found {len(due_jobs)} due job(s) to process"
        )

        handled = 0
        for job in due_jobs:
            try:
                if await self.execution_service.handle_scheduled_job(job):
                    handled += 1
                await self.campaign_db.delete_job(job)
            except NotFoundException as e:
                # Chatflow or guest is gone
                self.log_util.warning(
                    service_name="SchedulerService",
                    message=f"Dropping job {job.id}: {e.message}"
                )
                await self._drop_job(job, e.message)
            except Exception as e:
                self.log_util.error(
                    service_name="SchedulerService",
                    message=f"Error processing job {job.id}: {str(e)}"
                )
                await self._record_failure(job, str(e))
        return handled

    async def _record_failure(self, job: ScheduledJobData, error_message: str) -> None:
        failed = await self.campaign_db.record_job_failure(job, error_message)
        if failed is None or failed.attempts < self.max_job_attempts:
            return
        self.log_util.error(
            service_name="SchedulerService",
            message=f"Giving up on job {job.id} after {failed.attempts} attempts"
        )
        await self._drop_job(failed, error_message)

    async def _drop_job(self, job: ScheduledJobData, reason: str) -> None:
        if await self.campaign_db.delete_job(job):
            await self.execution_service.abandon_job(job, reason)
