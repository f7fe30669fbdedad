"""
Task scheduler: one APScheduler date job per scheduled task.

The job store is the trigger registry. Each job is keyed by the task id and
carries only (task_id, target instant); everything else is read fresh from the
task store when the job fires, so an update never leaves stale data behind in a
pending job.

Mutations of a single task (add/update/cancel/delete/fire-claim) are serialized
by a per-task asyncio.Lock. Mutations of different tasks run concurrently.
"""
import asyncio
import logging
import weakref
from datetime import datetime, timezone
from typing import Any, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from taskmail.clock import Clock, SystemClock, as_utc, get_zone, resolve_instant
from taskmail.crud import ExecutionLogStore, TaskStore, UserDirectory
from taskmail.errors import InvalidScheduleError, StoreError
from taskmail.models import LogStatus, Task, TaskState
from taskmail.utils.notifier import NotificationSender, reminder_body, reminder_subject

logger = logging.getLogger("taskmail.scheduler")

SUCCESS_MESSAGE = "Email sent successfully"


class TaskScheduler:
    def __init__(
        self,
        tasks: TaskStore,
        logs: ExecutionLogStore,
        users: UserDirectory,
        sender: NotificationSender,
        *,
        clock: Optional[Clock] = None,
        send_timeout: float = 10.0,
    ) -> None:
        self._tasks = tasks
        self._logs = logs
        self._users = users
        self._sender = sender
        self._clock = clock or SystemClock()
        self._send_timeout = float(send_timeout)
        self._scheduler = AsyncIOScheduler(timezone=timezone.utc)
        # Entries vanish once no operation holds or awaits the lock.
        self._locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()

    # ---- lifecycle ----

    def start(self) -> None:
        """Start the registry. Must be called from inside the running event loop."""
        if self._scheduler.running:
            logger.warning("Scheduler already running")
            return
        self._scheduler.start()
        logger.info("Task scheduler started")

    async def shutdown(self) -> None:
        if not self._scheduler.running:
            return
        self._scheduler.shutdown(wait=False)
        # AsyncIOScheduler.shutdown is dispatched onto the loop.
        await asyncio.sleep(0)
        logger.info("Task scheduler stopped")

    @property
    def running(self) -> bool:
        return self._scheduler.running

    # ---- registry ----

    @staticmethod
    def _job_id(task_id: int) -> str:
        return str(task_id)

    def _lock_for(self, task_id: int) -> asyncio.Lock:
        lock = self._locks.get(task_id)
        if lock is None:
            lock = self._locks[task_id] = asyncio.Lock()
        return lock

    def _arm(self, task: Task) -> datetime:
        target = as_utc(task.next_execution)
        if target is None:
            raise InvalidScheduleError(f"Task {task.id} has no execution time")

        # Already-elapsed targets fire on the next scheduler tick. Clamped
        # against the wall clock APScheduler fires on, not the injected clock.
        deadline = max(target, datetime.now(timezone.utc))
        self._scheduler.add_job(
            self.fire,
            trigger=DateTrigger(run_date=deadline, timezone=timezone.utc),
            args=[task.id, target],
            id=self._job_id(task.id),
            name=f"reminder:{task.id}",
            replace_existing=True,
            misfire_grace_time=None,
            coalesce=True,
            max_instances=1,
        )
        logger.info("Armed task %s for %s (deadline %s)", task.id, target.isoformat(), deadline.isoformat())
        return deadline

    def disarm(self, task_id: int) -> bool:
        """Remove the trigger for task_id. Returns False when none was armed."""
        try:
            self._scheduler.remove_job(self._job_id(task_id))
        except JobLookupError:
            return False
        logger.info("Disarmed task %s", task_id)
        return True

    def is_armed(self, task_id: int) -> bool:
        return self._scheduler.get_job(self._job_id(task_id)) is not None

    def armed_deadline(self, task_id: int) -> Optional[datetime]:
        job = self._scheduler.get_job(self._job_id(task_id))
        if job is None:
            return None
        run_date = getattr(job.trigger, "run_date", None)
        return as_utc(run_date)

    async def arm(self, task: Task) -> datetime:
        """Arm (or re-arm) the trigger for a persisted task and return its deadline."""
        async with self._lock_for(task.id):
            return self._arm(task)

    # ---- operations ----

    async def add_task(
        self,
        user_id: str,
        task_name: str,
        target: Any,
        tz_name: str = "UTC",
    ) -> Task:
        """Validate, persist and arm a new task."""
        name = (task_name or "").strip()
        if not name:
            raise InvalidScheduleError("Task name is required")
        instant = resolve_instant(target, tz_name, now=self._clock.now())

        task = await self._tasks.create(user_id, name, instant, tz_name)
        await self.arm(task)
        return task

    async def update_task(
        self,
        user_id: str,
        task_id: int,
        *,
        task_name: Optional[str] = None,
        target: Any = None,
        tz_name: Optional[str] = None,
    ) -> Task:
        """
        Rename, re-zone and/or reschedule a task.

        A new target (re)arms the task. Without one, a scheduled task is
        re-armed as-is while a fired or canceled task keeps its state and
        stays disarmed.
        """
        name = task_name.strip() if task_name is not None else None
        if name == "":
            raise InvalidScheduleError("Task name must not be empty")
        tz_name = (tz_name or "").strip() or None

        async with self._lock_for(task_id):
            current = await self._tasks.get(task_id, user_id)

            zone_name = tz_name or current.timezone
            instant = None
            if target is not None:
                instant = resolve_instant(target, zone_name, now=self._clock.now())
            elif tz_name is not None:
                get_zone(tz_name)

            rearm = instant is not None or current.state == TaskState.scheduled.value
            if rearm:
                self.disarm(task_id)
            task = await self._tasks.update(
                task_id,
                user_id,
                task_name=name,
                next_execution=instant,
                timezone=tz_name,
                state=TaskState.scheduled if rearm else None,
            )
            deadline = self._arm(task) if rearm else None

        if rearm:
            message = f"Task rescheduled for {as_utc(task.next_execution).isoformat()}"
        else:
            message = f"Task updated; remains {task.state}"
        await self._logs.append(
            task_id=task.id,
            task_name=task.task_name,
            user_id=user_id,
            status=LogStatus.updated,
            message=message,
            execution_time=self._clock.now(),
        )
        if deadline is not None:
            logger.info("Updated task %s; next deadline %s", task.id, deadline.isoformat())
        else:
            logger.info("Updated task %s; left %s", task.id, task.state)
        return task

    async def cancel_task(self, user_id: str, task_id: int) -> Task:
        """Stop a task from firing but keep it and its history."""
        async with self._lock_for(task_id):
            await self._tasks.get(task_id, user_id)
            self.disarm(task_id)
            task = await self._tasks.update(task_id, user_id, state=TaskState.canceled)
        logger.info("Canceled task %s", task_id)
        return task

    async def delete_task(self, user_id: str, task_id: int) -> Task:
        """Delete the task and every log entry recorded for it, then disarm."""
        async with self._lock_for(task_id):
            task, removed = await self._tasks.delete_with_history(task_id, user_id)
            # The trigger may already be gone after a restart.
            self.disarm(task_id)
        logger.info("Deleted task %s with %d log entr(ies)", task_id, removed)
        return task

    async def recover(self) -> int:
        """Re-arm every scheduled task from the store. Returns how many were armed."""
        tasks = await self._tasks.list_scheduled()
        armed = 0
        for task in tasks:
            try:
                await self.arm(task)
                armed += 1
            except InvalidScheduleError as e:
                logger.error("Could not re-arm task %s: %s", task.id, e)
        logger.info("Recovered %d of %d scheduled task(s)", armed, len(tasks))
        return armed

    # ---- execution ----

    async def fire(self, task_id: int, expected_instant: datetime) -> None:
        """Run one reminder. Outcomes are recorded in the execution log, never raised."""
        async with self._lock_for(task_id):
            try:
                task = await self._tasks.claim_for_fire(task_id, expected_instant)
            except StoreError:
                logger.exception("Could not claim task %s for firing", task_id)
                return
        if task is None:
            logger.info("Skipping stale trigger for task %s", task_id)
            return

        execution_time = self._clock.now()
        status = LogStatus.success
        message = SUCCESS_MESSAGE
        try:
            user = await self._users.get_by_id(task.user_id)
            await asyncio.wait_for(
                self._sender.send(user.email, reminder_subject(task.task_name), reminder_body(task.task_name)),
                timeout=self._send_timeout,
            )
        except asyncio.TimeoutError:
            status = LogStatus.failure
            message = f"Notification timed out after {self._send_timeout:g}s"
        except Exception as e:
            status = LogStatus.failure
            message = str(e) or e.__class__.__name__

        if status is LogStatus.success:
            logger.info("Task %s (%s) fired", task_id, task.task_name)
        else:
            logger.error("Error executing task %s: %s", task_id, message)

        try:
            await self._logs.append(
                task_id=task.id,
                task_name=task.task_name,
                user_id=task.user_id,
                status=status,
                message=message,
                execution_time=execution_time,
            )
        except StoreError:
            logger.exception("Could not record execution of task %s", task_id)
