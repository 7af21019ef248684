"""
Durable work queue for scheduled job runs.

Work items are stored in Redis through rq, which also owns the retry and
backoff bookkeeping. Items are consumed in-process by a fixed pool of worker
threads so handlers can use the live job registry and notification sink.

When Redis cannot be reached the manager runs in offline mode: nothing is
persisted, `add_job` returns a synthetic handle and statistics are zero.

A taken item holds a short lease in rq's started registry, and each manager
keeps a liveness key while its workers run. Both are refreshed by the monitor
thread. An item whose lease lapsed, or whose worker stopped heartbeating, is
stalled and goes back to the front of the queue once. A second stall fails it.
"""

from __future__ import annotations

import logging
import threading
import time
import traceback
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from redis import Redis
from redis.backoff import NoBackoff
from redis.exceptions import RedisError
from redis.retry import Retry as RedisRetry
from rq import Queue, Retry
from rq.exceptions import DequeueTimeout, NoSuchJobError
from rq.job import Job, JobStatus
from rq.scheduler import RQScheduler
from rq.utils import as_text

from .errors import BackendUnavailableError, HandlerFailure, NotificationSinkFailure
from .registry import JobRegistry
from .types import (
    STATUS_FAILED,
    STATUS_RUNNING,
    STATUS_SUCCESS,
    JobContext,
    JobNotification,
    JobResult,
    QueueConfig,
    QueueHandle,
    QueueStats,
    QueueWorkItem,
)

logger = logging.getLogger(__name__)

UTC = timezone.utc
WORKER_CONCURRENCY = 5
DEQUEUE_TIMEOUT_SECONDS = 1
MONITOR_INTERVAL_SECONDS = 1.0
STARTED_TTL_SECONDS = 30
OWNER_TTL_SECONDS = 5
MAX_STALLED_COUNT = 1
HIGH_PRIORITY = 1
WORK_ITEM_FUNC = "rad_scheduler.queue_manager.run_work_item"

NotificationSink = Callable[[List[JobNotification], JobContext], None]
ExecutionListener = Callable[[str, str, Optional[Dict[str, Any]]], None]


def run_work_item(payload: Dict[str, Any]) -> None:
    """Entry point recorded on every rq job.

    Items are consumed by QueueManager worker threads, never by a stand-alone
    rq worker, because handlers need the in-process registry.
    """
    raise HandlerFailure(
        f"Work item {payload.get('execution_id')} must be consumed by a rad_scheduler QueueManager."
    )


def _ttl(value: Any, default: Optional[int]) -> Optional[int]:
    if value is True:
        return 0
    if value is False:
        return -1
    if isinstance(value, int):
        return value
    return default


class QueueManager:
    def __init__(
        self,
        registry: JobRegistry,
        notification_sink: Optional[NotificationSink] = None,
        execution_listener: Optional[ExecutionListener] = None,
    ) -> None:
        self.registry = registry
        self.notification_sink = notification_sink
        self.execution_listener = execution_listener
        self.config: Optional[QueueConfig] = None

        self._connection: Optional[Redis] = None
        self._queue: Optional[Queue] = None
        self._rq_scheduler: Optional[RQScheduler] = None
        self._workers: List[threading.Thread] = []
        self._monitor_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._resume_event = threading.Event()
        self._resume_event.set()
        self._initialized = False
        self._offline = False
        self.worker_id = uuid.uuid4().hex
        self._active: Dict[str, Job] = {}
        self._active_lock = threading.Lock()

    def set_execution_listener(self, listener: Optional[ExecutionListener]) -> None:
        self.execution_listener = listener

    # -- lifecycle ------------------------------------------------------

    def initialize(self, config: QueueConfig, start_workers: bool = True) -> None:
        if self._initialized:
            logger.info("Queue manager already initialized.")
            return

        self.config = config
        logger.info(
            "Initializing queue %s with Redis %s:%s (db=%s)",
            config.name,
            config.redis.host,
            config.redis.port,
            config.redis.db,
        )
        try:
            self._connection = self._connect(config)
        except BackendUnavailableError as exc:
            logger.warning("%s Running in offline mode; scheduled runs will not be persisted.", exc)
            self._offline = True
            self._initialized = True
            return

        self._queue = Queue(config.name, connection=self._connection)
        self._rq_scheduler = RQScheduler([self._queue], connection=self._connection)
        self._stop_event.clear()
        self._resume_event.set()

        try:
            if start_workers:
                self._heartbeat()
            self.recover_stalled_jobs()
        except RedisError as exc:
            logger.warning("Failed to recover stalled queue jobs: %s", exc)

        if start_workers:
            for idx in range(WORKER_CONCURRENCY):
                thread = threading.Thread(
                    target=self._work,
                    daemon=True,
                    name=f"rad-queue-worker-{idx + 1}",
                )
                thread.start()
                self._workers.append(thread)
            self._monitor_thread = threading.Thread(
                target=self._monitor,
                daemon=True,
                name="rad-queue-monitor",
            )
            self._monitor_thread.start()

        self._initialized = True
        logger.info(
            "Queue manager initialized (workers=%s)",
            len(self._workers),
        )

    def _connect(self, config: QueueConfig) -> Redis:
        connection = Redis(
            host=config.redis.host,
            port=config.redis.port,
            password=config.redis.password,
            db=config.redis.db,
            socket_connect_timeout=max(0.1, config.connect_timeout_ms / 1000.0),
            socket_timeout=None,
            # One connect attempt; a refused connection means offline mode.
            retry=RedisRetry(NoBackoff(), 0),
        )
        try:
            connection.ping()
        except RedisError as exc:
            connection.close()
            raise BackendUnavailableError(
                f"Redis unavailable at {config.redis.host}:{config.redis.port}: {exc}."
            ) from exc
        return connection

    def is_ready(self) -> bool:
        return self._initialized

    @property
    def is_offline(self) -> bool:
        return self._offline or self._queue is None

    def pause(self) -> None:
        if not self._workers:
            return
        self._resume_event.clear()
        logger.info("Queue workers paused.")

    def resume(self) -> None:
        if not self._workers:
            return
        self._resume_event.set()
        logger.info("Queue workers resumed.")

    def shutdown(self, timeout_seconds: float = DEQUEUE_TIMEOUT_SECONDS + 2.0) -> None:
        if not self._initialized and self._connection is None:
            return
        logger.info("Shutting down queue manager...")

        self._stop_event.set()
        self._resume_event.set()
        for thread in self._workers:
            thread.join(timeout=timeout_seconds)
            if thread.is_alive():
                logger.warning("Worker %s still busy at shutdown; leaving it to finish.", thread.name)
        self._workers = []

        if self._monitor_thread is not None:
            self._monitor_thread.join(timeout=timeout_seconds)
            self._monitor_thread = None
        if self._rq_scheduler is not None:
            try:
                self._rq_scheduler.release_locks()
            except RedisError as exc:
                logger.warning("Failed to release scheduler locks: %s", exc)
            self._rq_scheduler = None

        if self._queue is not None:
            try:
                self._connection.delete(self._owner_key(self.worker_id))
            except RedisError as exc:
                logger.warning("Failed to clear worker heartbeat: %s", exc)
        self._queue = None
        if self._connection is not None:
            self._connection.close()
            self._connection = None

        self._initialized = False
        self._offline = False
        logger.info("Queue manager shutdown complete.")

    # -- submission -----------------------------------------------------

    def add_job(
        self,
        item: QueueWorkItem,
        delay_ms: Optional[int] = None,
        priority: Optional[int] = None,
    ) -> QueueHandle:
        if self.is_offline:
            return self._offline_handle(item)

        options = self._enqueue_options(item, priority)
        try:
            if delay_ms:
                job = self._queue.enqueue_in(
                    timedelta(milliseconds=int(delay_ms)),
                    WORK_ITEM_FUNC,
                    item.to_payload(),
                    **options,
                )
            else:
                job = self._queue.enqueue(WORK_ITEM_FUNC, item.to_payload(), **options)
        except RedisError as exc:
            logger.warning(
                "Queue backend lost while adding %s (%s); switching to offline mode.",
                item.job_name,
                exc,
            )
            self._offline = True
            return self._offline_handle(item)

        logger.info(
            "Job added to queue (queue_job_id=%s, job=%s, execution=%s)",
            job.id,
            item.job_name,
            item.execution_id,
        )
        return QueueHandle(id=job.id, job_name=item.job_name, execution_id=item.execution_id, persisted=True)

    def _offline_handle(self, item: QueueWorkItem) -> QueueHandle:
        logger.warning(
            "Queue offline, job not persisted: %s (execution=%s)",
            item.job_name,
            item.execution_id,
        )
        return QueueHandle(
            id=f"offline-{int(time.time() * 1000)}",
            job_name=item.job_name,
            execution_id=item.execution_id,
            persisted=False,
        )

    def _enqueue_options(self, item: QueueWorkItem, priority: Optional[int]) -> Dict[str, Any]:
        job_options = self.config.default_job_options
        options: Dict[str, Any] = {
            "job_id": item.execution_id,
            "description": item.job_name,
            "meta": {"job_name": item.job_name, "execution_id": item.execution_id, "attempt": 0},
            "result_ttl": _ttl(job_options.remove_on_complete, 3600),
            "failure_ttl": _ttl(job_options.remove_on_fail, None),
            "at_front": priority is not None and priority <= HIGH_PRIORITY,
        }
        retries = max(0, job_options.attempts - 1)
        if retries:
            options["retry"] = Retry(max=retries, interval=job_options.backoff.intervals(retries))
        return options

    # -- statistics -----------------------------------------------------

    def get_queue_stats(self) -> QueueStats:
        if self._queue is None:
            return QueueStats()
        try:
            return QueueStats(
                waiting=self._queue.count,
                # Raw count: rq's registry count would fail lapsed items before they are recovered.
                active=self._connection.zcard(self._queue.started_job_registry.key),
                completed=self._queue.finished_job_registry.count,
                failed=self._queue.failed_job_registry.count,
                delayed=self._queue.scheduled_job_registry.count,
            )
        except RedisError as exc:
            logger.warning("Failed to read queue statistics: %s", exc)
            return QueueStats()

    def get_recent_jobs(self, limit: int = 20) -> List[Dict[str, Any]]:
        if self._queue is None:
            return []
        try:
            ids: List[str] = []
            for source in (self._queue.finished_job_registry, self._queue.failed_job_registry):
                ids.extend(source.get_job_ids())
            ids.extend(self._started_ids())
            ids.extend(self._queue.get_job_ids())
            jobs = Job.fetch_many(ids[: max(0, int(limit))], connection=self._connection)
        except RedisError as exc:
            logger.warning("Failed to list recent jobs: %s", exc)
            return []
        return [
            {
                "id": job.id,
                "status": job.get_status(),
                "job_name": job.meta.get("job_name"),
                "execution_id": job.meta.get("execution_id"),
                "attempt": job.meta.get("attempt", 0),
                "ended_at": job.meta.get("ended_at"),
            }
            for job in jobs
            if job is not None
        ]

    def clean_old_jobs(self, older_than_seconds: int) -> int:
        if self._queue is None:
            return 0
        cutoff = datetime.now(tz=UTC) - timedelta(seconds=int(older_than_seconds))
        removed = 0
        for source in (self._queue.finished_job_registry, self._queue.failed_job_registry):
            for job in Job.fetch_many(source.get_job_ids(), connection=self._connection):
                if job is None:
                    continue
                ended_raw = job.meta.get("ended_at")
                if not ended_raw or datetime.fromisoformat(ended_raw) > cutoff:
                    continue
                source.remove(job, delete_job=True)
                removed += 1
        logger.info("Cleaned %s old queue job(s).", removed)
        return removed

    # -- execution ------------------------------------------------------

    def process_item(self, item: QueueWorkItem, attempt: int = 1, attempts_left: int = 0) -> JobResult:
        """Run one work item through its handler and report the outcome.

        Handler exceptions are re-raised after being recorded so the queue
        backend can apply its retry policy. While attempts remain the
        execution stays `running` with the last error attached.
        """
        context = JobContext(
            job_id=item.job_id,
            job_name=item.job_name,
            job_key=item.job_key,
            execution_id=item.execution_id,
            config=dict(item.config),
            started_at=item.started_at,
            targets=item.targets,
            attempt=attempt,
        )
        logger.info(
            "[%s] Processing job %s (attempt=%s)",
            item.execution_id,
            item.job_name,
            attempt,
        )
        self._report(item.execution_id, STATUS_RUNNING, {"attempts": attempt})

        try:
            result = self.registry.execute(item.job_key, context)
        except Exception as exc:
            if attempts_left > 0:
                logger.warning(
                    "[%s] Job %s attempt %s failed, %s retries left: %s",
                    item.execution_id,
                    item.job_name,
                    attempt,
                    attempts_left,
                    exc,
                )
                self._report(
                    item.execution_id,
                    STATUS_RUNNING,
                    {"attempts": attempt, "error": f"Attempt {attempt} failed: {exc}"},
                )
            else:
                logger.error("[%s] Job %s failed: %s", item.execution_id, item.job_name, exc)
                self._report(item.execution_id, STATUS_FAILED, {"attempts": attempt, "error": str(exc)})
            raise

        try:
            self._deliver_notifications(result, context)
        except NotificationSinkFailure as exc:
            logger.error("[%s] %s", item.execution_id, exc)

        outcome: Dict[str, Any] = {
            "attempts": attempt,
            "summary": result.summary,
            "users_affected": result.users_affected,
        }
        if result.success:
            self._report(item.execution_id, STATUS_SUCCESS, outcome)
        else:
            outcome["error"] = "; ".join(result.errors) or result.summary or "Job reported failure"
            self._report(item.execution_id, STATUS_FAILED, outcome)
        return result

    def _deliver_notifications(self, result: JobResult, context: JobContext) -> None:
        if not result.notifications:
            return
        if self.notification_sink is None:
            logger.warning(
                "Job %s produced %s notification(s) but no notification sink is configured.",
                context.job_name,
                len(result.notifications),
            )
            return
        try:
            self.notification_sink(list(result.notifications), context)
        except Exception as exc:
            raise NotificationSinkFailure(
                f"Notification sink failed for job {context.job_name}: {exc}"
            ) from exc

    def _report(self, execution_id: str, status: str, result: Optional[Dict[str, Any]]) -> None:
        if self.execution_listener is None:
            return
        try:
            self.execution_listener(execution_id, status, result)
        except Exception as exc:  # pragma: no cover - listener contract is non-raising
            logger.error("Execution listener failed for %s: %s", execution_id, exc)

    # -- worker threads -------------------------------------------------

    def _work(self) -> None:
        while not self._stop_event.is_set():
            if not self._resume_event.wait(timeout=DEQUEUE_TIMEOUT_SECONDS):
                continue
            if self._stop_event.is_set():
                break
            try:
                dequeued = Queue.dequeue_any(
                    [self._queue],
                    timeout=DEQUEUE_TIMEOUT_SECONDS,
                    connection=self._connection,
                )
            except DequeueTimeout:
                continue
            except RedisError as exc:
                logger.warning("Worker lost Redis connection: %s", exc)
                self._stop_event.wait(DEQUEUE_TIMEOUT_SECONDS)
                continue
            if not dequeued:
                continue
            job, queue = dequeued
            try:
                if self._stop_event.is_set() or not self._resume_event.is_set():
                    # Paused while blocked in dequeue; the item stays queued.
                    self._hand_back(job, queue)
                    continue
                self._perform(job, queue)
            except RedisError as exc:
                logger.error("Failed to record outcome of queue job %s: %s", job.id, exc)

    def _hand_back(self, job: Job, queue: Queue) -> None:
        with self._connection.pipeline() as pipe:
            pipe.lrem(queue.intermediate_queue_key, 1, job.id)
            queue.push_job_id(job.id, pipeline=pipe, at_front=True)
            pipe.execute()
        logger.debug("Queue job %s handed back while paused.", job.id)

    def _perform(self, job: Job, queue: Queue) -> None:
        started = queue.started_job_registry
        attempt = int(job.meta.get("attempt", 0)) + 1
        job.meta["attempt"] = attempt
        job.meta["worker"] = self.worker_id
        job.save_meta()

        with self._active_lock:
            self._active[job.id] = job
        try:
            with self._connection.pipeline() as pipe:
                pipe.lrem(queue.intermediate_queue_key, 1, job.id)
                started.add(job, STARTED_TTL_SECONDS, pipeline=pipe)
                job.set_status(JobStatus.STARTED, pipeline=pipe)
                pipe.execute()
            self._run_started(job, queue, attempt)
        finally:
            with self._active_lock:
                self._active.pop(job.id, None)

    def _run_started(self, job: Job, queue: Queue, attempt: int) -> None:
        started = queue.started_job_registry
        try:
            item = QueueWorkItem.from_payload(job.args[0])
        except (IndexError, KeyError, TypeError, ValueError) as exc:
            logger.error("Discarding malformed queue job %s: %s", job.id, exc)
            started.remove(job)
            self._mark_failed(job, queue, f"Malformed work item: {exc}")
            return

        attempts_left = int(job.retries_left or 0)
        try:
            result = self.process_item(item, attempt=attempt, attempts_left=attempts_left)
        except Exception:
            exc_string = traceback.format_exc()
            started.remove(job)
            if attempts_left > 0:
                with self._connection.pipeline() as pipe:
                    job.retry(queue, pipe)
                    pipe.execute()
                return
            self._mark_failed(job, queue, exc_string)
            return

        started.remove(job)
        job.meta["summary"] = result.summary
        job.meta["ended_at"] = datetime.now(tz=UTC).isoformat()
        job.save_meta()
        result_ttl = _ttl(self.config.default_job_options.remove_on_complete, 3600)
        if result_ttl == 0:
            job.delete()
            return
        job.set_status(JobStatus.FINISHED)
        queue.finished_job_registry.add(job, result_ttl)
        logger.info("Queue job %s completed (job=%s)", job.id, item.job_name)

    def _mark_failed(self, job: Job, queue: Queue, exc_string: str) -> None:
        job.meta["ended_at"] = datetime.now(tz=UTC).isoformat()
        job.save_meta()
        failure_ttl = _ttl(self.config.default_job_options.remove_on_fail, None)
        if failure_ttl == 0:
            job.delete()
            return
        job.set_status(JobStatus.FAILED)
        queue.failed_job_registry.add(job, ttl=failure_ttl, exc_string=exc_string)
        logger.error("Queue job %s failed permanently.", job.id)

    # -- stalled items --------------------------------------------------

    def _owner_key(self, worker_id: str) -> str:
        return f"rad_scheduler:workers:{self._queue.name}:{worker_id}"

    def _started_ids(self) -> List[str]:
        key = self._queue.started_job_registry.key
        return [as_text(job_id) for job_id in self._connection.zrange(key, 0, -1)]

    def _heartbeat(self) -> None:
        with self._active_lock:
            active = list(self._active.values())
        started = self._queue.started_job_registry
        with self._connection.pipeline() as pipe:
            pipe.set(self._owner_key(self.worker_id), datetime.now(tz=UTC).isoformat(), ex=OWNER_TTL_SECONDS)
            for job in active:
                started.add(job, STARTED_TTL_SECONDS, pipeline=pipe, xx=True)
            pipe.execute()

    def recover_stalled_jobs(self, timestamp: Optional[float] = None) -> List[str]:
        """Requeue or fail items whose worker stopped before finishing them.

        Returns the ids that were recovered. Items held by this manager's own
        workers are never touched.
        """
        if self._queue is None:
            return []
        started = self._queue.started_job_registry
        now = time.time() if timestamp is None else timestamp
        lapsed = {as_text(job_id) for job_id in self._connection.zrangebyscore(started.key, 0, now)}
        recovered: List[str] = []
        for job_id in self._started_ids():
            with self._active_lock:
                if job_id in self._active:
                    continue
            try:
                job = Job.fetch(job_id, connection=self._connection)
            except NoSuchJobError:
                self._connection.zrem(started.key, job_id)
                continue
            owner = job.meta.get("worker")
            if job_id not in lapsed and owner and self._connection.exists(self._owner_key(owner)):
                continue
            self._recover(job)
            recovered.append(job_id)
        return recovered

    def _recover(self, job: Job) -> None:
        started = self._queue.started_job_registry
        stalls = int(job.meta.get("stalled", 0)) + 1
        execution_id = job.meta.get("execution_id", job.id)
        if stalls > MAX_STALLED_COUNT:
            started.remove(job)
            error = f"Job stalled {stalls} times and was abandoned."
            self._mark_failed(job, self._queue, error)
            self._report(execution_id, STATUS_FAILED, {"attempts": int(job.meta.get("attempt", 0)), "error": error})
            return

        job.meta["stalled"] = stalls
        job.meta.pop("worker", None)
        with self._connection.pipeline() as pipe:
            started.remove(job, pipeline=pipe)
            self._queue.enqueue_job(job, pipeline=pipe, at_front=True)
            pipe.execute()
        logger.warning(
            "Recovered stalled queue job %s (job=%s, execution=%s)",
            job.id,
            job.meta.get("job_name"),
            execution_id,
        )

    def _monitor(self) -> None:
        last_stats: Optional[QueueStats] = None
        while not self._stop_event.wait(MONITOR_INTERVAL_SECONDS):
            try:
                self._heartbeat()
                self.recover_stalled_jobs()
                # Moves delayed and backing-off retries back onto the queue when due.
                self._rq_scheduler.acquire_locks()
                self._rq_scheduler.enqueue_scheduled_jobs()
                self._rq_scheduler.heartbeat()
            except RedisError as exc:
                logger.warning("Queue monitor error: %s", exc)
                continue
            stats = self.get_queue_stats()
            if stats != last_stats:
                logger.debug("Queue stats: %s", stats.as_dict())
                last_stats = stats
