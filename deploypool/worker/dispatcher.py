"""The dispatcher owns a fixed pool of worker processes. It hands each submitted job
to an idle worker, queues jobs while every worker is busy, replaces workers that die,
recycles workers whose job runs too long, and settles each caller's future.

All bookkeeping (job ids, the pending map, the queue, the worker table) is touched
only from the event loop the dispatcher was started on. A single reader thread
blocks on the shared worker outbox and hands each message back to that loop.
"""

import asyncio
from collections import deque
from collections.abc import Generator
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import UTC, datetime
import multiprocessing
import queue
import time
from typing import Any

from deploypool.config import Settings
from deploypool.constants import (
    KILL_GRACE_SECONDS,
    MAX_JOB_REQUEUES,
    PHASE_DEPLOYED,
    PHASE_STARTED,
    WAIT_TIMEOUT_SECONDS,
)
from deploypool.events import (
    DispatchEvent,
    JobAssignedEvent,
    JobCompletedEvent,
    JobFailedEvent,
    JobRequeuedEvent,
    JobSubmittedEvent,
    WorkerExitedEvent,
    WorkerStartedEvent,
)
from deploypool.exception import (
    DeploymentError,
    DeployPoolError,
    DispatcherClosedError,
    JobCancelledError,
    JobTimeoutError,
    ProtocolError,
    WorkerCrashError,
    exception_from_text_blob,
)
from deploypool.messages import (
    JobComplete,
    JobProgress,
    JobRejected,
    RunJob,
    ShutdownWorker,
    WorkerFault,
    WorkerMessage,
    WorkerReady,
)
from deploypool.monitor import DispatchMonitor, NoOpDispatchMonitor
from deploypool.task import Task, run_deployment_task
from deploypool.types import (
    Job,
    JobPayload,
    JobResult,
    JobStatus,
    WorkerHandle,
    WorkerState,
    validate_payload,
)
from deploypool.utils.id_generator import generate_id
from deploypool.utils.logging_config import get_logger
from deploypool.utils.processes import kill_process_tree, shutdown as shutdown_processes
from deploypool.worker.process import deploypool_worker

logger = get_logger(__name__)

type Outcome = JobResult | BaseException


@dataclass
class PendingJob:
    job: Job
    future: asyncio.Future


@dataclass
class JobHandle:
    """Returned by submit_job. Await it for the job's result."""

    # None when the job was refused before it was given an id
    job_id: int | None
    future: asyncio.Future

    def __await__(self) -> Generator[Any, None, JobResult]:
        return self.future.__await__()

    def done(self) -> bool:
        return self.future.done()


class ProcessManager:
    """Dispatch deployment/verification jobs across a pool of worker processes.

    Use as an async context manager, or call start() and shutdown() yourself.
    """

    def __init__(
        self,
        settings: Settings,
        pool_size: int | None = None,
        task: Task = run_deployment_task,
        monitor: DispatchMonitor | None = None,
        job_timeout: float | None = None,
        mp_context: multiprocessing.context.BaseContext | None = None,
    ) -> None:
        """
        @param settings: Network table and defaults; pickled into every worker
        @param pool_size: Number of workers; defaults to settings.pool_size
        @raise ValueError: if the pool would have no workers
        @param task: Async callable each worker runs per job. Must be picklable.
        @param monitor: Receives dispatcher events
        @param job_timeout: Seconds a job may run before its worker is recycled
        @param mp_context: multiprocessing context; defaults to "spawn"
        """

        self.settings = settings
        self.pool_size = pool_size if pool_size is not None else settings.pool_size
        if self.pool_size < 1:
            raise ValueError(f"pool_size must be at least 1, got {self.pool_size}")
        self.task = task
        self.monitor = monitor or NoOpDispatchMonitor()
        self.job_timeout = job_timeout if job_timeout is not None else settings.job_timeout
        self.mp = mp_context or multiprocessing.get_context("spawn")
        self.dispatcher_id = generate_id()

        self.workers: dict[int, WorkerHandle] = {}
        self.job_queue: deque[Job] = deque()
        self.pending: dict[int, PendingJob] = {}
        self.next_job_id = 1
        self.next_worker_id = 1

        self.outbox: multiprocessing.Queue | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._reader = ThreadPoolExecutor(max_workers=1, thread_name_prefix="deploypool-outbox")
        self._supervisor: asyncio.Task | None = None
        self._shutdown_task: asyncio.Task | None = None
        self._stopping: set[asyncio.Future] = set()
        self._closing = False

    async def __aenter__(self) -> "ProcessManager":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()

    # ++++++++++++++++++++++ public interface ++++++++++++++++++++++

    @property
    def running(self) -> bool:
        return self._supervisor is not None and not self._closing

    async def start(self) -> None:
        """Spawn the worker pool and begin supervising it."""

        if self._supervisor is not None:
            return

        self._loop = asyncio.get_running_loop()
        self.outbox = self.mp.Queue()

        logger.info("Initializing dispatcher %s with %s workers", self.dispatcher_id, self.pool_size)

        for _ in range(self.pool_size):
            self._spawn_worker()

        self._supervisor = asyncio.create_task(self._supervise(), name=f"dispatcher-{self.dispatcher_id}")

    def submit_job(self, payload: JobPayload) -> JobHandle:
        """Submit a job. Never raises: every outcome, including refusal, arrives
        through the returned handle.

        Must be called from the loop the dispatcher was started on.

        @param payload: The job payload
        @return: A handle carrying the job id; await it for the JobResult
        """

        future = asyncio.get_running_loop().create_future()

        if not self.running:
            future.set_exception(DispatcherClosedError("Dispatcher is not accepting jobs"))
            return JobHandle(job_id=None, future=future)

        try:
            validate_payload(payload)
            self.settings.network(payload["chain_name"])
        except DeployPoolError as err:
            logger.warning("Refused job: %s", err)
            future.set_exception(err)
            return JobHandle(job_id=None, future=future)

        job = Job(id=self.next_job_id, payload=payload)
        self.next_job_id += 1

        self.pending[job.id] = PendingJob(job=job, future=future)
        future.add_done_callback(lambda fut, job_id=job.id: self._on_future_done(job_id, fut))
        self._emit(JobSubmittedEvent(job_id=job.id, chain_name=payload["chain_name"]))

        worker = self._idle_worker()
        if worker is not None:
            self._assign(worker, job)
        else:
            self.job_queue.append(job)
            logger.info("Queued job %s (%s waiting)", job.id, len(self.job_queue))

        return JobHandle(job_id=job.id, future=future)

    def on_worker_complete(self, worker_id: int, job_id: int, success: bool, outcome: Outcome) -> None:
        """A worker finished a job: free the worker, settle the job, and pull the
        next queued job onto the worker straight away."""

        worker = self.workers.get(worker_id)

        if worker is not None and worker.job_id == job_id:
            self._mark_idle(worker)
        else:
            logger.warning("Worker %s reported job %s it was not running", worker_id, job_id)

        if success:
            logger.info("Job %s completed on worker %s", job_id, worker_id)
        else:
            logger.error("Job %s failed on worker %s: %s", job_id, worker_id, outcome)

        self._settle(job_id, worker_id, outcome)
        self._drain_queue()

    def job_status(self, job_id: int) -> JobStatus | None:
        """Where a pending job is; None once it has completed (or never existed)."""

        if job_id not in self.pending:
            return None

        for worker in self.workers.values():
            if worker.job_id == job_id:
                return JobStatus.DEPLOYED if worker.deployed is not None else JobStatus.RUNNING

        return JobStatus.QUEUED

    def cancel_job(self, job_id: int) -> bool:
        """Cancel a queued job, rejecting it with JobCancelledError. Jobs already on a
        worker run to completion (or timeout); cancelling them returns False."""

        for job in self.job_queue:
            if job.id == job_id:
                self.job_queue.remove(job)
                logger.info("Cancelled queued job %s", job_id)
                self._settle(job_id, None, JobCancelledError(f"Job {job_id} was cancelled"))
                return True

        return False

    def stats(self) -> dict[str, Any]:
        states = {state.value: 0 for state in WorkerState if state != WorkerState.TERMINATED}
        for worker in self.workers.values():
            states[worker.state.value] += 1

        return {
            "dispatcher_id": self.dispatcher_id,
            "pool_size": self.pool_size,
            "workers": states,
            "queued": len(self.job_queue),
            "pending": len(self.pending),
            "accepting": self.running,
        }

    async def shutdown(self, timeout: float | None = None) -> None:
        """Stop every worker and wait for them to exit. Jobs still queued or running
        are rejected with DispatcherClosedError. Safe to call more than once."""

        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self._shutdown(timeout))

        await asyncio.shield(self._shutdown_task)

    # ++++++++++++++++++++++ supervision ++++++++++++++++++++++

    async def _supervise(self) -> None:
        loop = asyncio.get_running_loop()

        while not self._closing:
            message = await loop.run_in_executor(self._reader, self._read_message)

            try:
                if message is not None:
                    self._handle_message(message)
                self._reap_workers()
                self._expire_jobs()
            except Exception:
                logger.exception("Dispatcher %s failed handling %r", self.dispatcher_id, message)

    def _read_message(self) -> WorkerMessage | None:
        try:
            return self.outbox.get(timeout=WAIT_TIMEOUT_SECONDS)
        except queue.Empty:
            return None

    def _drain_outbox(self) -> None:
        while True:
            try:
                message = self.outbox.get_nowait()
            except queue.Empty:
                return
            self._handle_message(message)

    def _handle_message(self, message: WorkerMessage) -> None:
        match message:
            case WorkerReady():
                worker = self.workers.get(message.worker_id)
                if worker is not None and worker.state == WorkerState.STARTING:
                    worker.state = WorkerState.IDLE
                    logger.info("Worker %s ready (pid %s)", message.worker_id, message.pid)
                    self._drain_queue()

            case JobProgress():
                worker = self.workers.get(message.worker_id)
                if worker is None or worker.job_id != message.job_id:
                    return

                if message.phase == PHASE_STARTED:
                    worker.started = True
                elif message.phase == PHASE_DEPLOYED:
                    worker.deployed = message.result

            case JobComplete():
                outcome = message.result if message.success else self._error_from_blob(message.error)
                self.on_worker_complete(message.worker_id, message.job_id, message.success, outcome)

            case JobRejected():
                logger.error("Worker %s rejected job %s: %s", message.worker_id, message.job_id, message.reason)
                worker = self.workers.get(message.worker_id)
                if worker is not None:
                    self._retire_worker(worker, ProtocolError(message.reason))

            case WorkerFault():
                worker = self.workers.get(message.worker_id)
                error = self._error_from_blob(message.error)
                logger.error("Worker %s faulted: %s", message.worker_id, error)
                if worker is not None:
                    self._retire_worker(
                        worker, WorkerCrashError(f"Worker {worker.id} faulted: {error}"), requeue_unstarted=True
                    )

            case _:
                logger.error("Dispatcher %s received unknown message %r", self.dispatcher_id, message)

    def _reap_workers(self) -> None:
        """Replace workers whose process has exited."""

        dead = [worker for worker in self.workers.values() if not worker.process.is_alive()]
        if not dead:
            return

        # a dead process has flushed everything it sent; handle that first
        self._drain_outbox()

        for worker in dead:
            if self.workers.get(worker.id) is not worker:
                continue

            exitcode = worker.process.exitcode
            logger.warning("Worker %s exited with code %s, restarting...", worker.id, exitcode)
            self._retire_worker(
                worker,
                WorkerCrashError(f"Worker {worker.id} exited with code {exitcode} while running job {worker.job_id}"),
                requeue_unstarted=True,
            )

    def _expire_jobs(self) -> None:
        """Recycle workers whose job has run longer than the job timeout."""

        now = time.monotonic()
        expired = [
            worker
            for worker in self.workers.values()
            if worker.state == WorkerState.BUSY
            and worker.assigned_at is not None
            and now - worker.assigned_at >= self.job_timeout
        ]
        if not expired:
            return

        self._drain_outbox()

        for worker in expired:
            if self.workers.get(worker.id) is not worker or worker.state != WorkerState.BUSY:
                continue

            logger.error("Job %s exceeded %gs on worker %s; recycling worker", worker.job_id, self.job_timeout, worker.id)

            outcome: Outcome
            if worker.deployed is not None:
                # deployed but never verified: still a successful job
                outcome = {
                    **worker.deployed,
                    "verification_result": f"failed: timed out after {self.job_timeout:g}s",
                }
            else:
                outcome = JobTimeoutError(f"Job {worker.job_id} timed out after {self.job_timeout:g}s")

            self._retire_worker(worker, outcome)

    # ++++++++++++++++++++++ workers ++++++++++++++++++++++

    def _spawn_worker(self) -> WorkerHandle:
        worker_id = self.next_worker_id
        self.next_worker_id += 1

        inbox = self.mp.Queue()
        process = self.mp.Process(
            target=deploypool_worker,
            args=(worker_id, inbox, self.outbox, self.settings, self.task),
            name=f"deploypool-worker-{worker_id}",
            daemon=True,
        )
        process.start()

        worker = WorkerHandle(id=worker_id, process=process, inbox=inbox)
        self.workers[worker_id] = worker

        logger.info("Created worker process %s (pid %s)", worker_id, process.pid)
        self._emit(WorkerStartedEvent(worker_id=worker_id, pid=process.pid))

        return worker

    def _retire_worker(self, worker: WorkerHandle, outcome: Outcome, requeue_unstarted: bool = False) -> None:
        """Take a worker out of the pool, settle its job with `outcome`, stop its
        process tree in the background, and spawn a replacement.

        With `requeue_unstarted`, a job the worker never acknowledged goes back to
        the head of the queue instead (at most MAX_JOB_REQUEUES times).
        """

        job_id = worker.job_id
        worker.state = WorkerState.TERMINATED
        self.workers.pop(worker.id, None)

        if worker.process.is_alive():
            stopping = self._loop.run_in_executor(None, self._stop_process, worker.process)
            self._stopping.add(stopping)
            stopping.add_done_callback(self._stopping.discard)

        worker.inbox.close()
        self._emit(WorkerExitedEvent(worker_id=worker.id, exitcode=worker.process.exitcode, job_id=job_id))

        requeued = requeue_unstarted and not worker.started and job_id is not None and self._requeue(job_id, worker.id)
        if job_id is not None and not requeued:
            self._settle(job_id, worker.id, outcome)

        if not self._closing:
            self._spawn_worker()
            self._drain_queue()

    def _requeue(self, job_id: int, worker_id: int) -> bool:
        pending = self.pending.get(job_id)
        if pending is None or pending.future.done() or self._closing:
            return False
        if pending.job.requeues >= MAX_JOB_REQUEUES:
            return False

        pending.job.requeues += 1
        self.job_queue.appendleft(pending.job)

        logger.warning("Worker %s died before starting job %s; requeued it", worker_id, job_id)
        self._emit(JobRequeuedEvent(job_id=job_id, worker_id=worker_id))
        return True

    @staticmethod
    def _stop_process(process: multiprocessing.Process) -> None:
        kill_process_tree(process.pid)
        process.join(timeout=KILL_GRACE_SECONDS)

    def _idle_worker(self) -> WorkerHandle | None:
        # a dead process can still look idle until the next reap
        return next((worker for worker in self.workers.values() if worker.idle and worker.process.is_alive()), None)

    def _assign(self, worker: WorkerHandle, job: Job) -> None:
        if not worker.idle:
            raise ProtocolError(f"Worker {worker.id} is {worker.state}; cannot assign job {job.id}")

        worker.state = WorkerState.BUSY
        worker.job_id = job.id
        worker.assigned_at = time.monotonic()
        worker.started = False
        worker.deployed = None
        worker.inbox.put(RunJob(job_id=job.id, payload=job.payload))

        logger.info(
            "Assigned job %s to worker %s: network=%s address=%s token=%s template=%s user=%s",
            job.id,
            worker.id,
            job.payload["chain_name"],
            job.payload.get("deployed_address"),
            job.payload["token_name"],
            job.payload["template_number"],
            job.payload.get("user_id"),
        )
        self._emit(JobAssignedEvent(job_id=job.id, worker_id=worker.id))

    def _mark_idle(self, worker: WorkerHandle) -> None:
        worker.state = WorkerState.IDLE
        worker.job_id = None
        worker.assigned_at = None
        worker.started = False
        worker.deployed = None

    def _drain_queue(self) -> None:
        while self.job_queue:
            worker = self._idle_worker()
            if worker is None:
                return
            self._assign(worker, self.job_queue.popleft())

    # ++++++++++++++++++++++ jobs ++++++++++++++++++++++

    def _settle(self, job_id: int, worker_id: int | None, outcome: Outcome) -> None:
        pending = self.pending.pop(job_id, None)
        if pending is None:
            logger.warning("Outcome for unknown job %s ignored", job_id)
            return

        if isinstance(outcome, BaseException):
            self._emit(JobFailedEvent(job_id=job_id, worker_id=worker_id, error=str(outcome)))
            if not pending.future.done():
                pending.future.set_exception(outcome)
            return

        duration = (datetime.now(UTC) - pending.job.submitted_at).total_seconds()
        self._emit(
            JobCompletedEvent(
                job_id=job_id,
                worker_id=worker_id,
                duration_seconds=duration,
                verification_result=outcome.get("verification_result"),
            )
        )
        if not pending.future.done():
            pending.future.set_result(outcome)

    def _on_future_done(self, job_id: int, future: asyncio.Future) -> None:
        """A caller who stops waiting for a queued job withdraws it."""

        if not future.cancelled():
            return

        for job in self.job_queue:
            if job.id == job_id:
                self.job_queue.remove(job)
                self.pending.pop(job_id, None)
                logger.info("Job %s withdrawn by its caller", job_id)
                return

    @staticmethod
    def _error_from_blob(blob: str | None) -> BaseException:
        if not blob:
            return DeploymentError("Job failed without reporting an error")

        try:
            return exception_from_text_blob(blob)
        except Exception as err:
            return DeploymentError(f"Job failed with an undecodable error: {err}")

    def _emit(self, event: DispatchEvent) -> None:
        self.monitor.handle_event(event)

    # ++++++++++++++++++++++ shutdown ++++++++++++++++++++++

    async def _shutdown(self, timeout: float | None) -> None:
        timeout = self.settings.shutdown_timeout if timeout is None else timeout
        self._closing = True

        logger.info("Shutting down dispatcher %s...", self.dispatcher_id)

        if self._supervisor is not None:
            await self._supervisor

        while self.job_queue:
            job = self.job_queue.popleft()
            self._settle(job.id, None, DispatcherClosedError(f"Dispatcher shut down before job {job.id} started"))

        workers = list(self.workers.values())
        for worker in workers:
            if worker.process.is_alive():
                worker.inbox.put(ShutdownWorker())

        await asyncio.get_running_loop().run_in_executor(
            None, shutdown_processes, [worker.process for worker in workers], timeout
        )

        if self.outbox is not None:
            self._drain_outbox()

        for worker in workers:
            if self.workers.pop(worker.id, None) is None:
                continue

            job_id = worker.job_id
            worker.state = WorkerState.TERMINATED
            worker.inbox.close()
            self._emit(WorkerExitedEvent(worker_id=worker.id, exitcode=worker.process.exitcode, job_id=job_id))

            if job_id is not None:
                self._settle(job_id, worker.id, DispatcherClosedError(f"Dispatcher shut down while job {job_id} ran"))

        if self._stopping:
            await asyncio.gather(*self._stopping)

        for job_id in list(self.pending):
            self._settle(job_id, None, DispatcherClosedError(f"Dispatcher shut down before job {job_id} completed"))

        self._reader.shutdown(wait=True)
        if self.outbox is not None:
            self.outbox.close()

        logger.info("All workers shut down successfully")
