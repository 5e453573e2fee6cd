"""Worker processes receive one job at a time from the dispatcher, run it, and report
the outcome back. A worker outlives any number of jobs; it exits only when told to,
or when something goes wrong outside of a job."""

import asyncio
import contextlib
import multiprocessing
import os
import signal
import threading

from deploypool.config import Settings
from deploypool.constants import PHASE_STARTED
from deploypool.exception import ProtocolError, as_job_error, exception_to_text_blob
from deploypool.messages import (
    JobComplete,
    JobProgress,
    JobRejected,
    RunJob,
    ShutdownWorker,
    WorkerFault,
    WorkerReady,
)
from deploypool.task import Task
from deploypool.types import JobResult
from deploypool.utils.logging_config import configure_logging, get_logger

logger = get_logger(__name__)

type Inbox = multiprocessing.Queue[RunJob | ShutdownWorker]
type Outbox = multiprocessing.Queue


def deploypool_worker(worker_id: int, inbox: Inbox, outbox: Outbox, settings: Settings, task: Task) -> None:
    """Process entrypoint. Serve jobs until a ShutdownWorker message arrives.

    Errors inside a job are reported as failed jobs. Anything else is reported
    as a WorkerFault, and the process exits non-zero so the dispatcher replaces it.
    """

    configure_logging()

    # Ctrl-C goes to the whole process group; the dispatcher decides when we stop
    signal.signal(signal.SIGINT, signal.SIG_IGN)

    try:
        asyncio.run(serve(worker_id, inbox, outbox, settings, task))
    except Exception as err:
        logger.exception("Worker %s failed outside of a job", worker_id)
        outbox.put(WorkerFault(worker_id=worker_id, error=exception_to_text_blob(as_job_error(err))))
        raise SystemExit(1) from err

    logger.info("Worker %s shut down", worker_id)


def pump_inbox(inbox: Inbox, loop: asyncio.AbstractEventLoop, messages: asyncio.Queue) -> None:
    """Forward messages from the blocking inbox onto the event loop. Runs in a
    daemon thread, so it never holds the process open."""

    while True:
        message = inbox.get()
        loop.call_soon_threadsafe(messages.put_nowait, message)

        if isinstance(message, ShutdownWorker):
            return


async def serve(worker_id: int, inbox: Inbox, outbox: Outbox, settings: Settings, task: Task) -> None:
    loop = asyncio.get_running_loop()
    messages: asyncio.Queue = asyncio.Queue()

    threading.Thread(
        target=pump_inbox,
        args=(inbox, loop, messages),
        name=f"worker-{worker_id}-inbox",
        daemon=True,
    ).start()

    outbox.put(WorkerReady(worker_id=worker_id, pid=os.getpid()))
    logger.info("Worker %s ready (pid %s)", worker_id, os.getpid())

    running: asyncio.Task | None = None

    while True:
        message = await messages.get()

        if isinstance(message, ShutdownWorker):
            if running is not None and not running.done():
                logger.warning("Worker %s shutting down mid-job; abandoning it", worker_id)
                running.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await running
            return

        if isinstance(message, RunJob):
            if running is not None and not running.done():
                # the dispatcher never does this; refuse rather than queue
                logger.error("Worker %s received job %s while busy; rejecting", worker_id, message.job_id)
                outbox.put(
                    JobRejected(
                        worker_id=worker_id,
                        job_id=message.job_id,
                        reason=str(ProtocolError(f"worker {worker_id} is busy")),
                    )
                )
                continue

            running = asyncio.create_task(run_job(worker_id, message, outbox, settings, task))
            continue

        raise ProtocolError(f"Worker {worker_id} received unknown message {message!r}")


async def run_job(worker_id: int, message: RunJob, outbox: Outbox, settings: Settings, task: Task) -> None:
    """Run one job and send exactly one JobComplete for it."""

    job_id = message.job_id

    def report(phase: str, result: JobResult) -> None:
        outbox.put(JobProgress(worker_id=worker_id, job_id=job_id, phase=phase, result=dict(result)))

    # a worker that dies before the dispatcher sees this has its job requeued
    outbox.put(JobProgress(worker_id=worker_id, job_id=job_id, phase=PHASE_STARTED))

    try:
        result = await task(job_id, message.payload, settings, report)
    except asyncio.CancelledError:
        raise
    except Exception as err:
        logger.exception("Job %s failed on worker %s", job_id, worker_id)
        outbox.put(
            JobComplete(
                worker_id=worker_id,
                job_id=job_id,
                success=False,
                error=exception_to_text_blob(as_job_error(err)),
            )
        )
        return

    outbox.put(JobComplete(worker_id=worker_id, job_id=job_id, success=True, result=result))
