"""Messages exchanged between the dispatcher and its worker processes.

The dispatcher writes to one inbox queue per worker; all workers share a single
outbox queue back to the dispatcher. Every message is a small picklable dataclass.
Exceptions travel as text blobs (see deploypool.exception).
"""

from dataclasses import dataclass

from deploypool.types import JobPayload, JobResult

# ++++++++++++++++++++++ dispatcher -> worker ++++++++++++++++++++++


@dataclass
class RunJob:
    """Run this job"""

    job_id: int
    payload: JobPayload


@dataclass
class ShutdownWorker:
    """Stop, abandoning any running job"""


# ++++++++++++++++++++++ worker -> dispatcher ++++++++++++++++++++++


@dataclass
class WorkerReady:
    """The worker has started and can accept a job"""

    worker_id: int
    pid: int


@dataclass
class JobProgress:
    """A job reached a checkpoint; `result` is the result so far, if any"""

    worker_id: int
    job_id: int
    phase: str
    result: JobResult | None = None


@dataclass
class JobComplete:
    """A job finished, one way or the other"""

    worker_id: int
    job_id: int
    success: bool
    result: JobResult | None = None
    error: str | None = None


@dataclass
class JobRejected:
    """The worker refused a job it was sent while busy"""

    worker_id: int
    job_id: int
    reason: str


@dataclass
class WorkerFault:
    """The worker hit an error outside any job and is exiting"""

    worker_id: int
    error: str | None


type WorkerMessage = WorkerReady | JobProgress | JobComplete | JobRejected | WorkerFault
