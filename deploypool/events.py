"""Events

The dispatcher should be observable. It reports what happens to workers and jobs
as events; a monitor (see deploypool.monitor) can dispatch these as desired.
"""

from dataclasses import dataclass


class DispatchEvent:
    """Base class for all dispatcher events"""


@dataclass
class WorkerStartedEvent(DispatchEvent):
    """A worker process was spawned"""

    worker_id: int
    pid: int | None


@dataclass
class WorkerExitedEvent(DispatchEvent):
    """A worker process exited, was recycled, or was stopped"""

    worker_id: int
    exitcode: int | None
    # the job that was running on it, if any
    job_id: int | None = None


@dataclass
class JobSubmittedEvent(DispatchEvent):
    """A job was accepted and queued or assigned"""

    job_id: int
    chain_name: str


@dataclass
class JobAssignedEvent(DispatchEvent):
    """A job was handed to a worker"""

    job_id: int
    worker_id: int


@dataclass
class JobCompletedEvent(DispatchEvent):
    """A job resolved successfully"""

    job_id: int
    worker_id: int | None
    duration_seconds: float
    verification_result: str | None


@dataclass
class JobFailedEvent(DispatchEvent):
    """A job was rejected"""

    job_id: int
    worker_id: int | None
    error: str


@dataclass
class JobRequeuedEvent(DispatchEvent):
    """A worker died before starting its job; the job is back at the head of the queue"""

    job_id: int
    worker_id: int
