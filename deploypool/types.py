"""Core type definitions: job payloads, results, and the dispatcher's bookkeeping records."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
import multiprocessing
from typing import Any, NotRequired, TypedDict

from typeguard import CollectionCheckStrategy, check_type

from deploypool.exception import InvalidJobError

ConstructorArgument = str | int | float | bool


class ContractData(TypedDict):
    """Compiled contract to deploy."""

    abi: list[dict[str, Any]]
    bytecode: str


class JobPayload(TypedDict):
    """What a caller submits to the dispatcher."""

    deployed_address: str | None
    constructor_arguments: list[ConstructorArgument]
    template_number: int
    token_name: str
    chain_name: str
    custom_contract_path: NotRequired[str | None]
    contract_data: NotRequired[ContractData | None]
    user_id: NotRequired[str | int | None]


class JobResult(TypedDict):
    """What a completed job resolves to."""

    success: bool
    deployed_address: str
    deployment_tx: str | None
    network: str
    # "success", "failed: <reason>", or None when verification was skipped
    verification_result: str | None


def validate_payload(payload: Any) -> JobPayload:
    """Check a payload against JobPayload.

    @param payload: The candidate payload
    @return: The payload, unchanged
    @raise InvalidJobError: if the payload is malformed
    """

    try:
        check_type(payload, JobPayload, collection_check_strategy=CollectionCheckStrategy.ALL_ITEMS)
    except Exception as err:
        raise InvalidJobError(f"Invalid job payload: {err}") from err

    if not payload.get("contract_data") and not payload.get("deployed_address"):
        raise InvalidJobError("Invalid job payload: either deployed_address or contract_data is required")

    return payload


@dataclass
class Job:
    """One deployment/verification request."""

    id: int
    payload: JobPayload
    submitted_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    # times put back on the queue after its worker died before starting it
    requeues: int = 0


class WorkerState(StrEnum):
    """Track the state worker processes can be in"""

    # Spawned, not yet reported ready
    STARTING = "starting"

    # Ready for a job
    IDLE = "idle"

    # Running exactly one job
    BUSY = "busy"

    # Exited, crashed, or recycled
    TERMINATED = "terminated"


class JobStatus(StrEnum):
    """Where a pending job is"""

    # Waiting for an idle worker
    QUEUED = "queued"

    # Assigned to a worker
    RUNNING = "running"

    # Contract deployed; verification in progress
    DEPLOYED = "deployed"


@dataclass
class WorkerHandle:
    """The dispatcher's view of one worker process."""

    id: int
    process: multiprocessing.Process
    inbox: multiprocessing.Queue
    state: WorkerState = WorkerState.STARTING
    job_id: int | None = None
    # monotonic clock time the current job was assigned
    assigned_at: float | None = None
    # the worker acknowledged the job and began running it
    started: bool = False
    # partial result reported once the contract is deployed
    deployed: JobResult | None = None

    @property
    def idle(self) -> bool:
        return self.state == WorkerState.IDLE
