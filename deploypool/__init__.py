from deploypool.config import NetworkConfig, Settings, VerificationPolicy, load_settings
from deploypool.exception import (
    DeploymentError,
    DeployPoolError,
    UnsupportedNetworkError,
    VerificationError,
    WorkerCrashError,
)
from deploypool.types import JobPayload, JobResult
from deploypool.worker import JobHandle, ProcessManager

__version__ = "0.1.0"

__all__ = [
    "DeployPoolError",
    "DeploymentError",
    "JobHandle",
    "JobPayload",
    "JobResult",
    "NetworkConfig",
    "ProcessManager",
    "Settings",
    "UnsupportedNetworkError",
    "VerificationError",
    "VerificationPolicy",
    "WorkerCrashError",
    "load_settings",
]
