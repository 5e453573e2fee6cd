from deploypool.worker.dispatcher import JobHandle, ProcessManager
from deploypool.worker.process import deploypool_worker

__all__ = ["JobHandle", "ProcessManager", "deploypool_worker"]
