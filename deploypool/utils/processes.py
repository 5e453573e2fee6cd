"""Helpers for stopping worker processes along with anything they spawned."""

from collections.abc import Iterable
import multiprocessing
import time

import psutil

from deploypool.constants import KILL_GRACE_SECONDS
from deploypool.utils.logging_config import get_logger

logger = get_logger(__name__)


def kill_process_tree(pid: int | None, grace: float = KILL_GRACE_SECONDS) -> None:
    """Terminate a process and its descendants (e.g. a running verification
    command), escalating to SIGKILL for anything still alive after `grace` seconds."""

    if pid is None:
        return

    try:
        parent = psutil.Process(pid)
        victims = parent.children(recursive=True) + [parent]
    except psutil.NoSuchProcess:
        return

    for proc in victims:
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            pass

    _, alive = psutil.wait_procs(victims, timeout=grace)

    for proc in alive:
        logger.warning("Process %s ignored SIGTERM; killing", proc.pid)
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass


def shutdown(processes: Iterable[multiprocessing.Process], timeout: float) -> None:
    """Wait up to `timeout` seconds in total for processes to exit, then
    forcibly stop any stragglers and reap everything."""

    processes = list(processes)
    deadline = time.monotonic() + timeout

    for proc in processes:
        proc.join(timeout=max(0.0, deadline - time.monotonic()))

    for proc in processes:
        if proc.is_alive():
            logger.warning("Worker process %s did not exit in time; terminating", proc.pid)
            kill_process_tree(proc.pid)

    for proc in processes:
        proc.join(timeout=KILL_GRACE_SECONDS)
