"""Exceptions used throughout deploypool."""

import base64
import pickle

from tblib import pickling_support


class DeployPoolError(Exception):
    """Base exception for deploypool-related errors."""


class UnsupportedNetworkError(DeployPoolError):
    """The job names a chain with no network configuration."""


class InvalidJobError(DeployPoolError):
    """A job payload failed validation."""


class DeploymentError(DeployPoolError):
    """Deploying the contract failed. Fatal to the job."""


class JobTimeoutError(DeploymentError):
    """A job exceeded its allowed time before its contract was deployed."""


class VerificationError(DeployPoolError):
    """A single verification attempt failed."""


class WorkerCrashError(DeployPoolError):
    """The worker running a job exited abnormally."""


class DispatcherClosedError(DeployPoolError):
    """The dispatcher is shutting down and no longer runs jobs."""


class JobCancelledError(DeployPoolError):
    """A queued job was cancelled before a worker picked it up."""


class ProtocolError(DeployPoolError):
    """A worker received a message it must not act on."""


# tracebacks survive the trip between worker and dispatcher
pickling_support.install()


def exception_to_text_blob(exception: BaseException) -> str:
    """Serialize an exception to a text blob."""

    pickled = pickle.dumps(exception, protocol=pickle.HIGHEST_PROTOCOL)

    return base64.b64encode(pickled).decode("ascii")


def exception_from_text_blob(blob: str) -> BaseException:
    """Deserialize an exception from a text blob."""

    pickled = base64.b64decode(blob.encode("ascii"))
    restored = pickle.loads(pickled)

    if not isinstance(restored, BaseException):
        raise TypeError(f"Unpickled object is not an exception: {type(restored)!r}")

    return restored


def as_job_error(err: BaseException) -> DeployPoolError:
    """Rebuild an exception as a message-only deploypool error that any process
    can unpickle, keeping its traceback. Foreign exceptions become DeploymentErrors.

    @param err: The exception raised while running a job
    @return: A picklable deploypool error
    """

    if isinstance(err, DeployPoolError):
        rebuilt = type(err)(str(err))
    else:
        rebuilt = DeploymentError(f"{type(err).__name__}: {err}")

    return rebuilt.with_traceback(err.__traceback__)
