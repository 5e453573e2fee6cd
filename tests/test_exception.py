"""Tests for exception serialization and job error normalisation"""

import pytest

from deploypool.exception import (
    DeploymentError,
    DeployPoolError,
    UnsupportedNetworkError,
    WorkerCrashError,
    as_job_error,
    exception_from_text_blob,
    exception_to_text_blob,
)


def raise_and_catch(err: BaseException) -> BaseException:
    try:
        raise err
    except BaseException as caught:
        return caught


def test_exception_blob_round_trip_keeps_type_and_message():
    """Errors cross the process boundary as text and come back as the same type"""

    original = raise_and_catch(WorkerCrashError("worker 3 exited with code 1"))
    restored = exception_from_text_blob(exception_to_text_blob(original))

    assert isinstance(restored, WorkerCrashError)
    assert str(restored) == "worker 3 exited with code 1"


def test_exception_blob_keeps_traceback():
    """tblib lets the traceback travel with the exception"""

    original = raise_and_catch(DeploymentError("nonce too low"))
    restored = exception_from_text_blob(exception_to_text_blob(original))

    assert restored.__traceback__ is not None


def test_exception_from_text_blob_rejects_non_exceptions():
    import base64
    import pickle

    blob = base64.b64encode(pickle.dumps({"not": "an exception"})).decode("ascii")

    with pytest.raises(TypeError):
        exception_from_text_blob(blob)


def test_as_job_error_keeps_deploypool_errors():
    err = as_job_error(raise_and_catch(UnsupportedNetworkError("Unsupported network: MARS_MAINNET")))

    assert isinstance(err, UnsupportedNetworkError)
    assert str(err) == "Unsupported network: MARS_MAINNET"
    assert err.__traceback__ is not None


def test_as_job_error_wraps_foreign_errors():
    """Anything else becomes a DeploymentError naming the original type"""

    err = as_job_error(raise_and_catch(ConnectionResetError("connection reset by peer")))

    assert isinstance(err, DeploymentError)
    assert isinstance(err, DeployPoolError)
    assert str(err) == "ConnectionResetError: connection reset by peer"


def test_deploypool_errors_are_ordinary_exceptions():
    """Job errors must not escape `except Exception` handlers"""

    assert issubclass(DeployPoolError, Exception)
