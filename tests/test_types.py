"""Tests for payload validation and the dispatcher's bookkeeping types"""

from datetime import UTC, datetime

from conftest import make_payload
from freezegun import freeze_time
import pytest

from deploypool.exception import InvalidJobError
from deploypool.types import Job, JobStatus, WorkerState, validate_payload


def test_validate_payload_accepts_verify_only_job():
    payload = make_payload(constructor_arguments=["My Token", "MTK", 18, True])

    assert validate_payload(payload) is payload


def test_validate_payload_accepts_deploy_job():
    payload = make_payload(
        deployed_address=None,
        contract_data={"abi": [{"type": "constructor", "inputs": []}], "bytecode": "0x6080"},
        user_id=42,
    )

    assert validate_payload(payload) is payload


def test_validate_payload_requires_something_to_verify():
    """A job with no address and no contract to deploy has nothing to do"""

    with pytest.raises(InvalidJobError, match="deployed_address or contract_data"):
        validate_payload(make_payload(deployed_address=None))


def test_validate_payload_rejects_missing_keys():
    payload = make_payload()
    del payload["token_name"]

    with pytest.raises(InvalidJobError):
        validate_payload(payload)


def test_validate_payload_rejects_bad_constructor_arguments():
    with pytest.raises(InvalidJobError):
        validate_payload(make_payload(constructor_arguments=[{"nested": "object"}]))


def test_validate_payload_rejects_non_mapping():
    with pytest.raises(InvalidJobError):
        validate_payload(["not", "a", "payload"])


@freeze_time("2026-03-01 12:00:00")
def test_job_records_submission_time():
    job = Job(id=1, payload=make_payload())

    assert job.submitted_at == datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


def test_state_values():
    """States are reported over HTTP by value"""

    assert WorkerState.IDLE == "idle"
    assert JobStatus.QUEUED.value == "queued"
    assert JobStatus.DEPLOYED.value == "deployed"
