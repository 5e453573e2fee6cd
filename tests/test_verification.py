"""Tests for building, classifying, and retrying source verification"""

import asyncio
import sys

from conftest import make_networks

from deploypool.config import VerificationPolicy
from deploypool.exception import VerificationError
from deploypool.verification import (
    VERIFICATION_SUCCESS,
    VerificationAttempt,
    VerificationOutcome,
    VerificationRequest,
    Verifier,
    build_command,
    classify_output,
)

ADDRESS = "0x" + "cd" * 20


def make_request(**overrides) -> VerificationRequest:
    options = {
        "address": ADDRESS,
        "constructor_arguments": ["My Token", "MTK", 18, False],
        "network": make_networks()["local"],
    }
    options.update(overrides)
    return VerificationRequest(**options)


class ScriptedVerifier(Verifier):
    """A verifier whose tool runs are scripted, and whose sleeps are recorded."""

    def __init__(self, policy: VerificationPolicy, attempts: list[VerificationAttempt | Exception]):
        self.delays: list[float] = []
        self.commands: list[list[str]] = []
        self.attempts = list(attempts)

        async def record_sleep(seconds: float) -> None:
            self.delays.append(seconds)

        super().__init__(policy, sleep=record_sleep)

    async def run_command(self, argv: list[str]) -> VerificationAttempt:
        self.commands.append(argv)
        attempt = self.attempts.pop(0)
        if isinstance(attempt, Exception):
            raise attempt
        return attempt


FAILED = VerificationAttempt(VerificationOutcome.FAILED, "Contract source code not found")
VERIFIED = VerificationAttempt(VerificationOutcome.VERIFIED, "verified")
ALREADY = VerificationAttempt(VerificationOutcome.ALREADY_VERIFIED, "already verified")


def test_build_command_keeps_arguments_with_whitespace_whole():
    """No shell: 'My Token' stays one argument"""

    argv = build_command(VerificationPolicy(), make_request())

    assert argv == [
        "npx",
        "hardhat",
        "verify",
        "--network",
        "localhost",
        ADDRESS,
        "My Token",
        "MTK",
        "18",
        "false",
    ]


def test_build_command_with_contract_path():
    argv = build_command(
        VerificationPolicy(command=("hardhat-verify",)),
        make_request(constructor_arguments=[], contract_path="contracts/Token.sol:Token"),
    )

    assert argv == [
        "hardhat-verify",
        "--network",
        "localhost",
        "--contract",
        "contracts/Token.sol:Token",
        ADDRESS,
    ]


def test_classify_successful_verification():
    attempt = classify_output(0, "Successfully verified contract Token on the block explorer.\n", "")

    assert attempt.outcome == VerificationOutcome.VERIFIED
    assert attempt.succeeded


def test_classify_already_verified_ignores_exit_status():
    """The tool exits non-zero for an already-verified contract; that still counts"""

    attempt = classify_output(1, "", "Error: Contract source code already verified\n")

    assert attempt.outcome == VerificationOutcome.ALREADY_VERIFIED
    assert attempt.succeeded

    attempt = classify_output(1, "The contract 0xabc has already been verified.", "")
    assert attempt.succeeded


def test_classify_failure_uses_last_output_line():
    attempt = classify_output(1, "Verifying...\n", "Error: Does not have bytecode\n  \n")

    assert attempt.outcome == VerificationOutcome.FAILED
    assert attempt.message == "Error: Does not have bytecode"
    assert not attempt.succeeded


def test_classify_silent_failure():
    attempt = classify_output(2, "", "")

    assert attempt.message == "verification exited with status 2"


def test_classify_success_text_with_failing_status_is_a_failure():
    attempt = classify_output(1, "Successfully verified contract", "but then something broke")

    assert attempt.outcome == VerificationOutcome.FAILED


def test_verify_waits_then_succeeds_first_time():
    verifier = ScriptedVerifier(VerificationPolicy(), [VERIFIED])

    result = asyncio.run(verifier.verify(make_request()))

    assert result == VERIFICATION_SUCCESS
    assert verifier.delays == [30.0]
    assert len(verifier.commands) == 1


def test_verify_retries_on_backoff_schedule():
    """Four failures, then success on the final attempt"""

    verifier = ScriptedVerifier(VerificationPolicy(), [FAILED, FAILED, FAILED, FAILED, VERIFIED])

    result = asyncio.run(verifier.verify(make_request()))

    assert result == VERIFICATION_SUCCESS
    assert verifier.delays == [30.0, 30.0, 45.0, 60.0, 90.0]
    assert len(verifier.commands) == 5


def test_verify_gives_up_after_five_attempts():
    verifier = ScriptedVerifier(VerificationPolicy(), [FAILED] * 5)

    result = asyncio.run(verifier.verify(make_request()))

    assert result == "failed: Contract source code not found"
    assert len(verifier.commands) == 5
    assert verifier.attempts == []


def test_verify_counts_already_verified_as_success():
    verifier = ScriptedVerifier(VerificationPolicy(), [FAILED, ALREADY])

    result = asyncio.run(verifier.verify(make_request()))

    assert result == VERIFICATION_SUCCESS
    assert verifier.delays == [30.0, 30.0]


def test_verify_treats_tool_errors_as_failed_attempts():
    verifier = ScriptedVerifier(
        VerificationPolicy(retry_delays=(1.0,)),
        [VerificationError("verification tool timed out after 180s")] * 2,
    )

    result = asyncio.run(verifier.verify(make_request()))

    assert result == "failed: verification tool timed out after 180s"


def python_tool(script: str, timeout: float = 10.0) -> VerificationPolicy:
    """A policy whose 'verification tool' is a python one-liner; extra argv is ignored."""

    return VerificationPolicy(
        initial_delay=0.0,
        retry_delays=(),
        command=(sys.executable, "-c", script),
        command_timeout=timeout,
    )


def test_run_command_classifies_real_output():
    verifier = Verifier(python_tool("print('Successfully verified contract Token')"))

    attempt = asyncio.run(verifier.attempt(make_request()))

    assert attempt.outcome == VerificationOutcome.VERIFIED


def test_run_command_kills_slow_tool():
    verifier = Verifier(python_tool("import time; time.sleep(30)", timeout=0.5))

    attempt = asyncio.run(verifier.attempt(make_request()))

    assert attempt.outcome == VerificationOutcome.FAILED
    assert "timed out" in attempt.message


def test_run_command_reports_missing_tool():
    policy = VerificationPolicy(command=("/nonexistent/verify-tool",), command_timeout=5.0)

    attempt = asyncio.run(Verifier(policy).attempt(make_request()))

    assert attempt.outcome == VerificationOutcome.FAILED
    assert "could not start" in attempt.message
