"""Source verification against a block explorer.

Explorers index freshly deployed contracts with some lag, so verification waits
before its first attempt and retries on a fixed backoff schedule. Exhausting the
retries is reported as a "failed: <reason>" result rather than raised: by the
time we verify, the contract is already deployed.
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from enum import StrEnum

from deploypool.config import NetworkConfig, VerificationPolicy
from deploypool.exception import VerificationError
from deploypool.types import ConstructorArgument
from deploypool.utils.logging_config import get_logger

logger = get_logger(__name__)

VERIFIED_MARKERS = ("successfully verified",)
ALREADY_VERIFIED_MARKERS = ("already verified", "already been verified")

VERIFICATION_SUCCESS = "success"

type Sleep = Callable[[float], Awaitable[None]]


class VerificationOutcome(StrEnum):
    """How one run of the verification tool ended"""

    VERIFIED = "verified"
    ALREADY_VERIFIED = "already_verified"
    FAILED = "failed"


@dataclass
class VerificationAttempt:
    outcome: VerificationOutcome
    message: str

    @property
    def succeeded(self) -> bool:
        return self.outcome in (VerificationOutcome.VERIFIED, VerificationOutcome.ALREADY_VERIFIED)


@dataclass
class VerificationRequest:
    address: str
    constructor_arguments: Sequence[ConstructorArgument]
    network: NetworkConfig
    contract_path: str | None = None


def format_argument(argument: ConstructorArgument) -> str:
    """Render a constructor argument the way the verification tool's CLI reads it."""

    if isinstance(argument, bool):
        return "true" if argument else "false"
    return str(argument)


def build_command(policy: VerificationPolicy, request: VerificationRequest) -> list[str]:
    """Build the verification command as an argument list. No shell is involved,
    so arguments containing whitespace stay single arguments.

    @param policy: Provides the base command
    @param request: What to verify
    @return: The argv list
    """

    argv = [*policy.command, "--network", request.network.verification_network]

    if request.contract_path:
        argv += ["--contract", request.contract_path]

    argv.append(request.address)
    argv.extend(format_argument(argument) for argument in request.constructor_arguments)

    return argv


def classify_output(returncode: int | None, stdout: str, stderr: str) -> VerificationAttempt:
    """Classify the tool's output as verified, already verified, or failed.

    "Already verified" counts regardless of exit status, as the tool exits
    non-zero for it.
    """

    combined = f"{stdout}\n{stderr}"
    lowered = combined.lower()

    if any(marker in lowered for marker in ALREADY_VERIFIED_MARKERS):
        return VerificationAttempt(VerificationOutcome.ALREADY_VERIFIED, "already verified")

    if returncode == 0 and any(marker in lowered for marker in VERIFIED_MARKERS):
        return VerificationAttempt(VerificationOutcome.VERIFIED, "verified")

    lines = [line.strip() for line in combined.splitlines() if line.strip()]
    message = lines[-1] if lines else f"verification exited with status {returncode}"

    return VerificationAttempt(VerificationOutcome.FAILED, message)


class Verifier:
    """Runs the verification tool with the configured retry policy."""

    def __init__(self, policy: VerificationPolicy, sleep: Sleep = asyncio.sleep) -> None:
        self.policy = policy
        self.sleep = sleep

    async def run_command(self, argv: list[str]) -> VerificationAttempt:
        """Run the tool once, killing it if it exceeds the command timeout."""

        logger.info("Running verification: %s", argv)

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.policy.cwd,
            )
        except OSError as err:
            raise VerificationError(f"could not start verification tool: {err}") from err

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.policy.command_timeout)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            raise VerificationError(
                f"verification tool timed out after {self.policy.command_timeout:g}s"
            ) from None

        stderr_text = stderr.decode(errors="replace")
        if stderr_text.strip():
            logger.warning("Verification stderr: %s", stderr_text.strip())

        return classify_output(proc.returncode, stdout.decode(errors="replace"), stderr_text)

    async def attempt(self, request: VerificationRequest) -> VerificationAttempt:
        try:
            return await self.run_command(build_command(self.policy, request))
        except VerificationError as err:
            return VerificationAttempt(VerificationOutcome.FAILED, str(err))

    async def verify(self, request: VerificationRequest) -> str:
        """Verify a deployed contract, waiting out the explorer's indexing lag.

        @param request: What to verify
        @return: "success", or "failed: <reason of the last attempt>"
        """

        logger.info(
            "Waiting %gs for %s to propagate before verification",
            self.policy.initial_delay,
            request.address,
        )
        await self.sleep(self.policy.initial_delay)

        attempt = await self.attempt(request)

        for delay in self.policy.retry_delays:
            if attempt.succeeded:
                break

            logger.info(
                "Verification of %s failed (%s); retrying in %gs",
                request.address,
                attempt.message,
                delay,
            )
            await self.sleep(delay)
            attempt = await self.attempt(request)

        if attempt.succeeded:
            logger.info("Verified %s on %s (%s)", request.address, request.network.name, attempt.outcome)
            return VERIFICATION_SUCCESS

        logger.error("Verification of %s gave up: %s", request.address, attempt.message)
        return f"failed: {attempt.message}"
