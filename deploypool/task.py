"""The job a worker runs: deploy a contract if asked to, then verify its source."""

from collections.abc import Awaitable, Callable

from deploypool.chain import ChainClient, Web3ChainClient
from deploypool.config import NetworkConfig, Settings, VerificationPolicy
from deploypool.constants import PHASE_DEPLOYED
from deploypool.exception import DeploymentError, DeployPoolError, InvalidJobError
from deploypool.types import JobPayload, JobResult
from deploypool.utils.logging_config import get_logger
from deploypool.verification import VerificationRequest, Verifier

logger = get_logger(__name__)

type Report = Callable[[str, JobResult], None]

# Any async callable with this shape can run inside a worker
type Task = Callable[[int, JobPayload, Settings, Report], Awaitable[JobResult]]


async def run_deployment_task(
    job_id: int,
    payload: JobPayload,
    settings: Settings,
    report: Report,
    *,
    chain_factory: Callable[[NetworkConfig, str | None], ChainClient] = Web3ChainClient,
    verifier_factory: Callable[[VerificationPolicy], Verifier] = Verifier,
) -> JobResult:
    """Deploy (optionally) and verify one contract.

    @param job_id: The dispatcher's id for this job, for logging
    @param payload: The job payload
    @param settings: Network table and verification policy
    @param report: Called with the partial result once the contract address is known
    @return: The job result. Verification failures appear in `verification_result`;
        deployment failures raise DeploymentError.
    """

    network = settings.network(payload["chain_name"])

    logger.info(
        "Processing job %s: network=%s token=%s template=%s",
        job_id,
        network.name,
        payload["token_name"],
        payload["template_number"],
    )

    constructor_arguments = payload["constructor_arguments"]
    contract_data = payload.get("contract_data")
    deployment_tx = None

    if contract_data:
        try:
            client = chain_factory(network, settings.private_key)
            deployed = await client.deploy_contract(
                contract_data["abi"], contract_data["bytecode"], constructor_arguments
            )
        except DeployPoolError:
            raise
        except Exception as err:
            raise DeploymentError(f"Deployment to {network.name} failed: {err}") from err

        address, deployment_tx = deployed.address, deployed.tx_hash
        logger.info("Job %s deployed %s in %s", job_id, address, deployment_tx)
    else:
        address = payload["deployed_address"]
        if not address:
            raise InvalidJobError("No deployed_address to verify")

    result = JobResult(
        success=True,
        deployed_address=address,
        deployment_tx=deployment_tx,
        network=network.name,
        verification_result=None,
    )
    report(PHASE_DEPLOYED, result)

    if not network.verifies:
        logger.info("No verification API key for %s; skipping verification", network.name)
        return result

    verifier = verifier_factory(settings.verification)
    result["verification_result"] = await verifier.verify(
        VerificationRequest(
            address=address,
            constructor_arguments=constructor_arguments,
            network=network,
            contract_path=payload.get("custom_contract_path"),
        )
    )

    logger.info("Job %s completed: %s", job_id, result)
    return result
