"""HTTP facade: accepts verification/deployment requests and hands them to the dispatcher."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from deploypool.config import Settings
from deploypool.exception import DeployPoolError
from deploypool.types import ConstructorArgument, JobPayload
from deploypool.utils.logging_config import get_logger
from deploypool.worker.dispatcher import ProcessManager

logger = get_logger(__name__)


class ContractDataModel(BaseModel):
    abi: list[dict]
    bytecode: str


class VerifyContractRequest(BaseModel):
    """Request body. Accepts the camelCase field names existing clients send."""

    model_config = ConfigDict(populate_by_name=True)

    deployed_address: str | None = Field(default=None, alias="deployedAddress")
    constructor_arguments: list[ConstructorArgument] = Field(default_factory=list, alias="constructorArguments")
    template_number: int = Field(default=0, alias="templateNumber")
    custom_contract_path: str | None = Field(default=None, alias="customContractPath")
    token_name: str = Field(alias="tokenName")
    chain_name: str | None = Field(
        default=None,
        validation_alias=AliasChoices("chainName", "network", "chain_name"),
    )
    contract_data: ContractDataModel | None = Field(default=None, alias="contractData")
    user_id: str | int | None = Field(default=None, alias="userId")

    def to_payload(self, default_chain: str | None) -> JobPayload:
        chain_name = self.chain_name or default_chain
        if not chain_name:
            raise HTTPException(status_code=400, detail="chainName is required")

        payload = JobPayload(
            deployed_address=self.deployed_address,
            constructor_arguments=list(self.constructor_arguments),
            template_number=self.template_number,
            token_name=self.token_name,
            chain_name=chain_name,
            custom_contract_path=self.custom_contract_path,
            user_id=self.user_id,
        )
        if self.contract_data is not None:
            payload["contract_data"] = self.contract_data.model_dump()

        return payload


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(HTTPException)
    async def http_exc_handler(request: Request, exc: HTTPException):
        logger.warning("HTTPException path=%s status=%s detail=%r", request.url.path, exc.status_code, exc.detail)
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": str(exc.detail)})

    @app.exception_handler(RequestValidationError)
    async def validation_exc_handler(request: Request, exc: RequestValidationError):
        logger.warning("ValidationError path=%s errors=%s", request.url.path, exc.errors())
        return JSONResponse(
            status_code=422,
            content={"success": False, "error": "Validation error", "details": jsonable_errors(exc)},
        )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [{"loc": list(error["loc"]), "msg": error["msg"]} for error in exc.errors()]


def create_app(dispatcher: ProcessManager, settings: Settings) -> FastAPI:
    """Build the app around an injected dispatcher, which lives as long as the app."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await dispatcher.start()
        logger.info("Contract server started: workers=%s", dispatcher.pool_size)
        try:
            yield
        finally:
            await dispatcher.shutdown()

    app = FastAPI(title="deploypool", lifespan=lifespan)
    app.state.dispatcher = dispatcher

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_credentials=True,
        allow_methods=["GET", "HEAD", "PUT", "PATCH", "POST", "DELETE"],
        allow_headers=["Content-Type", "Authorization"],
    )
    register_error_handlers(app)

    @app.post("/verify-contract")
    async def verify_contract(body: VerifyContractRequest):
        payload = body.to_payload(settings.default_chain)
        logger.info(
            "Received contract verification request: user=%s network=%s address=%s token=%s",
            body.user_id,
            payload["chain_name"],
            body.deployed_address,
            body.token_name,
        )

        handle = dispatcher.submit_job(payload)

        try:
            result = await handle
        except DeployPoolError as err:
            logger.error(
                "Contract job %s failed: user=%s network=%s token=%s error=%s",
                handle.job_id,
                body.user_id,
                payload["chain_name"],
                body.token_name,
                err,
            )
            return JSONResponse(
                status_code=500,
                content={"success": False, "jobId": handle.job_id, "error": str(err)},
            )

        logger.info("Contract job %s completed: %s", handle.job_id, result)

        return {
            "success": result["success"],
            "jobId": handle.job_id,
            "contractAddress": result["deployed_address"],
            "deploymentTx": result["deployment_tx"],
            "network": result["network"],
            "verificationResult": result["verification_result"],
        }

    @app.get("/job/{job_id}")
    async def job_status(job_id: int):
        status = dispatcher.job_status(job_id)
        if status is None:
            raise HTTPException(status_code=404, detail="Job not found")

        return {"jobId": job_id, "state": status.value}

    @app.delete("/job/{job_id}")
    async def cancel_job(job_id: int):
        if not dispatcher.cancel_job(job_id):
            raise HTTPException(status_code=409, detail="Only queued jobs can be cancelled")

        return {"jobId": job_id, "state": "cancelled"}

    @app.get("/health")
    async def health():
        return dispatcher.stats()

    return app
