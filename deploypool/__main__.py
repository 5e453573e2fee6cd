"""Command line entrypoint.

    python -m deploypool serve [--host HOST] [--port PORT] [--workers N]
    python -m deploypool submit payload.json [--workers N] [--progress]
"""

import argparse
import asyncio
import contextlib
import dataclasses
import json
import pathlib
import sys

import uvicorn

from deploypool.config import Settings, load_settings
from deploypool.exception import DeployPoolError
from deploypool.monitor import NoOpDispatchMonitor, RichDispatchMonitor
from deploypool.server import create_app
from deploypool.utils.logging_config import configure_logging, get_logger
from deploypool.worker.dispatcher import ProcessManager

logger = get_logger("deploypool")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="deploypool", description="Contract deployment and verification dispatcher")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the HTTP server")
    serve.add_argument("--host", help="Interface to bind")
    serve.add_argument("--port", type=int, help="Port to listen on")
    serve.add_argument("--workers", type=int, help="Worker processes in the pool")

    submit = subparsers.add_parser("submit", help="Run a single job from a JSON payload file")
    submit.add_argument("payload", type=pathlib.Path, help="Path to a JSON job payload")
    submit.add_argument("--workers", type=int, default=1, help="Worker processes in the pool")
    submit.add_argument("--progress", action="store_true", help="Show a progress display")

    return parser.parse_args(argv)


def serve(settings: Settings) -> None:
    dispatcher = ProcessManager(settings)
    app = create_app(dispatcher, settings)

    # uvicorn turns SIGINT/SIGTERM into lifespan shutdown, which stops the pool
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


async def submit(settings: Settings, payload_path: pathlib.Path, progress: bool) -> int:
    payload = json.loads(payload_path.read_text())

    if not payload.get("chain_name"):
        if not settings.default_chain:
            logger.error("No chain_name in %s and no CHAIN_NAME default", payload_path)
            print(json.dumps({"success": False, "error": "chain_name is required"}, indent=2))
            return 1
        payload["chain_name"] = settings.default_chain

    monitor = RichDispatchMonitor() if progress else NoOpDispatchMonitor()
    display = monitor if progress else contextlib.nullcontext()

    with display:
        async with ProcessManager(settings, monitor=monitor) as dispatcher:
            handle = dispatcher.submit_job(payload)
            try:
                result = await handle
            except DeployPoolError as err:
                logger.error("Job %s failed: %s", handle.job_id, err)
                print(json.dumps({"success": False, "error": str(err)}, indent=2))
                return 1

    print(json.dumps(result, indent=2))
    return 0


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    args = parse_args(argv)
    settings = load_settings()

    overrides = {
        key: value
        for key, value in (
            ("pool_size", args.workers),
            ("host", getattr(args, "host", None)),
            ("port", getattr(args, "port", None)),
        )
        if value is not None
    }
    settings = dataclasses.replace(settings, **overrides)

    if args.command == "serve":
        serve(settings)
        return 0

    return asyncio.run(submit(settings, args.payload, args.progress))


if __name__ == "__main__":
    sys.exit(main())
