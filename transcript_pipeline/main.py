"""Worker process entry point.

Runs the TranscriptionWorker polling loop alongside a small HTTP server
with a health probe and the internal push trigger. Handles SIGTERM and
SIGINT for graceful shutdown.
"""

import asyncio
import hmac
import json
import logging
import os
import signal
from asyncio import StreamReader, StreamWriter
from collections.abc import Awaitable, Callable
from http import HTTPStatus
from typing import Any

from transcript_pipeline.config import PipelineConfig
from transcript_pipeline.observability.audit import DatabaseAuditSink
from transcript_pipeline.observability.logger import configure_logging
from transcript_pipeline.pipeline import TranscriptionPipeline
from transcript_pipeline.queue.worker import TranscriptionWorker
from transcript_pipeline.storage.audio_client import AudioClient
from transcript_pipeline.storage.database import (
    create_engine,
    create_session_factory,
    init_models,
)
from transcript_pipeline.storage.jobs import JobStore
from transcript_pipeline.storage.object_store import ObjectStore
from transcript_pipeline.storage.runs import RunStore
from transcript_pipeline.utils.errors import (
    AuthorizationError,
    PipelineError,
    RequestTooLargeError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Leaves a buffer before the platform's SIGKILL at 30s.
SHUTDOWN_TIMEOUT_SECONDS = 25
HEALTH_PATH = "/healthz"
TRIGGER_PATH = "/internal/tasks/transcribe"
SECRET_HEADER = "x-internal-secret"
MAX_BODY_BYTES = 64 * 1024

Handler = Callable[[StreamReader, StreamWriter], Awaitable[None]]


def verify_internal_secret(provided: str | None, expected: str) -> None:
    """Raise AuthorizationError unless ``provided`` matches the shared secret."""
    if not expected:
        raise AuthorizationError(
            "INTERNAL_TASK_SECRET is not configured", status_code=500
        )
    if not provided or not hmac.compare_digest(provided, expected):
        raise AuthorizationError("Invalid internal secret")


async def handle_request(
    method: str,
    path: str,
    headers: dict[str, str],
    body: bytes,
    worker: TranscriptionWorker,
    internal_secret: str,
) -> tuple[int, dict[str, Any]]:
    """Route one HTTP request. Returns (status code, JSON body)."""
    if path == HEALTH_PATH and method == "GET":
        return 200, {"ok": True, "worker": worker.status()}
    if path != TRIGGER_PATH:
        return 404, {"error": "not found"}
    if method != "POST":
        return 405, {"error": "method not allowed"}

    try:
        verify_internal_secret(headers.get(SECRET_HEADER), internal_secret)
        try:
            payload = json.loads(body or b"{}")
        except ValueError as exc:
            raise ValidationError("Request body must be JSON") from exc
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")
        run_id = payload.get("run_id")
        if not run_id or not isinstance(run_id, str):
            raise ValidationError("run_id is required", field="run_id")
        job_id = payload.get("job_id")

        result = await worker.trigger(run_id, job_id=job_id)
    except PipelineError as exc:
        logger.warning("Trigger rejected: %s", exc, extra={"error": str(exc)})
        return exc.status_code, {"error": str(exc)}

    return 200, {
        "ok": True,
        "skipped": result.skipped,
        "reason": result.reason,
        "job": result.job,
        "run": result.run,
    }


async def _read_request(
    reader: StreamReader,
) -> tuple[str, str, dict[str, str], bytes]:
    request_line = (await reader.readline()).decode("latin-1").strip()
    parts = request_line.split(" ")
    method = parts[0].upper() if parts else ""
    path = parts[1].split("?", 1)[0] if len(parts) > 1 else "/"

    headers: dict[str, str] = {}
    while True:
        line = await reader.readline()
        if line in (b"\r\n", b"\n", b""):
            break
        name, _, value = line.decode("latin-1").partition(":")
        headers[name.strip().lower()] = value.strip()

    length = int(headers.get("content-length", "0") or 0)
    if length > MAX_BODY_BYTES:
        raise RequestTooLargeError(
            f"Request body of {length} bytes exceeds {MAX_BODY_BYTES} bytes"
        )
    body = await reader.readexactly(length) if length > 0 else b""
    return method, path, headers, body


def _make_handler(worker: TranscriptionWorker, internal_secret: str) -> Handler:
    async def _handler(reader: StreamReader, writer: StreamWriter) -> None:
        try:
            method, path, headers, body = await _read_request(reader)
            status, payload = await handle_request(
                method, path, headers, body, worker, internal_secret
            )
        except RequestTooLargeError as exc:
            status, payload = exc.status_code, {"error": str(exc)}
        except (asyncio.IncompleteReadError, ValueError):
            status, payload = 400, {"error": "malformed request"}
        except Exception:
            logger.error("Unhandled error serving request", exc_info=True)
            status, payload = 500, {"error": "internal error"}

        data = json.dumps(payload, default=str).encode()
        head = (
            f"HTTP/1.1 {status} {HTTPStatus(status).phrase}\r\n"
            "Content-Type: application/json\r\n"
            f"Content-Length: {len(data)}\r\n"
            "Connection: close\r\n"
            "\r\n"
        )
        writer.write(head.encode() + data)
        await writer.drain()
        writer.close()

    return _handler


async def _run(worker: TranscriptionWorker, internal_secret: str) -> None:
    """Run the HTTP server and the worker until a shutdown signal."""
    port = int(os.environ.get("PORT", "8080"))
    server = await asyncio.start_server(
        _make_handler(worker, internal_secret), "0.0.0.0", port
    )
    logger.info("HTTP server listening on port %d", port)

    worker_task = asyncio.create_task(worker.run())

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _shutdown() -> None:
        logger.info("Received shutdown signal")
        worker.stop()
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _shutdown)

    await stop_event.wait()
    server.close()

    deadline = loop.time() + SHUTDOWN_TIMEOUT_SECONDS
    try:
        await asyncio.wait_for(worker_task, timeout=SHUTDOWN_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.warning(
            "Worker did not stop within %ss, cancelled", SHUTDOWN_TIMEOUT_SECONDS
        )
    remaining = await worker.drain(timeout=max(deadline - loop.time(), 0.0))
    if remaining:
        logger.warning("Shutting down with %d jobs still in flight", remaining)
    await server.wait_closed()


async def _serve(config: PipelineConfig) -> None:
    engine = create_engine(config.database_url)
    await init_models(engine)
    session_factory = create_session_factory(engine)

    runs = RunStore(session_factory)
    jobs = JobStore(session_factory)
    audio_client = AudioClient(internal_secret=config.internal_task_secret or None)
    pipeline = TranscriptionPipeline(
        runs,
        jobs,
        audio_client,
        ObjectStore(),
        audit=DatabaseAuditSink(session_factory),
        config=config,
    )
    worker = TranscriptionWorker(
        pipeline,
        jobs,
        runs,
        retry_policy=config.retry_policy,
        poll_interval=config.poll_interval_seconds,
        batch_size=config.batch_size,
    )
    try:
        await _run(worker, config.internal_task_secret)
    finally:
        await audio_client.close()
        await engine.dispose()


def main() -> None:
    """Start the transcription worker process."""
    configure_logging()
    logger.info("Transcription worker starting")
    asyncio.run(_serve(PipelineConfig.from_env()))


if __name__ == "__main__":
    main()
