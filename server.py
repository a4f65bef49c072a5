"""
HTTP front end for the extraction pipeline.

POST an EPUB to /api/extract and read back newline-delimited JSON messages:
progress notifications followed by one terminal success or error message.
Run with `uvicorn server:app`.
"""

import asyncio
import base64
import json
import logging
import os
from typing import Any, AsyncIterator, Dict

from fastapi import FastAPI, File, HTTPException, UploadFile
from fastapi.responses import StreamingResponse
from starlette.middleware.base import BaseHTTPMiddleware

from epub_extract import ExtractionConfig, load_config, run_extraction_request

logger = logging.getLogger(__name__)

MAX_UPLOAD_MB = int(os.environ.get("EPUBRAW_MAX_UPLOAD_MB", "200"))
MAX_UPLOAD_BYTES = MAX_UPLOAD_MB * 1024 * 1024
NDJSON_MEDIA_TYPE = "application/x-ndjson"

app = FastAPI(title="epubraw")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add conservative security headers to every response."""

    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "SAMEORIGIN"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response


app.add_middleware(SecurityHeadersMiddleware)


def encode_message(message: Dict[str, Any]) -> str:
    """Serialize one protocol message as a JSON line; image bytes become base64."""
    if message.get("status") == "success":
        payload = dict(message["payload"])
        payload["imageAliasTable"] = {
            alias: {
                "bytes": base64.b64encode(record["bytes"]).decode("ascii"),
                "mimeType": record["mimeType"],
            }
            for alias, record in payload["imageAliasTable"].items()
        }
        message = {"status": "success", "payload": payload}
    return json.dumps(message, ensure_ascii=False) + "\n"


async def _message_stream(data: bytes, config: ExtractionConfig) -> AsyncIterator[str]:
    queue: asyncio.Queue = asyncio.Queue()
    task = asyncio.create_task(
        run_extraction_request(data, queue.put_nowait, config=config)
    )
    try:
        while True:
            message = await queue.get()
            yield encode_message(message)
            if message["status"] != "progress":
                break
    finally:
        await task


def _too_large() -> HTTPException:
    return HTTPException(
        status_code=413,
        detail=f"Upload exceeds the {MAX_UPLOAD_BYTES} byte limit",
    )


@app.get("/api/health")
async def health():
    return {"status": "ok"}


@app.post("/api/extract")
async def extract(file: UploadFile = File(...)):
    limit = MAX_UPLOAD_BYTES
    # size is None when the client sent no length for the part
    if file.size is not None and file.size > limit:
        raise _too_large()
    data = await file.read(limit + 1)
    if len(data) > limit:
        raise _too_large()

    config = load_config()
    logger.info("Extracting %s (%d bytes)", file.filename, len(data))
    return StreamingResponse(_message_stream(data, config), media_type=NDJSON_MEDIA_TYPE)
