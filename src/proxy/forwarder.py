"""Request forwarder: one downstream call per inbound request.

The forwarding mode decides how the inbound body is read and re-sent;
the operation decides where it goes. Bodies are relayed as raw bytes.
JSON is only parsed to reject malformed input and to see whether a
streamed response was requested.
"""

import json
import os
from dataclasses import dataclass

import httpx
from fastapi import Request
from starlette.datastructures import UploadFile
from starlette.formparsers import MultiPartException, MultiPartParser

from src.config.settings import get_settings
from src.proxy.client import DownstreamClient
from src.proxy.errors import DownstreamHttpError, MalformedRequest
from src.proxy.routes import ForwardingMode, RouteMatch

JSON_MEDIA_TYPE = "application/json"
BINARY_MEDIA_TYPE = "application/octet-stream"
SSE_MEDIA_TYPE = "text/event-stream"


@dataclass
class ProxyResponse:
    status_code: int
    content: bytes
    media_type: str


@dataclass
class StreamHandle:
    """An open downstream stream plus the client that owns it."""

    response: httpx.Response
    client: DownstreamClient

    @property
    def status_code(self) -> int:
        return self.response.status_code

    @property
    def media_type(self) -> str:
        return self.response.headers.get("content-type", SSE_MEDIA_TYPE)

    async def aclose(self) -> None:
        """Close the downstream response and its client. Safe to call twice."""
        try:
            await self.response.aclose()
        finally:
            await self.client.aclose()


async def forward(
    match: RouteMatch, request: Request, client: DownstreamClient
) -> ProxyResponse | StreamHandle:
    """Issue the downstream call selected by `match` using `client`."""
    mode = match.mode
    operation = match.operation
    path = operation.downstream_path(match.params)
    query = list(request.query_params.multi_items())

    if mode is ForwardingMode.NO_BODY or mode is ForwardingMode.BINARY_DOWNLOAD:
        response = await client.send(operation.method, path, params=query)
        default_media = BINARY_MEDIA_TYPE if mode is ForwardingMode.BINARY_DOWNLOAD else JSON_MEDIA_TYPE
        return _complete(response, default_media)

    if mode is ForwardingMode.MULTIPART_UPLOAD:
        return await _forward_multipart(match, request, client, path)

    raw, payload = await _read_json(request)
    headers = {"Content-Type": JSON_MEDIA_TYPE}

    if mode is ForwardingMode.STREAMING and _wants_stream(payload):
        if os.environ.get("AWS_LAMBDA_FUNCTION_NAME"):
            raise MalformedRequest("Streaming is not supported in Lambda deployments")
        return await _open_stream(client, operation.method, path, raw, headers, query)

    response = await client.send(operation.method, path, content=raw, headers=headers, params=query)
    return _complete(response, JSON_MEDIA_TYPE)


def _complete(response: httpx.Response, default_media: str) -> ProxyResponse:
    media_type = response.headers.get("content-type", default_media)
    if response.status_code >= 400:
        raise DownstreamHttpError(
            response.status_code, response.content, media_type, headers=response.headers
        )
    return ProxyResponse(
        status_code=response.status_code,
        content=response.content,
        media_type=media_type,
    )


async def _open_stream(client, method, path, raw, headers, query) -> StreamHandle:
    """Open a streamed downstream response.

    An error status is read in full and raised before anything is relayed,
    so the caller still gets the downstream's real status line.
    """
    response = await client.send(
        method, path, content=raw, headers=headers, params=query, stream=True
    )
    if response.status_code >= 400:
        try:
            body = await client.read(response)
        finally:
            await response.aclose()
        raise DownstreamHttpError(
            response.status_code,
            body,
            response.headers.get("content-type", JSON_MEDIA_TYPE),
            headers=response.headers,
        )
    return StreamHandle(response=response, client=client)


def _wants_stream(payload) -> bool:
    return isinstance(payload, dict) and payload.get("stream") is True


async def _read_json(request: Request) -> tuple[bytes, object]:
    """Read and validate a JSON body. An empty body is sent as `{}`."""
    limit = get_settings().max_json_bytes
    raw = await _read_body(request, limit)
    if not raw.strip():
        return b"{}", {}
    try:
        return raw, json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedRequest(f"Invalid JSON body: {exc}") from exc


async def _read_body(request: Request, limit: int) -> bytes:
    _check_declared_length(request, limit)
    chunks = []
    total = 0
    async for chunk in request.stream():
        total += len(chunk)
        if total > limit:
            raise MalformedRequest(f"Request body exceeds {limit} bytes")
        chunks.append(chunk)
    return b"".join(chunks)


def _check_declared_length(request: Request, limit: int) -> None:
    declared = request.headers.get("content-length")
    if declared is None:
        return
    try:
        length = int(declared)
    except ValueError as exc:
        raise MalformedRequest("Invalid Content-Length header") from exc
    if length > limit:
        raise MalformedRequest(f"Request body exceeds {limit} bytes")


async def _forward_multipart(
    match: RouteMatch, request: Request, client: DownstreamClient, path: str
) -> ProxyResponse:
    """Decompose a multipart upload and re-encode only the operation's fields.

    The uploaded file stays in Starlette's spooled buffer and is handed to
    httpx as a file object, which streams it out in chunks.
    """
    operation = match.operation
    limit = get_settings().max_upload_bytes

    content_type = request.headers.get("content-type", "")
    if not content_type.lower().startswith("multipart/form-data"):
        raise MalformedRequest("Expected a multipart/form-data body")
    _check_declared_length(request, limit)

    parser = MultiPartParser(request.headers, _capped_stream(request, limit))
    try:
        form = await parser.parse()
    except MultiPartException as exc:
        raise MalformedRequest(f"Invalid multipart body: {exc.message}") from exc

    try:
        upload = form.get(operation.file_field)
        if not isinstance(upload, UploadFile) or not upload.filename:
            raise MalformedRequest(f"Missing '{operation.file_field}' file part")

        data = {}
        for name in operation.form_fields:
            value = form.get(name)
            if not isinstance(value, str) or not value.strip():
                raise MalformedRequest(f"Missing '{name}' field")
            data[name] = value.strip()

        await upload.seek(0)
        files = {
            operation.file_field: (
                upload.filename,
                upload.file,
                upload.content_type or BINARY_MEDIA_TYPE,
            )
        }
        response = await client.send(operation.method, path, data=data, files=files)
    finally:
        await form.close()

    return _complete(response, JSON_MEDIA_TYPE)


async def _capped_stream(request: Request, limit: int):
    """Request body chunks, failing once more than `limit` bytes arrive.

    Raised as MultiPartException so the parser closes any spooled files.
    """
    total = 0
    async for chunk in request.stream():
        total += len(chunk)
        if total > limit:
            raise MultiPartException(f"Upload exceeds {limit} bytes")
        yield chunk
