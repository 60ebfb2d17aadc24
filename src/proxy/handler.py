"""Proxy dispatcher: wires classification, credentials, forwarding and relay.

Pipeline: Classify -> (Health short-circuit) -> Credential -> Scoped client -> Forward -> Relay | Respond

Any ProxyError raised along the way is translated into a caller-facing
response; nothing is retried.
"""

from fastapi import Request
from fastapi.responses import PlainTextResponse, Response, StreamingResponse
from starlette.background import BackgroundTask

from src.config.settings import get_settings
from src.logging.audit import (
    RequestTimer,
    generate_request_id,
    get_audit_logger,
    request_id_var,
)
from src.proxy.client import create_downstream_client
from src.proxy.errors import ProxyError, error_response
from src.proxy.forwarder import StreamHandle, forward
from src.proxy.relay import relay_stream
from src.proxy.routes import RouteMatch, classify
from src.security.auth import extract_bearer_token

HEALTH_BODY = "OpenAI API Server is running"


async def dispatch(request: Request) -> Response:
    """Handle one inbound request end to end."""
    logger = get_audit_logger()
    rid = generate_request_id()
    request_id_var.set(rid)
    headers = {"X-Request-Id": rid}

    match: RouteMatch | None = None
    try:
        match = classify(request.method, request.url.path)
        if match.entry.is_health:
            return PlainTextResponse(HEALTH_BODY, headers=headers)

        credential = extract_bearer_token(request.headers)
        client = create_downstream_client(credential, beta=match.operation.beta)

        with RequestTimer() as timer:
            try:
                result = await forward(match, request, client)
            except BaseException:
                await client.aclose()
                raise

        if isinstance(result, StreamHandle):
            logger.info(
                "Stream opened",
                extra={"audit_data": _audit_fields(request, match, result.status_code, timer, stream=True)},
            )
            return StreamingResponse(
                relay_stream(result, buffer_size=get_settings().stream_buffer_chunks),
                status_code=result.status_code,
                media_type=result.media_type,
                headers={**headers, "Cache-Control": "no-cache"},
                background=BackgroundTask(result.aclose),
            )

        await client.aclose()
        logger.info(
            "Request proxied",
            extra={"audit_data": _audit_fields(request, match, result.status_code, timer)},
        )
        return Response(
            content=result.content,
            status_code=result.status_code,
            media_type=result.media_type,
            headers=headers,
        )

    except ProxyError as exc:
        logger.warning(
            "Request failed",
            extra={"audit_data": {
                "method": request.method,
                "path": request.url.path,
                "operation": match.operation.name if match else None,
                "status": exc.status_code,
                "error_code": exc.code,
            }},
        )
        return error_response(exc, headers=headers)


def _audit_fields(request: Request, match: RouteMatch, status: int, timer: RequestTimer,
                  stream: bool = False) -> dict:
    return {
        "method": request.method,
        "operation": match.operation.name,
        "path_params": match.params,
        "upstream_status": status,
        "latency_ms": timer.elapsed_ms,
        "stream": stream,
    }
