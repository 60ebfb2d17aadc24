"""Proxy error taxonomy and its translation into caller-facing responses.

Errors are raised where they happen (credential extraction, route
classification, body parsing, the downstream call) and translated once,
in the dispatcher. Downstream HTTP errors are passed through untouched so
OpenAI client libraries see the provider's own error envelope.
"""

from collections.abc import Mapping

from fastapi.responses import JSONResponse, Response

# Downstream response headers callers need to honour rate limits.
PASSTHROUGH_HEADERS = ("retry-after", "retry-after-ms")
PASSTHROUGH_PREFIXES = ("x-ratelimit-",)


class ProxyError(Exception):
    """Base class for every failure the dispatcher knows how to translate."""

    status_code: int = 500
    code: str = "proxy_error"
    error_type: str = "invalid_request_error"
    message: str = "proxy error"

    def __init__(self, message: str | None = None):
        if message is not None:
            self.message = message
        super().__init__(self.message)


class MissingCredential(ProxyError):
    status_code = 401
    code = "missing_credential"
    message = "missing or malformed Authorization header"


class UnsupportedRoute(ProxyError):
    status_code = 404
    code = "unsupported_route"
    message = "no such route"


class MalformedRequest(ProxyError):
    status_code = 400
    code = "malformed_request"
    message = "malformed request"


class DownstreamHttpError(ProxyError):
    """The downstream answered with a non-success status."""

    def __init__(self, status: int, body: bytes, media_type: str | None = None,
                 headers: Mapping[str, str] | None = None):
        self.status_code = status
        self.body = body
        self.media_type = media_type or "application/json"
        self.headers = passthrough_headers(headers or {})
        super().__init__(f"downstream returned HTTP {status}")


class DownstreamTransportError(ProxyError):
    """The downstream could not be reached or did not answer in time."""

    UNREACHABLE = "unreachable"
    TIMEOUT = "timeout"

    error_type = "upstream_error"

    def __init__(self, kind: str):
        if kind not in (self.UNREACHABLE, self.TIMEOUT):
            raise ValueError(f"Unknown transport error kind: {kind}")
        self.kind = kind
        if kind == self.TIMEOUT:
            self.status_code = 504
            self.code = "upstream_timeout"
        else:
            self.status_code = 502
            self.code = "upstream_unreachable"
        super().__init__(f"upstream {kind}")


def passthrough_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Subset of downstream headers relayed with an error status."""
    return {
        name.lower(): value
        for name, value in headers.items()
        if name.lower() in PASSTHROUGH_HEADERS or name.lower().startswith(PASSTHROUGH_PREFIXES)
    }


def error_body(exc: ProxyError) -> dict:
    """OpenAI-style error envelope for proxy-originated failures."""
    return {
        "error": {
            "message": exc.message,
            "type": exc.error_type,
            "code": exc.code,
        }
    }


def error_response(exc: ProxyError, headers: dict[str, str] | None = None) -> Response:
    """Translate a ProxyError into the response returned to the caller."""
    if isinstance(exc, DownstreamHttpError):
        return Response(
            content=exc.body,
            status_code=exc.status_code,
            media_type=exc.media_type,
            headers={**exc.headers, **(headers or {})},
        )

    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc),
        headers=headers,
    )
