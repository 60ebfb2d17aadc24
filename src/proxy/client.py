"""Per-request downstream client.

Each inbound request gets its own httpx.AsyncClient with the caller's
token baked into its default headers. The client is closed when the
request finishes (or, for streams, when the relay ends), so one caller's
credential is never reachable from another caller's request.
"""

import httpx

from src.config.settings import get_settings
from src.proxy.errors import DownstreamTransportError

BETA_HEADER = "OpenAI-Beta"
BETA_ASSISTANTS = "assistants=v2"


class DownstreamClient:
    """Credential-scoped handle to the downstream API. Not shareable."""

    def __init__(
        self,
        credential: str,
        *,
        beta: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        headers = {"Authorization": f"Bearer {credential}"}
        if beta:
            headers[BETA_HEADER] = BETA_ASSISTANTS

        self._client = httpx.AsyncClient(
            base_url=settings.upstream_root + "/",
            headers=headers,
            timeout=httpx.Timeout(
                settings.upstream_timeout, connect=settings.upstream_connect_timeout
            ),
            transport=transport,
        )

    @property
    def is_closed(self) -> bool:
        return self._client.is_closed

    async def send(self, method: str, path: str, *, stream: bool = False, **kwargs) -> httpx.Response:
        """Issue one downstream request. Never retries.

        With stream=True the caller owns the returned response and must
        close it; otherwise the body has already been read.
        """
        request = self._client.build_request(method, path, **kwargs)
        try:
            return await self._client.send(request, stream=stream)
        except httpx.TimeoutException as exc:
            raise DownstreamTransportError(DownstreamTransportError.TIMEOUT) from exc
        except httpx.TransportError as exc:
            raise DownstreamTransportError(DownstreamTransportError.UNREACHABLE) from exc

    async def read(self, response: httpx.Response) -> bytes:
        """Read the rest of a streamed response, mapping transport failures."""
        try:
            return await response.aread()
        except httpx.TimeoutException as exc:
            raise DownstreamTransportError(DownstreamTransportError.TIMEOUT) from exc
        except httpx.TransportError as exc:
            raise DownstreamTransportError(DownstreamTransportError.UNREACHABLE) from exc

    async def aclose(self) -> None:
        if not self._client.is_closed:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.aclose()


def create_downstream_client(credential: str, *, beta: bool = False) -> DownstreamClient:
    """Build a fresh client for one request."""
    return DownstreamClient(credential, beta=beta)
