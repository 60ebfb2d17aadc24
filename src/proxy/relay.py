"""Streaming relay between a downstream stream and the caller.

A producer task reads downstream chunks into a bounded queue; the caller
side drains it. When the caller reads slower than the downstream writes
the queue fills, the producer blocks on put(), and the downstream socket
stops being read. At most `buffer_size` chunks sit in memory per stream.

Once the first byte is relayed the status line is fixed at 200, so a
mid-stream failure is reported as a final SSE error event in place of
`[DONE]`. Closing the generator (caller gone) cancels the producer and
closes the downstream response and client.
"""

import asyncio
import json
from collections.abc import AsyncGenerator

import anyio
import httpx

from src.logging.audit import get_audit_logger
from src.proxy.errors import DownstreamTransportError, ProxyError, error_body
from src.proxy.forwarder import StreamHandle

_END = object()


def stream_error_event(exc: ProxyError) -> bytes:
    """Terminal SSE event signalling an abnormal end of stream."""
    return f"data: {json.dumps(error_body(exc))}\n\n".encode()


async def relay_stream(handle: StreamHandle, *, buffer_size: int) -> AsyncGenerator[bytes, None]:
    """Yield downstream chunks in arrival order through a bounded hand-off."""
    logger = get_audit_logger()
    queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, buffer_size))

    async def _pump() -> None:
        try:
            async for chunk in handle.response.aiter_bytes():
                await queue.put(chunk)
        except httpx.TimeoutException:
            await queue.put(DownstreamTransportError(DownstreamTransportError.TIMEOUT))
        except httpx.HTTPError:
            await queue.put(DownstreamTransportError(DownstreamTransportError.UNREACHABLE))
        except Exception:
            logger.exception(
                "Downstream stream raised unexpectedly",
                extra={"audit_data": {"stream": True}},
            )
            await queue.put(DownstreamTransportError(DownstreamTransportError.UNREACHABLE))
        else:
            await queue.put(_END)

    pump = asyncio.create_task(_pump())
    relayed = 0
    try:
        while True:
            item = await queue.get()
            if item is _END:
                logger.info(
                    "Stream completed",
                    extra={"audit_data": {"stream": True, "chunks": relayed}},
                )
                return
            if isinstance(item, ProxyError):
                logger.warning(
                    "Stream terminated by downstream failure",
                    extra={"audit_data": {
                        "stream": True,
                        "chunks": relayed,
                        "error_code": item.code,
                    }},
                )
                yield stream_error_event(item)
                return
            relayed += 1
            yield item
    finally:
        if not pump.done():
            pump.cancel()
            logger.info(
                "Stream closed before completion",
                extra={"audit_data": {"stream": True, "chunks": relayed}},
            )
        # Cleanup must run even inside a cancelled scope.
        with anyio.CancelScope(shield=True):
            await asyncio.gather(pump, return_exceptions=True)
            await handle.aclose()
