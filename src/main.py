"""OpenAI Passthrough Proxy — FastAPI application entry point.

A stateless proxy that forwards OpenAI API requests using the caller's
own bearer token. Nothing the caller sends is stored.
"""

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from src.config.settings import get_settings
from src.logging.audit import get_audit_logger, setup_logging
from src.proxy.handler import dispatch
from src.proxy.routes import ROUTE_TABLE

VERSION = "1.0.0"

PROXY_METHODS = ["GET", "POST", "DELETE", "PUT", "PATCH", "HEAD", "OPTIONS"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle hooks."""
    setup_logging()
    get_audit_logger().info(
        "Proxy started",
        extra={"audit_data": {
            "upstream": get_settings().upstream_root,
            "routes": len(ROUTE_TABLE),
        }},
    )
    yield
    get_audit_logger().info("Proxy stopped")


app = FastAPI(
    title="OpenAI Passthrough Proxy",
    description="Stateless passthrough proxy for the OpenAI API",
    version=VERSION,
    lifespan=lifespan,
    # Every path belongs to the route table, including these.
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins_list,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
async def proxy(request: Request) -> Response:
    return await dispatch(request)


def run() -> None:
    """Serve the app with uvicorn using host/port/log level from settings."""
    settings = get_settings()
    uvicorn.run(
        "src.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
