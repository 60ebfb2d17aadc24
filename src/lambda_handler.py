"""AWS Lambda entry point.

Mangum adapts API Gateway events to ASGI so the proxy runs unchanged.
Lifespan is off on Lambda, so logging is configured at import. Streamed
completions are rejected there (see the forwarder): API Gateway buffers
the whole response.
"""

from mangum import Mangum

from src.config.settings import get_settings
from src.logging.audit import setup_logging
from src.main import app

setup_logging()

handler = Mangum(
    app,
    lifespan="off",
    api_gateway_base_path=get_settings().lambda_base_path,
)
