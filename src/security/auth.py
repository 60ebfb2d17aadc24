"""Bearer credential extraction for passthrough requests.

The caller's own OpenAI key arrives in the Authorization header and is
handed, unchanged, to the downstream client built for that request. The
proxy never stores it and never validates it; the downstream does.
"""

from collections.abc import Mapping

from src.proxy.errors import MissingCredential

AUTHORIZATION_HEADER = "authorization"
BEARER_SCHEME = "bearer"


def extract_bearer_token(headers: Mapping[str, str]) -> str:
    """Return the token from an `Authorization: Bearer <token>` header.

    The scheme is matched case-insensitively and the token is stripped of
    surrounding whitespace. Raises MissingCredential when the header is
    absent, uses another scheme, or carries an empty token. The error
    message never includes the header value.
    """
    value = _get_header(headers, AUTHORIZATION_HEADER)
    if value is None:
        raise MissingCredential()

    scheme, _, token = value.strip().partition(" ")
    if scheme.lower() != BEARER_SCHEME:
        raise MissingCredential()

    token = token.strip()
    if not token:
        raise MissingCredential()
    return token


def _get_header(headers: Mapping[str, str], name: str) -> str | None:
    # Starlette Headers are case-insensitive already; plain dicts are not.
    value = headers.get(name)
    if value is not None:
        return value
    for key, candidate in headers.items():
        if key.lower() == name:
            return candidate
    return None
