"""Route table and classifier.

Every inbound (method, path) the proxy accepts is listed once in
ROUTE_TABLE, paired with a forwarding mode and the downstream operation
it maps to. Matching is segment by segment: literal segments must be
equal, `{param}` segments capture any non-empty segment. When several
templates match, the one with a literal at the first position where they
differ wins, so `/v1/threads/runs` is never captured as a thread id.
"""

import enum
import re
from dataclasses import dataclass, field
from urllib.parse import quote

from src.proxy.errors import UnsupportedRoute

_PARAM_RE = re.compile(r"^\{([A-Za-z_][A-Za-z0-9_]*)\}$")


class ForwardingMode(enum.Enum):
    JSON_ECHO = "json-echo"
    STREAMING = "streaming"
    MULTIPART_UPLOAD = "multipart-upload"
    BINARY_DOWNLOAD = "binary-download"
    NO_BODY = "no-body"


@dataclass(frozen=True)
class Operation:
    """Downstream operation selector.

    `path` is relative to the configured `{base_url}/{api_version}` root and
    uses the same `{param}` names as the inbound template.
    """

    name: str
    method: str
    path: str
    beta: bool = False
    file_field: str = ""
    form_fields: tuple[str, ...] = ()

    def downstream_path(self, params: dict[str, str]) -> str:
        """Substitute bound path parameters, URL-quoting each value."""
        return self.path.format(**{k: quote(v, safe="") for k, v in params.items()})


@dataclass(frozen=True)
class RouteEntry:
    method: str
    template: str
    mode: ForwardingMode
    operation: Operation
    segments: tuple[str, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "segments", _split(self.template))

    @property
    def is_health(self) -> bool:
        return self.operation.name == HEALTH

    def match(self, segments: tuple[str, ...]) -> dict[str, str] | None:
        """Bound parameters if `segments` fit this template, else None."""
        if len(segments) != len(self.segments):
            return None
        params: dict[str, str] = {}
        for pattern, actual in zip(self.segments, segments):
            name = _param_name(pattern)
            if name is None:
                if pattern != actual:
                    return None
            else:
                params[name] = actual
        return params

    def literal_mask(self) -> tuple[bool, ...]:
        return tuple(_param_name(s) is None for s in self.segments)


@dataclass(frozen=True)
class RouteMatch:
    entry: RouteEntry
    params: dict[str, str]

    @property
    def mode(self) -> ForwardingMode:
        return self.entry.mode

    @property
    def operation(self) -> Operation:
        return self.entry.operation


class RouteTable:
    """Immutable set of routes. Duplicate (method, template) pairs are rejected."""

    def __init__(self, entries: list[RouteEntry]):
        seen: set[tuple[str, str]] = set()
        for entry in entries:
            key = (entry.method.upper(), entry.template)
            if key in seen:
                raise ValueError(f"Duplicate route: {key[0]} {key[1]}")
            seen.add(key)
        self._entries: tuple[RouteEntry, ...] = tuple(entries)

    def __iter__(self):
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def classify(self, method: str, path: str) -> RouteMatch:
        """Resolve a request to its route. Raises UnsupportedRoute on no match."""
        method = method.upper()
        segments = _split(path)

        best: RouteMatch | None = None
        best_mask: tuple[bool, ...] = ()
        for entry in self._entries:
            if entry.method != method:
                continue
            params = entry.match(segments)
            if params is None:
                continue
            # Tuples of bools compare position by position: a literal at
            # the first differing segment outranks a capture there.
            mask = entry.literal_mask()
            if best is None or mask > best_mask:
                best, best_mask = RouteMatch(entry=entry, params=params), mask

        if best is None:
            raise UnsupportedRoute()
        return best


def _split(path: str) -> tuple[str, ...]:
    path = path.split("?", 1)[0]
    return tuple(s for s in path.split("/") if s)


def _param_name(segment: str) -> str | None:
    m = _PARAM_RE.match(segment)
    return m.group(1) if m else None


# --- Route table ---

HEALTH = "health"
HEALTH_OPERATION = Operation(name=HEALTH, method="GET", path="")


def _route(method: str, template: str, mode: ForwardingMode, name: str,
           *, beta: bool = False, file_field: str = "", form_fields: tuple[str, ...] = ()) -> RouteEntry:
    """Build an entry whose downstream path mirrors the inbound one minus `/v1`."""
    downstream = template.removeprefix("/v1/")
    return RouteEntry(
        method=method,
        template=template,
        mode=mode,
        operation=Operation(
            name=name,
            method=method,
            path=downstream,
            beta=beta,
            file_field=file_field,
            form_fields=form_fields,
        ),
    )


_J = ForwardingMode.JSON_ECHO
_S = ForwardingMode.STREAMING
_N = ForwardingMode.NO_BODY

ROUTE_TABLE = RouteTable([
    # Health
    RouteEntry("GET", "/", _N, HEALTH_OPERATION),
    RouteEntry("GET", "/health", _N, HEALTH_OPERATION),

    # Completions
    _route("POST", "/v1/chat/completions", _S, "create-chat-completion"),
    _route("POST", "/v1/completions", _S, "create-completion"),

    # Embeddings
    _route("POST", "/v1/embeddings", _J, "create-embedding"),

    # Models
    _route("GET", "/v1/models", _N, "list-models"),
    _route("GET", "/v1/models/{model_id}", _N, "get-model"),

    # Images
    _route("POST", "/v1/images/generations", _J, "create-image"),

    # Assistants (beta)
    _route("POST", "/v1/assistants", _J, "create-assistant", beta=True),
    _route("GET", "/v1/assistants", _N, "list-assistants", beta=True),
    _route("GET", "/v1/assistants/{assistant_id}", _N, "get-assistant", beta=True),
    _route("POST", "/v1/assistants/{assistant_id}", _J, "modify-assistant", beta=True),
    _route("DELETE", "/v1/assistants/{assistant_id}", _N, "delete-assistant", beta=True),

    # Threads (beta)
    _route("POST", "/v1/threads", _J, "create-thread", beta=True),
    _route("GET", "/v1/threads/{thread_id}", _N, "get-thread", beta=True),
    _route("POST", "/v1/threads/{thread_id}", _J, "modify-thread", beta=True),
    _route("DELETE", "/v1/threads/{thread_id}", _N, "delete-thread", beta=True),

    # Messages (beta)
    _route("POST", "/v1/threads/{thread_id}/messages", _J, "create-thread-message", beta=True),
    _route("GET", "/v1/threads/{thread_id}/messages", _N, "list-thread-messages", beta=True),
    _route("GET", "/v1/threads/{thread_id}/messages/{message_id}", _N,
           "get-thread-message", beta=True),
    _route("POST", "/v1/threads/{thread_id}/messages/{message_id}", _J,
           "modify-thread-message", beta=True),
    _route("DELETE", "/v1/threads/{thread_id}/messages/{message_id}", _N,
           "delete-thread-message", beta=True),

    # Runs (beta)
    _route("POST", "/v1/threads/{thread_id}/runs", _J, "create-run", beta=True),
    _route("GET", "/v1/threads/{thread_id}/runs", _N, "list-runs", beta=True),
    _route("GET", "/v1/threads/{thread_id}/runs/{run_id}", _N, "get-run", beta=True),
    _route("POST", "/v1/threads/{thread_id}/runs/{run_id}", _J, "modify-run", beta=True),
    _route("POST", "/v1/threads/{thread_id}/runs/{run_id}/cancel", _N, "cancel-run", beta=True),
    _route("POST", "/v1/threads/{thread_id}/runs/{run_id}/submit_tool_outputs", _J,
           "submit-tool-outputs", beta=True),
    _route("POST", "/v1/threads/runs", _J, "create-thread-and-run", beta=True),

    # Files
    _route("POST", "/v1/files", ForwardingMode.MULTIPART_UPLOAD, "upload-file",
           file_field="file", form_fields=("purpose",)),
    _route("GET", "/v1/files", _N, "list-files"),
    _route("GET", "/v1/files/{file_id}", _N, "get-file"),
    _route("DELETE", "/v1/files/{file_id}", _N, "delete-file"),
    _route("GET", "/v1/files/{file_id}/content", ForwardingMode.BINARY_DOWNLOAD,
           "get-file-content"),

    # Responses
    _route("POST", "/v1/responses", _S, "create-response"),
    _route("GET", "/v1/responses/{response_id}", _N, "get-response"),
    _route("DELETE", "/v1/responses/{response_id}", _N, "delete-response"),
    _route("POST", "/v1/responses/{response_id}/cancel", _N, "cancel-response"),
])


def classify(method: str, path: str) -> RouteMatch:
    """Classify against the process-wide route table."""
    return ROUTE_TABLE.classify(method, path)
