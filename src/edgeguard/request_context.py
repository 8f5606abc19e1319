#!/usr/bin/env python3
"""
Request, identity and response descriptors exchanged with the gateway.

The gateway never talks to a web framework directly. Whatever sits in front
of it (the bundled asyncio proxy, a WSGI/ASGI adapter, a test) converts its
native request into a RequestDescriptor and renders GatewayResponse back.
"""

import ipaddress
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union
from urllib.parse import urlsplit

from .errors import RequestParseError


MAX_BODY_SCAN_BYTES = 1024 * 1024  # 1MB

SINGLE_DOT_SEGMENTS = ('.', '%2e')
DOUBLE_DOT_SEGMENTS = ('..', '.%2e', '%2e.', '%2e%2e')


class Headers:
    """
    Case-insensitive header mapping preserving the first-seen spelling.

    Later values for the same header replace earlier ones.
    """

    def __init__(self, initial: Optional[Union[Mapping[str, str], Iterable[Tuple[str, str]]]] = None):
        self._items: Dict[str, Tuple[str, str]] = {}
        if initial:
            pairs = initial.items() if hasattr(initial, 'items') else initial
            for name, value in pairs:
                self.set(name, value)

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        item = self._items.get(name.lower())
        return item[1] if item else default

    def set(self, name: str, value) -> None:
        key = name.lower()
        original = self._items.get(key, (name, ''))[0]
        self._items[key] = (original, str(value))

    def update(self, other: Mapping[str, str]) -> None:
        for name, value in other.items():
            self.set(name, value)

    def remove(self, name: str) -> None:
        self._items.pop(name.lower(), None)

    def items(self):
        return [(name, value) for name, value in self._items.values()]

    def to_dict(self) -> Dict[str, str]:
        return dict(self.items())

    def __contains__(self, name) -> bool:
        return isinstance(name, str) and name.lower() in self._items

    def __getitem__(self, name: str) -> str:
        item = self._items.get(name.lower())
        if item is None:
            raise KeyError(name)
        return item[1]

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"Headers({self.to_dict()!r})"


@dataclass(frozen=True)
class Identity:
    """Authenticated identity supplied by the upstream auth collaborator."""

    id: str
    role: str = 'user'

    @property
    def is_admin(self) -> bool:
        return self.role == 'admin'

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> Optional['Identity']:
        if not data or not data.get('id'):
            return None
        return cls(id=str(data['id']), role=str(data.get('role') or 'user'))


def split_target(url: str) -> Tuple[str, str]:
    """
    Split a request target into (path, query).

    Origin-form targets ('/a/b?x=1') are split by hand so that a leading
    '//' is never read as a network location. Absolute URLs use urlsplit.
    Fragments are dropped.

    Raises:
        RequestParseError: If an absolute URL cannot be parsed
    """
    if not url.startswith('/') and '://' in url:
        try:
            parts = urlsplit(url)
        except ValueError as e:
            raise RequestParseError(f"Invalid URL: {e}")
        return parts.path or '/', parts.query

    url = url.split('#', 1)[0]
    path, _, query = url.partition('?')
    if not path.startswith('/'):
        path = '/' + path
    return path, query


def normalize_path(path: str) -> str:
    """
    Remove '.' and '..' segments, including their %2e spellings.

    '..' never climbs above the root. A path ending in a dot segment keeps
    its trailing slash. Empty segments are preserved.
    """
    segments = path.split('/')[1:]
    output: List[str] = []
    for index, segment in enumerate(segments):
        last = index == len(segments) - 1
        lowered = segment.lower()
        if lowered in DOUBLE_DOT_SEGMENTS:
            if output:
                output.pop()
            if last:
                output.append('')
        elif lowered in SINGLE_DOT_SEGMENTS:
            if last:
                output.append('')
        else:
            output.append(segment)
    return '/' + '/'.join(output)


def path_matches(path: str, prefix: str) -> bool:
    """
    True when `path` is `prefix` or lies beneath it.

    Matching happens on '/' segment boundaries: '/health' covers
    '/health' and '/health/live' but not '/healthz'.
    """
    base = prefix.rstrip('/')
    if not base:
        return True
    return path == base or path.startswith(base + '/')


@dataclass
class RequestDescriptor:
    """
    Inbound request as seen by the gateway.

    Attributes:
        method: HTTP method (upper-case)
        url: Full URL or origin-form target ('/path?query')
        headers: Request headers
        body: Raw body bytes (never consumed by the gateway)
        peer_ip: Socket peer address, used when no client-IP header exists
        state: Per-request scratch space shared between the pre-request and
            post-response hooks (rate-limit headers, timings)
    """

    method: str
    url: str
    headers: Headers = field(default_factory=Headers)
    body: Optional[Union[bytes, Callable[[], bytes]]] = None
    peer_ip: Optional[str] = None
    state: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.method or not isinstance(self.method, str):
            raise RequestParseError("Method must be non-empty string")
        self.method = self.method.upper()
        if not isinstance(self.headers, Headers):
            self.headers = Headers(self.headers)
        self._raw_path, self._query = split_target(self.url or '/')
        self._path = normalize_path(self._raw_path)

    @property
    def path(self) -> str:
        """Path with dot segments removed; used for routing and skip checks."""
        return self._path

    @property
    def raw_path(self) -> str:
        """Path exactly as received."""
        return self._raw_path

    @property
    def target(self) -> str:
        """Normalised origin-form target forwarded to the backend."""
        return self._path + self.search

    @property
    def query(self) -> str:
        return self._query

    @property
    def search(self) -> str:
        """Query string with its leading '?', empty when there is none."""
        return f"?{self._query}" if self._query else ''

    @property
    def user_agent(self) -> Optional[str]:
        return self.headers.get('User-Agent')

    def read_body_text(self, limit: int = MAX_BODY_SCAN_BYTES) -> str:
        """
        Return up to `limit` bytes of the body decoded as text.

        A callable body is invoked each time, so a stream-backed adapter can
        hand the gateway a fresh copy without consuming the original.

        Raises:
            RequestParseError: If the body cannot be produced
        """
        body = self.body
        if body is None:
            return ''
        try:
            data = body() if callable(body) else body
        except Exception as e:
            raise RequestParseError(f"Body read failed: {e}")
        if isinstance(data, str):
            return data[:limit]
        if not isinstance(data, (bytes, bytearray)):
            raise RequestParseError("Body must be bytes")
        return bytes(data[:limit]).decode('utf-8', errors='replace')

    def client_ip(self, header: str = 'CF-Connecting-IP') -> str:
        """
        Resolve the client address.

        Order: configured header, first X-Forwarded-For entry, socket peer,
        then 'unknown'. Values that are not IP addresses are ignored.
        """
        candidates = [self.headers.get(header)]
        forwarded = self.headers.get('X-Forwarded-For')
        if forwarded:
            candidates.append(forwarded.split(',')[0])
        candidates.append(self.peer_ip)

        for candidate in candidates:
            if not candidate:
                continue
            candidate = candidate.strip()
            try:
                ipaddress.ip_address(candidate)
            except ValueError:
                continue
            return candidate
        return 'unknown'


@dataclass
class GatewayResponse:
    """
    HTTP-like response produced by the gateway or passed through it.

    Blocks always carry a short plain-text body; no internal detail.
    """

    status: int
    body: Union[str, bytes] = ''
    headers: Headers = field(default_factory=Headers)

    def __post_init__(self):
        if not isinstance(self.headers, Headers):
            self.headers = Headers(self.headers)
        if not (100 <= int(self.status) <= 599):
            raise ValueError(f"Invalid HTTP status: {self.status}")

    @property
    def body_bytes(self) -> bytes:
        if isinstance(self.body, bytes):
            return self.body
        return self.body.encode('utf-8')

    @classmethod
    def text(cls, status: int, message: str, headers: Optional[Mapping[str, str]] = None) -> 'GatewayResponse':
        merged = Headers(headers or {})
        merged.set('Content-Type', 'text/plain')
        return cls(status=status, body=message, headers=merged)

    @classmethod
    def json(cls, status: int, payload: Any) -> 'GatewayResponse':
        return cls(
            status=status,
            body=json.dumps(payload, indent=2, default=str),
            headers=Headers({'Content-Type': 'application/json'}),
        )
