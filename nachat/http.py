"""HTTP payload encoding, response decoding and a simple signal type."""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any


def encode(obj: Mapping[str, Any]) -> bytes:
    """Serialise a JSON object compactly, with sorted keys, as UTF-8."""
    return json.dumps(obj, separators=(",", ":"), sort_keys=True, ensure_ascii=False).encode("utf-8")


@dataclass
class Reply:
    """A finished HTTP exchange; ``status_code`` is 0 when no response arrived."""

    status_code: int
    data: bytes = b""
    reason: str = ""
    error_string: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)


@dataclass
class Response:
    """A decoded server reply: status, JSON body and error message if any."""

    code: int
    object: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


def _http_error(reply: Reply) -> str:
    return f"HTTP {reply.status_code} {reply.reason}"


def decode(reply: Reply) -> Response:
    """Interpret a reply as a JSON object, recording any error in the result."""
    r = Response(code=reply.status_code)
    if r.code == 0:
        r.error = reply.error_string
        return r

    text = reply.data.decode("utf-8", errors="replace")
    try:
        parsed = json.loads(text)
    except ValueError as exc:
        if r.code >= 300:
            # Probably not a chat server at all; the HTTP status says enough.
            r.error = _http_error(reply)
            return r
        msg = f"Malformed response from server: {exc}"
        if reply.data:
            msg += f"\nResponse was:\n{text}"
        r.error = msg
        return r

    if not isinstance(parsed, dict):
        r.error = f"Malformed response from server: not a json object\nResponse was:\n{text}"
        return r

    r.object = parsed
    if r.code >= 300:
        message = parsed.get("error")
        r.error = message if isinstance(message, str) and message else _http_error(reply)
    return r


class Signal:
    """A list of callbacks invoked in connection order."""

    def __init__(self) -> None:
        self._slots: list[Callable[..., Any]] = []

    def connect(self, slot: Callable[..., Any]) -> None:
        """Call ``slot`` on every emission."""
        self._slots.append(slot)

    def disconnect(self, slot: Callable[..., Any]) -> None:
        """Stop calling ``slot``; raises ValueError if it was not connected."""
        self._slots.remove(slot)

    def emit(self, *args: Any) -> None:
        """Call every connected slot with ``args``."""
        for slot in list(self._slots):
            slot(*args)

    def __len__(self) -> int:
        return len(self._slots)