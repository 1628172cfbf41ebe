"""Server-sent-event encoding for chat answers.

The wire protocol is deliberately small: the answer is cut into 64-character
slices, each sent as one ``data:`` event, followed by a literal ``[END]``
event. There are no event names, ids or retry hints. Decision metadata
travels in response headers, never in the stream body.
"""

import re
from dataclasses import dataclass
from typing import Dict, Iterator, Optional

from fastapi.responses import StreamingResponse

CHUNK_SIZE = 64
END_SENTINEL = "[END]"

_LINE_BREAK = re.compile(r"\r\n|\r|\n")


def encode_event(data: str) -> bytes:
    """Frame one SSE event; embedded line breaks become extra data lines."""
    lines = _LINE_BREAK.split(data)
    return ("".join("data: {}\n".format(line) for line in lines) + "\n").encode("utf-8")


def iter_sse(text: str, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    """Yield the answer as fixed-size SSE events, then the sentinel."""
    for start in range(0, len(text), chunk_size):
        yield encode_event(text[start:start + chunk_size])
    yield encode_event(END_SENTINEL)


@dataclass
class TurnMetadata:
    """Decision metadata surfaced as response headers."""

    provider: str
    tokens_this_call: int = 0
    provider_total: int = 0
    session_total: int = 0
    pack_status: Optional[str] = None
    pack_url: Optional[str] = None
    notice: Optional[str] = None

    def to_headers(self) -> Dict[str, str]:
        headers = {
            "X-Provider": self.provider,
            "X-Tokens-This-Call": str(self.tokens_this_call),
            "X-Provider-Total": str(self.provider_total),
            "X-Session-Total": str(self.session_total),
        }
        if self.pack_status is not None:
            headers["X-Pack-Status"] = self.pack_status
        if self.pack_url is not None:
            headers["X-Pack-URL"] = self.pack_url
        if self.notice:
            headers["X-Provider-Notice"] = self.notice
        return headers


def sse_response(
    text: str,
    metadata: TurnMetadata,
    extra_headers: Optional[Dict[str, str]] = None,
) -> StreamingResponse:
    """Build the streaming HTTP response for one answered turn."""
    headers = {"Cache-Control": "no-cache, no-transform"}
    headers.update(extra_headers or {})
    headers.update(metadata.to_headers())
    return StreamingResponse(
        iter_sse(text),
        status_code=200,
        media_type="text/event-stream; charset=utf-8",
        headers=headers,
    )
