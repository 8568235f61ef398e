"""Response middleware: HTML-escape markup characters in JSON bodies.

Search results echo subjects and message content that users typed, so a
body can legitimately contain ``<script>``.  Every ``<``, ``>`` and ``&``
in a JSON response is rewritten as a ``\\uXXXX`` escape, which decodes to
the same value for a JSON client but never renders as markup if the body
is displayed raw.

Characters outside JSON strings cannot be ``<``, ``>`` or ``&``, so the
byte-level rewrite always yields equivalent JSON.
"""
from __future__ import annotations

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# Headers that must not be copied verbatim because their values become
# invalid once we re-buffer the body into a new Response.
_SKIP_HEADERS = frozenset({"content-length", "transfer-encoding"})

_ESCAPES = (
    (b"&", b"\\u0026"),
    (b"<", b"\\u003c"),
    (b">", b"\\u003e"),
)


def escape_json_markup(body: bytes) -> bytes:
    for raw, escaped in _ESCAPES:
        body = body.replace(raw, escaped)
    return body


class HTMLSafeJSONMiddleware(BaseHTTPMiddleware):
    """Rewrite markup characters in ``application/json`` responses.

    Other content types (CSV, spreadsheets, PDF, TwiML) pass through
    unchanged and unbuffered.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)

        content_type = response.headers.get("content-type", "")
        if "application/json" not in content_type:
            return response

        chunks: list[bytes] = []
        async for chunk in response.body_iterator:
            if isinstance(chunk, str):
                chunk = chunk.encode("utf-8")
            chunks.append(chunk)
        body = b"".join(chunks)

        safe_headers = {
            k: v for k, v in response.headers.items()
            if k.lower() not in _SKIP_HEADERS
        }
        return Response(
            content=escape_json_markup(body),
            status_code=response.status_code,
            headers=safe_headers,
            media_type=response.media_type,
        )
