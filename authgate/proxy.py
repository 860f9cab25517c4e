"""
authgate/proxy.py

Reverse proxy to the protected backend.

Two code paths, chosen by the upstream response's content type:

  non-HTML  _stream_through()  raw upstream bytes are relayed chunk by chunk
                               (content-encoding preserved, nothing buffered)

  HTML      _rewrite_html()    decoded body is buffered up to MAX_REWRITE_BYTES,
                               the session-sync script is inserted right before
                               the last </body>, content-length is recomputed

Failures before the response starts (connect, timeout, oversize page, broken
HTML read) become a generic 502 and the upstream response is closed. A failure
in the middle of a streamed body aborts the client connection; the status line
has already gone out by then.
"""

import html
import json
import re
from typing import AsyncIterator, List, Optional, Tuple

import httpx
from fastapi import Request
from fastapi.responses import Response, StreamingResponse
from loguru import logger

from .errors import UpstreamError

# RFC 7230 hop-by-hop headers never cross the proxy, in either direction
HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)

# additionally dropped when the body is rewritten
REWRITTEN_BODY_HEADERS = frozenset({"content-encoding", "content-length"})

# codings httpx can decode for the rewrite path
DECODABLE_ENCODINGS = ("gzip", "deflate", "identity")

_BODY_CLOSE = re.compile(rb"</body\s*>", re.IGNORECASE)


def build_sync_script(provider_url: str) -> str:
    """Script block that keeps this origin's session in step with the SSO provider."""
    src = html.escape(f"{provider_url}/sso-client.js", quote=True)
    # json.dumps + "</" escaping keeps the value inert inside <script>
    provider_js = json.dumps(provider_url).replace("</", "<\\/")
    return (
        f'\n<script src="{src}"></script>\n'
        "<script>\n"
        "  BearSSO.init({\n"
        f"    authProvider: {provider_js},\n"
        "    onAuthChange: function (user) {\n"
        "      if (!user) {\n"
        "        window.location.href = '/';\n"
        "      }\n"
        "    }\n"
        "  });\n"
        "</script>\n"
    )


def inject_before_body_close(body: bytes, script: bytes) -> bytes:
    """
    Insert `script` immediately before the LAST closing body tag.

    Pages without a closing body tag get the script appended at the end.
    """
    last = None
    for last in _BODY_CLOSE.finditer(body):
        pass
    if last is None:
        return body + script
    return body[: last.start()] + script + body[last.start():]


def is_html(content_type: Optional[str]) -> bool:
    return "text/html" in (content_type or "").lower()


def filter_response_headers(headers: httpx.Headers, rewriting: bool) -> List[Tuple[bytes, bytes]]:
    dropped = HOP_BY_HOP | REWRITTEN_BODY_HEADERS if rewriting else HOP_BY_HOP
    return [
        (k.encode("latin-1"), v.encode("latin-1"))
        for k, v in headers.multi_items()
        if k.lower() not in dropped
    ]


def _content_codings(value: Optional[str]) -> List[str]:
    return [t.strip().lower() for t in (value or "").split(",") if t.strip()]


def _negotiate_encoding(value: Optional[str]) -> str:
    wanted = [t.split(";")[0].strip().lower() for t in (value or "").split(",")]
    kept = [t for t in wanted if t in DECODABLE_ENCODINGS]
    return ", ".join(kept) if kept else "identity"


class UpstreamProxy:
    def __init__(
        self,
        base_url: str,
        sync_script: str,
        timeout_seconds: float = 30.0,
        max_rewrite_bytes: int = 5 * 1024 * 1024,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.sync_script = sync_script.encode("utf-8")
        self.max_rewrite_bytes = max_rewrite_bytes
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            follow_redirects=False,
        )

    async def close(self) -> None:
        await self._client.aclose()

    def _upstream_url(self, request: Request) -> str:
        raw_path = request.scope.get("raw_path")
        path = raw_path.split(b"?", 1)[0].decode("latin-1") if raw_path else request.url.path
        query = request.url.query
        return f"{self.base_url}{path}" + (f"?{query}" if query else "")

    def _upstream_headers(self, request: Request) -> List[Tuple[str, str]]:
        out = [
            (k, v)
            for k, v in request.headers.items()
            if k.lower() not in HOP_BY_HOP and k.lower() not in ("host", "content-length", "accept-encoding")
        ]
        # upstream may only compress with codings the rewrite path can undo
        out.append(("accept-encoding", _negotiate_encoding(request.headers.get("accept-encoding"))))
        out.append(("x-forwarded-host", request.headers.get("host", "")))
        out.append(("x-forwarded-proto", request.url.scheme))
        if request.client:
            out.append(("x-forwarded-for", request.client.host))
        return out

    async def forward(self, request: Request) -> Response:
        body = await request.body()
        upstream_req = self._client.build_request(
            request.method,
            self._upstream_url(request),
            headers=self._upstream_headers(request),
            content=body,
        )

        try:
            upstream = await self._client.send(upstream_req, stream=True)
        except httpx.HTTPError as e:
            logger.error(f"upstream request failed: {request.method} {request.url.path}: {type(e).__name__}")
            raise UpstreamError(message_debug=str(e)[:200], cause=e) from e

        rewritable = (
            request.method != "HEAD"
            and upstream.status_code not in (204, 304)
            and is_html(upstream.headers.get("content-type"))
        )
        if rewritable:
            return await self._rewrite_html(upstream)
        return self._stream_through(upstream)

    # -------------------------------------------------------------------------
    # Non-HTML: relay raw bytes
    # -------------------------------------------------------------------------
    def _stream_through(self, upstream: httpx.Response) -> StreamingResponse:
        async def relay() -> AsyncIterator[bytes]:
            try:
                async for chunk in upstream.aiter_raw():
                    yield chunk
            except httpx.HTTPError as e:
                logger.error(f"upstream body stream broke: {type(e).__name__}")
                raise UpstreamError(cause=e) from e
            finally:
                await upstream.aclose()

        response = StreamingResponse(relay(), status_code=upstream.status_code)
        response.raw_headers = filter_response_headers(upstream.headers, rewriting=False)
        return response

    # -------------------------------------------------------------------------
    # HTML: bounded buffer + inject
    # -------------------------------------------------------------------------
    async def _rewrite_html(self, upstream: httpx.Response) -> Response:
        codings = _content_codings(upstream.headers.get("content-encoding"))
        undecodable = [c for c in codings if c not in DECODABLE_ENCODINGS]
        if undecodable:
            await upstream.aclose()
            logger.error(f"upstream HTML uses unsupported content-encoding: {', '.join(undecodable)}")
            raise UpstreamError(message_debug=f"content-encoding {undecodable}")

        buf = bytearray()
        try:
            async for chunk in upstream.aiter_bytes():
                buf.extend(chunk)
                if len(buf) > self.max_rewrite_bytes:
                    logger.error(f"upstream HTML exceeds rewrite cap of {self.max_rewrite_bytes} bytes")
                    raise UpstreamError(message_debug="html body over rewrite cap")
        except httpx.HTTPError as e:
            logger.error(f"reading upstream HTML failed: {type(e).__name__}")
            raise UpstreamError(message_debug=str(e)[:200], cause=e) from e
        finally:
            await upstream.aclose()

        body = inject_before_body_close(bytes(buf), self.sync_script)

        response = Response(content=body, status_code=upstream.status_code)
        response.raw_headers = filter_response_headers(upstream.headers, rewriting=True) + [
            (b"content-length", str(len(body)).encode("latin-1"))
        ]
        return response
