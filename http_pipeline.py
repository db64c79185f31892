"""
NeverlandsSession
Copyright (C) 2024 thiccaxe

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU Affero General Public License as published
by the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU Affero General Public License for more details.

You should have received a copy of the GNU Affero General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import logging
import time
from typing import Callable, Optional, Sequence

import httpx

from content_filters.dispatcher import ContentFilter
from cookie_store import Cookie, CookieStore
from legacy_codec import GAME_ENCODING, decode
from profile_data import Profile

BASE_URL = "http://www.neverlands.ru/"

USER_AGENT = ("Mozilla/5.0 (Linux; Android 13; SM-G981B) AppleWebKit/537.36 "
              "(KHTML, like Gecko) Chrome/120.0.0.0 Mobile Safari/537.36")

BROWSER_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "ru-RU,ru;q=0.9,en;q=0.8",
    "DNT": "1",
    "Upgrade-Insecure-Requests": "1",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "same-origin",
}

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

REFRESH_MARKER = "cookie..."
REFRESH_PEEK_BYTES = 8192

# encoding already applied by the time a body is buffered
_STALE_HEADERS = ("content-encoding", "content-length", "transfer-encoding")

DiagnosticsSink = Callable[[httpx.Request, httpx.Response], None]


async def buffered(response: httpx.Response, request: httpx.Request) -> httpx.Response:
    """Read a transport response fully so later links can inspect and replace the body."""
    try:
        content = await response.aread()
    finally:
        await response.aclose()
    return with_body(response, content, request)


def with_body(response: httpx.Response, content: bytes, request: httpx.Request = None) -> httpx.Response:
    headers = [(k, v) for k, v in response.headers.multi_items() if k.lower() not in _STALE_HEADERS]
    return httpx.Response(
        response.status_code,
        headers=headers,
        content=content,
        request=request if request is not None else response.request,
        extensions=response.extensions,
    )


class Interceptor:
    async def intercept(self, request: httpx.Request, chain: "Chain") -> httpx.Response:
        return await chain.proceed(request)


class Chain:
    def __init__(self, interceptors: Sequence[Interceptor], transport: httpx.AsyncBaseTransport, index: int = 0):
        self._interceptors = interceptors
        self._transport = transport
        self._index = index

    async def proceed(self, request: httpx.Request) -> httpx.Response:
        if self._index < len(self._interceptors):
            following = Chain(self._interceptors, self._transport, self._index + 1)
            return await self._interceptors[self._index].intercept(request, following)
        response = await self._transport.handle_async_request(request)
        return await buffered(response, request)


class PipelineTransport(httpx.AsyncBaseTransport):
    """Runs every request through the interceptors, outermost first, before the wrapped transport."""

    def __init__(self, transport: httpx.AsyncBaseTransport, interceptors: Sequence[Interceptor]):
        self.transport = transport
        self.interceptors = list(interceptors)

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        return await Chain(self.interceptors, self.transport).proceed(request)

    async def aclose(self):
        await self.transport.aclose()


class BrowserHeadersInterceptor(Interceptor):

    def __init__(self, is_game_host: Callable[[str], bool], referer: str = BASE_URL):
        self._is_game_host = is_game_host
        self._referer = referer

    async def intercept(self, request, chain):
        if self._is_game_host(request.url.host):
            for name, value in BROWSER_HEADERS.items():
                if name not in request.headers:
                    request.headers[name] = value
            if "Referer" not in request.headers:
                request.headers["Referer"] = self._referer
            if "ajax" in request.url.path.lower() and "X-Requested-With" not in request.headers:
                request.headers["X-Requested-With"] = "XMLHttpRequest"
        return await chain.proceed(request)


class NoCacheInterceptor(Interceptor):

    def __init__(self, is_game_host: Callable[[str], bool]):
        self._is_game_host = is_game_host

    async def intercept(self, request, chain):
        if self._is_game_host(request.url.host):
            request.headers.update(NO_CACHE_HEADERS)
        return await chain.proceed(request)


class CharsetInterceptor(Interceptor):
    """Game pages rarely declare a charset; they are all in the legacy code page."""

    def __init__(self, is_game_host: Callable[[str], bool], charset: str = GAME_ENCODING):
        self._is_game_host = is_game_host
        self._charset = charset

    def annotate(self, content_type: str) -> Optional[str]:
        if "charset=" in content_type.lower():
            return None
        if not content_type:
            return f"text/html; charset={self._charset}"
        media = content_type.split(";")[0].strip().lower()
        if media.startswith("text/") or "javascript" in media or media.endswith("json"):
            return f"{content_type.rstrip('; ')}; charset={self._charset}"
        return None

    async def intercept(self, request, chain):
        response = await chain.proceed(request)
        if self._is_game_host(request.url.host):
            annotated = self.annotate(response.headers.get("Content-Type", ""))
            if annotated is not None:
                response.headers["Content-Type"] = annotated
        return response


class CookieRefreshInterceptor(Interceptor):
    """
    The server answers "Cookie..." when it has just issued a fresh cookie and wants the request again.
    The same request is sent exactly once more, whatever that second answer says.
    """

    async def intercept(self, request, chain):
        response = await chain.proceed(request)
        head = decode(response.content[:REFRESH_PEEK_BYTES], response.charset_encoding or GAME_ENCODING)
        if REFRESH_MARKER in head.lower():
            logging.info(f"Cookie refresh requested by {request.url}, sending once more")
            return await chain.proceed(request)
        return response


class ContentFilterInterceptor(Interceptor):

    def __init__(self, content_filter: ContentFilter, profile_provider: Callable[[], Optional[Profile]]):
        self._filter = content_filter
        self._profile_provider = profile_provider

    async def intercept(self, request, chain):
        response = await chain.proceed(request)
        url = str(request.url)
        if not self._filter.is_game_url(url):
            return response
        body = response.content
        filtered = self._filter.filter(url, body, self._profile_provider())
        if filtered is body:
            return response
        return with_body(response, filtered)


class CookieInterceptor(Interceptor):
    """Sends cookies from the CookieStore and absorbs Set-Cookie back into it. The client's own jar is not used."""

    def __init__(self, store: CookieStore):
        self._store = store

    async def intercept(self, request, chain):
        url = str(request.url)
        cookies = self._store.cookies_for(url)
        if cookies:
            request.headers["Cookie"] = "; ".join(f"{cookie.name}={cookie.value}" for cookie in cookies)
        elif "Cookie" in request.headers:
            del request.headers["Cookie"]

        response = await chain.proceed(request)

        jar = httpx.Cookies()
        jar.extract_cookies(response)
        received = [Cookie.from_jar(cookie, request.url.host) for cookie in jar.jar]
        # IdentitySecurityError from here is fatal and goes straight to the caller
        self._store.absorb(url, received)
        return response


class DiagnosticsInterceptor(Interceptor):

    def __init__(self, sink: Optional[DiagnosticsSink] = None):
        self._sink = sink

    async def intercept(self, request, chain):
        started = time.monotonic()
        response = await chain.proceed(request)
        if self._sink is not None:
            self._sink(request, response)
        else:
            elapsed = (time.monotonic() - started) * 1000
            logging.debug(f"{request.method} {request.url} -> {response.status_code} "
                          f"({len(response.content)} bytes, {elapsed:.0f} ms)")
        return response


def build_interceptors(cookie_store: CookieStore, content_filter: ContentFilter,
                       profile_provider: Callable[[], Optional[Profile]],
                       diagnostics: bool = False, diagnostics_sink: DiagnosticsSink = None,
                       referer: str = BASE_URL) -> list[Interceptor]:
    """
    Outermost first. Responses come back through the list in reverse, so the charset is annotated
    before the refresh check reads the body, and filtering only ever sees the final attempt.
    """
    interceptors = [
        ContentFilterInterceptor(content_filter, profile_provider),
        CookieRefreshInterceptor(),
        CharsetInterceptor(cookie_store.is_game_host),
        NoCacheInterceptor(cookie_store.is_game_host),
        BrowserHeadersInterceptor(cookie_store.is_game_host, referer),
        CookieInterceptor(cookie_store),
    ]
    if diagnostics or diagnostics_sink is not None:
        interceptors.append(DiagnosticsInterceptor(diagnostics_sink))
    return interceptors
