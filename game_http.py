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
from typing import Callable, Optional

import httpx

from content_filters.dispatcher import ContentFilter
from cookie_store import CookieStore
from http_pipeline import BASE_URL, DiagnosticsSink, PipelineTransport, build_interceptors
from legacy_codec import GAME_ENCODING, decode, encode_form
from profile_data import Profile

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


class GameHttpClient:
    """
    One httpx.AsyncClient per session, every exchange going through the interceptor pipeline.
    get/post let transport faults (httpx.HTTPError) through; the download helpers turn them into None.
    """

    def __init__(self, cookie_store: CookieStore,
                 profile_provider: Callable[[], Optional[Profile]] = lambda: None,
                 content_filter: ContentFilter = None,
                 transport: httpx.AsyncBaseTransport = None,
                 timeout: float = 30.0,
                 connect_retries: int = 1,
                 diagnostics: bool = False,
                 diagnostics_sink: DiagnosticsSink = None,
                 base_url: str = BASE_URL):
        self.base_url = base_url
        self.cookie_store = cookie_store
        inner = transport if transport is not None else httpx.AsyncHTTPTransport(retries=connect_retries)
        self._transport = PipelineTransport(inner, build_interceptors(
            cookie_store,
            content_filter if content_filter is not None else ContentFilter(),
            profile_provider,
            diagnostics=diagnostics,
            diagnostics_sink=diagnostics_sink,
            referer=base_url,
        ))
        self._client = httpx.AsyncClient(
            transport=self._transport,
            timeout=httpx.Timeout(timeout),
            follow_redirects=True,
        )
        # browser headers are added per request for the game hosts only
        for name in ("User-Agent", "Accept"):
            if name in self._client.headers:
                del self._client.headers[name]

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self):
        await self._client.aclose()

    def url(self, path: str) -> str:
        return self.base_url.rstrip("/") + "/" + path.lstrip("/")

    @staticmethod
    def text(response: httpx.Response) -> str:
        return decode(response.content, response.charset_encoding or GAME_ENCODING)

    async def get(self, url: str, headers: dict = None) -> httpx.Response:
        return await self._client.get(url, headers=headers)

    async def post(self, url: str, content: bytes, headers: dict = None) -> httpx.Response:
        return await self._client.post(url, content=content, headers=headers)

    async def post_form(self, url: str, fields: dict, headers: dict = None) -> httpx.Response:
        form_headers = {"Content-Type": FORM_CONTENT_TYPE}
        form_headers.update(headers or {})
        return await self.post(url, encode_form(fields), form_headers)

    async def download_data(self, url: str) -> Optional[bytes]:
        try:
            response = await self.get(url)
        except httpx.HTTPError as e:
            logging.warning(f"Download of {url} failed: {e!r}")
            return None
        if not response.is_success:
            logging.debug(f"Download of {url} answered {response.status_code}")
            return None
        return response.content

    async def download_string(self, url: str) -> Optional[str]:
        data = await self.download_data(url)
        if data is None:
            return None
        return decode(data)
