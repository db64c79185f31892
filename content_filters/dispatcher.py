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

import enum
import logging
from typing import Callable, Iterable, Optional
from urllib.parse import urlsplit

from content_filters.endpoints import ENDPOINT_FILTERS
from content_filters.helpers import url_matches
from content_filters.pages import PAGE_FILTERS, forum_page, index_page
from content_filters.scripts import SCRIPT_FILTERS
from legacy_codec import decode, encode
from profile_data import Profile

GAME_DOMAIN = "neverlands.ru"
FORUM_HOST = "forum.neverlands.ru"

Transform = Callable[[str, Profile], str]


class FilterFamily(enum.Enum):
    SCRIPT = "script"
    ENDPOINT = "endpoint"
    PAGE = "page"


class ContentFilter:
    """Rewrites game responses by url. Best effort: a failing transform leaves the body untouched."""

    def __init__(self, game_domain: str = GAME_DOMAIN, forum_host: str = FORUM_HOST):
        self.game_domain = game_domain.lower()
        self.forum_host = forum_host.lower()

    def is_game_url(self, url: str) -> bool:
        host = (urlsplit(url).hostname or "").lower()
        return host == self.game_domain or host.endswith(f".{self.game_domain}")

    @staticmethod
    def _first(rules: Iterable, target: str) -> Optional[Transform]:
        for kind, needle, transform in rules:
            if url_matches(target, kind, needle):
                return transform
        return None

    def classify(self, url: str) -> Optional[tuple[FilterFamily, Transform]]:
        if not self.is_game_url(url):
            return None
        parts = urlsplit(url)
        path = parts.path or "/"

        if ".js" in path.lower():
            transform = self._first(SCRIPT_FILTERS, url)
            return (FilterFamily.SCRIPT, transform) if transform else None

        if (parts.hostname or "").lower() == self.forum_host:
            return FilterFamily.PAGE, forum_page

        transform = self._first(ENDPOINT_FILTERS, path)
        if transform is not None:
            return FilterFamily.ENDPOINT, transform

        if path == "/":
            return FilterFamily.PAGE, index_page
        transform = self._first(PAGE_FILTERS, path)
        if transform is not None:
            return FilterFamily.PAGE, transform
        return None

    def filter(self, url: str, body: bytes, profile: Optional[Profile] = None) -> bytes:
        match = self.classify(url)
        if match is None or not body:
            return body
        family, transform = match
        try:
            text = decode(body)
            result = transform(text, profile or Profile())
            if result == text:
                return body
            logging.debug(f"Filtered {family.value} {url}")
            return encode(result)
        except Exception as e:
            logging.exception(e)
            logging.warning(f"Filter {transform.__name__} failed for {url}, passing the original through")
            return body
