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
import re
from urllib.parse import quote, quote_plus, urlencode, urlsplit, urlunsplit

GAME_ENCODING = "windows-1251"
FALLBACK_ENCODING = "utf-8"

CYRILLIC = re.compile(r"[\u0400-\u04FF]")


def decode(data: bytes, encoding: str = GAME_ENCODING) -> str:
    if not data:
        return ""
    try:
        return data.decode(encoding)
    except (UnicodeDecodeError, LookupError) as e:
        logging.debug(f"Could not decode {len(data)} bytes as {encoding}, falling back to {FALLBACK_ENCODING}: {e}")
        return data.decode(FALLBACK_ENCODING, errors="replace")


def encode(text: str, encoding: str = GAME_ENCODING) -> bytes:
    if not text:
        return b""
    try:
        return text.encode(encoding)
    except (UnicodeEncodeError, LookupError) as e:
        logging.debug(f"Could not encode text as {encoding}, falling back to {FALLBACK_ENCODING}: {e}")
        return text.encode(FALLBACK_ENCODING, errors="replace")


def quote_value(value: str) -> str:
    """Form-style escaping of a single value in the legacy code page (space becomes '+')."""
    try:
        return quote_plus(value, encoding=GAME_ENCODING)
    except UnicodeEncodeError as e:
        logging.debug(f"Value not representable in {GAME_ENCODING}, quoting as {FALLBACK_ENCODING}: {e}")
        return quote_plus(value, encoding=FALLBACK_ENCODING)


def quote_nick(nick: str) -> str:
    return quote_value(nick)


def encode_form(fields: dict) -> bytes:
    """Body for an application/x-www-form-urlencoded POST, with values escaped in the legacy code page."""
    try:
        body = urlencode(fields, encoding=GAME_ENCODING)
    except UnicodeEncodeError as e:
        logging.debug(f"Form not representable in {GAME_ENCODING}, encoding as {FALLBACK_ENCODING}: {e}")
        body = urlencode(fields, encoding=FALLBACK_ENCODING)
    return body.encode("ascii")


def contains_cyrillic(text: str) -> bool:
    return CYRILLIC.search(text) is not None


def quote_segment(segment: str) -> str:
    """Path-style escaping in the legacy code page: a space becomes %20, not '+'."""
    try:
        return quote(segment, safe="", encoding=GAME_ENCODING)
    except UnicodeEncodeError as e:
        logging.debug(f"Segment not representable in {GAME_ENCODING}, quoting as {FALLBACK_ENCODING}: {e}")
        return quote(segment, safe="", encoding=FALLBACK_ENCODING)


def _encode_path(path: str) -> str:
    return "/".join(
        quote_segment(segment) if contains_cyrillic(segment) else segment
        for segment in path.split("/")
    )


def _encode_query(query: str) -> str:
    params = []
    for param in query.split("&"):
        key, sep, value = param.partition("=")
        if sep and contains_cyrillic(value):
            params.append(f"{key}={quote_value(value)}")
        elif not sep and contains_cyrillic(key):
            # bare query such as pinfo.cgi?<nick>
            params.append(quote_value(key))
        else:
            params.append(param)
    return "&".join(params)


def encode_address(address: str) -> str:
    """
    Escape the Cyrillic parts of a URL in the legacy code page.
    Separators ('/', '?', '&', '=') and already ASCII segments are left literal, the game router matches on them.
    """
    try:
        parts = urlsplit(address)
    except ValueError as e:
        logging.debug(f"Could not parse address {address!r}: {e}")
        return address
    return urlunsplit((
        parts.scheme,
        parts.netloc,
        _encode_path(parts.path),
        _encode_query(parts.query),
        quote_value(parts.fragment) if contains_cyrillic(parts.fragment) else parts.fragment,
    ))
