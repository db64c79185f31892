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

import re
from typing import Optional

DOCTYPE = re.compile(r"<!DOCTYPE[^>]*?(?:\[[^\]]*\])?>", re.IGNORECASE)


def sub_string(html: str, start: str, end: str) -> Optional[str]:
    """Text between the first `start` and the following `end`, matched case-insensitively."""
    lowered = html.lower()
    p1 = lowered.find(start.lower())
    if p1 == -1:
        return None
    p1 += len(start)
    p2 = lowered.find(end.lower(), p1)
    if p2 == -1:
        return None
    return html[p1:p2]


def remove_doctype(html: str) -> str:
    return DOCTYPE.sub("", html)


def parse_js_array(source: str) -> Optional[list[list[str]]]:
    """
    Split the inside of a javascript array literal into its top-level entries.
    Nested arrays one level deep become lists of their items, scalars become one-element lists.
    """
    if len(source) < 2:
        return None

    result = []
    p1 = 0
    while p1 < len(source):
        if source[p1] != '[':
            p2 = source.find(',', p1 + 1)
            p2 = len(source) if p2 == -1 else p2
        else:
            p2 = source.find(']', p1 + 1)
            p2 = len(source) if p2 == -1 else p2 + 1

        chunk = source[p1:p2]
        entry = []
        if chunk:
            if chunk[0] != '[':
                entry.append(chunk.strip(" \"'"))
            else:
                entry.extend(part.strip(" \"'") for part in chunk.strip(" []").split(','))
        result.append(entry)
        p1 = p2 + 1
    return result


def url_matches(url: str, kind: str, needle: str) -> bool:
    url = url.lower()
    needle = needle.lower()
    if kind == "contains":
        return needle in url
    if kind == "endswith":
        return url.endswith(needle)
    if kind == "startswith":
        return url.startswith(needle)
    raise ValueError(f"Unknown match kind {kind}")
