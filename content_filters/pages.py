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

from content_filters.helpers import remove_doctype
from profile_data import Profile

IE_EDGE_META = '<meta http-equiv="X-UA-Compatible" content="IE=edge">'

FORUM_MOBILE_STYLE = (
    "<style>"
    ".mobile-responsive { max-width: 100%; overflow-x: auto; } "
    ".forum-post { word-wrap: break-word; }"
    "</style>"
)


def index_page(html: str, profile: Profile) -> str:
    html = remove_doctype(html)
    return html.replace("<head>", f"<head>{IE_EDGE_META}", 1)


def player_page(html: str, profile: Profile) -> str:
    return remove_doctype(html)


def forum_page(html: str, profile: Profile) -> str:
    html = remove_doctype(html)
    return html.replace("</head>", f"{FORUM_MOBILE_STYLE}</head>", 1)


# matched against the url path
PAGE_FILTERS = [
    ("startswith", "/index.cgi", index_page),
    ("startswith", "/pinfo.cgi", player_page),
    ("startswith", "/pbots.cgi", player_page),
]
