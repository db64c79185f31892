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

import dataclasses
import logging
import threading
import time
from http.cookiejar import Cookie as JarCookie
from typing import Callable, Iterable, Optional
from urllib.parse import unquote, urlsplit

from config import StateStore
from legacy_codec import GAME_ENCODING

IDENTITY_COOKIE = "NeverNick"
NEVER_EXPIRES = 2 ** 63 - 1  # epoch millis sentinel for cookies without an expiry

COOKIE_SECTION = "cookies"
USER_SECTION = "user"
CURRENT_NICK_KEY = "current_nick"

CANONICAL_HOST = "www.neverlands.ru"
HOST_ALIASES = ("forum.neverlands.ru", "neverlands.ru")


class IdentitySecurityError(Exception):
    """The server handed out an identity cookie for a different player than the one bound locally."""

    def __init__(self, claimed_nick: str, bound_nick: str):
        super().__init__("Неверное имя или пароль.")
        self.claimed_nick = claimed_nick
        self.bound_nick = bound_nick


def now_millis() -> int:
    return int(time.time() * 1000)


@dataclasses.dataclass
class Cookie:
    name: str
    value: str
    domain: str
    path: str = "/"
    expires_at: int = NEVER_EXPIRES

    def is_expired(self, now: int) -> bool:
        return self.expires_at != NEVER_EXPIRES and self.expires_at <= now

    def to_record(self) -> str:
        return f"{self.name}={self.value};{self.domain};{self.path};{self.expires_at}"

    @staticmethod
    def from_record(record: str) -> Optional["Cookie"]:
        parts = record.split(";")
        if len(parts) < 4:
            logging.debug(f"Skipping malformed cookie record with {len(parts)} fields")
            return None
        name, sep, value = parts[0].partition("=")
        if not sep or not name:
            logging.debug("Skipping cookie record without a name")
            return None
        try:
            expires_at = int(parts[3])
        except ValueError:
            expires_at = NEVER_EXPIRES
        return Cookie(name=name, value=value, domain=parts[1], path=parts[2] or "/", expires_at=expires_at)

    @staticmethod
    def from_jar(cookie: JarCookie, request_host: str) -> "Cookie":
        domain = (cookie.domain or request_host).lstrip(".")
        expires_at = NEVER_EXPIRES if cookie.expires is None else int(cookie.expires) * 1000
        return Cookie(
            name=cookie.name,
            value=cookie.value or "",
            domain=domain,
            path=cookie.path or "/",
            expires_at=expires_at,
        )


class CookieStore:
    """
    Per-host cookie collections.
    The forum and apex hosts share a collection with the www host, the server keeps one session across all three.
    """

    def __init__(self, store: StateStore, canonical_host: str = CANONICAL_HOST,
                 aliases: Iterable[str] = HOST_ALIASES, clock: Callable[[], int] = now_millis):
        self._store = store
        self._clock = clock
        self._lock = threading.RLock()
        self._cookies: dict[str, dict[str, Cookie]] = dict()
        self.canonical = canonical_host.lower()
        self.aliases = tuple(alias.lower() for alias in aliases)

    @property
    def game_hosts(self) -> tuple[str, ...]:
        return (self.canonical,) + self.aliases

    def host_key(self, host: str) -> str:
        host = (host or "").lower()
        if host in self.aliases:
            return self.canonical
        return host

    def is_game_host(self, host: str) -> bool:
        return self.host_key(host) == self.canonical

    def current_nick(self) -> Optional[str]:
        return self._store.get(USER_SECTION, CURRENT_NICK_KEY)

    def bind_nick(self, nick: str):
        self._store.set(USER_SECTION, CURRENT_NICK_KEY, nick)
        logging.debug(f"Bound local user to {nick}")

    def unbind_nick(self):
        self._store.delete(USER_SECTION, CURRENT_NICK_KEY)

    def cookies_for(self, url: str) -> list[Cookie]:
        parts = urlsplit(url)
        key = self.host_key(parts.hostname or "")
        path = parts.path or "/"
        now = self._clock()
        with self._lock:
            collection = self._cookies.get(key, {})
            return [
                cookie for cookie in collection.values()
                if not cookie.is_expired(now)
                and self.host_key(cookie.domain) == key
                and path.startswith(cookie.path or "/")
            ]

    def _claimed_nick(self, cookies: list[Cookie]) -> Optional[str]:
        now = self._clock()
        for cookie in cookies:
            if cookie.name.lower() == IDENTITY_COOKIE.lower() and cookie.value and not cookie.is_expired(now):
                return unquote(cookie.value, encoding=GAME_ENCODING, errors="replace")
        return None

    def absorb(self, url: str, cookies: Iterable[Cookie]):
        """
        Upsert cookies by name into the collection for the url's host.
        An identity cookie naming someone other than the bound user raises IdentitySecurityError before anything is stored.
        """
        cookies = list(cookies)
        if not cookies:
            return
        key = self.host_key(urlsplit(url).hostname or "")
        now = self._clock()

        with self._lock:
            claimed = self._claimed_nick(cookies) if key == self.canonical else None
            if claimed is not None:
                bound = self.current_nick()
                if bound and claimed.casefold() != bound.casefold():
                    logging.error(f"Identity cookie names {claimed}, but the bound user is {bound}")
                    raise IdentitySecurityError(claimed, bound)

            collection = self._cookies.setdefault(key, dict())
            for cookie in cookies:
                if cookie.is_expired(now):
                    # an already expired Set-Cookie is the server deleting it
                    collection.pop(cookie.name, None)
                else:
                    collection[cookie.name] = cookie

            if claimed is not None and not self.current_nick():
                self.bind_nick(claimed)
            self._persist_locked(key)

    def is_authenticated(self) -> bool:
        now = self._clock()
        with self._lock:
            identity = self._cookies.get(self.canonical, {}).get(IDENTITY_COOKIE)
            return identity is not None and bool(identity.value) and not identity.is_expired(now)

    def _persist_locked(self, key: str):
        now = self._clock()
        records = [
            cookie.to_record() for cookie in self._cookies.get(key, {}).values()
            if not cookie.is_expired(now)
        ]
        if records:
            self._store.set(COOKIE_SECTION, key, records)
        else:
            self._store.delete(COOKIE_SECTION, key)

    def persist(self):
        with self._lock:
            for key in list(self._cookies.keys()):
                self._persist_locked(key)

    def restore(self):
        restored = 0
        with self._lock:
            for key in self._store.keys(COOKIE_SECTION):
                collection = self._cookies.setdefault(self.host_key(key), dict())
                for record in self._store.get(COOKIE_SECTION, key, []):
                    cookie = Cookie.from_record(record)
                    if cookie is not None:
                        collection[cookie.name] = cookie
                        restored += 1
        logging.debug(f"Restored {restored} cookies")

    def clear(self):
        with self._lock:
            for host in self.game_hosts:
                self._cookies.pop(host, None)
                self._store.delete(COOKIE_SECTION, host)
        logging.debug("Cleared game cookies")
