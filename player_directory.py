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

import asyncio
import dataclasses
import logging
from typing import Optional

import httpx

from game_http import GameHttpClient
from legacy_codec import encode_address, quote_nick
from session_data import ActivityTracker

API_URL = "http://www.neverlands.ru/modules/api"
INFO_URL = "http://neverlands.ru"

SLOT_COUNT = 16


@dataclasses.dataclass
class CacheEntry:
    nick: str
    player_id: str
    confirmed_name: str


@dataclasses.dataclass
class Effect:
    code: str
    name: str
    size: str
    left: str


@dataclasses.dataclass
class PlayerInfo:
    nick: str = ""
    level: str = ""
    align: str = ""
    clan_code: str = ""
    clan_sign: str = ""
    clan_name: str = ""
    clan_status: str = ""
    sex: str = ""
    disabled: bool = False
    jailed: bool = False
    chat_muted: str = ""
    forum_muted: str = ""
    online: bool = False
    location: str = ""
    fight_log: str = ""
    hp_current: int = 0
    hp_max: int = 0
    mana_current: int = 0
    mana_max: int = 0
    tied: int = 0
    slot_codes: list[str] = dataclasses.field(default_factory=list)
    slot_names: list[str] = dataclasses.field(default_factory=list)
    effects: list[Effect] = dataclasses.field(default_factory=list)

    @staticmethod
    def _to_int(value: str) -> int:
        try:
            return int(value)
        except ValueError:
            return 0

    @staticmethod
    def parse(data: str) -> Optional["PlayerInfo"]:
        """
        info.cgi answers five records, each with a two character prefix:
        slots, effects, main info, hp/mana, and one we do not use.
        """
        lines = data.strip("\n").split("\n")
        if len(lines) != 5:
            logging.debug(f"info.cgi answered {len(lines)} records, expected 5")
            return None
        lines = [line.rstrip("\r") for line in lines]
        info = PlayerInfo()

        if len(lines[0]) > 2:
            slots = lines[0][2:].split("@")
            if len(slots) >= SLOT_COUNT:
                info.slot_codes = [""] * SLOT_COUNT
                info.slot_names = [""] * SLOT_COUNT
                for i, slot in enumerate(slots[:SLOT_COUNT]):
                    code, sep, name = slot.partition(":")
                    if sep:
                        info.slot_codes[i] = code
                        info.slot_names[i] = name.split(":")[0]

        if len(lines[1]) > 2:
            for effect in lines[1][2:].split("@"):
                parts = effect.split(".")
                if len(parts) >= 4:
                    info.effects.append(Effect(code=parts[0], name=parts[1], size=parts[2], left=parts[3]))

        if len(lines[2]) > 2:
            main = lines[2][2:].split("|")
            if len(main) < 14:
                logging.debug(f"info.cgi main record has {len(main)} fields, expected 14")
                return None
            info.nick = main[0].strip()
            info.level = main[1]
            info.align = main[2]
            info.clan_code = main[3]
            info.clan_sign = main[4]
            info.clan_name = main[5]
            info.clan_status = main[6]
            info.sex = main[7]
            info.disabled = main[8] != "0"
            info.jailed = main[9] != "0"
            info.chat_muted = main[10]
            info.forum_muted = main[11]
            info.online = main[12] != "0"
            info.location = main[13]
            if len(main) > 14:
                info.fight_log = main[14]

        if len(lines[3]) > 2:
            vitals = lines[3][2:].split("|")
            if len(vitals) >= 5:
                info.hp_current = PlayerInfo._to_int(vitals[0])
                info.hp_max = PlayerInfo._to_int(vitals[1])
                info.mana_current = PlayerInfo._to_int(vitals[2])
                info.mana_max = PlayerInfo._to_int(vitals[3])
                info.tied = 100 - PlayerInfo._to_int(vitals[4])

        return info


class PlayerDirectory:
    """
    Nickname to player id lookups through getid.cgi, cached for the life of the process.
    Lookups that fail return None and leave the cache alone.
    """

    def __init__(self, http: GameHttpClient, activity: ActivityTracker, api_url: str = API_URL,
                 info_url: str = INFO_URL):
        self._http = http
        self._activity = activity
        self._api_url = api_url.rstrip("/")
        self._info_url = info_url.rstrip("/")
        self._cache: dict[str, CacheEntry] = dict()
        self._lock = asyncio.Lock()

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    def clear_cache(self):
        self._cache.clear()
        logging.debug("Player id cache cleared")

    def cached(self, nick: str) -> Optional[CacheEntry]:
        return self._cache.get(nick.casefold())

    async def resolve(self, nick: str, refresh: bool = False) -> Optional[str]:
        if not refresh:
            entry = self.cached(nick)
            if entry is not None:
                return entry.player_id

        url = f"{self._api_url}/getid.cgi?{quote_nick(nick)}"
        body = await self._fetch(url)
        if body is None:
            return None

        parts = body.strip().split("|")
        if len(parts) != 2 or not parts[0]:
            logging.debug(f"getid.cgi answered {body.strip()!r} for {nick}")
            return None

        entry = CacheEntry(nick=nick, player_id=parts[0], confirmed_name=parts[1])
        async with self._lock:
            self._cache[nick.casefold()] = entry
            self._cache[entry.confirmed_name.casefold()] = entry
        return entry.player_id

    async def get_player_info(self, nick: str) -> Optional[PlayerInfo]:
        player_id = await self.resolve(nick)
        if player_id is None:
            return None
        body = await self._fetch(f"{self._api_url}/info.cgi?playerid={player_id}&info=1&hmu=1&effects=1&slots=1")
        if body is None:
            return None
        return PlayerInfo.parse(body)

    async def get_profile_page(self, nick: str) -> Optional[str]:
        return await self._fetch(encode_address(f"{self._info_url}/pinfo.cgi?{nick}"))

    async def get_fight_log(self, fight_id: str) -> Optional[str]:
        return await self._fetch(encode_address(f"{self._info_url}/logs.fcg?fid={fight_id}"))

    async def _fetch(self, url: str) -> Optional[str]:
        with self._activity.track():
            try:
                response = await self._http.get(url)
            except httpx.HTTPError as e:
                logging.warning(f"Lookup {url} failed: {e!r}")
                return None
        if not response.is_success:
            logging.debug(f"Lookup {url} answered {response.status_code}")
            return None
        return self._http.text(response)
