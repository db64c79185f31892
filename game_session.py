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

from auth_machine import AuthAttempt, AuthStateMachine, LoginResult
from config import Config, StateStore, merge_defaults
from content_filters.dispatcher import ContentFilter
from cookie_store import CookieStore
from game_http import GameHttpClient
from http_pipeline import DiagnosticsSink
from keep_alive import KeepAliveSettings, KeepAliveSupervisor
from player_directory import PlayerDirectory, PlayerInfo
from profile_data import Profile, ProfileRepository
from session_data import ActivityTracker, Session, SessionState


class GameSession:
    """
    Everything one logged-in player needs, wired together explicitly.
    Use as an async context manager: cookies are restored on enter, and persisted on exit.
    """

    def __init__(self, settings: dict, store: StateStore, repository: ProfileRepository,
                 profile_provider: Callable[[], Optional[Profile]],
                 transport: httpx.AsyncBaseTransport = None,
                 diagnostics_sink: DiagnosticsSink = None):
        self._settings = merge_defaults(settings)
        server = self._settings['server']
        http = self._settings['http']
        keep_alive = self._settings['keep_alive']

        self.session = Session()
        self.activity = ActivityTracker(self.session)
        self.cookies = CookieStore(store, server['canonical_host'], server['aliases'])
        self.content_filter = ContentFilter()
        self.http = GameHttpClient(
            self.cookies,
            profile_provider,
            self.content_filter,
            transport=transport,
            timeout=http['timeout'],
            connect_retries=http['connect_retries'],
            diagnostics=http['diagnostics'],
            diagnostics_sink=diagnostics_sink,
            base_url=server['base_url'],
        )
        self.auth = AuthStateMachine(self.http, repository)
        self.directory = PlayerDirectory(self.http, self.activity)
        self.keep_alive = KeepAliveSupervisor(
            self.http, self.cookies, self.directory, self.session, profile_provider,
            KeepAliveSettings.create(keep_alive),
        )
        self._idle_timeout = keep_alive['idle_timeout']

    @staticmethod
    def from_config(config: Config, repository: ProfileRepository,
                    profile_provider: Callable[[], Optional[Profile]], **kwargs):
        return GameSession(config.settings, config.state_store(), repository, profile_provider, **kwargs)

    async def __aenter__(self):
        self.cookies.restore()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.keep_alive.running:
            self.keep_alive.stop()
            await self.keep_alive.wait_stopped()
        await self.http.aclose()
        self.cookies.persist()

    def _conclude(self, attempt: AuthAttempt) -> AuthAttempt:
        if attempt.result is LoginResult.SUCCESS:
            self.session.failures = 0
            self.session.record_activity()
            self.session.set_state(SessionState.ACTIVE)
        return attempt

    async def login(self, profile: Profile) -> AuthAttempt:
        with self.activity.track():
            return self._conclude(await self.auth.login(profile))

    async def submit_captcha(self, attempt: AuthAttempt, code: str) -> AuthAttempt:
        with self.activity.track():
            return self._conclude(await self.auth.submit_captcha(attempt, code))

    async def refresh_captcha(self, attempt: AuthAttempt) -> AuthAttempt:
        with self.activity.track():
            return await self.auth.refresh_captcha(attempt)

    async def get(self, url: str, headers: dict = None) -> httpx.Response:
        with self.activity.track():
            return await self.http.get(url, headers=headers)

    async def post(self, url: str, fields: dict, headers: dict = None) -> httpx.Response:
        with self.activity.track():
            return await self.http.post_form(url, fields, headers=headers)

    def is_authenticated(self) -> bool:
        return self.cookies.is_authenticated()

    async def resolve(self, nick: str) -> Optional[str]:
        return await self.directory.resolve(nick)

    async def player_info(self, nick: str) -> Optional[PlayerInfo]:
        return await self.directory.get_player_info(nick)

    def start_keep_alive(self):
        self.keep_alive.start()

    def stop_keep_alive(self):
        self.keep_alive.stop()

    def activity_begin(self):
        self.activity.begin()

    def activity_end(self):
        self.activity.end()

    def is_idle(self) -> bool:
        return self.activity.is_idle(self._idle_timeout)

    async def logout(self):
        if self.keep_alive.running:
            self.keep_alive.stop()
            await self.keep_alive.wait_stopped()
        self.cookies.clear()
        self.cookies.unbind_nick()
        self.session.reset()
        logging.info("Logged out")
