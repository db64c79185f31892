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
import enum
import logging
import time
from typing import Callable, Optional

import httpx

from cookie_store import CookieStore, IdentitySecurityError
from game_http import GameHttpClient
from player_directory import PlayerDirectory
from profile_data import Profile
from session_data import Session, SessionState

COMBAT_MARKER = "var fight_ty = ["
LOGIN_MARKERS = ("Вход", "Авторизация")


class ProbeOutcome(enum.Enum):
    OK = "ok"
    LOGIN_REQUIRED = "login_required"
    FAILED = "failed"


@dataclasses.dataclass
class KeepAliveSettings:
    interval: float = 60.0
    combat_interval: float = 15.0
    max_interval: float = 300.0
    backoff: float = 2.0
    max_failures: int = 3
    session_timeout: float = 300.0

    @staticmethod
    def create(section: dict):
        fields = {field.name for field in dataclasses.fields(KeepAliveSettings)}
        return KeepAliveSettings(**{k: v for k, v in (section or {}).items() if k in fields})


@dataclasses.dataclass
class KeepAliveStatistics:
    probes: int = 0
    successful: int = 0
    recoveries: int = 0
    last_probe: Optional[float] = None
    last_success: Optional[float] = None
    in_combat: bool = False


class KeepAliveSupervisor:
    """
    Probes main.php while the session is active so the server does not drop it.
    Unhealthy probes trigger a recovery; too many failures in a row put the session in ERROR and end the loop.
    """

    def __init__(self, http: GameHttpClient, cookie_store: CookieStore, directory: PlayerDirectory,
                 session: Session, profile_provider: Callable[[], Optional[Profile]],
                 settings: KeepAliveSettings = None):
        self._http = http
        self._cookie_store = cookie_store
        self._directory = directory
        self._session = session
        self._profile_provider = profile_provider
        self.settings = settings or KeepAliveSettings()
        self.stats = KeepAliveStatistics()
        self._task: Optional[asyncio.Task] = None
        self._stopped_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._session.failures = 0
        self._session.set_state(SessionState.ACTIVE)
        self._task = asyncio.create_task(self._run(), name="keep-alive")
        logging.info("Keep-alive started")

    def stop(self):
        self._stop_event.set()
        if self._task is not None:
            self._task.cancel()
            self._stopped_task, self._task = self._task, None
        self._session.set_state(SessionState.INACTIVE)
        logging.info("Keep-alive stopped")

    async def wait_stopped(self):
        """Wait for the loop task to end. A cancelled loop ends quietly, any other fault is raised here."""
        task = self._task or self._stopped_task
        if task is None:
            return
        await asyncio.wait({task})
        if not task.cancelled():
            task.result()

    def next_interval(self) -> float:
        if self.stats.in_combat:
            return self.settings.combat_interval
        failures = self._session.failures
        if failures == 0:
            return self.settings.interval
        return min(self.settings.interval * self.settings.backoff ** failures, self.settings.max_interval)

    def statistics(self) -> dict:
        return {
            "state": self._session.state.value,
            "failures": self._session.failures,
            "probes": self.stats.probes,
            "successful": self.stats.successful,
            "recoveries": self.stats.recoveries,
            "last_probe": self.stats.last_probe,
            "last_success": self.stats.last_success,
            "interval": self.next_interval(),
            "in_combat": self.stats.in_combat,
            "session_expired": self._session.is_expired(self.settings.session_timeout),
        }

    async def probe(self) -> ProbeOutcome:
        if not self._cookie_store.is_authenticated():
            logging.debug("Keep-alive probe skipped, no identity cookie")
            return ProbeOutcome.LOGIN_REQUIRED
        try:
            response = await self._http.get(self._http.url("main.php"), headers={"Cache-Control": "no-cache"})
        except httpx.HTTPError as e:
            logging.warning(f"Keep-alive probe failed: {e!r}")
            return ProbeOutcome.FAILED
        if response.status_code != httpx.codes.OK:
            logging.warning(f"Keep-alive probe answered {response.status_code}")
            return ProbeOutcome.FAILED

        body = self._http.text(response)
        lowered = body.lower()
        if any(marker.lower() in lowered for marker in LOGIN_MARKERS):
            return ProbeOutcome.LOGIN_REQUIRED
        self.stats.in_combat = COMBAT_MARKER in body
        return ProbeOutcome.OK

    async def recover(self) -> bool:
        profile = self._profile_provider()
        if profile is None or not profile.is_login_data_complete:
            logging.warning("Keep-alive recovery needs a profile with login data")
            return False
        logging.info(f"Recovering session for {profile.user_nick}")
        self._cookie_store.clear()
        player_id = await self._directory.resolve(profile.user_nick, refresh=True)
        if player_id is None:
            logging.warning(f"Could not re-resolve {profile.user_nick}")
            return False
        self.stats.recoveries += 1
        return True

    def _wanted(self) -> bool:
        return not self._stop_event.is_set() and self._session.state is SessionState.ACTIVE

    async def tick(self) -> bool:
        """One probe, plus recovery when it is unhealthy. Returns whether the session is still considered alive."""
        self.stats.probes += 1
        self.stats.last_probe = time.time()

        healthy = await self.probe() is ProbeOutcome.OK
        if not healthy:
            if not self._wanted():
                logging.debug("Keep-alive stopped during the probe, skipping recovery")
                return False
            self.stats.in_combat = False
            healthy = await self.recover()

        if healthy:
            self._session.failures = 0
            self._session.record_activity()
            self.stats.successful += 1
            self.stats.last_success = self.stats.last_probe
            return True

        if not self._wanted():
            return False
        self._session.failures += 1
        logging.warning(f"Keep-alive failure {self._session.failures}/{self.settings.max_failures}")
        if self._session.failures >= self.settings.max_failures:
            self._session.set_state(SessionState.ERROR)
        return False

    async def _run(self):
        while self._session.state is SessionState.ACTIVE and not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.next_interval())
                break
            except asyncio.TimeoutError:
                pass
            if self._stop_event.is_set() or self._session.state is not SessionState.ACTIVE:
                break
            try:
                await self.tick()
            except IdentitySecurityError:
                self._session.set_state(SessionState.ERROR)
                raise
        logging.debug(f"Keep-alive loop finished in state {self._session.state.value}")
