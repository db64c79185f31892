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
import enum
import logging
import re
import time
from typing import Optional
from urllib.parse import urljoin

import httpx

from game_http import GameHttpClient
from profile_data import Profile, ProfileLockedError, ProfileRepository

INVALID_CREDENTIALS_MARKER = "неверный логин или пароль"
CAPTCHA_MARKER = "введите код"
ERROR_MARKER = "error"
GAME_CONTENT_MARKERS = ("<canvas", "game")
GAME_CONTENT_THRESHOLD = 5000

CAPTCHA_IMAGE = re.compile(r'<img[^>]*src="([^"]*captcha[^"]*)"', re.IGNORECASE)
SERVER_WARNING = re.compile(r"show_warn\s*\(\s*[\"']([^\"']+)[\"']\s*\)")
FLASH_PLAYER_ID = re.compile(r'flashvars="plid=(\d+)"')


class LoginResult(enum.Enum):
    SUCCESS = "success"
    INVALID_CREDENTIALS = "invalid_credentials"
    CAPTCHA_REQUIRED = "captcha_required"
    ERROR = "error"


class AuthState(enum.Enum):
    INIT = "init"
    SUBMITTED = "submitted"
    CAPTCHA_REQUIRED = "captcha_required"
    CAPTCHA_SUBMITTED = "captcha_submitted"
    SUCCESS = "success"
    INVALID_CREDENTIALS = "invalid_credentials"
    ERROR = "error"


TRANSITIONS = {
    AuthState.INIT: {AuthState.SUBMITTED, AuthState.ERROR},
    AuthState.SUBMITTED: {AuthState.SUCCESS, AuthState.INVALID_CREDENTIALS,
                          AuthState.CAPTCHA_REQUIRED, AuthState.ERROR},
    AuthState.CAPTCHA_REQUIRED: {AuthState.CAPTCHA_SUBMITTED, AuthState.ERROR},
    AuthState.CAPTCHA_SUBMITTED: {AuthState.SUCCESS, AuthState.INVALID_CREDENTIALS,
                                  AuthState.CAPTCHA_REQUIRED, AuthState.ERROR},
}

RESULT_STATES = {
    LoginResult.SUCCESS: AuthState.SUCCESS,
    LoginResult.INVALID_CREDENTIALS: AuthState.INVALID_CREDENTIALS,
    LoginResult.CAPTCHA_REQUIRED: AuthState.CAPTCHA_REQUIRED,
    LoginResult.ERROR: AuthState.ERROR,
}


def check_login_response(body: str) -> LoginResult:
    """Classify a game.php answer. Order matters: the error pages also contain the word "game"."""
    lowered = body.lower()
    if INVALID_CREDENTIALS_MARKER in lowered:
        return LoginResult.INVALID_CREDENTIALS
    if CAPTCHA_MARKER in lowered:
        return LoginResult.CAPTCHA_REQUIRED
    if ERROR_MARKER in lowered:
        return LoginResult.ERROR
    if any(marker in lowered for marker in GAME_CONTENT_MARKERS) or len(body) >= GAME_CONTENT_THRESHOLD:
        return LoginResult.SUCCESS
    return LoginResult.ERROR


def extract_captcha_url(body: str, base_url: str) -> Optional[str]:
    match = CAPTCHA_IMAGE.search(body)
    if match is None:
        return None
    return urljoin(base_url, match.group(1).replace("&amp;", "&"))


def extract_server_warning(body: str) -> Optional[str]:
    match = SERVER_WARNING.search(body)
    return match.group(1) if match else None


@dataclasses.dataclass
class CaptchaChallenge:
    profile: Profile
    image: bytes
    url: str


@dataclasses.dataclass
class AuthAttempt:
    """One login round trip. Only lives until the caller is done with the outcome."""
    profile: Profile
    state: AuthState
    result: Optional[LoginResult]
    captcha: Optional[CaptchaChallenge]
    message: Optional[str]

    @staticmethod
    def create(profile: Profile):
        return AuthAttempt(profile=profile, state=AuthState.INIT, result=None, captcha=None, message=None)

    @property
    def finished(self) -> bool:
        return self.state not in TRANSITIONS

    def advance(self, state: AuthState):
        if state not in TRANSITIONS.get(self.state, ()):
            raise ValueError(f"Login cannot go from {self.state.value} to {state.value}")
        logging.debug(f"Login {self.profile.user_nick}: {self.state.value} -> {state.value}")
        self.state = state

    def conclude(self, result: LoginResult, message: Optional[str] = None) -> "AuthAttempt":
        self.advance(RESULT_STATES[result])
        self.result = result
        self.message = message
        return self

    def fail(self, message: str) -> "AuthAttempt":
        logging.warning(f"Login {self.profile.user_nick} failed: {message}")
        self.captcha = None
        return self.conclude(LoginResult.ERROR, message)


class AuthStateMachine:
    """
    Drives the game.php login: landing page, credential POST, optional captcha rounds, optional flash password.
    Not reentrant for one profile; the caller makes sure a profile has one attempt in flight.
    """

    def __init__(self, http: GameHttpClient, repository: ProfileRepository):
        self._http = http
        self._repository = repository
        self._result_handlers = {
            LoginResult.SUCCESS: self._handle_success,
            LoginResult.CAPTCHA_REQUIRED: self._handle_captcha,
            LoginResult.INVALID_CREDENTIALS: self._handle_invalid_credentials,
            LoginResult.ERROR: self._handle_error,
        }

    @property
    def game_url(self) -> str:
        return self._http.url("game.php")

    @staticmethod
    def _credentials(profile: Profile) -> dict:
        return {
            "player_nick": profile.user_nick,
            "player_password": profile.user_password,
        }

    async def login(self, profile: Profile) -> AuthAttempt:
        if profile.is_encrypted:
            raise ProfileLockedError("Profile must be unlocked before logging in")

        attempt = AuthAttempt.create(profile)
        if not profile.is_login_data_complete:
            return attempt.fail("Nickname and password are required")

        logging.info(f"Logging in as {profile.user_nick}")
        try:
            landing = await self._http.get(self._http.base_url)
        except httpx.HTTPError as e:
            return attempt.fail(f"Landing page unreachable: {e!r}")
        if not landing.is_success:
            return attempt.fail(f"Landing page answered {landing.status_code}")

        attempt.advance(AuthState.SUBMITTED)
        return await self._submit(attempt, self._credentials(profile))

    async def submit_captcha(self, attempt: AuthAttempt, code: str) -> AuthAttempt:
        if attempt.state is not AuthState.CAPTCHA_REQUIRED or attempt.captcha is None:
            raise ValueError(f"No captcha pending, login is {attempt.state.value}")

        fields = self._credentials(attempt.captcha.profile)
        fields["captcha"] = code
        attempt.captcha = None
        attempt.advance(AuthState.CAPTCHA_SUBMITTED)
        return await self._submit(attempt, fields)

    async def refresh_captcha(self, attempt: AuthAttempt) -> AuthAttempt:
        if attempt.state is not AuthState.CAPTCHA_REQUIRED or attempt.captcha is None:
            raise ValueError(f"No captcha pending, login is {attempt.state.value}")

        image = await self._http.download_data(attempt.captcha.url)
        if not image:
            return attempt.fail("Captcha image could not be downloaded")
        attempt.captcha = CaptchaChallenge(profile=attempt.captcha.profile, image=image, url=attempt.captcha.url)
        return attempt

    async def _post(self, fields: dict) -> httpx.Response:
        return await self._http.post_form(self.game_url, fields, headers={"Referer": self._http.base_url})

    async def _submit(self, attempt: AuthAttempt, fields: dict) -> AuthAttempt:
        try:
            response = await self._post(fields)
        except httpx.HTTPError as e:
            return attempt.fail(f"Login request failed: {e!r}")
        if not response.is_success:
            return attempt.fail(f"Login answered {response.status_code}")

        body = self._http.text(response)
        result = check_login_response(body)
        logging.debug(f"Login response classified as {result.value}")
        return await self._result_handlers[result](attempt, body)

    async def _handle_success(self, attempt: AuthAttempt, body: str) -> AuthAttempt:
        flash = FLASH_PLAYER_ID.search(body)
        if flash is not None and attempt.profile.has_flash_password:
            logging.debug(f"Flash password requested for player {flash.group(1)}")
            try:
                response = await self._post({
                    "flcheck": attempt.profile.user_password_flash,
                    "nid": flash.group(1),
                })
            except httpx.HTTPError as e:
                return attempt.fail(f"Flash password request failed: {e!r}")
            if not response.is_success:
                return attempt.fail(f"Flash password answered {response.status_code}")
            flash_body = self._http.text(response)
            if check_login_response(flash_body) is not LoginResult.SUCCESS:
                return attempt.fail(extract_server_warning(flash_body) or "Flash password rejected")

        if not self._http.cookie_store.is_authenticated():
            logging.warning(f"Login for {attempt.profile.user_nick} succeeded without an identity cookie")

        now = time.time()
        attempt.profile = dataclasses.replace(attempt.profile, last_logon=now, config_last_saved=now)
        await self._repository.save_profile(attempt.profile)
        logging.info(f"Logged in as {attempt.profile.user_nick}")
        return attempt.conclude(LoginResult.SUCCESS)

    async def _handle_captcha(self, attempt: AuthAttempt, body: str) -> AuthAttempt:
        url = extract_captcha_url(body, self._http.base_url)
        if url is None:
            return attempt.fail("Captcha requested but no captcha image found")
        image = await self._http.download_data(url)
        if not image:
            return attempt.fail("Captcha image could not be downloaded")
        attempt.captcha = CaptchaChallenge(profile=attempt.profile, image=image, url=url)
        logging.info(f"Captcha required for {attempt.profile.user_nick}")
        return attempt.conclude(LoginResult.CAPTCHA_REQUIRED)

    async def _handle_invalid_credentials(self, attempt: AuthAttempt, body: str) -> AuthAttempt:
        logging.info(f"Invalid credentials for {attempt.profile.user_nick}")
        return attempt.conclude(LoginResult.INVALID_CREDENTIALS, extract_server_warning(body))

    async def _handle_error(self, attempt: AuthAttempt, body: str) -> AuthAttempt:
        return attempt.fail(extract_server_warning(body) or "Unexpected login response")
