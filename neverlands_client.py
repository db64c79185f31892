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
import logging
import os
from pathlib import Path
from typing import Awaitable, Callable

import aiofiles
from rich.prompt import Prompt

from auth_machine import AuthAttempt, LoginResult
from config import Config, ConfigurationLoadError
from cookie_store import IdentitySecurityError
from game_session import GameSession
from logger import console, setup_logging
from profile_data import Profile, ProfileCipher, ProfileLockedError, StateProfileRepository

CaptchaSolver = Callable[[AuthAttempt], Awaitable[str]]


def profile_from_environment(prompt: Callable[..., str] = Prompt.ask) -> Profile:
    """
    Login data comes from NEVERLANDS_NICK / NEVERLANDS_PASSWORD / NEVERLANDS_FLASH.
    Missing values are asked for on the console.
    """
    nick = os.environ.get("NEVERLANDS_NICK") or prompt("Nickname", console=console)
    password = os.environ.get("NEVERLANDS_PASSWORD") or prompt("Password", console=console, password=True)
    return Profile(
        user_nick=nick,
        user_password=password,
        user_password_flash=os.environ.get("NEVERLANDS_FLASH", ""),
    )


def unlock_profile(profile: Profile, passphrase: str = None) -> Profile:
    if not profile.is_encrypted:
        return profile
    passphrase = passphrase or Prompt.ask("Profile passphrase", console=console, password=True)
    return ProfileCipher.unlock(profile, passphrase)


class NeverlandsClient:

    def __init__(self, config: Config, profile: Profile, captcha_solver: CaptchaSolver = None,
                 captcha_location: Path = Path("./captcha.png")):
        self._config = config
        self.repository = StateProfileRepository(config.state_store())
        self._profile = self.repository.load_into(profile)
        self._captcha_location = captcha_location
        self._captcha_solver = captcha_solver or self.ask_captcha

    def profile(self) -> Profile:
        return self._profile

    async def ask_captcha(self, attempt: AuthAttempt) -> str:
        async with aiofiles.open(self._captcha_location, 'wb') as captcha_file:
            await captcha_file.write(attempt.captcha.image)
        logging.info(f"Captcha saved to {self._captcha_location}")
        return await asyncio.to_thread(Prompt.ask, "Captcha code", console=console)

    async def login(self, session: GameSession) -> AuthAttempt:
        attempt = await session.login(self._profile)
        while attempt.result is LoginResult.CAPTCHA_REQUIRED:
            code = await self._captcha_solver(attempt)
            if not code:
                attempt = await session.refresh_captcha(attempt)
                continue
            attempt = await session.submit_captcha(attempt, code)
        if attempt.result is LoginResult.SUCCESS:
            self._profile = attempt.profile
        return attempt

    async def begin(self, session: GameSession) -> bool:
        logging.info(f"Starting Neverlands session for {self._profile.user_nick}")
        attempt = await self.login(session)
        if attempt.result is not LoginResult.SUCCESS:
            logging.error(f"Login failed: {attempt.message or attempt.result.value}")
            return False

        logging.info("Starting keep-alive")
        session.start_keep_alive()
        try:
            logging.info("Ctrl^C to quit")
            await session.keep_alive.wait_stopped()
        except asyncio.CancelledError:
            logging.info("Cancelled ...")
        finally:
            logging.info("Stopping Session ...")
            if session.keep_alive.running:
                session.stop_keep_alive()
        logging.info(f"Keep-alive ended: {session.keep_alive.statistics()}")
        return True


async def main():
    logging.info("Starting neverlands session ...")

    config = Config(
        Path(os.environ.get("NEVERLANDS_CONFIG", "./client.toml")),
        Path(os.environ.get("NEVERLANDS_STATE", "./state.toml")),
    )

    try:
        await config.initialize()
    except ConfigurationLoadError:
        logging.error("Could not load configuration. Exiting")
        return

    try:
        client = NeverlandsClient(config, unlock_profile(profile_from_environment()))
        async with GameSession.from_config(config, client.repository, client.profile) as session:
            await client.begin(session)
    except ProfileLockedError as e:
        logging.error(f"Profile is locked: {e}")
    except IdentitySecurityError as e:
        logging.error(f"Identity mismatch, server sent {e.claimed_nick} while logged in as {e.bound_nick}")
    finally:
        await config.close()


def run():
    setup_logging()
    asyncio.run(main())


if __name__ == "__main__":
    run()
