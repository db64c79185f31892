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

import base64
import binascii
import dataclasses
import hashlib
import hmac
import logging
from typing import Optional, Protocol

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from config import StateStore


class ProfileLockedError(Exception): pass


@dataclasses.dataclass
class Profile:
    user_nick: str = ""
    user_password: str = ""
    user_password_flash: str = ""

    # password material when the profile is stored encrypted
    is_encrypted: bool = False
    config_password: str = ""
    config_hash: str = ""

    # content filter switches
    fish_auto: bool = False
    fish_auto_wear: bool = False
    torg_active: bool = False
    chat_keep_game: bool = False
    do_inv_pack: bool = False
    last_chat_message: str = ""

    config_last_saved: Optional[float] = None
    last_logon: Optional[float] = None

    @property
    def is_login_data_complete(self) -> bool:
        return bool(self.user_nick.strip()) and bool(self.user_password.strip())

    @property
    def has_flash_password(self) -> bool:
        return bool(self.user_password_flash)


class ProfileRepository(Protocol):
    async def save_profile(self, profile: Profile) -> None: ...


class StateProfileRepository:
    """Keeps the login timestamps of the current player in the [user] table of the state document."""

    SECTION = "user"

    def __init__(self, store: StateStore):
        self._store = store

    async def save_profile(self, profile: Profile) -> None:
        for key in ("last_logon", "config_last_saved"):
            value = getattr(profile, key)
            if value is not None:
                self._store.set(self.SECTION, key, value)
        logging.debug(f"Saved profile timestamps for {profile.user_nick}")

    def load_into(self, profile: Profile) -> Profile:
        return dataclasses.replace(
            profile,
            last_logon=self._store.get(self.SECTION, "last_logon", profile.last_logon),
            config_last_saved=self._store.get(self.SECTION, "config_last_saved", profile.config_last_saved),
        )


class ProfileCipher:
    """
    Stored password material: AES-128/ECB/PKCS7 keyed by the first 16 bytes of sha256(passphrase),
    with base64(sha256(passphrase)) kept alongside to check the passphrase.
    """

    @staticmethod
    def passphrase_digest(passphrase: str) -> bytes:
        return hashlib.sha256(passphrase.encode("utf-8")).digest()

    @staticmethod
    def passphrase_hash(passphrase: str) -> str:
        return base64.b64encode(ProfileCipher.passphrase_digest(passphrase)).decode("ascii")

    @staticmethod
    def _cipher(passphrase: str) -> Cipher:
        key = ProfileCipher.passphrase_digest(passphrase)[:16]
        return Cipher(algorithms.AES(key), modes.ECB())

    @staticmethod
    def encrypt(plaintext: str, passphrase: str) -> str:
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        data = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        encryptor = ProfileCipher._cipher(passphrase).encryptor()
        return base64.b64encode(encryptor.update(data) + encryptor.finalize()).decode("ascii")

    @staticmethod
    def decrypt(ciphertext: str, passphrase: str) -> str:
        try:
            data = base64.b64decode(ciphertext, validate=True)
            decryptor = ProfileCipher._cipher(passphrase).decryptor()
            padded = decryptor.update(data) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            return (unpadder.update(padded) + unpadder.finalize()).decode("utf-8")
        except (binascii.Error, ValueError) as e:
            logging.exception(e)
            raise ProfileLockedError("Stored password could not be decrypted") from e

    @staticmethod
    def seal(profile: Profile, passphrase: str) -> Profile:
        return dataclasses.replace(
            profile,
            is_encrypted=True,
            user_password="",
            config_password=ProfileCipher.encrypt(profile.user_password, passphrase),
            config_hash=ProfileCipher.passphrase_hash(passphrase),
        )

    @staticmethod
    def unlock(profile: Profile, passphrase: str) -> Profile:
        """Copy of an encrypted profile with the plaintext password filled in."""
        if not profile.is_encrypted:
            return profile
        if not hmac.compare_digest(ProfileCipher.passphrase_hash(passphrase), profile.config_hash):
            raise ProfileLockedError("Wrong passphrase for profile")
        return dataclasses.replace(
            profile,
            is_encrypted=False,
            user_password=ProfileCipher.decrypt(profile.config_password, passphrase),
        )
