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

import copy
import logging
from pathlib import Path

from voluptuous import Schema, Required, Optional, Any, All, Range, Length, Url
import voluptuous.error
import aiofiles
import tomlkit
import tomlkit.exceptions


class ConfigurationLoadError(Exception): pass


DEFAULT_CLIENT_CONFIG = {
    'server': {
        'base_url': "http://www.neverlands.ru/",
        'canonical_host': "www.neverlands.ru",
        'aliases': ["forum.neverlands.ru", "neverlands.ru"],
    },
    'http': {
        'timeout': 30.0,
        'connect_retries': 1,
        'diagnostics': False,
    },
    'keep_alive': {
        'interval': 60.0,
        'combat_interval': 15.0,
        'max_interval': 300.0,
        'backoff': 2.0,
        'max_failures': 3,
        'session_timeout': 300.0,
        'idle_timeout': 60.0,
    },
}


def merge_defaults(loaded: dict, defaults: dict = None) -> dict:
    """Overlay a loaded configuration on top of the defaults, section by section."""
    defaults = DEFAULT_CLIENT_CONFIG if defaults is None else defaults
    merged = copy.deepcopy(defaults)
    for section, values in (loaded or {}).items():
        if isinstance(values, dict) and isinstance(merged.get(section), dict):
            merged[section].update(values)
        else:
            merged[section] = values
    return merged


class StateStore:
    """
    Key-value storage for state the client owns: cookie records per host and the bound nickname.
    Backed by a tomlkit document, so it is written back with the rest of the configuration.
    """

    def __init__(self, document: tomlkit.TOMLDocument = None):
        self.document = document if document is not None else tomlkit.document()

    def get(self, section: str, key: str, default=None):
        table = self.document.get(section)
        if table is None or key not in table:
            return default
        value = table[key]
        return value.unwrap() if hasattr(value, "unwrap") else value

    def set(self, section: str, key: str, value):
        if section not in self.document:
            self.document.add(section, tomlkit.table())
        self.document[section][key] = value

    def delete(self, section: str, key: str):
        table = self.document.get(section)
        if table is not None and key in table:
            del table[key]

    def keys(self, section: str) -> list[str]:
        table = self.document.get(section)
        return list(table.keys()) if table is not None else []


class Config:
    config: tomlkit.TOMLDocument
    state: tomlkit.TOMLDocument
    state_opened: bool = False
    config_opened: bool = False

    def __init__(self, config_location: Path, state_location: Path):
        self.config_location = config_location
        self.state_location = state_location

        self.config_schema = Schema({
            Optional('server'): {
                Optional('base_url'): All(str, Url()),
                Optional('canonical_host'): All(str, Length(min=1)),
                Optional('aliases'): [All(str, Length(min=1))],
            },
            Optional('http'): {
                Optional('timeout'): All(Any(int, float), Range(min=0.1, max=600)),
                Optional('connect_retries'): All(int, Range(min=0, max=10)),
                Optional('diagnostics'): bool,
            },
            Optional('keep_alive'): {
                Optional('interval'): All(Any(int, float), Range(min=1)),
                Optional('combat_interval'): All(Any(int, float), Range(min=1)),
                Optional('max_interval'): All(Any(int, float), Range(min=1)),
                Optional('backoff'): All(Any(int, float), Range(min=1)),
                Optional('max_failures'): All(int, Range(min=1, max=100)),
                Optional('session_timeout'): All(Any(int, float), Range(min=1)),
                Optional('idle_timeout'): All(Any(int, float), Range(min=1)),
            },
        })
        self.state_schema = Schema({
            Optional('cookies'): Any(None, {str: [str]}),
            Optional('user'): Any(None, {
                Optional('current_nick'): str,
                Optional('last_logon'): Any(int, float),
                Optional('config_last_saved'): Any(int, float),
            }),
        })

    @property
    def settings(self) -> dict:
        return merge_defaults(self.config.unwrap() if self.config_opened else {})

    def state_store(self) -> StateStore:
        return StateStore(self.state if self.state_opened else None)

    async def initialize(self):
        try:
            async with aiofiles.open(self.config_location, 'r', encoding='utf-8') as config_file:
                file_data = await config_file.read()
                self.config = tomlkit.parse(file_data)
                logging.debug("Loaded Configuration without toml format error")
                logging.debug("Validating against Schema.")
                self.config_schema(self.config.unwrap())
                self.config_opened = True
                logging.debug("Validated against Schema.")
        except FileNotFoundError as e:
            logging.exception(e)
            logging.warning(
                f"Could not find {self.config_location}. Copy from .example/client.toml to {self.config_location}")
            raise ConfigurationLoadError() from e
        except IOError as e:
            logging.exception(e)
            logging.warning(f"Could not open file {self.config_location}")
            raise ConfigurationLoadError() from e
        except tomlkit.exceptions.ParseError as e:
            logging.exception(e)
            logging.warning(f"Configuration in {self.config_location} is invalid")
            raise ConfigurationLoadError() from e
        except voluptuous.error.MultipleInvalid as e:
            logging.exception(e)
            logging.warning(f"Configuration in {self.config_location} does not match expected format")
            logging.warning(f"Issue configuration item: {e.path}")
            raise ConfigurationLoadError() from e

        logging.debug(f"Loaded Configuration")

        try:
            async with aiofiles.open(self.state_location, 'r', encoding='utf-8') as state_file:
                file_data = await state_file.read()
                self.state = tomlkit.parse(file_data)
                logging.debug("Loaded State without toml format error")
                logging.debug("Validating against Schema.")
                self.state_schema(self.state.unwrap())
                logging.debug("Validated against Schema.")
                self.state_opened = True
        except FileNotFoundError:
            # first run, nothing persisted yet
            logging.info(f"No state at {self.state_location}, starting empty")
            self.state = tomlkit.document()
            self.state_opened = True
        except IOError as e:
            logging.exception(e)
            logging.warning(f"Could not open file {self.state_location}")
            raise ConfigurationLoadError() from e
        except tomlkit.exceptions.ParseError as e:
            logging.exception(e)
            logging.warning(f"State in {self.state_location} is invalid")
            raise ConfigurationLoadError() from e
        except voluptuous.error.MultipleInvalid as e:
            logging.exception(e)
            logging.warning(f"State in {self.state_location} does not match expected format")
            logging.warning(f"Issue configuration item: {e.path}")
            raise ConfigurationLoadError() from e

        logging.debug(f"Loaded State")
        logging.info(f"Configuration loaded.")

    async def close(self):
        if self.config_opened is True:
            async with aiofiles.open(self.config_location, 'w', encoding='utf-8') as config_file:
                await config_file.write(tomlkit.dumps(self.config))
            logging.debug("Config file saved to disk.")

        if self.state_opened is True:
            async with aiofiles.open(self.state_location, 'w', encoding='utf-8') as state_file:
                await state_file.write(tomlkit.dumps(self.state))
            logging.debug("State file saved to disk.")
        logging.info(f"Configuration Saved.")
