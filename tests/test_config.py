import pytest
import tomlkit

from config import Config, ConfigurationLoadError, DEFAULT_CLIENT_CONFIG, StateStore, merge_defaults

CLIENT_TOML = """\
[http]
timeout = 5.0

[keep_alive]
interval = 30
"""

STATE_TOML = """\
[cookies]
"www.neverlands.ru" = ["NeverNick=%C3%E5%F0%EE%E9;www.neverlands.ru;/;9223372036854775807"]

[user]
current_nick = "Герой"
"""


@pytest.fixture
def paths(tmp_path):
    return tmp_path / "client.toml", tmp_path / "state.toml"


class TestMergeDefaults:

    def test_sections_overlay(self):
        merged = merge_defaults({"http": {"timeout": 5.0}})
        assert merged["http"]["timeout"] == 5.0
        assert merged["http"]["connect_retries"] == 1
        assert merged["server"] == DEFAULT_CLIENT_CONFIG["server"]

    def test_defaults_untouched(self):
        merge_defaults({"http": {"timeout": 5.0}})
        assert DEFAULT_CLIENT_CONFIG["http"]["timeout"] == 30.0


class TestStateStore:

    def test_get_set_delete(self):
        store = StateStore()
        assert store.get("user", "current_nick") is None
        assert store.get("user", "current_nick", "nobody") == "nobody"
        store.set("user", "current_nick", "Герой")
        assert store.get("user", "current_nick") == "Герой"
        assert store.keys("user") == ["current_nick"]
        store.delete("user", "current_nick")
        store.delete("user", "missing")
        assert store.keys("user") == []
        assert store.keys("cookies") == []

    def test_lists_unwrap(self):
        store = StateStore(tomlkit.parse(STATE_TOML))
        records = store.get("cookies", "www.neverlands.ru")
        assert isinstance(records, list)
        assert records[0].startswith("NeverNick=")


class TestConfig:

    @pytest.mark.asyncio
    async def test_initialize(self, paths):
        config_path, state_path = paths
        config_path.write_text(CLIENT_TOML, encoding="utf-8")
        state_path.write_text(STATE_TOML, encoding="utf-8")

        config = Config(config_path, state_path)
        await config.initialize()

        assert config.settings["http"]["timeout"] == 5.0
        assert config.settings["keep_alive"]["interval"] == 30
        assert config.settings["keep_alive"]["max_failures"] == 3
        assert config.state_store().get("user", "current_nick") == "Герой"

    @pytest.mark.asyncio
    async def test_missing_state_starts_empty(self, paths):
        config_path, state_path = paths
        config_path.write_text(CLIENT_TOML, encoding="utf-8")

        config = Config(config_path, state_path)
        await config.initialize()
        config.state_store().set("user", "current_nick", "Герой")
        await config.close()

        assert tomlkit.parse(state_path.read_text(encoding="utf-8"))["user"]["current_nick"] == "Герой"
        assert config_path.read_text(encoding="utf-8") == CLIENT_TOML

    @pytest.mark.asyncio
    async def test_missing_config(self, paths):
        with pytest.raises(ConfigurationLoadError):
            await Config(*paths).initialize()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", [
        "[http\ntimeout = 5",
        "[http]\ntimeout = \"fast\"\n",
        "[http]\nconnect_retries = 50\n",
        "[server]\nbase_url = \"not a url\"\n",
    ])
    async def test_bad_config(self, paths, text):
        config_path, state_path = paths
        config_path.write_text(text, encoding="utf-8")
        with pytest.raises(ConfigurationLoadError):
            await Config(config_path, state_path).initialize()

    @pytest.mark.asyncio
    async def test_bad_state(self, paths):
        config_path, state_path = paths
        config_path.write_text(CLIENT_TOML, encoding="utf-8")
        state_path.write_text("[cookies]\n\"www.neverlands.ru\" = 5\n", encoding="utf-8")
        with pytest.raises(ConfigurationLoadError):
            await Config(config_path, state_path).initialize()

    def test_settings_before_initialize(self, paths):
        assert Config(*paths).settings == DEFAULT_CLIENT_CONFIG
