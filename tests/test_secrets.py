import json
import os
import stat

import pytest

from spotbot.errors import ConfigurationInvalid
from spotbot.secrets import BinanceCredentials, load_credentials, save_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ("BINANCE_API_KEY", "BINANCE_SECRET_KEY", "BINANCE_CONFIG_PATH"):
        monkeypatch.delenv(var, raising=False)


def test_load_credentials_from_env(monkeypatch):
    monkeypatch.setenv("BINANCE_API_KEY", "env_key")
    monkeypatch.setenv("BINANCE_SECRET_KEY", "env_secret")
    creds = load_credentials()
    assert creds == BinanceCredentials("env_key", "env_secret")


def test_load_credentials_from_config_file(tmp_path):
    config_file = tmp_path / "binance.json"
    config_file.write_text(json.dumps({"api_key": "file_key", "api_secret": "file_secret"}))
    creds = load_credentials(str(config_file))
    assert creds.api_key == "file_key"
    assert creds.api_secret == "file_secret"


def test_config_path_from_env(tmp_path, monkeypatch):
    config_file = tmp_path / "custom.json"
    config_file.write_text(json.dumps({"api_key": "k", "api_secret": "s"}))
    monkeypatch.setenv("BINANCE_CONFIG_PATH", str(config_file))
    assert load_credentials().api_key == "k"


def test_missing_credentials(tmp_path):
    with pytest.raises(ConfigurationInvalid):
        load_credentials(str(tmp_path / "nope.json"))


def test_corrupt_config_file(tmp_path):
    config_file = tmp_path / "bad.json"
    config_file.write_text("{not json")
    with pytest.raises(ConfigurationInvalid):
        load_credentials(str(config_file))


def test_repr_masks_secret():
    text = repr(BinanceCredentials("abcdefgh", "supersecret"))
    assert "supersecret" not in text
    assert "efgh" not in text


@pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")
def test_save_config_is_owner_only(tmp_path):
    path = tmp_path / "cfg" / "binance.json"
    save_config(str(path), "k", "s")
    assert stat.S_IMODE(path.stat().st_mode) == 0o600
    assert load_credentials(str(path)) == BinanceCredentials("k", "s")
