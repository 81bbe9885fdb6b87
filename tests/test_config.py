from pathlib import Path

import pytest

from zedex.config import API_BASE, Config, load_config


def write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_missing_keys_fall_back_to_defaults(tmp_path):
    config = load_config(write(tmp_path, "root_dir: /srv/zed\n"))
    assert config.root_dir == "/srv/zed"
    assert config.api_base == API_BASE
    assert config.port == 2654
    assert config.proxy_mode is False
    assert config.domain is None


def test_values_are_coerced_and_trimmed(tmp_path):
    config = load_config(
        write(
            tmp_path,
            "api_base: http://api.local/\n"
            "proxy_mode: 'yes'\n"
            "rate_limit: 2\n"
            "port: '8080'\n"
            "domain: http://mirror.local:2654/\n",
        )
    )
    assert config.api_base == "http://api.local"
    assert config.proxy_mode is True
    assert config.rate_limit == 2.0
    assert config.port == 8080
    assert config.domain == "http://mirror.local:2654"


def test_empty_file_is_all_defaults(tmp_path):
    assert load_config(write(tmp_path, "")) == Config()


@pytest.mark.parametrize("text", ["- a\n- b\n", "just a string\n"])
def test_non_mapping_rejected(tmp_path, text):
    with pytest.raises(ValueError):
        load_config(write(tmp_path, text))


def test_unknown_keys_rejected(tmp_path):
    with pytest.raises(ValueError, match="proxy"):
        load_config(write(tmp_path, "proxy: true\n"))


def test_override_skips_none():
    config = Config(port=1)
    config.override(port=None, host="0.0.0.0")
    assert config.port == 1
    assert config.host == "0.0.0.0"


def test_directories_derive_from_root():
    config = Config(root_dir="/data")
    assert config.extensions_dir == Path("/data")
    assert config.releases_dir == Path("/data/releases")
