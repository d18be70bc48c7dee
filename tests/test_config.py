import copy

import pytest

from clonewarden.config import DEFAULT_CONFIG, ConfigError, load_config, validate_config


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    monkeypatch.delenv("CW_CONFIG_PATH", raising=False)
    monkeypatch.delenv("CW_DATA_DIR", raising=False)


def test_defaults_without_config_file():
    config = load_config()
    assert config.upstream.rate_limit_per_second == 11
    assert config.bulk.cost_halt_multiplier == 1.5
    assert config.allocation.default_strategy == "round-robin"
    assert config.paths.state_db == "/data/state.sqlite3"


def test_yaml_overrides_are_merged(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text(
        "bulk:\n  default_batch_size: 10\nupstream:\n  mock_mode: true\n  base_url: https://example.test/\n",
        encoding="utf-8",
    )
    config = load_config(str(path))
    assert config.bulk.default_batch_size == 10
    assert config.bulk.inter_item_delay_seconds == 1.0
    assert config.upstream.mock_mode is True
    assert config.upstream.base_url == "https://example.test"


def test_config_path_from_environment(tmp_path, monkeypatch):
    path = tmp_path / "config.yml"
    path.write_text("health:\n  cache_minutes: 5\n", encoding="utf-8")
    monkeypatch.setenv("CW_CONFIG_PATH", str(path))
    assert load_config().health.cache_minutes == 5


def test_data_dir_override(tmp_path, monkeypatch):
    monkeypatch.setenv("CW_DATA_DIR", str(tmp_path))
    config = load_config()
    assert config.paths.data_dir == str(tmp_path)
    assert config.paths.state_db == str(tmp_path / "state.sqlite3")


def test_missing_explicit_path_is_an_error(tmp_path):
    with pytest.raises(ConfigError, match="config file not found"):
        load_config(str(tmp_path / "nope.yml"))


def test_unknown_keys_and_bad_types_rejected(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text("bulk:\n  bogus: 1\n  total_attempts: many\n", encoding="utf-8")
    with pytest.raises(ConfigError) as excinfo:
        load_config(str(path))
    message = str(excinfo.value)
    assert message.startswith("Invalid config:")
    assert "unknown config.bulk.bogus" in message
    assert "config.bulk.total_attempts must be an integer" in message


def test_range_checks():
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    cfg["bulk"]["default_batch_size"] = 0
    cfg["allocation"]["default_strategy"] = "random"
    errors = validate_config(cfg)
    assert "config.bulk.default_batch_size must be between 1 and 50" in errors
    assert any(error.startswith("config.allocation.default_strategy") for error in errors)


def test_non_mapping_yaml_rejected(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="mapping"):
        load_config(str(path))
