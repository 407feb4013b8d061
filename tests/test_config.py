from pathlib import Path

import pytest

from barman_exporter import (
    ConfigurationError,
    ProgramConfig,
    ProgramSource,
    build_parser,
)


def write_settings(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def test_defaults_without_environment(tmp_path):
    config = ProgramConfig(ProgramSource(script_path=tmp_path / "barman_exporter.py"), environ={})
    config.load()

    assert config.sudo_binary_path == "/usr/bin/sudo"
    assert config.barman_binary_path == "/usr/bin/barman"
    assert config.barman_user_name == "barman"
    assert config.barman_config_dir == Path("/etc/barman.d")
    assert config.metrics_port == 9706
    assert config.scrape_interval == 60
    assert config.parallel_check is False
    assert config.config_path is None


def test_environment_overrides(make_config):
    config = make_config({
        "SUDO_BINARY_PATH": "/bin/doas",
        "BARMAN_BINARY_PATH": "/opt/barman/bin/barman",
        "BARMAN_USER_NAME": "backup",
        "BARMAN_CONFIG_DIR": "/srv/barman.d",
    })

    assert config.sudo_binary_path == "/bin/doas"
    assert config.barman_binary_path == "/opt/barman/bin/barman"
    assert config.barman_user_name == "backup"
    assert config.barman_config_dir == Path("/srv/barman.d")


def test_empty_environment_value_keeps_default(make_config):
    config = make_config({"BARMAN_USER_NAME": ""})
    assert config.barman_user_name == "barman"


def test_settings_file_merges_with_defaults(tmp_path, make_config):
    settings = write_settings(tmp_path / "settings.yml", """
exporter:
    metrics_port: 9800
    collection:
        max_workers: 8
    logging:
        level: debug
""")
    config = make_config(config_path=settings)

    assert config.config_path == settings
    assert config.metrics_port == 9800
    assert config.max_workers == 8
    assert config.failure_threshold == ProgramConfig.DEFAULT_FAILURE_THRESHOLD
    assert config.logging["level"] == "debug"
    assert config.logging["console_level"] == ProgramConfig.DEFAULT_LOG_CONSOLE_LEVEL


def test_settings_file_from_environment(tmp_path, make_config):
    settings = write_settings(tmp_path / "env.yml", "exporter:\n    metrics_port: 9900\n")
    config = make_config({"BARMAN_EXPORTER_CONFIG": str(settings)})
    assert config.metrics_port == 9900


def test_settings_file_next_to_script_is_optional(tmp_path, make_config):
    assert make_config().config_path is None

    write_settings(tmp_path / "barman_exporter.yml", "exporter:\n    listen_address: 127.0.0.1\n")
    config = make_config()
    assert config.config_path == tmp_path / "barman_exporter.yml"
    assert config.listen_address == "127.0.0.1"


def test_missing_explicit_settings_file(tmp_path, make_config):
    with pytest.raises(ConfigurationError, match="not found"):
        make_config(config_path=tmp_path / "missing.yml")


@pytest.mark.parametrize("text, message", [
    ("exporter:\n    metrics_port: 70000\n", "metrics_port"),
    ("exporter:\n    metrics_port: true\n", "metrics_port"),
    ("exporter:\n    collection:\n        max_workers: 0\n", "max_workers"),
    ("exporter:\n    logging:\n        level: LOUD\n", "level"),
    ("exporter: [1, 2]\n", "dictionary"),
    ("- not\n- a mapping\n", "mapping"),
    ("exporter: {metrics_port: [\n", "Failed to load"),
])
def test_invalid_settings(tmp_path, make_config, text, message):
    settings = write_settings(tmp_path / "bad.yml", text)
    with pytest.raises(ConfigurationError, match=message):
        make_config(config_path=settings)


def test_apply_args(config):
    args = build_parser().parse_args(["--parallel-check", "--scrape-interval", "15"])
    config.apply_args(args)

    assert config.parallel_check is True
    assert config.scrape_interval == 15


def test_apply_args_rejects_non_positive_interval(config):
    args = build_parser().parse_args(["--scrape-interval", "0"])
    with pytest.raises(ConfigurationError, match="scrape interval"):
        config.apply_args(args)


def test_parser_defaults():
    args = build_parser().parse_args([])
    assert args.version is False
    assert args.parallel_check is False
    assert args.scrape_interval == 60
    assert args.config is None


def test_running_under_systemd(make_config):
    assert make_config().running_under_systemd is False
    assert make_config({"INVOCATION_ID": "abc"}).running_under_systemd is True
