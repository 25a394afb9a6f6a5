"""Tests for layered configuration and logging setup."""

import logging
from pathlib import Path

import pytest

from ds_metrics_exporter import (
    ConfigurationError, ProgramConfig, ProgramLogger, ProgramSource,
    build_arg_parser, overrides_from_args, parse_bool, parse_listen_address,
    parse_server_url
)


@pytest.fixture
def source(tmp_path):
    """Program source pointing at a script inside a temporary directory."""
    return ProgramSource(script_path=tmp_path / "ds_exporter_test.py")


def write_config(path: Path, text: str) -> Path:
    path.write_text(text)
    return path


def test_defaults(source):
    config = ProgramConfig(source, environ={})
    config.load()

    assert config.listen_address == ":9313"
    assert config.telemetry_path == "/metrics"
    assert config.server.server_url == "ldap://localhost"
    assert config.server.start_tls is True
    assert config.server.bind_dn == ""
    assert config.server.timeout_sec == 10
    assert config.logging["level"] == "INFO"
    assert config.running_under_systemd is False


def test_server_requires_load(source):
    config = ProgramConfig(source, environ={})
    with pytest.raises(ConfigurationError):
        config.server


def test_config_file_beside_script(source, tmp_path):
    write_config(tmp_path / "ds_exporter_test.yml", """
ldap:
    server_url: "ldap://yaml.example.com:3389"
    start_tls: false
""")
    config = ProgramConfig(source, environ={})
    config.load()

    assert config.config_path == tmp_path / "ds_exporter_test.yml"
    assert config.server.server_url == "ldap://yaml.example.com:3389"
    assert config.server.start_tls is False
    assert config.listen_address == ":9313"


def test_environment_overrides_file(source, tmp_path):
    path = write_config(tmp_path / "custom.yml", """
exporter:
    listen_address: "127.0.0.1:9000"
ldap:
    server_url: "ldap://yaml.example.com"
    bind_dn: "cn=yaml"
""")
    environ = {
        "DS_SERVER_URL": "ldaps://env.example.com",
        "DS_STARTTLS": "false",
        "DS_BINDPASSWORD": "from-env",
        "DS_TIMEOUT": "2.5",
        "DS_LOG_LEVEL": "debug",
    }
    config = ProgramConfig(source, config_path=path, environ=environ)
    config.load()

    assert config.listen_address == "127.0.0.1:9000"
    assert config.server.server_url == "ldaps://env.example.com"
    assert config.server.start_tls is False
    assert config.server.bind_dn == "cn=yaml"
    assert config.server.bind_password == "from-env"
    assert config.server.timeout_sec == 2.5
    assert config.logging["level"] == "DEBUG"


def test_flags_override_environment(source):
    args = build_arg_parser().parse_args([
        "--ldap.ServerURL", "ldap://cli.example.com",
        "--no-ldap.StartTLS",
        "--ldap.BindDN", "cn=cli",
        "--web.telemetry-path", "/scrape",
        "--ldap.Timeout", "0",
    ])
    environ = {"DS_SERVER_URL": "ldap://env.example.com", "DS_STARTTLS": "true"}
    config = ProgramConfig(source, environ=environ, overrides=overrides_from_args(args))
    config.load()

    assert config.server.server_url == "ldap://cli.example.com"
    assert config.server.start_tls is False
    assert config.server.bind_dn == "cn=cli"
    assert config.telemetry_path == "/scrape"
    assert config.server.timeout is None


def test_unset_flags_do_not_override(source):
    args = build_arg_parser().parse_args([])
    assert overrides_from_args(args) == {}


def test_malformed_server_url_is_fatal(source):
    config = ProgramConfig(source, environ={"DS_SERVER_URL": "http://ds.example.com"})
    with pytest.raises(ConfigurationError, match="scheme"):
        config.load()


def test_invalid_boolean_is_fatal(source):
    config = ProgramConfig(source, environ={"DS_STARTTLS": "maybe"})
    with pytest.raises(ConfigurationError, match="start_tls"):
        config.load()


def test_invalid_yaml_is_fatal(source, tmp_path):
    path = write_config(tmp_path / "broken.yml", "ldap: [unterminated")
    config = ProgramConfig(source, config_path=path, environ={})
    with pytest.raises(ConfigurationError, match="Failed to load config file"):
        config.load()


def test_missing_config_file_is_fatal(source, tmp_path):
    config = ProgramConfig(source, config_path=tmp_path / "absent.yml", environ={})
    with pytest.raises(ConfigurationError):
        config.load()


@pytest.mark.parametrize("telemetry_path", ["metrics", "/"])
def test_invalid_telemetry_path(source, telemetry_path):
    config = ProgramConfig(source, environ={"DS_TELEMETRY_PATH": telemetry_path})
    with pytest.raises(ConfigurationError):
        config.load()


def test_negative_timeout_is_fatal(source):
    config = ProgramConfig(source, environ={"DS_TIMEOUT": "-1"})
    with pytest.raises(ConfigurationError, match="timeout_sec"):
        config.load()


def test_systemd_detection(source):
    config = ProgramConfig(source, environ={"INVOCATION_ID": "abc123"})
    assert config.running_under_systemd is True


@pytest.mark.parametrize("url, scheme, host, port", [
    ("ldap://localhost", "ldap", "localhost", 389),
    ("ldaps://ds.example.com", "ldaps", "ds.example.com", 636),
    ("LDAP://ds.example.com:3389", "ldap", "ds.example.com", 3389),
    ("ldap://[::1]:389", "ldap", "::1", 389),
    ("ldapi://%2Fvar%2Frun%2Fslapd-example.socket", "ldapi", "/var/run/slapd-example.socket", None),
    ("ldapi:///var/run/slapd-example.socket", "ldapi", "/var/run/slapd-example.socket", None),
])
def test_parse_server_url(url, scheme, host, port):
    address = parse_server_url(url)
    assert (address.scheme, address.host, address.port) == (scheme, host, port)
    assert address.use_ssl == (scheme == "ldaps")


@pytest.mark.parametrize("url", [
    "", "localhost", "http://ds.example.com", "ldap://", "ldap://host:99999",
    "ldap://host:port", "ldap://host:0", "ldapi://relative", "ldapi://",
])
def test_parse_server_url_rejects(url):
    with pytest.raises(ConfigurationError):
        parse_server_url(url)


@pytest.mark.parametrize("address, expected", [
    (":9313", ("", 9313)),
    ("127.0.0.1:8080", ("127.0.0.1", 8080)),
    ("[::]:9313", ("::", 9313)),
])
def test_parse_listen_address(address, expected):
    assert parse_listen_address(address) == expected


@pytest.mark.parametrize("address", ["9313", "host:", ":0", ":70000"])
def test_parse_listen_address_rejects(address):
    with pytest.raises(ConfigurationError):
        parse_listen_address(address)


@pytest.mark.parametrize("value, expected", [
    ("1", True), ("TRUE", True), ("t", True), ("yes", True), (True, True),
    ("0", False), ("False", False), ("f", False), ("no", False), (False, False),
])
def test_parse_bool(value, expected):
    assert parse_bool(value, "start_tls") is expected


def test_program_logger_handlers(source, tmp_path):
    log_file = tmp_path / "exporter.log"
    config = ProgramConfig(
        source,
        environ={},
        overrides={'exporter': {'logging': {'file': str(log_file), 'level': 'VERBOSE'}}}
    )
    config.load()

    program_logger = ProgramLogger(source, config)
    logger = program_logger.logger
    logger.verbose("verbose message")
    for handler in logger.handlers:
        handler.flush()

    assert set(program_logger.handlers) == {"console", "file"}
    assert logger.level == ProgramLogger.VERBOSE_LEVEL
    assert config.logger is logger
    assert "verbose message" in log_file.read_text()

    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()


def test_verbose_respects_logger_level(source, caplog):
    config = ProgramConfig(source, environ={"DS_LOG_LEVEL": "INFO"})
    config.load()

    program_logger = ProgramLogger(source, config)
    logger = program_logger.logger
    logger.propagate = True
    with caplog.at_level(logging.INFO, logger=logger.name):
        logger.verbose("hidden message")
        logger.info("shown message")

    assert "hidden message" not in caplog.text
    assert "shown message" in caplog.text

    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()


def test_console_script_finds_underscored_config(tmp_path):
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    config_file = write_config(bin_dir / "ds_metrics_exporter.yml", """
ldap:
    server_url: "ldap://script.example.com"
""")
    source = ProgramSource(script_path=bin_dir / "ds-metrics-exporter")

    assert source.config_path == config_file
    assert source.logger_name == "ds_metrics_exporter"

    config = ProgramConfig(source, environ={})
    config.load()
    assert config.server.server_url == "ldap://script.example.com"


def test_scalar_logging_section_is_fatal(source, tmp_path):
    write_config(tmp_path / "ds_exporter_test.yml", """
exporter:
    logging: "debug"
""")
    config = ProgramConfig(source, environ={})
    with pytest.raises(ConfigurationError, match="exporter.logging"):
        config.load()
