#!/usr/bin/env python3

"""
389 Directory Server Metrics Exporter

Description:
---------------------

Prometheus exporter for the statistics entry published by a 389 Directory
Server under ``cn=snmp, cn=monitor``. Every scrape of the telemetry path:
- Opens a fresh LDAP connection to the configured server
- Optionally upgrades it with StartTLS and binds with a service DN
- Reads the monitoring entry with a single subtree search
- Converts the 28 tracked counters to floats and exposes them

Nothing is cached between scrapes. When the server cannot be reached only
``ds_exporter_up 0`` is exposed for that scrape.

Usage:
---------------------
1. Optionally create a YAML configuration file next to the script
2. Override any setting through DS_* environment variables or flags
3. Run the script directly or via systemd service
4. Monitor metrics at http://localhost:9313/metrics

Configuration:
---------------------

exporter:
    listen_address: ":9313"     # host:port for the HTTP server
    telemetry_path: "/metrics"  # Path under which metrics are exposed
    logging:
        level: "INFO"           # Main logging level
        console_level: "INFO"   # Console output level
        file: null              # Optional rotating log file path
        file_level: "DEBUG"     # File logging level
        journal_level: "WARNING"  # Systemd journal level
        max_bytes: 10485760     # Log file size limit (10MB)
        backup_count: 3         # Log file rotation count
        format: "%(asctime)s [%(process)d] [%(threadName)s] [%(name)s.%(funcName)s] [%(levelname)s] %(message)s"
        date_format: "%Y-%m-%d %H:%M:%S"

ldap:
    server_url: "ldap://localhost"  # ldap://, ldaps:// or ldapi:// URL of the server
    start_tls: true                 # Upgrade plain connections with StartTLS
    bind_dn: ""                     # Empty for anonymous access
    bind_password: ""
    timeout_sec: 10                 # Connect/receive timeout, 0 disables

Environment / Flags:
---------------------
DS_LISTEN_ADDRESS   --web.listen-address
DS_TELEMETRY_PATH   --web.telemetry-path
DS_SERVER_URL       --ldap.ServerURL
DS_STARTTLS         --ldap.StartTLS / --no-ldap.StartTLS
DS_BINDDN           --ldap.BindDN
DS_BINDPASSWORD     --ldap.BindPassword
DS_TIMEOUT          --ldap.Timeout
DS_LOG_LEVEL        --log.level

Flags override environment, environment overrides the YAML file.

Dependencies:
---------------------
- Python 3.9+
- prometheus_client
- ldap3
- pyyaml
- cysystemd (for systemd integration)

Notes:
---------------------
- A malformed server URL is fatal at startup
- Unparseable counter values are exposed as 0 and logged
- Scrape failures never turn into HTTP errors
"""

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Imports
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

# Standard library imports
import argparse
import asyncio
import html
import logging
import math
import os
import re
import signal
import ssl
import sys
import threading
import time
from copy import deepcopy
from dataclasses import dataclass, field
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from socketserver import ThreadingMixIn
from typing import (
    Any, Callable, Dict, Iterable, List, Mapping, Optional, Union
)
from urllib.parse import quote, unquote, urlsplit
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

# Third party imports
from prometheus_client import (
    CollectorRegistry, PlatformCollector, ProcessCollector, make_wsgi_app
)
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily
from prometheus_client.registry import Collector
from ldap3 import (
    ALL_ATTRIBUTES, AUTO_BIND_NONE, DEREF_NEVER, NONE, SUBTREE,
    Connection, Server, Tls
)
from ldap3.core.exceptions import LDAPException
from cysystemd.daemon import notify, Notification
from cysystemd import journal
import yaml

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Constants
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

NAMESPACE = "ds_exporter"

# Statistics entry maintained by the 389-DS SNMP subsystem
MONITOR_BASE_DN = "cn=snmp, cn=monitor"
MONITOR_FILTER = "(objectclass=*)"

# Scheme -> default port, ldapi is a local unix socket
LDAP_SCHEMES = {'ldap': 389, 'ldaps': 636, 'ldapi': None}

LANDING_PAGE = """<html>
<head><title>389-DS Exporter</title></head>
<body>
<h1>389-DS Exporter</h1>
<p>For the metrics: Click <a href='{path}'>here</a></p>
</body>
</html>
"""

RawAttributeSet = Dict[str, List[str]]

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Core Exceptions
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ExporterError(Exception):
    """Base class for exporter errors."""
    pass

class ConfigurationError(ExporterError):
    """Invalid configuration, fatal at startup."""
    pass

class FieldCoercionWarning(ExporterError):
    """Counter value could not be converted to a float."""
    pass

class DirectorySessionError(ExporterError):
    """Base class for failures while talking to the directory server."""
    pass

class ServerConnectionError(DirectorySessionError):
    """Could not open a connection to the server."""
    pass

class StartTLSError(DirectorySessionError):
    """StartTLS negotiation failed."""
    pass

class BindError(DirectorySessionError):
    """Authentication with the bind DN failed."""
    pass

class SearchError(DirectorySessionError):
    """Search of the monitoring entry failed."""
    pass

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Core Enums and Data Classes
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class MetricType(Enum):
    """Types of metrics exposed."""
    GAUGE = "gauge"      # A value that can go up and down
    COUNTER = "counter"  # Value that only increases

@dataclass(frozen=True, eq=True)
class MetricDescriptor:
    """Stable identity of an exposed metric."""
    name: str
    description: str
    type: MetricType = MetricType.COUNTER

    @property
    def prometheus_name(self) -> str:
        """Get prometheus-compatible metric name."""
        return f"{NAMESPACE}_{self.name}"

    def family(
        self,
        value: Optional[float] = None
    ) -> Union[CounterMetricFamily, GaugeMetricFamily]:
        """Build a metric family, without samples when value is None."""
        if self.type == MetricType.COUNTER:
            return CounterMetricFamily(self.prometheus_name, self.description, value=value)
        return GaugeMetricFamily(self.prometheus_name, self.description, value=value)

UP_DESCRIPTOR = MetricDescriptor(
    "up",
    "Whether the last scrape was able to connect to the server",
    MetricType.GAUGE
)

# Attribute name on the monitoring entry -> exposed metric
TRACKED_FIELDS = (
    MetricDescriptor("anonymousbinds", "Number of Anonymous Binds"),
    MetricDescriptor("unauthbinds", "Number of Unauth Binds"),
    MetricDescriptor("simpleauthbinds", "Number of Simple Auth Binds"),
    MetricDescriptor("strongauthbinds", "Number of Strong Auth Binds"),
    MetricDescriptor("bindsecurityerrors", "Number of Bind Security Errors"),
    MetricDescriptor("inops", "Number of All Requests"),
    MetricDescriptor("readops", "Number of Read Operations"),
    MetricDescriptor("compareops", "Number of Compare Operations"),
    MetricDescriptor("addentryops", "Number of Add Entry Operations"),
    MetricDescriptor("removeentryops", "Number of Remove Entry Operations"),
    MetricDescriptor("modifyentryops", "Number of Modify Entry Operations"),
    MetricDescriptor("modifyrdnops", "Number of Modify RDN Operations"),
    MetricDescriptor("searchops", "Number of LDAP Search Requests"),
    MetricDescriptor("onelevelsearchops", "Number of one-level Search Requests"),
    MetricDescriptor("wholesubtreesearchops", "Number of subtree-level Search Requests"),
    MetricDescriptor("referrals", "Number of LDAP referrals"),
    MetricDescriptor("securityerrors", "Number of Security Errors"),
    MetricDescriptor("errors", "Number of Errors"),
    MetricDescriptor("connections", "Number of Connections in Open State at the sampling time"),
    MetricDescriptor("connectionseq", "Total Number of Connections opened"),
    MetricDescriptor("connectionsinmaxthreads", "Number of connections that are currently in a max thread state"),
    MetricDescriptor("connectionsmaxthreadscount", "Number of connectionsmaxthreadscount"),
    MetricDescriptor("bytesrecv", "Total number of bytes received"),
    MetricDescriptor("bytessent", "Total number of bytes sent"),
    MetricDescriptor("entriesreturned", "Number of Entries Returned"),
    MetricDescriptor("referralsreturned", "Number of Referrals Returned"),
    MetricDescriptor("cacheentries", "Number of Cache Entries"),
    MetricDescriptor("cachehits", "Number of Cache Hits"),
)

TRACKED_FIELDS_BY_NAME: Dict[str, MetricDescriptor] = {
    descriptor.name: descriptor for descriptor in TRACKED_FIELDS
}

def metric_descriptors() -> tuple[MetricDescriptor, ...]:
    """All exposed descriptors, ``up`` first."""
    return (UP_DESCRIPTOR,) + TRACKED_FIELDS

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass(frozen=True)
class MonitorSnapshot:
    """Values read from the monitoring entry during one scrape."""
    up: int = 0
    anonymousbinds: float = 0.0
    unauthbinds: float = 0.0
    simpleauthbinds: float = 0.0
    strongauthbinds: float = 0.0
    bindsecurityerrors: float = 0.0
    inops: float = 0.0
    readops: float = 0.0
    compareops: float = 0.0
    addentryops: float = 0.0
    removeentryops: float = 0.0
    modifyentryops: float = 0.0
    modifyrdnops: float = 0.0
    searchops: float = 0.0
    onelevelsearchops: float = 0.0
    wholesubtreesearchops: float = 0.0
    referrals: float = 0.0
    securityerrors: float = 0.0
    errors: float = 0.0
    connections: float = 0.0
    connectionseq: float = 0.0
    connectionsinmaxthreads: float = 0.0
    connectionsmaxthreadscount: float = 0.0
    bytesrecv: float = 0.0
    bytessent: float = 0.0
    entriesreturned: float = 0.0
    referralsreturned: float = 0.0
    cacheentries: float = 0.0
    cachehits: float = 0.0

    def values(self) -> Dict[str, float]:
        """Tracked field values keyed by attribute name, in table order."""
        return {
            descriptor.name: getattr(self, descriptor.name)
            for descriptor in TRACKED_FIELDS
        }

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass(frozen=True)
class ServerAddress:
    """Validated components of the directory server URL."""
    scheme: str
    host: str
    port: Optional[int]

    @property
    def use_ssl(self) -> bool:
        """Whether the connection is TLS from the first byte."""
        return self.scheme == 'ldaps'

    @property
    def is_socket(self) -> bool:
        return self.scheme == 'ldapi'

    @property
    def socket_url(self) -> str:
        """``ldapi://`` URL with the socket path percent-encoded."""
        return f"ldapi://{quote(self.host, safe='')}"

def parse_server_url(server_url: str) -> ServerAddress:
    """Validate an ``ldap://``, ``ldaps://`` or ``ldapi://`` URL.

    ``ldapi`` takes the unix socket path percent-encoded in the host part
    (``ldapi://%2Fvar%2Frun%2Fslapd-example.socket``) or as the URL path
    (``ldapi:///var/run/slapd-example.socket``).

    Raises:
        ConfigurationError: If the URL is malformed or uses another scheme
    """
    if not server_url or not isinstance(server_url, str):
        raise ConfigurationError(f"Invalid server URL {server_url!r}")

    try:
        parts = urlsplit(server_url)
        port = parts.port
    except ValueError as e:
        raise ConfigurationError(f"Invalid server URL {server_url!r}: {e}") from e

    scheme = parts.scheme.lower()
    if scheme not in LDAP_SCHEMES:
        raise ConfigurationError(
            f"Invalid server URL {server_url!r}: scheme must be one of "
            f"{sorted(LDAP_SCHEMES)}"
        )

    if scheme == 'ldapi':
        socket_path = unquote(parts.netloc) or unquote(parts.path)
        if not socket_path.startswith('/'):
            raise ConfigurationError(
                f"Invalid server URL {server_url!r}: ldapi needs an absolute socket path"
            )
        return ServerAddress(scheme=scheme, host=socket_path, port=None)

    if not parts.hostname:
        raise ConfigurationError(f"Invalid server URL {server_url!r}: missing host")
    if port is not None and (port < 1 or port > 65535):
        raise ConfigurationError(f"Invalid server URL {server_url!r}: port out of range")

    return ServerAddress(
        scheme=scheme,
        host=parts.hostname,
        port=port if port is not None else LDAP_SCHEMES[scheme]
    )

@dataclass(frozen=True)
class DirectoryServerConfig:
    """Connection settings for the monitored server."""
    server_url: str
    start_tls: bool = True
    bind_dn: str = ""
    bind_password: str = field(default="", repr=False)
    timeout_sec: float = 10

    @property
    def timeout(self) -> Optional[float]:
        """Socket timeout in seconds, None when disabled."""
        return self.timeout_sec if self.timeout_sec and self.timeout_sec > 0 else None

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Program Source and Configuration
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass(frozen=True)
class ProgramSource:
    """Program source and derived file configurations."""
    script_path: Path = field(default_factory=lambda: Path(sys.argv[0]).resolve())

    @property
    def script_dir(self) -> Path:
        """Directory containing the script."""
        return self.script_path.parent

    @property
    def base_name(self) -> str:
        """Base name without extension, dashes as in the console script become underscores."""
        return self.script_path.stem.replace('-', '_')

    @property
    def logger_name(self) -> str:
        """Logger name derived from script name."""
        return self.base_name

    @property
    def config_path(self) -> Optional[Path]:
        """Config file next to the script, if one is readable."""
        path = self.script_dir / f"{self.base_name}.yml"
        if path.is_file() and os.access(path, os.R_OK):
            return path
        return None

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

def parse_bool(value: Any, name: str) -> bool:
    """Parse a boolean setting from YAML or the environment."""
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ('1', 't', 'true', 'yes', 'y', 'on'):
        return True
    if text in ('0', 'f', 'false', 'no', 'n', 'off'):
        return False
    raise ConfigurationError(f"Invalid boolean for {name}: {value!r}")

def parse_listen_address(address: str) -> tuple[str, int]:
    """Split ``host:port`` (host optional) into its parts."""
    host, sep, port = str(address).rpartition(':')
    if not sep:
        raise ConfigurationError(f"Invalid listen address {address!r}: missing port")
    try:
        port_number = int(port)
    except ValueError:
        raise ConfigurationError(f"Invalid listen address {address!r}: bad port")
    if port_number < 1 or port_number > 65535:
        raise ConfigurationError(f"Invalid listen address {address!r}: port out of range")
    return host.strip('[]'), port_number

class ProgramConfig:
    """Layered configuration: defaults, YAML file, environment, flags."""

    # Default values as class attributes - explicit and easy to maintain
    DEFAULT_LISTEN_ADDRESS = ':9313'
    DEFAULT_TELEMETRY_PATH = '/metrics'
    DEFAULT_SERVER_URL = 'ldap://localhost'
    DEFAULT_START_TLS = True
    DEFAULT_BIND_DN = ''
    DEFAULT_BIND_PASSWORD = ''
    DEFAULT_TIMEOUT = 10

    # Logging defaults
    DEFAULT_LOG_LEVEL = 'INFO'
    DEFAULT_LOG_FILE = None
    DEFAULT_LOG_FILE_LEVEL = 'DEBUG'
    DEFAULT_LOG_CONSOLE_LEVEL = 'INFO'
    DEFAULT_LOG_JOURNAL_LEVEL = 'WARNING'
    DEFAULT_LOG_MAX_BYTES = 10485760  # 10MB
    DEFAULT_LOG_BACKUP_COUNT = 3
    DEFAULT_LOG_FORMAT = '%(asctime)s [%(process)d] [%(threadName)s] [%(name)s.%(funcName)s] [%(levelname)s] %(message)s'
    DEFAULT_LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

    # (section, key) -> environment variable
    ENVIRONMENT = {
        ('exporter', 'listen_address'): 'DS_LISTEN_ADDRESS',
        ('exporter', 'telemetry_path'): 'DS_TELEMETRY_PATH',
        ('ldap', 'server_url'): 'DS_SERVER_URL',
        ('ldap', 'start_tls'): 'DS_STARTTLS',
        ('ldap', 'bind_dn'): 'DS_BINDDN',
        ('ldap', 'bind_password'): 'DS_BINDPASSWORD',
        ('ldap', 'timeout_sec'): 'DS_TIMEOUT',
    }

    def __init__(
        self,
        source: ProgramSource,
        config_path: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
        overrides: Optional[Dict[str, Any]] = None
    ):
        """Initialize configuration manager.

        Args:
            source: Program source information
            config_path: Explicit YAML file, defaults to the one beside the script
            environ: Environment mapping, defaults to ``os.environ``
            overrides: Nested settings from command line flags
        """
        self._source = source
        self._config_path = config_path
        self._environ = os.environ if environ is None else environ
        self._overrides = overrides or {}
        self._config = self._get_defaults()
        self._server: Optional[DirectoryServerConfig] = None
        self._running_under_systemd = bool(self._environ.get('INVOCATION_ID'))
        self.logger = None

    def _get_defaults(self) -> Dict[str, Any]:
        """Get default configuration."""
        return {
            'exporter': {
                'listen_address': self.DEFAULT_LISTEN_ADDRESS,
                'telemetry_path': self.DEFAULT_TELEMETRY_PATH,
                'logging': {
                    'level': self.DEFAULT_LOG_LEVEL,
                    'file': self.DEFAULT_LOG_FILE,
                    'file_level': self.DEFAULT_LOG_FILE_LEVEL,
                    'console_level': self.DEFAULT_LOG_CONSOLE_LEVEL,
                    'journal_level': self.DEFAULT_LOG_JOURNAL_LEVEL,
                    'max_bytes': self.DEFAULT_LOG_MAX_BYTES,
                    'backup_count': self.DEFAULT_LOG_BACKUP_COUNT,
                    'format': self.DEFAULT_LOG_FORMAT,
                    'date_format': self.DEFAULT_LOG_DATE_FORMAT
                }
            },
            'ldap': {
                'server_url': self.DEFAULT_SERVER_URL,
                'start_tls': self.DEFAULT_START_TLS,
                'bind_dn': self.DEFAULT_BIND_DN,
                'bind_password': self.DEFAULT_BIND_PASSWORD,
                'timeout_sec': self.DEFAULT_TIMEOUT
            }
        }

    @property
    def config_path(self) -> Optional[Path]:
        """YAML file in use, if any."""
        if self._config_path is not None:
            return self._config_path
        return self._source.config_path

    def load(self) -> None:
        """Load and validate configuration from every layer.

        Raises:
            ConfigurationError: On unreadable files or invalid values
        """
        config = self._get_defaults()

        path = self.config_path
        if path is not None:
            try:
                with open(path) as f:
                    file_config = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                raise ConfigurationError(f"Failed to load config file {path}: {e}") from e
            if not isinstance(file_config, dict):
                raise ConfigurationError(f"Config file {path} must contain a mapping")
            config = self._merge_with_defaults(config, file_config)

        config = self._merge_with_defaults(config, self._environment_overrides())
        config = self._merge_with_defaults(config, self._overrides)

        self._validate(config)
        self._config = config
        self._server = self._build_server_config(config['ldap'])

    def _environment_overrides(self) -> Dict[str, Any]:
        """Collect settings present in the environment."""
        result: Dict[str, Any] = {}
        for (section, key), variable in self.ENVIRONMENT.items():
            if variable in self._environ:
                result.setdefault(section, {})[key] = self._environ[variable]
        if 'DS_LOG_LEVEL' in self._environ:
            result.setdefault('exporter', {}).setdefault('logging', {})['level'] = \
                self._environ['DS_LOG_LEVEL']
        return result

    def _merge_with_defaults(self, defaults: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Simple merge of override values with defaults."""
        result = deepcopy(defaults)
        for key, value in override.items():
            if isinstance(value, dict) and key in result and isinstance(result[key], dict):
                result[key] = self._merge_with_defaults(result[key], value)
            else:
                result[key] = deepcopy(value)
        return result

    def _validate(self, config: Dict[str, Any]) -> None:
        """Validate merged configuration, normalising types in place."""
        exporter = config.get('exporter')
        ldap = config.get('ldap')
        if not isinstance(exporter, dict) or not isinstance(ldap, dict):
            raise ConfigurationError("'exporter' and 'ldap' sections must be dictionaries")

        parse_listen_address(exporter.get('listen_address'))

        telemetry_path = exporter.get('telemetry_path')
        if not isinstance(telemetry_path, str) or not telemetry_path.startswith('/'):
            raise ConfigurationError(f"Invalid telemetry_path {telemetry_path!r}")
        if telemetry_path == '/':
            raise ConfigurationError("telemetry_path must not be the landing page '/'")

        parse_server_url(ldap.get('server_url'))
        ldap['start_tls'] = parse_bool(ldap.get('start_tls'), 'start_tls')
        ldap['bind_dn'] = ldap.get('bind_dn') or ''
        ldap['bind_password'] = ldap.get('bind_password') or ''

        try:
            timeout = float(ldap.get('timeout_sec') or 0)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Invalid timeout_sec {ldap.get('timeout_sec')!r}")
        if timeout < 0 or not math.isfinite(timeout):
            raise ConfigurationError(f"Invalid timeout_sec {timeout}")
        ldap['timeout_sec'] = timeout

        logging_config = exporter.get('logging') or {}
        if not isinstance(logging_config, dict):
            raise ConfigurationError("'exporter.logging' must be a dictionary")
        for key in ('level', 'file_level', 'console_level', 'journal_level'):
            level = str(logging_config.get(key, '')).upper()
            if level not in ('DEBUG', 'VERBOSE', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
                raise ConfigurationError(f"Invalid logging {key} {logging_config.get(key)!r}")
            logging_config[key] = level
        exporter['logging'] = logging_config

    @staticmethod
    def _build_server_config(ldap: Dict[str, Any]) -> DirectoryServerConfig:
        return DirectoryServerConfig(
            server_url=ldap['server_url'],
            start_tls=ldap['start_tls'],
            bind_dn=ldap['bind_dn'],
            bind_password=ldap['bind_password'],
            timeout_sec=ldap['timeout_sec']
        )

    @property
    def running_under_systemd(self) -> bool:
        """Check if running under systemd."""
        return self._running_under_systemd

    @property
    def exporter(self) -> Dict[str, Any]:
        """Get exporter configuration."""
        return self._config['exporter']

    @property
    def logging(self) -> Dict[str, Any]:
        """Get logging configuration."""
        return self.exporter.get('logging', {})

    @property
    def listen_address(self) -> str:
        return self.exporter['listen_address']

    @property
    def telemetry_path(self) -> str:
        return self.exporter['telemetry_path']

    @property
    def server(self) -> DirectoryServerConfig:
        """Immutable directory server settings, available after load()."""
        if self._server is None:
            raise ConfigurationError("Configuration has not been loaded")
        return self._server

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

def build_arg_parser() -> argparse.ArgumentParser:
    """Command line flags. Unset flags stay None so lower layers apply."""
    parser = argparse.ArgumentParser(
        description="Prometheus exporter for 389 Directory Server statistics"
    )
    parser.add_argument('--config', type=Path, default=None,
                        help="YAML configuration file")
    parser.add_argument('--web.listen-address', dest='listen_address', default=None,
                        help="Address to listen on for web interface and telemetry (DS_LISTEN_ADDRESS)")
    parser.add_argument('--web.telemetry-path', dest='telemetry_path', default=None,
                        help="Path under which to expose metrics (DS_TELEMETRY_PATH)")
    parser.add_argument('--ldap.ServerURL', dest='server_url', default=None,
                        help="URL of the target LDAP server (DS_SERVER_URL)")
    parser.add_argument('--ldap.StartTLS', dest='start_tls', default=None,
                        action=argparse.BooleanOptionalAction,
                        help="Use StartTLS (DS_STARTTLS)")
    parser.add_argument('--ldap.BindDN', dest='bind_dn', default=None,
                        help="DN to bind to the target LDAP server (DS_BINDDN)")
    parser.add_argument('--ldap.BindPassword', dest='bind_password', default=None,
                        help="Password to bind to the target LDAP server (DS_BINDPASSWORD)")
    parser.add_argument('--ldap.Timeout', dest='timeout_sec', type=float, default=None,
                        help="Connect and receive timeout in seconds, 0 disables (DS_TIMEOUT)")
    parser.add_argument('--log.level', dest='log_level', default=None,
                        help="Main logging level (DS_LOG_LEVEL)")
    return parser

def overrides_from_args(args: argparse.Namespace) -> Dict[str, Any]:
    """Convert parsed flags into the nested configuration layout."""
    overrides: Dict[str, Any] = {}
    for key in ('listen_address', 'telemetry_path'):
        if getattr(args, key) is not None:
            overrides.setdefault('exporter', {})[key] = getattr(args, key)
    for key in ('server_url', 'start_tls', 'bind_dn', 'bind_password', 'timeout_sec'):
        if getattr(args, key) is not None:
            overrides.setdefault('ldap', {})[key] = getattr(args, key)
    if args.log_level is not None:
        overrides.setdefault('exporter', {}).setdefault('logging', {})['level'] = args.log_level
    return overrides

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Logging
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ProgramLogger:
    """Manages logging configuration and setup."""

    VERBOSE_LEVEL = 15  # DEBUG 10, INFO 20

    class VerboseLogger(logging.Logger):
        """Enhanced Logger class adding verbose debugging capabilities"""

        def verbose(
            self,
            msg: Union[str, Callable[[], str]],
            *args: Any,
            **kwargs: Any
        ) -> None:
            """Log verbose debug messages with efficient deferred evaluation."""

            if not self.isEnabledFor(ProgramLogger.VERBOSE_LEVEL):
                return

            # Handle deferred evaluation of expensive computations
            if callable(msg):
                self.log(ProgramLogger.VERBOSE_LEVEL, msg())
            else:
                self.log(ProgramLogger.VERBOSE_LEVEL, msg, *args, **kwargs)

    @classmethod
    def install(cls) -> None:
        """Register the VERBOSE level and logger class."""
        logging.addLevelName(cls.VERBOSE_LEVEL, 'VERBOSE')
        logging.setLoggerClass(cls.VerboseLogger)

    def __init__(
        self,
        source: ProgramSource,
        config: ProgramConfig
    ):
        """Initialize logging configuration.

        Args:
            source: Program source information
            config: Program configuration
        """
        self.install()

        self.source = source
        self.config = config
        self._handlers: Dict[str, logging.Handler] = {}
        self._logger = self._setup_logging()

        # Attach logger to config after setup
        self.config.logger = self._logger

    @property
    def logger(self) -> logging.Logger:
        """Get the configured logger instance."""
        return self._logger

    @property
    def handlers(self) -> Dict[str, logging.Handler]:
        """Get dictionary of configured handlers."""
        return self._handlers

    def _get_logging_config(self) -> Dict[str, Any]:
        """Logging configuration with defaults filled in."""
        logging_config = self.config.logging
        return {
            'level': logging_config.get('level', self.config.DEFAULT_LOG_LEVEL),
            'file': logging_config.get('file', self.config.DEFAULT_LOG_FILE),
            'file_level': logging_config.get('file_level', self.config.DEFAULT_LOG_FILE_LEVEL),
            'console_level': logging_config.get('console_level', self.config.DEFAULT_LOG_CONSOLE_LEVEL),
            'journal_level': logging_config.get('journal_level', self.config.DEFAULT_LOG_JOURNAL_LEVEL),
            'max_bytes': logging_config.get('max_bytes', self.config.DEFAULT_LOG_MAX_BYTES),
            'backup_count': logging_config.get('backup_count', self.config.DEFAULT_LOG_BACKUP_COUNT),
            'format': logging_config.get('format', self.config.DEFAULT_LOG_FORMAT),
            'date_format': logging_config.get('date_format', self.config.DEFAULT_LOG_DATE_FORMAT)
        }

    def _setup_logging(self) -> logging.Logger:
        """Set up logging with configuration from config file.

        Creates and configures:
        - Base logger
        - Console handler
        - File handler with rotation (if a log file is configured)
        - Journal handler (if running under systemd)

        Note:
            If handler setup fails, ensures at least basic console logging
            is available as a fallback.
        """
        logger = logging.getLogger(self.source.logger_name)
        logger.handlers.clear()
        logger.propagate = False

        log_settings = self._get_logging_config()
        logger.setLevel(log_settings['level'])

        formatter = logging.Formatter(
            log_settings['format'],
            log_settings['date_format']
        )

        try:
            # Console handler
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(log_settings['console_level'])
            console_handler.setFormatter(formatter)
            logger.addHandler(console_handler)
            self._handlers['console'] = console_handler

            # File handler
            if log_settings['file']:
                file_handler = RotatingFileHandler(
                    log_settings['file'],
                    maxBytes=log_settings['max_bytes'],
                    backupCount=log_settings['backup_count']
                )
                file_handler.setLevel(log_settings['file_level'])
                file_handler.setFormatter(formatter)
                logger.addHandler(file_handler)
                self._handlers['file'] = file_handler

            # Journal handler for systemd
            if self.config.running_under_systemd:
                journal_handler = journal.JournaldLogHandler()
                journal_handler.setLevel(log_settings['journal_level'])
                journal_handler.setFormatter(formatter)
                logger.addHandler(journal_handler)
                self._handlers['journal'] = journal_handler

        except Exception as e:
            # If handler setup fails, ensure we have at least a basic console handler
            if not logger.handlers:
                basic_handler = logging.StreamHandler(sys.stdout)
                basic_handler.setFormatter(logging.Formatter(self.config.DEFAULT_LOG_FORMAT))
                logger.addHandler(basic_handler)
                self._handlers['console'] = basic_handler
            print(f"Failed to setup handlers: {e}", file=sys.stderr)

        return logger

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Value Coercion and Attribute Extraction
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

_FLOAT_PATTERN = re.compile(r'[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?')

def parse_counter_value(raw: str, field_name: str) -> float:
    """Strict decimal/scientific parse of a counter value.

    Raises:
        FieldCoercionWarning: For empty, malformed or non-finite input
    """
    if not raw:
        raise FieldCoercionWarning(f"invalid {field_name}: attribute missing or empty")
    if not _FLOAT_PATTERN.fullmatch(raw):
        raise FieldCoercionWarning(f"invalid {field_name}: cannot parse {raw!r}")
    value = float(raw)
    if not math.isfinite(value):
        raise FieldCoercionWarning(f"invalid {field_name}: {raw!r} is out of range")
    return value

def coerce_value(raw: str, field_name: str, logger: logging.Logger) -> float:
    """Convert a counter to float, logging and returning 0.0 on failure."""
    try:
        return parse_counter_value(raw, field_name)
    except FieldCoercionWarning as e:
        logger.error(str(e))
        return 0.0

class AttributeExtractor:
    """Maps the attributes of the monitoring entry onto a snapshot."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def extract(self, attributes: Mapping[str, List[str]], up: int = 1) -> MonitorSnapshot:
        """Build a complete snapshot, first value of each attribute wins."""
        raw_values = {name: "" for name in TRACKED_FIELDS_BY_NAME}

        for name, values in attributes.items():
            if name not in TRACKED_FIELDS_BY_NAME:
                continue
            raw_values[name] = values[0] if values else ""

        values = {
            name: coerce_value(raw, name, self.logger)
            for name, raw in raw_values.items()
        }
        return MonitorSnapshot(up=up, **values)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Directory Session
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class DirectorySession:
    """One connect, StartTLS, bind and search round trip."""

    def __init__(self, config: DirectoryServerConfig, logger: logging.Logger):
        self.config = config
        self.logger = logger

    def _create_connection(self, address: ServerAddress) -> Connection:
        """Build the ldap3 connection object without opening it."""
        tls = Tls(
            validate=ssl.CERT_REQUIRED,
            valid_names=[address.host],
            sni=address.host
        )
        if address.is_socket:
            server = Server(
                address.socket_url,
                tls=tls,
                get_info=NONE,
                connect_timeout=self.config.timeout
            )
        else:
            server = Server(
                address.host,
                port=address.port,
                use_ssl=address.use_ssl,
                tls=tls,
                get_info=NONE,
                connect_timeout=self.config.timeout
            )
        return Connection(
            server,
            user=self.config.bind_dn or None,
            password=self.config.bind_password or None,
            auto_bind=AUTO_BIND_NONE,
            read_only=True,
            receive_timeout=self.config.timeout,
            raise_exceptions=True,
            auto_referrals=False
        )

    def fetch(self) -> RawAttributeSet:
        """Read the attributes of the monitoring entry.

        Raises:
            ConfigurationError: If the server URL is malformed
            ServerConnectionError: If the connection cannot be opened
            StartTLSError: If StartTLS is requested and fails
            BindError: If the configured bind DN is rejected
            SearchError: If the search fails or returns no entry
        """
        address = parse_server_url(self.config.server_url)
        try:
            connection = self._create_connection(address)
        except LDAPException as e:
            raise ServerConnectionError(f"failed to connect: {e}") from e

        try:
            self._open(connection, address)
            self._start_tls(connection)
            self._bind(connection)
            return self._search(connection)
        finally:
            self._close(connection)

    def _open(self, connection: Connection, address: ServerAddress) -> None:
        try:
            connection.open(read_server_info=False)
        except (LDAPException, OSError) as e:
            raise ServerConnectionError(f"failed to connect: {e}") from e
        self.logger.verbose(f"Connected to {self.config.server_url}")

    def _start_tls(self, connection: Connection) -> None:
        if not self.config.start_tls:
            return
        try:
            started = connection.start_tls(read_server_info=False)
        except (LDAPException, OSError, ssl.SSLError) as e:
            raise StartTLSError(f"failed to start TLS: {e}") from e
        if not started:
            raise StartTLSError(f"failed to start TLS: {connection.result}")
        self.logger.verbose("StartTLS negotiated")

    def _bind(self, connection: Connection) -> None:
        if not self.config.bind_dn:
            return
        try:
            bound = connection.bind(read_server_info=False)
        except (LDAPException, OSError) as e:
            raise BindError(f"failed to bind: {e}") from e
        if not bound:
            raise BindError(f"failed to bind: {connection.result}")
        self.logger.verbose(f"Bound as {self.config.bind_dn}")

    def _search(self, connection: Connection) -> RawAttributeSet:
        try:
            connection.search(
                search_base=MONITOR_BASE_DN,
                search_filter=MONITOR_FILTER,
                search_scope=SUBTREE,
                dereference_aliases=DEREF_NEVER,
                attributes=ALL_ATTRIBUTES,
                size_limit=0,
                time_limit=0
            )
        except (LDAPException, OSError) as e:
            raise SearchError(f"failed to search: {e}") from e

        entries = [
            item for item in (connection.response or [])
            if item.get('type') == 'searchResEntry'
        ]
        if not entries:
            raise SearchError(f"failed to search: no entry found under {MONITOR_BASE_DN}")

        return {
            name: [_decode(value) for value in values]
            for name, values in entries[0].get('raw_attributes', {}).items()
            if values
        }

    def _close(self, connection: Connection) -> None:
        try:
            connection.unbind()
        except (LDAPException, OSError) as e:
            self.logger.warning(f"Error closing LDAP connection: {e}")

def _decode(value: Union[bytes, str]) -> str:
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    return str(value)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Metrics Collection
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class DirectoryServerCollector(Collector):
    """Prometheus collector running one directory round trip per scrape."""

    def __init__(
        self,
        server: DirectoryServerConfig,
        logger: logging.Logger,
        session_factory: Callable[[DirectoryServerConfig, logging.Logger], DirectorySession] = DirectorySession
    ):
        self.server = server
        self.logger = logger
        self.session_factory = session_factory
        self.extractor = AttributeExtractor(logger)

    def describe(self) -> Iterable[Union[CounterMetricFamily, GaugeMetricFamily]]:
        """Static metric families, no I/O."""
        for descriptor in metric_descriptors():
            yield descriptor.family()

    def collect(self) -> Iterable[Union[CounterMetricFamily, GaugeMetricFamily]]:
        """Scrape the directory server and yield one sample per metric."""
        start = time.monotonic()
        try:
            attributes = self.session_factory(self.server, self.logger).fetch()
        except DirectorySessionError as e:
            self.logger.error(f"scrape failed: {e}")
            yield UP_DESCRIPTOR.family(0)
            return

        snapshot = self.extractor.extract(attributes, up=1)
        yield UP_DESCRIPTOR.family(snapshot.up)
        for name, value in snapshot.values().items():
            yield TRACKED_FIELDS_BY_NAME[name].family(value)

        self.logger.verbose(f"Scrape completed in {time.monotonic() - start:.3f}s")

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# HTTP Endpoint
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    """WSGI server handling each scrape on its own thread."""
    daemon_threads = True

class QuietRequestHandler(WSGIRequestHandler):
    """Request handler that does not write access logs to stderr."""

    def log_message(self, format, *args):
        pass

def create_wsgi_app(registry: CollectorRegistry, telemetry_path: str):
    """WSGI app serving the landing page and the telemetry path."""
    metrics_app = make_wsgi_app(registry)
    landing_page = LANDING_PAGE.format(path=html.escape(telemetry_path, quote=True)).encode()

    def app(environ, start_response):
        path = environ.get('PATH_INFO', '')

        if path == telemetry_path:
            return metrics_app(environ, start_response)

        if path in ('', '/'):
            start_response('200 OK', [('Content-Type', 'text/html; charset=utf-8')])
            return [landing_page]

        start_response('404 Not Found', [('Content-Type', 'text/plain; charset=utf-8')])
        return [b"Not Found\n"]

    return app

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Main Service Class and Entry Point
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class MetricsExporter:
    """Main service class for the directory server exporter.

    Owns the collector registry and the HTTP server thread, and waits for a
    shutdown signal.

    Attributes:
        config (ProgramConfig): Program configuration
        logger (logging.Logger): Configured logger instance
        registry (CollectorRegistry): Registry rendered on each scrape
        shutdown_event (asyncio.Event): Event for coordinating shutdown
    """

    SHUTDOWN_TIMEOUT = 30  # seconds

    def __init__(self, config: ProgramConfig, logger: logging.Logger):
        self.config = config
        self.logger = logger
        self.shutdown_event = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._server: Optional[WSGIServer] = None
        self._thread: Optional[threading.Thread] = None

        self.registry = CollectorRegistry()
        ProcessCollector(registry=self.registry)
        PlatformCollector(registry=self.registry)
        self.registry.register(DirectoryServerCollector(config.server, logger))

    def _handle_signal(self, signum, frame):
        """Handle shutdown signals."""
        signal_name = signal.Signals(signum).name
        self.logger.info(f"Received {signal_name}, initiating shutdown...")
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self.shutdown_event.set)

    def start_server(self) -> bool:
        """Start the HTTP server in a separate thread."""
        try:
            host, port = parse_listen_address(self.config.listen_address)
            app = create_wsgi_app(self.registry, self.config.telemetry_path)
            self._server = make_server(
                host, port, app,
                server_class=ThreadingWSGIServer,
                handler_class=QuietRequestHandler
            )
            self._thread = threading.Thread(
                target=self._server.serve_forever,
                name="MetricsServer",
                daemon=True
            )
            self._thread.start()
            self.logger.info(f"Starting HTTP server on {self.config.listen_address}")
            return True
        except (OSError, ConfigurationError) as e:
            self.logger.error(f"Failed to start HTTP server on {self.config.listen_address}: {e}")
            return False

    def stop_server(self) -> None:
        """Stop the HTTP server."""
        if not self._server:
            return

        try:
            self.logger.info("Stopping HTTP server")
            self._server.shutdown()
            self._server.server_close()
            if self._thread and self._thread.is_alive():
                self._thread.join(timeout=self.SHUTDOWN_TIMEOUT)
                if self._thread.is_alive():
                    self.logger.warning("HTTP server thread failed to stop")
        finally:
            self._server = None
            self._thread = None

    async def run(self) -> int:
        """Serve until a shutdown signal arrives."""
        self._loop = asyncio.get_running_loop()
        signal.signal(signal.SIGTERM, self._handle_signal)
        signal.signal(signal.SIGINT, self._handle_signal)

        self.logger.info(f"Connecting to LDAP Server: {self.config.server.server_url}")

        if not self.start_server():
            if self.config.running_under_systemd:
                notify(Notification.STOPPING)
            return 1

        if self.config.running_under_systemd:
            notify(Notification.READY)

        try:
            await self.shutdown_event.wait()
            self.logger.info("Shutdown event received, stopping service")
            return 0
        finally:
            self.stop_server()
            if self.config.running_under_systemd:
                notify(Notification.STOPPING)
            self.logger.info("Service shutdown complete")

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

async def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for the exporter service."""
    args = build_arg_parser().parse_args(argv)
    source = ProgramSource()
    config = ProgramConfig(source, config_path=args.config, overrides=overrides_from_args(args))

    try:
        config.load()
    except ConfigurationError as e:
        # Logger falls back to default settings here
        ProgramLogger(source, config).logger.error(f"Fatal configuration error: {e}")
        return 1

    logger = ProgramLogger(source, config).logger
    try:
        exporter = MetricsExporter(config, logger)
        return await exporter.run()
    except Exception as e:
        logger.exception(f"Fatal error in service: {e}")
        return 1

def cli() -> None:
    sys.exit(asyncio.run(main()))

if __name__ == '__main__':
    cli()
