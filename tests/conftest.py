"""Shared pytest configuration and fixtures."""

import logging
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from ds_metrics_exporter import (
    DirectoryServerConfig, ProgramLogger, TRACKED_FIELDS
)


@pytest.fixture
def logger():
    """Create logger for tests."""
    ProgramLogger.install()
    test_logger = logging.getLogger("tests.ds_exporter")
    test_logger.setLevel(logging.DEBUG)
    return test_logger


@pytest.fixture
def server_config():
    """Bound, StartTLS-enabled server settings."""
    return DirectoryServerConfig(
        server_url="ldap://ds.example.com",
        start_tls=True,
        bind_dn="cn=Directory Manager",
        bind_password="secret",
        timeout_sec=5
    )


@pytest.fixture
def full_attributes():
    """Every tracked attribute with a distinct integer value."""
    return {
        descriptor.name: [str(index + 1)]
        for index, descriptor in enumerate(TRACKED_FIELDS)
    }


@pytest.fixture
def ldap(full_attributes):
    """Patch ldap3 so sessions talk to a MagicMock connection."""
    connection = MagicMock()
    connection.start_tls.return_value = True
    connection.bind.return_value = True
    connection.search.return_value = True
    connection.response = [{
        'type': 'searchResEntry',
        'dn': 'cn=snmp,cn=monitor',
        'raw_attributes': {
            name: [value.encode() for value in values]
            for name, values in full_attributes.items()
        }
    }]

    with patch('ds_metrics_exporter.Tls') as mock_tls, \
            patch('ds_metrics_exporter.Server') as mock_server, \
            patch('ds_metrics_exporter.Connection', return_value=connection) as mock_connection:
        yield SimpleNamespace(
            connection=connection,
            Connection=mock_connection,
            Server=mock_server,
            Tls=mock_tls
        )
