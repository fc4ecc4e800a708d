"""
Test configuration and fixtures for the tool gateway.

The in-memory transport and fake backends live in _helpers.py; tests that
need a real child process spawn the echo server from ROOT.
"""

import pathlib
import sys

import pytest

from _helpers import LoopbackTransport

ROOT = pathlib.Path(__file__).resolve().parents[1]


@pytest.fixture
def loopback():
    return LoopbackTransport()


@pytest.fixture
def echo_command():
    """Command line launching the reference echo server."""
    return (sys.executable, "-m", "tool_gateway.servers.echo")


@pytest.fixture
def project_root():
    return str(ROOT)
