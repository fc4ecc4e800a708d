"""Tests for gateway settings and backend descriptors."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from tool_gateway.config import (
    BackendDescriptor,
    GatewaySettings,
    TransportKind,
    load_descriptors,
)
from tool_gateway.errors import ConfigError


class TestGatewaySettings:

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("TOOL_GATEWAY_CALL_TIMEOUT", raising=False)
        settings = GatewaySettings.from_env()
        assert settings.call_timeout == 60.0
        assert settings.protocol_version == "2024-11-05"

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("TOOL_GATEWAY_CALL_TIMEOUT", "12.5")
        monkeypatch.setenv("TOOL_GATEWAY_DISCOVERY_TIMEOUT", "3")
        monkeypatch.setenv("TOOL_GATEWAY_SHUTDOWN_GRACE", "")
        monkeypatch.setenv("TOOL_GATEWAY_UNRELATED", "x")

        settings = GatewaySettings.from_env()

        assert settings.call_timeout == 12.5
        assert settings.discovery_timeout == 3.0
        assert settings.shutdown_grace == 5.0

    def test_explicit_values_win(self, monkeypatch):
        monkeypatch.setenv("TOOL_GATEWAY_CALL_TIMEOUT", "12.5")
        assert GatewaySettings(call_timeout=2).call_timeout == 2.0

    @pytest.mark.parametrize("value", ["soon", "0", "-1"])
    def test_invalid_env_value(self, monkeypatch, value):
        monkeypatch.setenv("TOOL_GATEWAY_CONNECT_TIMEOUT", value)
        with pytest.raises(ConfigError) as exc_info:
            GatewaySettings.from_env()
        assert "connect_timeout" in str(exc_info.value)

    def test_frozen(self):
        settings = GatewaySettings()
        with pytest.raises(PydanticValidationError):
            settings.call_timeout = 1


class TestBackendDescriptor:

    def test_stdio_defaults(self):
        d = BackendDescriptor(name="calc", command=("python", "-m", "calc"))
        assert d.transport == TransportKind.STDIO
        assert d.framing == "newline"
        assert d.endpoint == "python -m calc"

    def test_tcp_endpoint(self):
        d = BackendDescriptor(name="search", transport=TransportKind.TCP, host="127.0.0.1", port=7010)
        assert d.endpoint == "tcp://127.0.0.1:7010"

    @pytest.mark.parametrize("kwargs", [
        {"name": ""},
        {"name": "a__b", "command": ("x",)},
        {"name": "x"},
        {"name": "x", "command": ("x",), "framing": "xml"},
        {"name": "x", "transport": TransportKind.TCP, "host": "localhost"},
        {"name": "x", "command": ("x",), "credential": "secret"},
        {"name": "x", "command": ("x",), "timeout": 0},
        {"name": "x", "command": ("x",), "connect_timeout": -2},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ConfigError):
            BackendDescriptor(**kwargs)

    def test_credential_hidden_and_injected(self, monkeypatch):
        monkeypatch.setenv("PARENT_VAR", "inherited")
        d = BackendDescriptor(
            name="api",
            command=("api-server",),
            env={"MODE": "test"},
            credential="tok-123",
            credential_env="API_TOKEN",
        )

        assert "tok-123" not in repr(d)
        env = d.launch_env()
        assert env["API_TOKEN"] == "tok-123"
        assert env["MODE"] == "test"
        assert env["PARENT_VAR"] == "inherited"

    def test_immutable_and_hashable(self):
        overrides = {"MODE": "test"}
        d = BackendDescriptor(name="api", command=("api-server",), env=overrides)
        overrides["MODE"] = "changed"

        assert d.env == (("MODE", "test"),)
        assert hash(d) == hash(BackendDescriptor(name="api", command=("api-server",), env={"MODE": "test"}))
        with pytest.raises(PydanticValidationError):
            d.name = "other"

    def test_error_names_backend_and_field(self):
        with pytest.raises(ConfigError) as exc_info:
            BackendDescriptor(name="search", transport=TransportKind.TCP, host="h", port=70000)

        assert exc_info.value.backend == "search"
        assert "port" in exc_info.value.message


class TestLoadDescriptors:

    def test_stdio_and_tcp(self):
        descriptors = load_descriptors({
            "calculator": {"command": ["python", "-m", "calc"], "args": ["--fast"], "timeout": 30},
            "search": {"host": "127.0.0.1", "port": "7010", "framing": "content-length"},
        })

        calc, search = descriptors
        assert calc.transport == TransportKind.STDIO
        assert calc.command == ("python", "-m", "calc", "--fast")
        assert calc.timeout == 30
        assert search.transport == TransportKind.TCP
        assert search.port == 7010
        assert search.framing == "content-length"

    def test_command_string(self):
        (d,) = load_descriptors({"x": {"command": "tool-server"}})
        assert d.command == ("tool-server",)

    def test_credentials_by_backend_name(self):
        (d,) = load_descriptors(
            {"api": {"command": ["api-server"], "credential_env": "API_TOKEN"}},
            credentials={"api": "tok-123"},
        )
        assert d.credential == "tok-123"
        assert d.launch_env()["API_TOKEN"] == "tok-123"

    def test_unknown_key(self):
        with pytest.raises(ConfigError) as exc_info:
            load_descriptors({"x": {"command": ["x"], "restart": True}})
        assert exc_info.value.backend == "x"

    def test_neither_command_nor_host(self):
        with pytest.raises(ConfigError):
            load_descriptors({"x": {"timeout": 5}})
