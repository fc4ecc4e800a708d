"""
Gateway configuration: settings, backend descriptors, logging setup.

Backends are described in memory, the same way an entry point declares
its server table:

    BACKENDS = {
        "calculator": {
            "command": [sys.executable, "-m", "my_servers.calculator"],
            "timeout": 30,
        },
        "search": {"host": "127.0.0.1", "port": 7010, "framing": "content-length"},
    }
    descriptors = load_descriptors(BACKENDS)

Reading such a table from disk is the caller's business.
"""

from __future__ import annotations

import logging
import os
from enum import Enum
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, PositiveFloat, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from tool_gateway.errors import ConfigError
from tool_gateway.transport import FRAMERS

# Qualified tool names are "<backend><SEPARATOR><tool>".
QUALIFIED_NAME_SEPARATOR = "__"

ENV_PREFIX = "TOOL_GATEWAY_"


class TransportKind(str, Enum):
    STDIO = "stdio"
    TCP = "tcp"


class _RaisesConfigError:
    """Re-raises pydantic's ValidationError as ConfigError naming the backend."""

    def __init__(self, **values: Any):
        try:
            super().__init__(**values)
        except PydanticValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in error['loc']) or type(self).__name__}: {error['msg']}"
                for error in e.errors()
            )
            backend = values.get("name") if isinstance(values.get("name"), str) else None
            raise ConfigError(f"Invalid {type(self).__name__}: {problems}", backend=backend) from e


class GatewaySettings(_RaisesConfigError, BaseSettings):
    """
    Process-wide defaults, overridable with TOOL_GATEWAY_* environment
    variables (e.g. TOOL_GATEWAY_CALL_TIMEOUT=30). Per-backend overrides
    live on BackendDescriptor.
    """
    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_ignore_empty=True,
        extra="ignore",
        frozen=True,
    )

    call_timeout: PositiveFloat = Field(60.0, description="Default per-call deadline in seconds")
    connect_timeout: PositiveFloat = Field(10.0, description="Spawn/dial plus handshake deadline")
    discovery_timeout: PositiveFloat = Field(30.0, description="Per-backend tools/list deadline")
    shutdown_grace: PositiveFloat = Field(5.0, description="Wait after SIGTERM before SIGKILL")
    client_name: str = "tool-gateway"
    client_version: str = "0.1.0"
    protocol_version: str = "2024-11-05"

    @classmethod
    def from_env(cls) -> "GatewaySettings":
        """Settings from the environment; invalid values raise ConfigError."""
        return cls()


class BackendDescriptor(_RaisesConfigError, BaseModel):
    """
    A configured backend. Immutable once registered.

    ``credential`` is opaque: it is only ever placed in the child's
    environment under ``credential_env`` and is excluded from repr.
    """
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    transport: TransportKind = TransportKind.STDIO
    command: tuple[str, ...] = ()
    env: tuple[tuple[str, str], ...] = ()
    cwd: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = Field(None, ge=1, le=65535)
    framing: str = "newline"
    timeout: Optional[PositiveFloat] = None
    connect_timeout: Optional[PositiveFloat] = None
    credential: Optional[str] = Field(None, repr=False)
    credential_env: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if QUALIFIED_NAME_SEPARATOR in v:
            raise ValueError(f"must not contain '{QUALIFIED_NAME_SEPARATOR}'")
        return v

    @field_validator("framing")
    @classmethod
    def validate_framing(cls, v):
        if v not in FRAMERS:
            raise ValueError(f"unknown framing '{v}'. Available: {list(FRAMERS)}")
        return v

    @field_validator("env", mode="before")
    @classmethod
    def freeze_env(cls, v):
        if isinstance(v, Mapping):
            return tuple(v.items())
        return v

    @model_validator(mode="after")
    def validate_endpoint(self):
        if self.transport == TransportKind.STDIO and not self.command:
            raise ValueError("a stdio backend needs a command")
        if self.transport == TransportKind.TCP and (not self.host or not self.port):
            raise ValueError("a tcp backend needs host and port")
        if self.credential is not None and not self.credential_env:
            raise ValueError("a credential needs credential_env")
        return self

    def launch_env(self) -> dict[str, str]:
        """Environment for the child process: ours, plus overrides, plus credential."""
        env = dict(os.environ)
        env.update(self.env)
        if self.credential is not None:
            env[self.credential_env] = self.credential
        return env

    @property
    def endpoint(self) -> str:
        if self.transport == TransportKind.TCP:
            return f"tcp://{self.host}:{self.port}"
        return " ".join(self.command)


def load_descriptors(
    backends: Mapping[str, Mapping[str, Any]],
    credentials: Mapping[str, str] | None = None,
) -> list[BackendDescriptor]:
    """
    Build descriptors from an in-memory ``{name: entry}`` table.

    An entry with ``command`` is a subprocess backend; one with ``host`` and
    ``port`` is a TCP backend. ``credentials`` maps backend names to opaque
    credential strings.
    """
    credentials = credentials or {}
    descriptors = []
    for name, entry in backends.items():
        entry = dict(entry)
        unknown = set(entry) - _ENTRY_KEYS
        if unknown:
            raise ConfigError(f"Unknown keys for backend '{name}': {sorted(unknown)}", backend=name)

        if "command" in entry:
            command = entry.pop("command")
            if isinstance(command, str):
                command = [command]
            command = [*command, *entry.pop("args", [])]
            kind = TransportKind.STDIO
        elif "host" in entry:
            command = []
            kind = TransportKind.TCP
        else:
            raise ConfigError(f"Backend '{name}' needs a 'command' or 'host'", backend=name)

        descriptors.append(BackendDescriptor(
            name=name,
            transport=kind,
            command=tuple(command),
            env=entry.get("env") or {},
            cwd=entry.get("cwd"),
            host=entry.get("host"),
            port=entry.get("port"),
            framing=entry.get("framing", "newline"),
            timeout=entry.get("timeout"),
            connect_timeout=entry.get("connect_timeout"),
            credential=credentials.get(name),
            credential_env=entry.get("credential_env"),
        ))
    return descriptors


_ENTRY_KEYS = {
    "command", "args", "env", "cwd", "host", "port", "framing",
    "timeout", "connect_timeout", "credential_env",
}


def configure_logging(level: int | str = logging.INFO) -> None:
    """Entry-point logging setup."""
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")
