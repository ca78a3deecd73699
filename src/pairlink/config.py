"""Configuration management for the pairlink broker."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import yaml

from pairlink.sessions import Workspace


@dataclass
class PinConfig:
    """Pairing PIN configuration."""

    length: int = 6  # digits
    ttl_seconds: float = 300.0  # 5 minutes
    sweep_interval: float = 1.0  # seconds


@dataclass
class HeartbeatConfig:
    """Mobile liveness configuration."""

    interval: float = 15.0  # liveness sweep period (seconds)
    timeout: float = 60.0  # drop a mobile after this long without activity


@dataclass
class BrokerConfig:
    """Broker limits and timeouts."""

    arm_timeout: float = 10.0  # opening the mobile endpoint
    auth_timeout: float = 10.0  # mobile must send its PIN within this window
    max_mobiles: int = 3
    subscriber_queue_size: int = 16
    handler_timeout: float = 10.0


@dataclass
class TerminalConfig:
    """Session terminal configuration."""

    enabled: bool = True  # spawn a shell per session
    shell: str | None = None  # defaults to $SHELL, then /bin/sh
    cols: int = 80
    rows: int = 24


@dataclass
class Config:
    """Broker configuration."""

    endpoint_host: str = "0.0.0.0"
    endpoint_port: int = 8765
    control_host: str = "127.0.0.1"
    control_port: int = 8766
    advertise_host: str | None = None  # host placed in the pairing QR payload
    identity_file: str = "~/.config/pairlink/identity.json"
    auto_connect: bool = False
    log_level: str = "INFO"
    log_file: str | None = None
    pin: PinConfig = field(default_factory=PinConfig)
    heartbeat: HeartbeatConfig = field(default_factory=HeartbeatConfig)
    broker: BrokerConfig = field(default_factory=BrokerConfig)
    terminal: TerminalConfig = field(default_factory=TerminalConfig)
    workspaces: list[Workspace] = field(default_factory=list)


def get_config_path(custom_path: Path | None = None) -> Path:
    """Get the configuration file path.

    Args:
        custom_path: Override path. If None, returns default.

    Returns:
        Path to config file.
    """
    if custom_path is not None:
        return custom_path
    return Path.home() / ".config" / "pairlink" / "config.yaml"


def _default_file_reader(path: Path) -> dict[str, Any] | None:
    """Default file reader that loads YAML from disk."""
    if not path.exists():
        return None
    try:
        content = path.read_text()
        if not content.strip():
            return None
        return yaml.safe_load(content)
    except yaml.YAMLError:
        return None


def _parse_workspaces(items: list[dict[str, Any]]) -> list[Workspace]:
    workspaces = []
    for item in items:
        workspaces.append(
            Workspace(
                id=str(item["id"]),
                name=item.get("name", str(item["id"])),
                path=item.get("path", ""),
                branch=item.get("branch"),
                is_worktree=bool(item.get("is_worktree", False)),
            )
        )
    return workspaces


def load_config(
    path: Path | None = None,
    file_reader: Callable[[Path], dict[str, Any] | None] | None = None,
) -> Config:
    """Load configuration from file.

    Args:
        path: Path to config file. If None, uses default path.
        file_reader: Injectable file reader for testing.

    Returns:
        Config object with values from file or defaults.
    """
    config_path = get_config_path(path)
    reader = file_reader or _default_file_reader

    data = reader(config_path)

    if not isinstance(data, dict):
        return Config()

    pin_data = data.get("pin", {})
    pin_config = PinConfig(
        length=pin_data.get("length", PinConfig.length),
        ttl_seconds=pin_data.get("ttl_seconds", PinConfig.ttl_seconds),
        sweep_interval=pin_data.get("sweep_interval", PinConfig.sweep_interval),
    )

    heartbeat_data = data.get("heartbeat", {})
    heartbeat_config = HeartbeatConfig(
        interval=heartbeat_data.get("interval", HeartbeatConfig.interval),
        timeout=heartbeat_data.get("timeout", HeartbeatConfig.timeout),
    )

    broker_data = data.get("broker", {})
    broker_config = BrokerConfig(
        arm_timeout=broker_data.get("arm_timeout", BrokerConfig.arm_timeout),
        auth_timeout=broker_data.get("auth_timeout", BrokerConfig.auth_timeout),
        max_mobiles=broker_data.get("max_mobiles", BrokerConfig.max_mobiles),
        subscriber_queue_size=broker_data.get(
            "subscriber_queue_size", BrokerConfig.subscriber_queue_size
        ),
        handler_timeout=broker_data.get(
            "handler_timeout", BrokerConfig.handler_timeout
        ),
    )

    terminal_data = data.get("terminal", {})
    terminal_config = TerminalConfig(
        enabled=terminal_data.get("enabled", TerminalConfig.enabled),
        shell=terminal_data.get("shell", TerminalConfig.shell),
        cols=terminal_data.get("cols", TerminalConfig.cols),
        rows=terminal_data.get("rows", TerminalConfig.rows),
    )

    return Config(
        endpoint_host=data.get("endpoint_host", Config.endpoint_host),
        endpoint_port=data.get("endpoint_port", Config.endpoint_port),
        control_host=data.get("control_host", Config.control_host),
        control_port=data.get("control_port", Config.control_port),
        advertise_host=data.get("advertise_host", Config.advertise_host),
        identity_file=data.get("identity_file", Config.identity_file),
        auto_connect=data.get("auto_connect", Config.auto_connect),
        log_level=data.get("log_level", Config.log_level),
        log_file=data.get("log_file", Config.log_file),
        pin=pin_config,
        heartbeat=heartbeat_config,
        broker=broker_config,
        terminal=terminal_config,
        workspaces=_parse_workspaces(data.get("workspaces", [])),
    )
