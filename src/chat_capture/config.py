"""Configuration loading and management."""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

DEFAULT_PORT = 33445
DEFAULT_SCHEME = "chatcapture"


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT
    scheme: str = DEFAULT_SCHEME  # Private URI scheme registered by the host

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


@dataclass
class StorageConfig:
    journal_path: Path = field(
        default_factory=lambda: Path.home() / "chat-capture" / "captured_chats.jsonl"
    )
    state_db: Path = field(default_factory=lambda: Path.home() / "chat-capture" / "state" / "dedup.db")


@dataclass
class AgentConfig:
    flush_interval_seconds: float = 3.0
    dom_debounce_seconds: float = 0.5
    initial_capture_delay_seconds: float = 2.0
    network_quiet_seconds: float = 10.0  # DOM capture stays off this long after a network result
    post_timeout_seconds: float = 5.0


@dataclass
class DrainConfig:
    interval_seconds: float = 5.0
    beacon_max_content: int = 2000


@dataclass
class TypesenseConfig:
    enabled: bool = False
    host: str = "localhost"
    port: int = 8108
    protocol: str = "http"
    api_key: str = "dev-api-key"


@dataclass
class Config:
    server: ServerConfig = field(default_factory=ServerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    drain: DrainConfig = field(default_factory=DrainConfig)
    typesense: TypesenseConfig = field(default_factory=TypesenseConfig)


def expand_env_var(value: str) -> str:
    """Expand environment variables in string (e.g. ${VAR})."""
    if value.startswith("${") and value.endswith("}"):
        env_var = value[2:-1]
        return os.environ.get(env_var, value)
    return value


def expand_path(path_str: str) -> Path:
    """Expand ~ and environment variables in path."""
    return Path(os.path.expandvars(os.path.expanduser(path_str)))


def find_config_path() -> Path | None:
    """Return the first existing config file in the standard locations."""
    search_paths = [
        Path.cwd() / "config.yaml",
        Path.home() / ".config" / "chat-capture" / "config.yaml",
        Path("/etc/chat-capture/config.yaml"),
    ]
    for path in search_paths:
        if path.exists():
            return path
    return None


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from YAML file.

    Missing sections and keys fall back to defaults; a missing file yields
    the default configuration.
    """
    if config_path is None:
        config_path = find_config_path()

    if config_path is None or not config_path.exists():
        return Config()

    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    server_data = data.get("server", {})
    server = ServerConfig(
        host=server_data.get("host", "127.0.0.1"),
        port=int(server_data.get("port", DEFAULT_PORT)),
        scheme=server_data.get("scheme", DEFAULT_SCHEME),
    )

    storage_data = data.get("storage", {})
    storage = StorageConfig(
        journal_path=expand_path(
            storage_data.get("journal_path", "~/chat-capture/captured_chats.jsonl")
        ),
        state_db=expand_path(storage_data.get("state_db", "~/chat-capture/state/dedup.db")),
    )

    agent_data = data.get("agent", {})
    defaults = AgentConfig()
    agent = AgentConfig(
        flush_interval_seconds=float(
            agent_data.get("flush_interval_seconds", defaults.flush_interval_seconds)
        ),
        dom_debounce_seconds=float(
            agent_data.get("dom_debounce_seconds", defaults.dom_debounce_seconds)
        ),
        initial_capture_delay_seconds=float(
            agent_data.get("initial_capture_delay_seconds", defaults.initial_capture_delay_seconds)
        ),
        network_quiet_seconds=float(
            agent_data.get("network_quiet_seconds", defaults.network_quiet_seconds)
        ),
        post_timeout_seconds=float(
            agent_data.get("post_timeout_seconds", defaults.post_timeout_seconds)
        ),
    )

    drain_data = data.get("drain", {})
    drain = DrainConfig(
        interval_seconds=float(drain_data.get("interval_seconds", 5.0)),
        beacon_max_content=int(drain_data.get("beacon_max_content", 2000)),
    )

    ts_data = data.get("typesense", {})
    typesense = TypesenseConfig(
        enabled=bool(ts_data.get("enabled", False)),
        host=ts_data.get("host", "localhost"),
        port=ts_data.get("port", 8108),
        protocol=ts_data.get("protocol", "http"),
        api_key=expand_env_var(ts_data.get("api_key", "dev-api-key")),
    )

    return Config(
        server=server,
        storage=storage,
        agent=agent,
        drain=drain,
        typesense=typesense,
    )
