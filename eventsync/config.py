"""Configuration loading for eventsync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 4000
    default_tenant: str = "default"
    require_tenant: bool = False


@dataclass
class StoreConfig:
    """Configuration for the event store."""

    db_path: str = "~/.eventsync/events.db"
    timeout_seconds: float = 30.0


@dataclass
class IntegrationConfig:
    """Configuration for the pending-integration export queue."""

    touch_updated_at: bool = True  # mark-consumed is visible in the change feed
    default_page_size: int = 100
    max_page_size: int = 500


@dataclass
class ClientConfig:
    """Configuration for the device-side sync and integration clients."""

    server_url: str = "http://localhost:4000"
    tenant_id: str = "default"
    db_path: str = "~/.eventsync/local.db"
    state_path: str = "~/.eventsync/sync_state.json"
    batch_size: int = 50
    max_retries: int = 3
    timeout_seconds: float = 30.0
    sync_interval_seconds: int = 300


@dataclass
class Config:
    server: ServerConfig = field(default_factory=ServerConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    integration: IntegrationConfig = field(default_factory=IntegrationConfig)
    client: ClientConfig = field(default_factory=ClientConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with EVENTSYNC_ prefix."""
    return os.environ.get(f"EVENTSYNC_{key}", default)


def _as_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Server overrides
    if host := _get_env("HOST"):
        config.server.host = host
    if port := _get_env("PORT"):
        config.server.port = int(port)
    if tenant := _get_env("DEFAULT_TENANT"):
        config.server.default_tenant = tenant
    if require_tenant := _get_env("REQUIRE_TENANT"):
        config.server.require_tenant = _as_bool(require_tenant)

    # Store overrides
    if db_path := _get_env("DB_PATH"):
        config.store.db_path = db_path
    if timeout := _get_env("DB_TIMEOUT"):
        config.store.timeout_seconds = float(timeout)

    # Integration overrides
    if touch := _get_env("INTEGRATION_TOUCH_UPDATED_AT"):
        config.integration.touch_updated_at = _as_bool(touch)
    if max_page_size := _get_env("INTEGRATION_MAX_PAGE_SIZE"):
        config.integration.max_page_size = int(max_page_size)

    # Client overrides
    if server_url := _get_env("SERVER_URL"):
        config.client.server_url = server_url
    if client_tenant := _get_env("TENANT_ID"):
        config.client.tenant_id = client_tenant
    if local_db := _get_env("LOCAL_DB_PATH"):
        config.client.db_path = local_db
    if batch_size := _get_env("BATCH_SIZE"):
        config.client.batch_size = int(batch_size)
    if interval := _get_env("SYNC_INTERVAL"):
        config.client.sync_interval_seconds = int(interval)

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            # Parse server config
            if "server" in data:
                server_data = data["server"]
                config.server = ServerConfig(
                    host=server_data.get("host", config.server.host),
                    port=server_data.get("port", config.server.port),
                    default_tenant=server_data.get(
                        "default_tenant", config.server.default_tenant
                    ),
                    require_tenant=server_data.get(
                        "require_tenant", config.server.require_tenant
                    ),
                )

            # Parse store config
            if "store" in data:
                store_data = data["store"]
                config.store = StoreConfig(
                    db_path=store_data.get("db_path", config.store.db_path),
                    timeout_seconds=store_data.get(
                        "timeout_seconds", config.store.timeout_seconds
                    ),
                )

            # Parse integration config
            if "integration" in data:
                int_data = data["integration"]
                config.integration = IntegrationConfig(
                    touch_updated_at=int_data.get(
                        "touch_updated_at", config.integration.touch_updated_at
                    ),
                    default_page_size=int_data.get(
                        "default_page_size", config.integration.default_page_size
                    ),
                    max_page_size=int_data.get(
                        "max_page_size", config.integration.max_page_size
                    ),
                )

            # Parse client config
            if "client" in data:
                client_data = data["client"]
                config.client = ClientConfig(
                    server_url=client_data.get("server_url", config.client.server_url),
                    tenant_id=client_data.get("tenant_id", config.client.tenant_id),
                    db_path=client_data.get("db_path", config.client.db_path),
                    state_path=client_data.get("state_path", config.client.state_path),
                    batch_size=client_data.get("batch_size", config.client.batch_size),
                    max_retries=client_data.get(
                        "max_retries", config.client.max_retries
                    ),
                    timeout_seconds=client_data.get(
                        "timeout_seconds", config.client.timeout_seconds
                    ),
                    sync_interval_seconds=client_data.get(
                        "sync_interval_seconds", config.client.sync_interval_seconds
                    ),
                )

    # Apply environment variable overrides
    config = _apply_env_overrides(config)

    # Keep the page size bounds consistent
    config.integration.max_page_size = max(1, config.integration.max_page_size)
    config.integration.default_page_size = min(
        max(1, config.integration.default_page_size),
        config.integration.max_page_size,
    )

    return config
