"""
clmm-keeper Core: Configuration

Loads config/app.yaml, applies environment overrides and validates the
result with pydantic. Anything invalid raises ConfigurationError, the one
error that stops the keeper at startup.

Environment overrides:
    KEEPER_MODE             mode (DRY_RUN | LIVE)
    POLL_INTERVAL           loop.poll_interval_seconds, given in milliseconds
    SUI_NETWORK             sui.network
    SUI_RPC_URL             sui.rpc_url
    SUI_BACKUP_RPC_URL      sui.backup_rpc_url
    VAULT_PACKAGE_ID        vaults.package_id
    VAULT_CONFIG_ID         vaults.config_id
    LP_REGISTRY_PACKAGE_ID  lp_registry.package_id
    LP_REGISTRY_ID          lp_registry.registry_id
    TX_BUILDER_URL          execution.tx_builder_url
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from core.actions import ActionType
from core.exceptions import ConfigurationError
from core.scheduler import TrackedCollection
from core.snapshot import EntityKind
from infra.rpc_client import NETWORK_URLS

logger = logging.getLogger(__name__)

ENV_OVERRIDES = {
    "KEEPER_MODE": ("mode",),
    "POLL_INTERVAL": ("loop", "poll_interval_seconds"),
    "SUI_NETWORK": ("sui", "network"),
    "SUI_RPC_URL": ("sui", "rpc_url"),
    "SUI_BACKUP_RPC_URL": ("sui", "backup_rpc_url"),
    "VAULT_PACKAGE_ID": ("vaults", "package_id"),
    "VAULT_CONFIG_ID": ("vaults", "config_id"),
    "LP_REGISTRY_PACKAGE_ID": ("lp_registry", "package_id"),
    "LP_REGISTRY_ID": ("lp_registry", "registry_id"),
    "TX_BUILDER_URL": ("execution", "tx_builder_url"),
}


class SuiSettings(BaseModel):
    model_config = ConfigDict(extra="allow")

    network: Literal["mainnet", "testnet", "devnet", "localnet"] = "mainnet"
    rpc_url: Optional[str] = None
    backup_rpc_url: Optional[str] = None
    request_timeout_seconds: float = Field(default=20.0, gt=0)
    max_retries: int = Field(default=3, ge=1)
    failover_after_failures: int = Field(default=1, ge=1)

    @property
    def primary_url(self) -> str:
        return self.rpc_url or NETWORK_URLS[self.network]


class VaultCollectionSettings(BaseModel):
    model_config = ConfigDict(extra="allow")

    enabled: bool = True
    package_id: Optional[str] = None
    config_id: Optional[str] = None


class RegistryCollectionSettings(BaseModel):
    model_config = ConfigDict(extra="allow")

    enabled: bool = True
    package_id: Optional[str] = None
    registry_id: Optional[str] = None


class ExecutionSettings(BaseModel):
    model_config = ConfigDict(extra="allow")

    tx_builder_url: Optional[str] = None
    tx_builder_timeout_seconds: float = Field(default=30.0, gt=0)
    action_timeouts_seconds: Dict[str, float] = Field(default_factory=dict)

    @field_validator("action_timeouts_seconds")
    @classmethod
    def validate_timeouts(cls, v: Dict[str, float]) -> Dict[str, float]:
        known = {action.value for action in ActionType}
        for name, seconds in v.items():
            if name not in known:
                raise ValueError(f"Unknown action '{name}', expected one of {sorted(known)}")
            if seconds <= 0:
                raise ValueError(f"Timeout for {name} must be positive, got {seconds}")
        return v


class LoopSettings(BaseModel):
    model_config = ConfigDict(extra="allow")

    poll_interval_seconds: float = Field(default=60.0, gt=0)
    jitter_pct: float = Field(default=0.1, ge=0, le=0.5)
    shutdown_grace_seconds: float = Field(default=30.0, ge=0)


class LoggingSettings(BaseModel):
    model_config = ConfigDict(extra="allow")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    file: str = "logs/keeper.log"


class MonitoringSettings(BaseModel):
    model_config = ConfigDict(extra="allow")

    healthcheck_enabled: bool = True
    healthcheck_port: int = Field(default=8080, ge=0)
    metrics_enabled: bool = True
    metrics_port: int = Field(default=9100, ge=0)
    audit_file: str = "logs/audit.jsonl"
    lock_dir: str = "data"
    max_tick_age_multiplier: float = Field(default=3.0, gt=1)


class KeeperConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    mode: Literal["DRY_RUN", "LIVE"] = "DRY_RUN"
    signer_env: str = Field(default="OPERATOR_PRIVATE_KEY", min_length=1)
    sui: SuiSettings = Field(default_factory=SuiSettings)
    vaults: VaultCollectionSettings = Field(default_factory=VaultCollectionSettings)
    lp_registry: RegistryCollectionSettings = Field(default_factory=RegistryCollectionSettings)
    execution: ExecutionSettings = Field(default_factory=ExecutionSettings)
    loop: LoopSettings = Field(default_factory=LoopSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)
    alerts: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("mode", mode="before")
    @classmethod
    def normalize_mode(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) else v

    @model_validator(mode="after")
    def check_collections(self) -> "KeeperConfig":
        if not self.collections():
            raise ValueError("No tracked collection: set vaults.package_id and/or lp_registry.package_id")
        if self.mode == "LIVE":
            if not self.execution.tx_builder_url:
                raise ValueError("LIVE mode requires execution.tx_builder_url")
            for collection in self.collections():
                if not collection.object_id:
                    raise ValueError(f"LIVE mode requires the config object id for {collection.name}")
        return self

    def collections(self) -> Tuple[TrackedCollection, ...]:
        tracked = []
        if self.vaults.enabled and self.vaults.package_id:
            tracked.append(
                TrackedCollection(
                    name="vaults",
                    kind=EntityKind.VAULT,
                    package_id=self.vaults.package_id,
                    object_id=self.vaults.config_id,
                )
            )
        if self.lp_registry.enabled and self.lp_registry.package_id:
            tracked.append(
                TrackedCollection(
                    name="lp_registry",
                    kind=EntityKind.REGISTERED_POSITION,
                    package_id=self.lp_registry.package_id,
                    object_id=self.lp_registry.registry_id,
                )
            )
        return tuple(tracked)

    def action_timeouts(self) -> Dict[ActionType, float]:
        return {ActionType(name): seconds for name, seconds in self.execution.action_timeouts_seconds.items()}


def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return a message with line/column context for YAML errors."""
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return f"Malformed YAML in {file_path}: {error}"
    problem = getattr(error, "problem", str(error))
    return f"Malformed YAML in {file_path}: line {mark.line + 1}, column {mark.column + 1}: {problem}"


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    if not file_path.exists():
        raise ConfigurationError(f"Config file not found: {file_path}")
    with open(file_path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(_format_yaml_error(file_path, e)) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{file_path}: top level must be a mapping")
    return data


def apply_env_overrides(raw: Dict[str, Any], env: Mapping[str, str]) -> Dict[str, Any]:
    """Return a copy of `raw` with environment overrides applied."""
    merged = copy.deepcopy(raw)
    for var, path in ENV_OVERRIDES.items():
        value = env.get(var)
        if value is None or value == "":
            continue

        if var == "POLL_INTERVAL":
            try:
                value = int(value) / 1000.0
            except ValueError as e:
                raise ConfigurationError(f"POLL_INTERVAL must be milliseconds, got {value!r}") from e

        node = merged
        for key in path[:-1]:
            if not isinstance(node.get(key), dict):
                node[key] = {}
            node = node[key]
        node[path[-1]] = value
        logger.debug(f"Config override from {var}")
    return merged


def _validation_errors(exc: ValidationError) -> List[str]:
    errors = []
    for error in exc.errors():
        field = " -> ".join(str(loc) for loc in error["loc"]) or "<root>"
        errors.append(f"app.yaml: {field}: {error['msg']}")
    return errors


def load_config(config_dir: str = "config", env: Optional[Mapping[str, str]] = None) -> KeeperConfig:
    """
    Load and validate the keeper configuration.

    Raises:
        ConfigurationError: file missing, malformed YAML or failed validation
    """
    env = os.environ if env is None else env
    raw = load_yaml_file(Path(config_dir) / "app.yaml")
    merged = apply_env_overrides(raw, env)

    try:
        config = KeeperConfig.model_validate(merged)
    except ValidationError as e:
        raise ConfigurationError("\n".join(_validation_errors(e))) from e

    logger.info(
        "Loaded config: mode=%s network=%s collections=%s",
        config.mode,
        config.sui.network,
        [c.name for c in config.collections()],
    )
    return config
