"""Configuration loading and validation.

Configuration lives in a single YAML file with ${VAR} references for
secrets. It is validated with pydantic when loaded so mapping mistakes
(a prefix without a trailing slash, a missing fixity-service option)
fail at startup instead of halfway through a transfer.

Example YAML (preservation.yml):
    database_url: postgresql://preservation@localhost/preservation

    source_paths_to_storage_providers:
      /digital/preservation/:
        storage_providers:
          - storage_type: aws
            container_name: cul-preservation-aws
          - storage_type: gcp
            container_name: cul-preservation-gcp

    aws:
      region: us-east-1
      access_key_id: ${AWS_ACCESS_KEY_ID}
      secret_access_key: ${AWS_SECRET_ACCESS_KEY}
      local_path_key_map:
        /digital/preservation/: ""

    gcp:
      project_id: cul-preservation
      credentials: ${GOOGLE_APPLICATION_CREDENTIALS}
      local_path_key_map:
        /digital/preservation/: ""

    check_please:
      http_base_url: https://check-please.example.org
      ws_url: wss://check-please.example.org/cable
      auth_token: ${CHECK_PLEASE_TOKEN}
      http_timeout: 120

    logging:
      level: INFO
      format: json
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from preservation.lib.checksum import DEFAULT_MULTIPART_THRESHOLD
from preservation.lib.env import expand_options, load_env_file
from preservation.lib.errors import ConfigurationError, StorageProviderMappingNotFoundError
from preservation.lib.models import StorageType

logger = logging.getLogger(__name__)

__all__ = [
    "AwsConfig",
    "CheckPleaseConfig",
    "GcpConfig",
    "LoggingConfig",
    "PreservationConfig",
    "PreservationSettings",
    "ProviderTarget",
    "SourcePathMapping",
    "load_config",
]


def _require_trailing_slash(mapping: Dict[str, Any], field_name: str) -> Dict[str, Any]:
    for prefix in mapping:
        if not prefix.endswith("/"):
            raise ValueError(f"{field_name} key must end with a '/': {prefix}")
    return mapping


class ProviderTarget(BaseModel):
    """One storage provider a source path is replicated to."""

    storage_type: StorageType
    container_name: str = Field(..., min_length=1)

    @field_validator("storage_type", mode="before")
    @classmethod
    def parse_storage_type(cls, v: Any) -> Any:
        if isinstance(v, str):
            try:
                return StorageType[v.lower()]
            except KeyError:
                raise ValueError(f"storage_type must be one of: {[t.name for t in StorageType]}")
        return v


class SourcePathMapping(BaseModel):
    """Providers for every SourceObject under a path prefix."""

    storage_providers: List[ProviderTarget] = Field(default_factory=list)


class AwsConfig(BaseModel):
    """S3 connection settings and local path to key prefix table."""

    region: Optional[str] = Field(default=None, description="AWS region")
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    endpoint_url: Optional[str] = Field(default=None, description="Custom S3 endpoint (MinIO, LocalStack)")
    local_path_key_map: Dict[str, str] = Field(default_factory=dict)
    multipart_threshold: int = Field(default=DEFAULT_MULTIPART_THRESHOLD, ge=5 * 1024 * 1024)

    @field_validator("local_path_key_map")
    @classmethod
    def validate_local_path_key_map(cls, v: Dict[str, str]) -> Dict[str, str]:
        return _require_trailing_slash(v, "aws.local_path_key_map")


class GcpConfig(BaseModel):
    """Cloud Storage connection settings and local path to key prefix table."""

    project_id: Optional[str] = None
    credentials: Optional[str] = Field(default=None, description="Path to a service account JSON file")
    local_path_key_map: Dict[str, str] = Field(default_factory=dict)

    @field_validator("local_path_key_map")
    @classmethod
    def validate_local_path_key_map(cls, v: Dict[str, str]) -> Dict[str, str]:
        return _require_trailing_slash(v, "gcp.local_path_key_map")


class CheckPleaseConfig(BaseModel):
    """Remote fixity service connection settings."""

    http_base_url: str = Field(..., min_length=1)
    ws_url: str = Field(..., min_length=1)
    auth_token: str = Field(..., min_length=1)
    http_timeout: float = Field(..., gt=0, description="Per-request HTTP timeout in seconds")
    max_wait: float = Field(default=24 * 60 * 60, gt=0, description="Upper bound on polling time in seconds")
    stall_timeout: float = Field(default=120.0, gt=0)
    polling_delay: float = Field(default=2.0, ge=0)

    @model_validator(mode="after")
    def validate_max_wait(self) -> "CheckPleaseConfig":
        if self.max_wait <= self.http_timeout:
            raise ValueError("max_wait must be larger than http_timeout")
        return self


class LoggingConfig(BaseModel):
    """Logging configuration.

    Example YAML:
        logging:
          level: INFO
          format: json          # 'json' for log shipping, 'console' for humans
          file: ./logs/preservation.log
    """

    level: str = Field(default="INFO", description="Log level (DEBUG, INFO, WARNING, ERROR)")
    format: str = Field(default="console", description="Output format: 'json' or 'console'")
    file: Optional[str] = Field(default=None, description="Optional log file path")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"level must be one of: {valid_levels}")
        return v.upper()

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        valid_formats = ["json", "console"]
        if v.lower() not in valid_formats:
            raise ValueError(f"format must be one of: {valid_formats}")
        return v.lower()


class PreservationConfig(BaseModel):
    """Validated contents of preservation.yml."""

    database_url: str = Field(default="sqlite:///preservation.db")
    source_paths_to_storage_providers: Dict[str, SourcePathMapping] = Field(default_factory=dict)
    aws: AwsConfig = Field(default_factory=AwsConfig)
    gcp: GcpConfig = Field(default_factory=GcpConfig)
    check_please: Optional[CheckPleaseConfig] = None
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    run_queued_jobs_inline: bool = Field(default=False, description="Run successor stages in-process")

    @field_validator("source_paths_to_storage_providers")
    @classmethod
    def validate_source_paths(cls, v: Dict[str, SourcePathMapping]) -> Dict[str, SourcePathMapping]:
        _require_trailing_slash(v, "source_paths_to_storage_providers")
        for prefix in v:
            if not prefix.startswith("/"):
                raise ValueError(f"source_paths_to_storage_providers key must be absolute: {prefix}")
        return v

    def storage_targets_for_path(self, path: str) -> List[ProviderTarget]:
        """Return every provider configured for a local path.

        Raises:
            StorageProviderMappingNotFoundError: If no prefix covers the path
        """
        targets: List[ProviderTarget] = []
        for prefix, mapping in self.source_paths_to_storage_providers.items():
            if path.startswith(prefix):
                targets.extend(mapping.storage_providers)

        if not targets:
            raise StorageProviderMappingNotFoundError(
                f"Could not find a storage provider mapping for {path}",
                path=path,
            )
        return targets

    def storage_targets(self) -> List[ProviderTarget]:
        """Every distinct (storage_type, container_name) in the mapping, in config order."""
        seen = set()
        targets: List[ProviderTarget] = []
        for mapping in self.source_paths_to_storage_providers.values():
            for target in mapping.storage_providers:
                if (target.storage_type, target.container_name) not in seen:
                    seen.add((target.storage_type, target.container_name))
                    targets.append(target)
        return targets

    def local_path_key_map(self, storage_type: StorageType) -> Dict[str, str]:
        if storage_type == StorageType.aws:
            return self.aws.local_path_key_map
        if storage_type == StorageType.gcp:
            return self.gcp.local_path_key_map
        return {}


class PreservationSettings(BaseSettings):
    """Process settings from the environment (PRESERVATION_ prefix).

    Example:
        >>> # PRESERVATION_CONFIG_PATH=/etc/preservation.yml
        >>> # PRESERVATION_LOG_LEVEL=DEBUG
        >>> settings = PreservationSettings()
        >>> settings.config_path
        '/etc/preservation.yml'
    """

    config_path: str = Field(default="preservation.yml", description="Path to the YAML configuration")
    database_url: Optional[str] = Field(default=None, description="Overrides database_url from YAML")
    log_level: Optional[str] = Field(default=None, description="Overrides logging.level from YAML")
    log_format: Optional[str] = Field(default=None, description="Overrides logging.format from YAML")
    log_file: Optional[str] = Field(default=None, description="Overrides logging.file from YAML")

    model_config = SettingsConfigDict(
        env_prefix="PRESERVATION_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


def load_config(
    config_path: Optional[Union[str, Path]] = None,
    *,
    settings: Optional[PreservationSettings] = None,
) -> PreservationConfig:
    """Load and validate the YAML configuration.

    Args:
        config_path: Path to the YAML file (default: settings.config_path)
        settings: Environment settings; built from the environment if omitted

    Returns:
        Validated PreservationConfig

    Raises:
        ConfigurationError: If the file is missing, unparsable or invalid
    """
    load_env_file()
    settings = settings or PreservationSettings()
    path = Path(config_path or settings.config_path)

    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}", field="config_path", value=path)

    with open(path, "r", encoding="utf-8") as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {path}: {e}")

    if not raw:
        raise ConfigurationError(f"Empty configuration file: {path}")

    raw = expand_options(raw)

    if settings.database_url:
        raw["database_url"] = settings.database_url
    logging_overrides = {
        "level": settings.log_level,
        "format": settings.log_format,
        "file": settings.log_file,
    }
    for key, value in logging_overrides.items():
        if value is not None:
            raw.setdefault("logging", {})[key] = value

    try:
        config = PreservationConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid configuration in {path}",
            details={"errors": "; ".join(err["msg"] for err in e.errors())},
        ) from e

    logger.debug("Loaded configuration from %s", path)
    return config
