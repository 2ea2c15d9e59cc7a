"""Configuration management using YAML and Pydantic."""

import os
import re
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from walarchiver.exceptions import ConfigurationError

DEFAULT_CONFIG_PATH = Path("/etc/walarchiver.yaml")
CONFIG_ENV_VAR = "WALARCHIVER_CONFIG"


def _substitute_env_vars(value: str) -> str:
    """Substitute environment variables in string.

    Supports ${VAR} and ${VAR:-default} syntax.

    Args:
        value: String potentially containing env var references

    Returns:
        String with environment variables substituted
    """
    pattern = r"\$\{([^}:]+)(?::-([^}]*))?\}"

    def replacer(match: re.Match[str]) -> str:
        var_name = match.group(1)
        default = match.group(2) if match.group(2) is not None else None
        env_value = os.getenv(var_name)
        if env_value is not None:
            return env_value
        if default is not None:
            return default
        raise ValueError(f"Environment variable {var_name} not set and no default provided")

    return re.sub(pattern, replacer, value)


def _substitute_env_in_dict(data: Any) -> Any:
    """Recursively substitute environment variables in a nested structure."""
    if isinstance(data, dict):
        return {key: _substitute_env_in_dict(value) for key, value in data.items()}
    elif isinstance(data, list):
        return [_substitute_env_in_dict(item) for item in data]
    elif isinstance(data, str):
        return _substitute_env_vars(data)
    return data


class S3Config(BaseModel):
    """S3 configuration."""

    endpoint: Optional[str] = Field(
        default=None,
        description="S3 endpoint URL (null for AWS S3, or custom endpoint for S3-compatible)",
    )
    s3_bucket_wal: str = Field(
        default="pg-wal",
        description="Bucket holding archived WAL segments",
    )
    s3_bucket_backup: str = Field(
        default="pg-basebackup",
        description="Bucket holding base backups",
    )
    s3_location: str = Field(
        default="us-east-1",
        description="Region used for the client and for bucket creation",
    )
    use_ssl: bool = Field(default=True, description="Use HTTPS for the S3 endpoint")
    aws_access_key_id: Optional[str] = Field(
        default=None,
        alias="access_key_id",
        description="AWS access key ID (development only - use AWS_ACCESS_KEY_ID env var in production)",
    )
    aws_secret_access_key: Optional[str] = Field(
        default=None,
        alias="secret_access_key",
        description="AWS secret access key (development only - use AWS_SECRET_ACCESS_KEY env var in production)",
    )

    model_config = {"populate_by_name": True}

    def get_credentials(self) -> Optional[dict[str, str]]:
        """Get AWS credentials from config file or environment variables.

        Returns:
            Dictionary with 'aws_access_key_id' and 'aws_secret_access_key', or None
            if credentials should be obtained from the default boto3 chain

        Raises:
            ValueError: If credentials are partially specified
        """
        config_has_key = self.aws_access_key_id is not None
        config_has_secret = self.aws_secret_access_key is not None

        if config_has_key and config_has_secret:
            import warnings

            warnings.warn(
                "Using AWS credentials from config file. "
                "This is not recommended for production. "
                "Use AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY environment variables instead.",
                UserWarning,
                stacklevel=2,
            )
            return {
                "aws_access_key_id": self.aws_access_key_id,
                "aws_secret_access_key": self.aws_secret_access_key,
            }

        if config_has_key or config_has_secret:
            raise ValueError(
                "Both aws_access_key_id and aws_secret_access_key must be provided together, "
                "or use environment variables (AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY)"
            )

        env_key = os.getenv("AWS_ACCESS_KEY_ID")
        env_secret = os.getenv("AWS_SECRET_ACCESS_KEY")
        if env_key and env_secret:
            return {
                "aws_access_key_id": env_key,
                "aws_secret_access_key": env_secret,
            }

        return None


class DefaultsConfig(BaseModel):
    """Archive and cleanup defaults."""

    min_archive_size: int = Field(
        default=100,
        description="Smallest WAL file (bytes) accepted for archiving",
        ge=1,
    )
    max_wal_size: int = Field(
        default=16 * 1024 * 1024,
        description="Largest WAL file (bytes) accepted for archiving",
        gt=0,
    )
    min_backup_size: int = Field(
        default=1024,
        description="Base backups smaller than this (bytes) are treated as insane",
        ge=0,
    )
    compression_backend: Literal["command", "library"] = Field(
        default="command",
        description="'command' pipes through the zstd binary, 'library' compresses in-process",
    )
    compression_level: int = Field(
        default=3,
        description="Zstandard compression level",
        ge=1,
        le=19,
    )
    zstd_command: str = Field(default="zstd", description="zstd executable")
    gpg_command: str = Field(default="gpg", description="gpg executable")

    @model_validator(mode="after")
    def validate_size_bounds(self) -> "DefaultsConfig":
        """Reject an empty WAL size window."""
        if self.min_archive_size > self.max_wal_size:
            raise ValueError(
                f"min_archive_size ({self.min_archive_size}) must not exceed "
                f"max_wal_size ({self.max_wal_size})"
            )
        return self


class MonitoringConfig(BaseModel):
    """Monitoring and metrics configuration."""

    metrics_enabled: bool = Field(
        default=False,
        description="Collect Prometheus metrics",
    )
    metrics_textfile: Optional[Path] = Field(
        default=None,
        description="Write metrics to this file for the node_exporter textfile collector",
    )


class WalArchiverConfig(BaseModel):
    """Root configuration model."""

    version: str = Field(default="1.0", description="Configuration version")
    archive_to: Literal["file", "s3"] = Field(
        default="file",
        description="Archive destination",
    )
    archivedir: Optional[Path] = Field(
        default=None,
        description="Root directory for file mode (WAL under <archivedir>/wal)",
    )
    encrypt: bool = Field(default=False, description="Encrypt archives for 'recipient'")
    recipient: Optional[str] = Field(
        default=None,
        description="OpenPGP recipient (key id or e-mail) used for encryption",
    )
    s3: Optional[S3Config] = Field(default=None, description="S3 configuration")
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        """Validate configuration version."""
        if v not in ["1.0"]:
            raise ValueError(f"Unsupported configuration version: {v}")
        return v

    @model_validator(mode="after")
    def validate_destination(self) -> "WalArchiverConfig":
        """Check that the selected destination is fully described."""
        if self.archive_to == "file" and self.archivedir is None:
            raise ValueError("'archivedir' is required when archive_to is 'file'")
        if self.archive_to == "s3" and self.s3 is None:
            raise ValueError("An 's3' section is required when archive_to is 's3'")
        if self.encrypt and not self.recipient:
            raise ValueError("'recipient' is required when encrypt is enabled")
        return self


def resolve_config_path(config_path: Optional[Path]) -> Path:
    """Pick the config file from the option, the environment or the default."""
    if config_path is not None:
        return config_path
    env_path = os.getenv(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def load_config(config_path: Path) -> WalArchiverConfig:
    """Load and validate configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Validated configuration object

    Raises:
        ConfigurationError: If configuration is invalid
    """
    try:
        with open(config_path, encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigurationError(
            f"Configuration file not found: {config_path}",
            context={"path": str(config_path)},
        ) from None
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in configuration file: {e}") from e

    if not raw_config:
        raise ConfigurationError(
            "Configuration file is empty", context={"path": str(config_path)}
        )

    try:
        config_data = _substitute_env_in_dict(raw_config)
        return WalArchiverConfig.model_validate(config_data)
    except Exception as e:
        raise ConfigurationError(
            f"Configuration validation failed: {e}",
            context={"path": str(config_path)},
        ) from e
