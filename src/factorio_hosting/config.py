"""Configuration management for Factorio Hosting."""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Union

import yaml

logger = logging.getLogger(__name__)

TOKEN_ENV_VAR = "FACTORIO_AUTH_TOKEN"


class ConfigError(ValueError):
    """Raised when the hosting configuration is missing or malformed."""


@dataclass(frozen=True)
class HostingConfig:
    """Deployment parameters for the Factorio server."""

    # AWS Configuration
    region: str = ""
    account: str = ""

    # Prefix for all resources in this deployment
    prefix: str = "FactorioHosting"

    # Save bucket; empty creates a new one
    bucket_name: str = ""

    # Network placement; empty uses the default VPC and a public subnet
    vpc_id: str = ""
    subnet_id: str = ""
    availability_zone: str = ""  # Needed if subnet_id is specified (e.g. us-west-2a)

    # Needed for public games
    factorio_username: str = ""
    factorio_auth_token: str = field(default="", repr=False)

    @classmethod
    def from_dict(cls, config_dict: dict) -> "HostingConfig":
        """Create HostingConfig from dictionary.

        Unknown keys are ignored and ``None`` values become empty strings.
        Any other non-string value is rejected: YAML resolves unquoted
        scalars such as ``012345670123`` (octal) or ``no`` (boolean), which
        would silently change account ids and names.

        Args:
            config_dict: Dictionary containing configuration values

        Returns:
            HostingConfig instance

        Raises:
            ConfigError: If a known key holds a non-string value
        """
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in config_dict.items():
            if key not in known:
                logger.debug(f"Ignoring unknown configuration key '{key}'")
                continue
            if value is None:
                value = ""
            elif not isinstance(value, str):
                raise ConfigError(
                    f"Configuration key '{key}' must be a string, got {value!r}; "
                    "quote it in YAML"
                )
            values[key] = value
        return cls(**values)

    def validate(self) -> None:
        """Check the configuration invariants.

        Raises:
            ConfigError: If region/account are missing or only one of
                subnet_id/availability_zone is set
        """
        if not self.region:
            raise ConfigError("Missing required configuration key: region")
        if not self.account:
            raise ConfigError("Missing required configuration key: account")
        if bool(self.subnet_id) != bool(self.availability_zone):
            raise ConfigError(
                "subnet_id and availability_zone must be set together "
                f"(got subnet_id={self.subnet_id!r}, "
                f"availability_zone={self.availability_zone!r})"
            )

    def resource_name(self, suffix: str) -> str:
        """Return the prefixed name of a resource."""
        return f"{self.prefix}{suffix}"


def load_config(path: Union[str, Path]) -> HostingConfig:
    """Load and validate the hosting configuration from a YAML file.

    The ``FACTORIO_AUTH_TOKEN`` environment variable, when set, overrides
    the token from the file.

    Args:
        path: Path to the YAML configuration file

    Returns:
        Validated HostingConfig

    Raises:
        ConfigError: If the file is missing, unparsable or invalid
    """
    path = Path(path)
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Configuration file not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse configuration file {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file {path} must contain a mapping")

    token = os.environ.get(TOKEN_ENV_VAR)
    if token:
        data["factorio_auth_token"] = token

    config = HostingConfig.from_dict(data)
    config.validate()
    logger.info(f"Loaded configuration from {path} (region {config.region})")
    return config


# Factorio game port
FACTORIO_UDP_PORT = 34197

# Server instance
INSTANCE_TYPE = "t3.large"
ROOT_DEVICE_NAME = "/dev/sda1"
ROOT_VOLUME_SIZE_GB = 15
UBUNTU_AMI_PARAMETER = (
    "/aws/service/canonical/ubuntu/server/20.04/stable/current/amd64/hvm/ebs-gp2/ami-id"
)
SSM_MANAGED_POLICY_ARN = "arn:aws:iam::aws:policy/AmazonSSMManagedInstanceCore"

# Restart function
RESTART_FUNCTION_RUNTIME = "python3.12"
RESTART_FUNCTION_TIMEOUT = 10
LAMBDA_BASIC_EXECUTION_POLICY_ARN = (
    "arn:aws:iam::aws:policy/service-role/AWSLambdaBasicExecutionRole"
)
RESTART_API_STAGE = "prod"

APPLICATION_TAG = "factorio-hosting"
