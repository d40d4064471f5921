"""Unit tests for config module."""

from dataclasses import FrozenInstanceError
from pathlib import Path

import pytest

from factorio_hosting.config import (
    FACTORIO_UDP_PORT,
    INSTANCE_TYPE,
    ROOT_VOLUME_SIZE_GB,
    ConfigError,
    HostingConfig,
    load_config,
)


def test_hosting_config_defaults() -> None:
    """Test HostingConfig default values."""
    config = HostingConfig()

    assert config.region == ""
    assert config.account == ""
    assert config.prefix == "FactorioHosting"
    assert config.bucket_name == ""
    assert config.vpc_id == ""
    assert config.subnet_id == ""
    assert config.availability_zone == ""
    assert config.factorio_username == ""
    assert config.factorio_auth_token == ""


def test_hosting_config_is_immutable() -> None:
    """Test that HostingConfig cannot be modified after creation."""
    config = HostingConfig(region="us-east-1")

    with pytest.raises(FrozenInstanceError):
        config.region = "eu-west-1"  # type: ignore[misc]


def test_hosting_config_from_dict() -> None:
    """Test HostingConfig.from_dict ignores unknown keys and normalizes None."""
    config = HostingConfig.from_dict(
        {
            "region": "eu-west-1",
            "account": "123456789012",
            "bucket_name": None,
            "vpc_id": "vpc-123",
            "extra_field": "should be ignored",
        }
    )

    assert config.region == "eu-west-1"
    assert config.account == "123456789012"
    assert config.bucket_name == ""
    assert config.vpc_id == "vpc-123"
    assert not hasattr(config, "extra_field")


def test_repr_hides_auth_token() -> None:
    """Test that the auth token never shows up in repr."""
    config = HostingConfig(region="us-east-1", account="1", factorio_auth_token="tok-xyz")

    assert "tok-xyz" not in repr(config)


def test_validate_accepts_minimal_config() -> None:
    """Test that region and account are enough."""
    HostingConfig(region="us-east-1", account="123456789012").validate()


@pytest.mark.parametrize(
    "values, message",
    [
        ({"account": "1"}, "region"),
        ({"region": "us-east-1"}, "account"),
    ],
)
def test_validate_requires_region_and_account(values: dict, message: str) -> None:
    """Test that region and account are required."""
    with pytest.raises(ConfigError, match=message):
        HostingConfig(**values).validate()


@pytest.mark.parametrize(
    "subnet_id, availability_zone",
    [("subnet-123", ""), ("", "us-east-1a")],
)
def test_validate_rejects_partial_subnet(subnet_id: str, availability_zone: str) -> None:
    """Test that subnet_id and availability_zone must be supplied together."""
    config = HostingConfig(
        region="us-east-1",
        account="1",
        subnet_id=subnet_id,
        availability_zone=availability_zone,
    )

    with pytest.raises(ConfigError, match="together"):
        config.validate()


def test_resource_name_uses_prefix() -> None:
    """Test resource names are prefixed."""
    config = HostingConfig(prefix="MyGame")

    assert config.resource_name("Server") == "MyGameServer"


def test_load_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Test loading a YAML configuration file."""
    monkeypatch.delenv("FACTORIO_AUTH_TOKEN", raising=False)
    path = tmp_path / "config.yaml"
    path.write_text(
        "region: us-west-2\n"
        "account: '123456789012'\n"
        "bucket_name: saves-1\n"
        "subnet_id: subnet-1\n"
        "availability_zone: us-west-2a\n"
        "factorio_username: alice\n"
        "factorio_auth_token: tok-file\n"
    )

    config = load_config(path)

    assert config.region == "us-west-2"
    assert config.account == "123456789012"
    assert config.bucket_name == "saves-1"
    assert config.subnet_id == "subnet-1"
    assert config.availability_zone == "us-west-2a"
    assert config.factorio_auth_token == "tok-file"


def test_load_config_token_from_environment(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Test that FACTORIO_AUTH_TOKEN overrides the file value."""
    monkeypatch.setenv("FACTORIO_AUTH_TOKEN", "tok-env")
    path = tmp_path / "config.yaml"
    path.write_text("region: us-east-1\naccount: '1'\nfactorio_auth_token: tok-file\n")

    config = load_config(path)

    assert config.factorio_auth_token == "tok-env"


def test_load_config_missing_file(tmp_path: Path) -> None:
    """Test loading a file that does not exist."""
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path / "missing.yaml")


def test_load_config_rejects_non_mapping(tmp_path: Path) -> None:
    """Test that the document must be a mapping."""
    path = tmp_path / "config.yaml"
    path.write_text("- region\n- account\n")

    with pytest.raises(ConfigError, match="mapping"):
        load_config(path)


def test_load_config_validates(tmp_path: Path) -> None:
    """Test that load_config rejects a partial subnet configuration."""
    path = tmp_path / "config.yaml"
    path.write_text("region: us-east-1\naccount: '1'\nsubnet_id: subnet-1\n")

    with pytest.raises(ConfigError):
        load_config(path)


@pytest.mark.parametrize(
    "line",
    ["account: 012345670123", "account: 123456789012", "bucket_name: no", "prefix: 42"],
)
def test_load_config_rejects_resolved_scalars(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, line: str
) -> None:
    """Test unquoted YAML numbers and booleans are rejected instead of converted."""
    monkeypatch.delenv("FACTORIO_AUTH_TOKEN", raising=False)
    path = tmp_path / "config.yaml"
    path.write_text(f"region: us-east-1\n{line}\n")

    with pytest.raises(ConfigError, match="must be a string"):
        load_config(path)


def test_load_config_keeps_quoted_leading_zero(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Test a quoted account id keeps its leading zero."""
    monkeypatch.delenv("FACTORIO_AUTH_TOKEN", raising=False)
    path = tmp_path / "config.yaml"
    path.write_text("region: us-east-1\naccount: '012345670123'\nbucket_name: 'no'\n")

    config = load_config(path)

    assert config.account == "012345670123"
    assert config.bucket_name == "no"


def test_server_constants() -> None:
    """Test server constants."""
    assert FACTORIO_UDP_PORT == 34197
    assert INSTANCE_TYPE == "t3.large"
    assert ROOT_VOLUME_SIZE_GB == 15
