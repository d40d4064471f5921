"""Network placement for the Factorio server."""

import logging
from dataclasses import dataclass
from typing import Union

import boto3
from botocore.exceptions import ClientError

from .config import ConfigError
from .exceptions import DeploymentError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NetworkRef:
    """A resolved VPC."""

    vpc_id: str
    is_default: bool = False


@dataclass(frozen=True)
class ExplicitSubnet:
    """A subnet chosen by id and availability zone."""

    subnet_id: str
    availability_zone: str


@dataclass(frozen=True)
class PublicSubnet:
    """Any public subnet of the VPC, auto-placed."""


SubnetSelection = Union[ExplicitSubnet, PublicSubnet]


def select_subnet(subnet_id: str, availability_zone: str) -> SubnetSelection:
    """Choose the subnet selection from the configured identifiers.

    Args:
        subnet_id: Configured subnet id (may be empty)
        availability_zone: Configured availability zone (may be empty)

    Returns:
        ExplicitSubnet when both are set, PublicSubnet when neither is

    Raises:
        ConfigError: If only one of the two is set
    """
    if subnet_id and availability_zone:
        return ExplicitSubnet(subnet_id=subnet_id, availability_zone=availability_zone)
    if subnet_id or availability_zone:
        raise ConfigError("subnet_id and availability_zone must be set together")
    return PublicSubnet()


class NetworkResolver:
    """Looks up the VPC and subnet the server is placed in."""

    def __init__(self, region: str = "us-east-1"):
        """Initialize network resolver.

        Args:
            region: AWS region
        """
        self.region = region
        self.ec2_client = boto3.client("ec2", region_name=region)

    def resolve_network(self, vpc_id: str = "") -> NetworkRef:
        """Look up the configured VPC, or the account's default VPC.

        Args:
            vpc_id: VPC id to look up; empty selects the default VPC

        Returns:
            Resolved NetworkRef

        Raises:
            DeploymentError: If no matching VPC exists
        """
        if vpc_id:
            lookup = {"VpcIds": [vpc_id]}
            what = f"VPC {vpc_id}"
        else:
            lookup = {"Filters": [{"Name": "isDefault", "Values": ["true"]}]}
            what = "default VPC"

        try:
            response = self.ec2_client.describe_vpcs(**lookup)
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "Unknown")
            if error_code == "InvalidVpcID.NotFound":
                raise DeploymentError(f"{what} not found in {self.region}") from e
            raise DeploymentError(f"Failed to look up {what}: {e}") from e

        vpcs = response.get("Vpcs", [])
        if not vpcs:
            raise DeploymentError(f"{what} not found in {self.region}")

        vpc = vpcs[0]
        network = NetworkRef(vpc_id=vpc["VpcId"], is_default=bool(vpc.get("IsDefault")))
        logger.info(f"Using {what}: {network.vpc_id}")
        return network

    def resolve_subnet(self, network: NetworkRef, selection: SubnetSelection) -> str:
        """Turn a subnet selection into a concrete subnet id.

        Explicit subnets are used as given. For auto-placement the first
        public subnet of the VPC (by availability zone, then id) is chosen.

        Args:
            network: Resolved VPC
            selection: Subnet selection

        Returns:
            Subnet id to launch into

        Raises:
            DeploymentError: If the VPC has no public subnet
        """
        if isinstance(selection, ExplicitSubnet):
            logger.info(
                f"Using subnet {selection.subnet_id} in {selection.availability_zone}"
            )
            return selection.subnet_id

        try:
            response = self.ec2_client.describe_subnets(
                Filters=[
                    {"Name": "vpc-id", "Values": [network.vpc_id]},
                    {"Name": "map-public-ip-on-launch", "Values": ["true"]},
                ]
            )
        except ClientError as e:
            raise DeploymentError(
                f"Failed to look up subnets of VPC {network.vpc_id}: {e}"
            ) from e

        subnets = sorted(
            response.get("Subnets", []),
            key=lambda s: (s.get("AvailabilityZone", ""), s["SubnetId"]),
        )
        if not subnets:
            raise DeploymentError(f"No public subnet found in VPC {network.vpc_id}")

        subnet = subnets[0]
        logger.info(
            f"Auto-placed in public subnet {subnet['SubnetId']} "
            f"({subnet.get('AvailabilityZone', 'unknown zone')})"
        )
        return subnet["SubnetId"]
