"""EC2 operations for Factorio Hosting."""

import logging
from typing import Any, Dict, Optional

import boto3
from botocore.exceptions import ClientError, WaiterError

from .config import (
    APPLICATION_TAG,
    FACTORIO_UDP_PORT,
    INSTANCE_TYPE,
    ROOT_DEVICE_NAME,
    ROOT_VOLUME_SIZE_GB,
    UBUNTU_AMI_PARAMETER,
)
from .exceptions import DeploymentError

logger = logging.getLogger(__name__)

BOOT_HASH_TAG = "BootSequenceHash"
LIVE_STATES = ["pending", "running", "stopping", "stopped"]


class EC2Manager:
    """Manages EC2 operations for the Factorio server."""

    def __init__(self, region: str = "us-east-1"):
        """Initialize EC2 manager.

        Args:
            region: AWS region
        """
        self.region = region
        self.ec2_client = boto3.client("ec2", region_name=region)
        self.ssm_client = boto3.client("ssm", region_name=region)

    def ensure_security_group(self, group_name: str, vpc_id: str, description: str) -> str:
        """Create the server security group with its single ingress rule.

        The group allows inbound UDP on the game port from any IPv4 address
        and nothing else.

        Args:
            group_name: Name of the security group
            vpc_id: VPC to create the group in
            description: Description of the security group

        Returns:
            Security group ID

        Raises:
            DeploymentError: If the group could not be created
        """
        try:
            response = self.ec2_client.describe_security_groups(
                Filters=[
                    {"Name": "group-name", "Values": [group_name]},
                    {"Name": "vpc-id", "Values": [vpc_id]},
                ]
            )

            if response["SecurityGroups"]:
                group = response["SecurityGroups"][0]
                group_id = group["GroupId"]
                logger.info(f"Security group {group_name} already exists: {group_id}")
                expected = ingress_sources([game_port_ingress_rule()])
                if ingress_sources(group.get("IpPermissions", [])) != expected:
                    logger.warning(
                        f"Security group {group_id} does not hold exactly the UDP "
                        f"{FACTORIO_UDP_PORT} ingress rule; its rules are left unchanged"
                    )
                return group_id

            create_response = self.ec2_client.create_security_group(
                GroupName=group_name, Description=description, VpcId=vpc_id
            )
            group_id = create_response["GroupId"]
            logger.info(f"Created security group {group_name}: {group_id}")

            self.ec2_client.authorize_security_group_ingress(
                GroupId=group_id, IpPermissions=[game_port_ingress_rule()]
            )
            logger.info(f"Allowed UDP {FACTORIO_UDP_PORT} from anywhere on {group_id}")

            return group_id
        except ClientError as e:
            raise DeploymentError(f"Error creating security group {group_name}: {e}") from e

    def delete_security_group(self, group_id: str) -> bool:
        """Delete a security group.

        Args:
            group_id: Security group ID

        Returns:
            True if the group is gone, False otherwise
        """
        try:
            self.ec2_client.delete_security_group(GroupId=group_id)
            logger.info(f"Deleted security group {group_id}")
            return True
        except ClientError as e:
            if e.response["Error"]["Code"] == "InvalidGroup.NotFound":
                return True
            logger.error(f"Error deleting security group {group_id}: {e}")
            return False

    def find_security_group(self, group_name: str, vpc_id: Optional[str] = None) -> Optional[str]:
        """Find a security group id by name, within one VPC when given."""
        filters = [{"Name": "group-name", "Values": [group_name]}]
        if vpc_id:
            filters.append({"Name": "vpc-id", "Values": [vpc_id]})
        try:
            response = self.ec2_client.describe_security_groups(Filters=filters)
        except ClientError as e:
            logger.error(f"Error finding security group {group_name}: {e}")
            return None
        groups = response.get("SecurityGroups", [])
        return groups[0]["GroupId"] if groups else None

    def get_ubuntu_ami(self, parameter: str = UBUNTU_AMI_PARAMETER) -> str:
        """Resolve the current Ubuntu AMI from Canonical's public SSM parameter.

        The parameter always points at the latest stable image, so later
        deploys may pick up a newer AMI.

        Args:
            parameter: SSM parameter name

        Returns:
            AMI ID

        Raises:
            DeploymentError: If the parameter could not be read
        """
        try:
            response = self.ssm_client.get_parameter(Name=parameter)
            ami_id = response["Parameter"]["Value"]
            logger.info(f"Using AMI {ami_id}")
            return ami_id
        except ClientError as e:
            raise DeploymentError(f"Error resolving AMI from {parameter}: {e}") from e

    def launch_instance(
        self,
        ami_id: str,
        subnet_id: str,
        security_group_id: str,
        user_data: str,
        instance_name: str,
        iam_instance_profile: str,
        boot_hash: str,
        instance_type: str = INSTANCE_TYPE,
    ) -> str:
        """Launch the server instance.

        Args:
            ami_id: AMI ID to use
            subnet_id: Subnet to place the network interface in
            security_group_id: Security group ID
            user_data: Boot sequence script
            instance_name: Name tag for the instance
            iam_instance_profile: IAM instance profile name
            boot_hash: Fingerprint of the boot sequence, stored as a tag
            instance_type: EC2 instance type

        Returns:
            Instance ID

        Raises:
            DeploymentError: If the launch failed
        """
        launch_params: Dict[str, Any] = {
            "ImageId": ami_id,
            "InstanceType": instance_type,
            "UserData": user_data,
            "MinCount": 1,
            "MaxCount": 1,
            "IamInstanceProfile": {"Name": iam_instance_profile},
            "NetworkInterfaces": [
                {
                    "DeviceIndex": 0,
                    "SubnetId": subnet_id,
                    "Groups": [security_group_id],
                    "AssociatePublicIpAddress": True,
                }
            ],
            "BlockDeviceMappings": [
                {
                    "DeviceName": ROOT_DEVICE_NAME,
                    "Ebs": {
                        "VolumeSize": ROOT_VOLUME_SIZE_GB,
                        "VolumeType": "gp2",
                        "DeleteOnTermination": True,
                    },
                }
            ],
            "TagSpecifications": [
                {
                    "ResourceType": "instance",
                    "Tags": [
                        {"Key": "Name", "Value": instance_name},
                        {"Key": "Application", "Value": APPLICATION_TAG},
                        {"Key": BOOT_HASH_TAG, "Value": boot_hash},
                    ],
                }
            ],
        }

        try:
            response = self.ec2_client.run_instances(**launch_params)
            instance_id = response["Instances"][0]["InstanceId"]
            logger.info(f"Launched instance {instance_id}")

            waiter = self.ec2_client.get_waiter("instance_running")
            waiter.wait(InstanceIds=[instance_id])
            logger.info(f"Instance {instance_id} is running")

            return instance_id
        except (ClientError, WaiterError) as e:
            raise DeploymentError(f"Error launching instance: {e}") from e

    def find_instances(self, instance_name: str) -> list[dict]:
        """Find live instances with the given name tag.

        Args:
            instance_name: Instance name to search for

        Returns:
            List of instance summaries (see ``instance_summary``)
        """
        try:
            response = self.ec2_client.describe_instances(
                Filters=[
                    {"Name": "tag:Name", "Values": [instance_name]},
                    {"Name": "instance-state-name", "Values": LIVE_STATES},
                ]
            )
        except ClientError as e:
            raise DeploymentError(f"Error finding instance {instance_name}: {e}") from e

        return [
            instance_summary(instance)
            for reservation in response["Reservations"]
            for instance in reservation["Instances"]
        ]

    def start_instance(self, instance_id: str) -> bool:
        """Start an EC2 instance.

        Args:
            instance_id: Instance ID

        Returns:
            True if start succeeded, False otherwise
        """
        try:
            self.ec2_client.start_instances(InstanceIds=[instance_id])
            logger.info(f"Started instance {instance_id}")
            return True
        except ClientError as e:
            logger.error(f"Error starting instance: {e}")
            return False

    def terminate_instance_and_wait(self, instance_id: str, dry_run: bool = False) -> bool:
        """Terminate an EC2 instance and wait for termination to complete.

        Args:
            instance_id: Instance ID to terminate
            dry_run: If True, only log what would be done without actually terminating

        Returns:
            True if termination succeeded, False otherwise
        """
        try:
            if dry_run:
                logger.info(f"[DRY RUN] Would terminate instance: {instance_id}")
                return True

            logger.info(f"Terminating instance {instance_id}...")
            self.ec2_client.terminate_instances(InstanceIds=[instance_id])

            waiter = self.ec2_client.get_waiter("instance_terminated")
            waiter.wait(
                InstanceIds=[instance_id],
                WaiterConfig={
                    "Delay": 15,  # Check every 15 seconds
                    "MaxAttempts": 40,  # Wait up to 10 minutes
                },
            )
            logger.info(f"Instance {instance_id} has been terminated")
            return True
        except ClientError as e:
            if e.response["Error"]["Code"] == "InvalidInstanceID.NotFound":
                logger.info(f"Instance {instance_id} not found, already terminated")
                return True
            logger.error(f"Error terminating instance {instance_id}: {e}")
            return False
        except WaiterError as e:
            logger.error(f"Timed out waiting for instance {instance_id} to terminate: {e}")
            return False

    def get_instance_details(self, instance_id: str) -> Optional[dict]:
        """Get the summary of an instance plus its type, addresses and launch time.

        Args:
            instance_id: Instance ID

        Returns:
            Dictionary with instance details, or None if not found
        """
        try:
            response = self.ec2_client.describe_instances(InstanceIds=[instance_id])
        except ClientError as e:
            logger.error(f"Error describing instance {instance_id}: {e}")
            return None

        reservations = response["Reservations"]
        if not reservations or not reservations[0]["Instances"]:
            return None

        instance = reservations[0]["Instances"][0]
        details = instance_summary(instance)
        details.update(
            instance_type=instance["InstanceType"],
            public_ip=instance.get("PublicIpAddress"),
            private_ip=instance.get("PrivateIpAddress"),
            launch_time=instance["LaunchTime"],
        )
        return details


def instance_summary(instance: dict) -> dict:
    """Reduce a described instance to what the deployer compares and reports.

    Returns:
        Dictionary with ``instance_id``, ``name``, ``state``, ``boot_hash``,
        ``subnet_id`` and ``security_group_ids``
    """
    tags = {tag["Key"]: tag["Value"] for tag in instance.get("Tags", [])}
    return {
        "instance_id": instance["InstanceId"],
        "name": tags.get("Name"),
        "state": instance["State"]["Name"],
        "boot_hash": tags.get(BOOT_HASH_TAG),
        "subnet_id": instance.get("SubnetId"),
        "security_group_ids": [group["GroupId"] for group in instance.get("SecurityGroups", [])],
    }


def ingress_sources(permissions: list) -> list:
    """Flatten ingress permissions to sorted (protocol, from, to, source) tuples."""
    flattened = []
    for permission in permissions:
        rule = (
            permission.get("IpProtocol"),
            permission.get("FromPort"),
            permission.get("ToPort"),
        )
        sources = (
            [r["CidrIp"] for r in permission.get("IpRanges", [])]
            + [r["CidrIpv6"] for r in permission.get("Ipv6Ranges", [])]
            + [p["PrefixListId"] for p in permission.get("PrefixListIds", [])]
            + [p["GroupId"] for p in permission.get("UserIdGroupPairs", []) if "GroupId" in p]
        )
        flattened.extend(rule + (source,) for source in sources or [None])
    return sorted(flattened, key=repr)


def game_port_ingress_rule() -> dict:
    """Return the only ingress rule of the server security group."""
    return {
        "IpProtocol": "udp",
        "FromPort": FACTORIO_UDP_PORT,
        "ToPort": FACTORIO_UDP_PORT,
        "IpRanges": [{"CidrIp": "0.0.0.0/0", "Description": "Game port"}],
    }
