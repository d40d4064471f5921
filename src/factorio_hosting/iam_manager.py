"""IAM operations for Factorio Hosting."""

import json
import logging
from typing import Optional

import boto3
from botocore.exceptions import ClientError, WaiterError

from .config import LAMBDA_BASIC_EXECUTION_POLICY_ARN, SSM_MANAGED_POLICY_ARN
from .exceptions import DeploymentError

logger = logging.getLogger(__name__)


class IAMManager:
    """Manages the server role and the restart function role."""

    def __init__(self, region: str = "us-east-1"):
        """Initialize IAM manager.

        Args:
            region: AWS region (IAM is global but region is kept for consistency)
        """
        self.region = region
        self.iam_client = boto3.client("iam", region_name=region)

    def ensure_instance_role(self, role_name: str, instance_profile_name: str) -> str:
        """Ensure the server role and its instance profile exist.

        The role trusts EC2 and carries the AmazonSSMManagedInstanceCore
        managed policy so the instance can be administered through Session
        Manager.

        Args:
            role_name: Name of the IAM role to create/use
            instance_profile_name: Name of the instance profile to create/use

        Returns:
            Instance profile name (can be used in EC2 run_instances call)

        Raises:
            DeploymentError: If IAM operations fail
        """
        logger.info(f"Ensuring IAM role '{role_name}' and profile '{instance_profile_name}'")

        try:
            role_arn = self._ensure_role(
                role_name, "ec2.amazonaws.com", "Factorio server instance role"
            )
            logger.debug(f"Role ARN: {role_arn}")

            profile_arn = self._ensure_instance_profile(instance_profile_name)
            logger.debug(f"Instance profile ARN: {profile_arn}")

            self._attach_role_to_profile(instance_profile_name, role_name)
            self._attach_managed_policy(role_name, SSM_MANAGED_POLICY_ARN)

            # Newly created profiles are not immediately usable by run_instances
            waiter = self.iam_client.get_waiter("instance_profile_exists")
            waiter.wait(InstanceProfileName=instance_profile_name)

            return instance_profile_name
        except ClientError as e:
            raise DeploymentError(
                f"Failed to create/configure instance role '{role_name}': "
                f"{self._error_message(e)}"
            ) from e
        except WaiterError as e:
            raise DeploymentError(
                f"Instance profile '{instance_profile_name}' did not become available: {e}"
            ) from e

    def grant_bucket_read_write(self, role_name: str, bucket: str) -> None:
        """Grant read-write access on a bucket to a role.

        Args:
            role_name: Name of the IAM role
            bucket: S3 bucket name

        Raises:
            DeploymentError: If the policy could not be attached
        """
        policy_name = f"{role_name}-saves-bucket-access"
        policy_document = {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Action": [
                        "s3:GetObject*",
                        "s3:GetBucket*",
                        "s3:List*",
                        "s3:DeleteObject*",
                        "s3:PutObject",
                        "s3:PutObjectLegalHold",
                        "s3:PutObjectRetention",
                        "s3:PutObjectTagging",
                        "s3:PutObjectVersionTagging",
                        "s3:Abort*",
                    ],
                    "Resource": [
                        f"arn:aws:s3:::{bucket}",
                        f"arn:aws:s3:::{bucket}/*",
                    ],
                }
            ],
        }

        try:
            self.iam_client.put_role_policy(
                RoleName=role_name,
                PolicyName=policy_name,
                PolicyDocument=json.dumps(policy_document),
            )
            logger.info(f"Granted read-write on bucket '{bucket}' to role '{role_name}'")
        except ClientError as e:
            raise DeploymentError(
                f"Failed to grant bucket access to '{role_name}': {self._error_message(e)}"
            ) from e

    def ensure_restart_function_role(self, role_name: str, account: str, instance_id: str) -> str:
        """Ensure the restart function role exists and may start one instance.

        Args:
            role_name: Name of the IAM role
            account: AWS account id owning the instance
            instance_id: The only instance the function may start

        Returns:
            Role ARN

        Raises:
            DeploymentError: If IAM operations fail
        """
        policy_document = {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Action": ["ec2:StartInstances"],
                    "Resource": [f"arn:aws:ec2:*:{account}:instance/{instance_id}"],
                }
            ],
        }

        try:
            role_arn = self._ensure_role(
                role_name, "lambda.amazonaws.com", "Factorio server restart function role"
            )
            self._attach_managed_policy(role_name, LAMBDA_BASIC_EXECUTION_POLICY_ARN)
            self.iam_client.put_role_policy(
                RoleName=role_name,
                PolicyName=f"{role_name}-start-instance",
                PolicyDocument=json.dumps(policy_document),
            )
            logger.info(f"Role '{role_name}' may start instance {instance_id}")
            return role_arn
        except ClientError as e:
            raise DeploymentError(
                f"Failed to create/configure function role '{role_name}': "
                f"{self._error_message(e)}"
            ) from e

    def delete_role(self, role_name: str, instance_profile_name: Optional[str] = None) -> bool:
        """Delete a role, its policies and optionally its instance profile.

        Args:
            role_name: Name of the IAM role
            instance_profile_name: Instance profile to remove the role from and delete

        Returns:
            True if the role is gone, False otherwise
        """
        try:
            if instance_profile_name:
                self._delete_instance_profile(instance_profile_name)

            try:
                attached = self.iam_client.list_attached_role_policies(RoleName=role_name)
            except ClientError as e:
                if e.response["Error"]["Code"] == "NoSuchEntity":
                    logger.info(f"Role '{role_name}' does not exist, nothing to delete")
                    return True
                raise

            for policy in attached.get("AttachedPolicies", []):
                self.iam_client.detach_role_policy(
                    RoleName=role_name, PolicyArn=policy["PolicyArn"]
                )

            inline = self.iam_client.list_role_policies(RoleName=role_name)
            for policy_name in inline.get("PolicyNames", []):
                self.iam_client.delete_role_policy(RoleName=role_name, PolicyName=policy_name)

            self.iam_client.delete_role(RoleName=role_name)
            logger.info(f"Deleted IAM role '{role_name}'")
            return True
        except ClientError as e:
            logger.error(f"Error deleting role '{role_name}': {e}")
            return False

    def _ensure_role(self, role_name: str, service: str, description: str) -> str:
        """Create IAM role if it doesn't exist.

        Args:
            role_name: Name of the IAM role
            service: Service principal allowed to assume the role
            description: Role description

        Returns:
            Role ARN
        """
        trust_policy = {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Principal": {"Service": service},
                    "Action": "sts:AssumeRole",
                }
            ],
        }

        try:
            response = self.iam_client.get_role(RoleName=role_name)
            logger.debug(f"Role '{role_name}' already exists")
            return response["Role"]["Arn"]
        except ClientError as e:
            if e.response["Error"]["Code"] != "NoSuchEntity":
                raise

        logger.info(f"Creating IAM role '{role_name}'")
        response = self.iam_client.create_role(
            RoleName=role_name,
            AssumeRolePolicyDocument=json.dumps(trust_policy),
            Description=description,
        )
        return response["Role"]["Arn"]

    def _ensure_instance_profile(self, profile_name: str) -> str:
        """Create instance profile if it doesn't exist.

        Args:
            profile_name: Name of the instance profile

        Returns:
            Instance profile ARN
        """
        try:
            response = self.iam_client.get_instance_profile(InstanceProfileName=profile_name)
            logger.debug(f"Instance profile '{profile_name}' already exists")
            return response["InstanceProfile"]["Arn"]
        except ClientError as e:
            if e.response["Error"]["Code"] != "NoSuchEntity":
                raise

        logger.info(f"Creating instance profile '{profile_name}'")
        response = self.iam_client.create_instance_profile(InstanceProfileName=profile_name)
        return response["InstanceProfile"]["Arn"]

    def _attach_role_to_profile(self, profile_name: str, role_name: str) -> None:
        """Attach IAM role to instance profile if not already attached.

        Args:
            profile_name: Name of the instance profile
            role_name: Name of the IAM role
        """
        response = self.iam_client.get_instance_profile(InstanceProfileName=profile_name)
        roles = response["InstanceProfile"].get("Roles", [])

        if any(role["RoleName"] == role_name for role in roles):
            logger.debug(f"Role '{role_name}' already attached to profile '{profile_name}'")
            return

        logger.info(f"Attaching role '{role_name}' to profile '{profile_name}'")
        self.iam_client.add_role_to_instance_profile(
            InstanceProfileName=profile_name, RoleName=role_name
        )

    def _attach_managed_policy(self, role_name: str, policy_arn: str) -> None:
        """Attach a managed policy to a role (no-op when already attached)."""
        self.iam_client.attach_role_policy(RoleName=role_name, PolicyArn=policy_arn)
        logger.debug(f"Attached managed policy {policy_arn} to role '{role_name}'")

    def _delete_instance_profile(self, profile_name: str) -> None:
        try:
            response = self.iam_client.get_instance_profile(InstanceProfileName=profile_name)
        except ClientError as e:
            if e.response["Error"]["Code"] == "NoSuchEntity":
                return
            raise

        for role in response["InstanceProfile"].get("Roles", []):
            self.iam_client.remove_role_from_instance_profile(
                InstanceProfileName=profile_name, RoleName=role["RoleName"]
            )
        self.iam_client.delete_instance_profile(InstanceProfileName=profile_name)
        logger.info(f"Deleted instance profile '{profile_name}'")

    @staticmethod
    def _error_message(error: ClientError) -> str:
        error_code = error.response.get("Error", {}).get("Code", "Unknown")
        message = error.response.get("Error", {}).get("Message", str(error))
        return f"[{error_code}] {message}"
