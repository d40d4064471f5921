"""Deployment orchestration for Factorio Hosting."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from .boot import BootSequence, build_boot_sequence
from .config import HostingConfig
from .ec2_manager import EC2Manager
from .exceptions import DeploymentError
from .iam_manager import IAMManager
from .network import NetworkResolver, select_subnet
from .restart_api import RestartApiManager
from .storage import NewBucket, S3Manager, asset_key, select_bucket

logger = logging.getLogger(__name__)

DEFAULT_SCRIPT_PATH = Path(__file__).parent / "scripts" / "install.sh"


@dataclass(frozen=True)
class DeploymentOutputs:
    """What a successful deployment produced."""

    instance_id: str
    bucket_name: str
    security_group_id: str
    api_url: str


class Rollback:
    """Undo actions for resources created during a deployment run."""

    def __init__(self) -> None:
        self._actions: List[Tuple[str, Callable[[], bool]]] = []

    def add(self, description: str, undo: Callable[[], bool]) -> None:
        self._actions.append((description, undo))

    def run(self) -> None:
        for description, undo in reversed(self._actions):
            logger.warning(f"Rolling back: {description}")
            if not undo():
                logger.error(f"Rollback step failed: {description}")
        self._actions.clear()


class Deployer:
    """Orchestrates deployment of the Factorio server on AWS."""

    def __init__(self, config: HostingConfig):
        """Initialize deployer.

        Args:
            config: Hosting configuration
        """
        self.config = config
        self.bucket = select_bucket(
            config.bucket_name, config.prefix, config.account, config.region
        )
        self.network = NetworkResolver(config.region)
        self.s3_manager = S3Manager(self.bucket.name, config.region)
        self.ec2_manager = EC2Manager(config.region)
        self.iam_manager = IAMManager(config.region)
        self.restart_api = RestartApiManager(config.region)

    @property
    def instance_name(self) -> str:
        return self.config.resource_name("Server")

    @property
    def security_group_name(self) -> str:
        return self.config.resource_name("ServerSecurityGroup")

    @property
    def server_role_name(self) -> str:
        return self.config.resource_name("ServerRole")

    @property
    def server_profile_name(self) -> str:
        return self.config.resource_name("ServerProfile")

    @property
    def function_name(self) -> str:
        return self.config.resource_name("StartServerLambda")

    @property
    def function_role_name(self) -> str:
        return self.config.resource_name("StartServerLambdaRole")

    @property
    def api_name(self) -> str:
        return self.config.resource_name("StartServerApi")

    def boot_sequence(self, script_key: str) -> BootSequence:
        return build_boot_sequence(
            self.bucket.name,
            script_key,
            self.config.factorio_username,
            self.config.factorio_auth_token,
        )

    def synth(self, script_path: Optional[Path] = None) -> dict:
        """Describe what a deployment would create, without calling AWS.

        Args:
            script_path: Startup script to upload (defaults to the bundled install.sh)

        Returns:
            Dictionary with the resolved selections and the redacted boot sequence
        """
        self.config.validate()
        script_path = script_path or DEFAULT_SCRIPT_PATH
        subnet = select_subnet(self.config.subnet_id, self.config.availability_zone)
        boot = self.boot_sequence(asset_key(script_path))

        return {
            "region": self.config.region,
            "account": self.config.account,
            "vpc": self.config.vpc_id or "default",
            "subnet": subnet,
            "bucket": self.bucket,
            "instance_name": self.instance_name,
            "security_group": self.security_group_name,
            "function": self.function_name,
            "api": self.api_name,
            "boot_hash": boot.fingerprint(),
            "user_data": boot.redacted(),
        }

    def deploy(self, script_path: Optional[Path] = None) -> DeploymentOutputs:
        """Deploy the Factorio server to AWS.

        Resources created by a run that fails are removed again before the
        error propagates.

        Args:
            script_path: Startup script to upload (defaults to the bundled install.sh)

        Returns:
            DeploymentOutputs

        Raises:
            ConfigError: If the configuration is invalid
            DeploymentError: If any provisioning step fails
        """
        self.config.validate()
        script_path = script_path or DEFAULT_SCRIPT_PATH
        rollback = Rollback()

        logger.info("Starting Factorio server deployment")
        try:
            outputs, stale_instances = self._deploy(script_path, rollback)
        except DeploymentError as e:
            logger.error(f"Deployment failed: {e}")
            rollback.run()
            raise

        # Replaced instances are removed only once the new one is in place
        for instance_id in stale_instances:
            logger.info(f"Removing replaced instance {instance_id}")
            if not self.ec2_manager.terminate_instance_and_wait(instance_id):
                logger.warning(f"Failed to terminate replaced instance {instance_id}")

        logger.info("Factorio server deployed successfully!")
        logger.info(f"Instance ID: {outputs.instance_id}")
        logger.info(f"Save bucket: {outputs.bucket_name}")
        logger.info(f"Restart endpoint: {outputs.api_url}")
        return outputs

    def _deploy(
        self, script_path: Path, rollback: Rollback
    ) -> Tuple[DeploymentOutputs, List[str]]:
        # Step 1: Network placement
        subnet_selection = select_subnet(self.config.subnet_id, self.config.availability_zone)
        network = self.network.resolve_network(self.config.vpc_id)
        subnet_id = self.network.resolve_subnet(network, subnet_selection)

        # Step 2: Save bucket
        bucket_name = self.s3_manager.ensure_bucket(self.bucket)

        # Step 3: Security group
        group_existed = self.ec2_manager.find_security_group(
            self.security_group_name, network.vpc_id
        )
        security_group_id = self.ec2_manager.ensure_security_group(
            self.security_group_name,
            network.vpc_id,
            "Allow Factorio client to connect to server",
        )
        if not group_existed:
            rollback.add(
                f"security group {security_group_id}",
                lambda: self.ec2_manager.delete_security_group(security_group_id),
            )

        # Step 4: Server role with management access and bucket access
        profile = self.iam_manager.ensure_instance_role(
            self.server_role_name, self.server_profile_name
        )
        self.iam_manager.grant_bucket_read_write(self.server_role_name, bucket_name)

        # Step 5: Startup script asset and boot sequence
        script_key = self.s3_manager.upload_asset(script_path)
        if not script_key:
            raise DeploymentError(f"Failed to upload startup script {script_path}")
        boot = self.boot_sequence(script_key)
        boot_hash = boot.fingerprint()

        # Step 6: Server instance, replaced when its boot sequence or placement changed
        existing = self.ec2_manager.find_instances(self.instance_name)
        current = next(
            (
                i
                for i in existing
                if i["boot_hash"] == boot_hash
                and i["subnet_id"] == subnet_id
                and security_group_id in i["security_group_ids"]
            ),
            None,
        )
        launched = current is None
        if current:
            instance_id = current["instance_id"]
            logger.info(f"Boot sequence and placement unchanged, keeping instance {instance_id}")
        else:
            if existing:
                logger.info("Boot sequence or placement changed, replacing instance")
            ami_id = self.ec2_manager.get_ubuntu_ami()
            instance_id = self.ec2_manager.launch_instance(
                ami_id=ami_id,
                subnet_id=subnet_id,
                security_group_id=security_group_id,
                user_data=boot.render(),
                instance_name=self.instance_name,
                iam_instance_profile=profile,
                boot_hash=boot_hash,
            )
            rollback.add(
                f"instance {instance_id}",
                lambda: self.ec2_manager.terminate_instance_and_wait(instance_id),
            )
        stale = [i["instance_id"] for i in existing if i["instance_id"] != instance_id]

        # Step 7: Restart function and endpoint
        if launched and existing:
            previous_id = existing[0]["instance_id"]
            rollback.add(
                f"restart function binding to {previous_id}",
                lambda: self._rebind_restart_function(previous_id),
            )
        function_arn = self._bind_restart_function(instance_id)
        api_existed = self.restart_api.find_api(self.api_name)
        api_url = self.restart_api.ensure_api(self.api_name, function_arn, self.config.account)
        if not api_existed:
            rollback.add(
                f"REST API {self.api_name}", lambda: self.restart_api.delete_api(self.api_name)
            )

        outputs = DeploymentOutputs(
            instance_id=instance_id,
            bucket_name=bucket_name,
            security_group_id=security_group_id,
            api_url=api_url,
        )
        return outputs, stale

    def _bind_restart_function(self, instance_id: str) -> str:
        role_arn = self.iam_manager.ensure_restart_function_role(
            self.function_role_name, self.config.account, instance_id
        )
        return self.restart_api.ensure_function(self.function_name, role_arn, instance_id)

    def _rebind_restart_function(self, instance_id: str) -> bool:
        try:
            self._bind_restart_function(instance_id)
        except DeploymentError as e:
            logger.error(f"Failed to bind restart function to {instance_id}: {e}")
            return False
        return True

    def destroy(self, delete_bucket: bool = False, dry_run: bool = False) -> bool:
        """Tear down everything the deployment created.

        A generated save bucket is retained unless ``delete_bucket`` is set;
        a configured (existing) bucket is never deleted.

        Args:
            delete_bucket: Also delete the generated save bucket and its saves
            dry_run: Only log what would be deleted

        Returns:
            True if every resource is gone, False otherwise
        """
        success = True

        success &= self.restart_api.delete_api(self.api_name, dry_run)
        success &= self.restart_api.delete_function(self.function_name, dry_run)

        for instance in self.ec2_manager.find_instances(self.instance_name):
            success &= self.ec2_manager.terminate_instance_and_wait(
                instance["instance_id"], dry_run
            )

        try:
            network = self.network.resolve_network(self.config.vpc_id)
        except DeploymentError as e:
            # No VPC means no group to delete in it
            logger.warning(f"Skipping security group lookup: {e}")
            group_id = None
        else:
            group_id = self.ec2_manager.find_security_group(
                self.security_group_name, network.vpc_id
            )

        if dry_run:
            logger.info(f"[DRY RUN] Would delete security group {group_id}")
            logger.info(
                f"[DRY RUN] Would delete roles {self.function_role_name}, {self.server_role_name}"
            )
        else:
            if group_id:
                success &= self.ec2_manager.delete_security_group(group_id)
            success &= self.iam_manager.delete_role(self.function_role_name)
            success &= self.iam_manager.delete_role(
                self.server_role_name, self.server_profile_name
            )

        if isinstance(self.bucket, NewBucket):
            if delete_bucket:
                success &= self.s3_manager.delete_bucket_recursive(dry_run)
            else:
                logger.info(f"Retaining save bucket {self.bucket.name}")
        else:
            logger.info(f"Bucket {self.bucket.name} was not created here, leaving it")

        return success

    def start(self) -> bool:
        """Start the server instance.

        Returns:
            True if the start command was accepted, False otherwise
        """
        instances = self.ec2_manager.find_instances(self.instance_name)
        if not instances:
            logger.error(f"No instances found with name {self.instance_name}")
            return False
        return self.ec2_manager.start_instance(instances[0]["instance_id"])

    def status(self) -> Optional[dict]:
        """Get status of the server instance and its restart endpoint.

        Returns:
            Dictionary with instance details, or None if not found
        """
        instances = self.ec2_manager.find_instances(self.instance_name)
        if not instances:
            logger.error(f"No instances found with name {self.instance_name}")
            return None

        details = self.ec2_manager.get_instance_details(instances[0]["instance_id"])
        if details is None:
            return None

        api_id = self.restart_api.find_api(self.api_name)
        details["api_url"] = self.restart_api.api_url(api_id) if api_id else None
        details["bucket"] = self.bucket.name
        return details
