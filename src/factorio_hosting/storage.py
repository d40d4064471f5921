"""S3 save bucket and startup script assets for Factorio Hosting."""

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union, cast

import boto3
from botocore.exceptions import ClientError

from .exceptions import DeploymentError

logger = logging.getLogger(__name__)

ASSET_PREFIX = "assets/"


@dataclass(frozen=True)
class ExistingBucket:
    """A save bucket that already exists and is referenced by name."""

    name: str


@dataclass(frozen=True)
class NewBucket:
    """A save bucket declared and created by this deployment."""

    name: str


BucketSelection = Union[ExistingBucket, NewBucket]


def generated_bucket_name(prefix: str, account: str, region: str) -> str:
    """Build the name of the bucket created when none is configured.

    The name is unique per prefix/account/region and stable across deploys.
    """
    digest = hashlib.sha256(f"{prefix}:{account}:{region}".encode("utf-8")).hexdigest()
    base = "".join(c for c in prefix.lower() if c.isalnum() or c == "-") or "factorio"
    # 63 character limit for bucket names
    return f"{base[:38]}-savesbucket-{digest[:12]}"


def asset_key(local_path: Path) -> str:
    """Return the content-addressed S3 key of a local asset."""
    digest = hashlib.sha256(local_path.read_bytes()).hexdigest()
    return f"{ASSET_PREFIX}{digest}{local_path.suffix}"


def select_bucket(bucket_name: str, prefix: str, account: str, region: str) -> BucketSelection:
    """Reference the configured bucket, or declare a new one.

    Args:
        bucket_name: Configured bucket name (may be empty)
        prefix: Resource prefix
        account: AWS account id
        region: AWS region

    Returns:
        ExistingBucket for a configured name, NewBucket otherwise
    """
    if bucket_name:
        return ExistingBucket(bucket_name)
    return NewBucket(generated_bucket_name(prefix, account, region))


class S3Manager:
    """Manages the save bucket and startup script assets."""

    def __init__(self, bucket_name: str, region: str = "us-east-1"):
        """Initialize S3 manager.

        Args:
            bucket_name: Name of the S3 bucket
            region: AWS region
        """
        self.bucket_name = bucket_name
        self.region = region
        self.s3_client = boto3.client("s3", region_name=region)

    def ensure_bucket(self, selection: BucketSelection) -> str:
        """Make the selected bucket available and return its name.

        Existing buckets are referenced without any check; a missing or
        inaccessible bucket surfaces later when it is used.

        Args:
            selection: Bucket selection

        Returns:
            Bucket name

        Raises:
            DeploymentError: If a new bucket could not be created
        """
        if isinstance(selection, ExistingBucket):
            logger.info(f"Using existing bucket {selection.name}")
            return selection.name

        if not self.create_bucket():
            raise DeploymentError(f"Failed to create save bucket {self.bucket_name}")
        return self.bucket_name

    def create_bucket(self) -> bool:
        """Create S3 bucket if it doesn't exist.

        Returns:
            True if bucket was created or already exists, False otherwise
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            logger.info(f"Bucket {self.bucket_name} already exists")
            return True
        except ClientError as e:
            error_code = e.response["Error"]["Code"]
            if error_code not in ("404", "NoSuchBucket"):
                logger.error(f"Error checking bucket: {e}")
                return False

        try:
            if self.region == "us-east-1":
                self.s3_client.create_bucket(Bucket=self.bucket_name)
            else:
                self.s3_client.create_bucket(
                    Bucket=self.bucket_name,
                    CreateBucketConfiguration={"LocationConstraint": cast(Any, self.region)},
                )
            self.s3_client.put_public_access_block(
                Bucket=self.bucket_name,
                PublicAccessBlockConfiguration={
                    "BlockPublicAcls": True,
                    "IgnorePublicAcls": True,
                    "BlockPublicPolicy": True,
                    "RestrictPublicBuckets": True,
                },
            )
            logger.info(f"Created bucket {self.bucket_name}")
            return True
        except ClientError as e:
            logger.error(f"Error creating bucket: {e}")
            return False

    def upload_asset(self, local_path: Path) -> Optional[str]:
        """Upload a startup script under a content-addressed key.

        Args:
            local_path: Path to the local script

        Returns:
            S3 key of the uploaded asset, or None if upload failed
        """
        if not local_path.exists():
            logger.error(f"Asset not found: {local_path}")
            return None

        s3_key = asset_key(local_path)

        try:
            self.s3_client.put_object(
                Bucket=self.bucket_name, Key=s3_key, Body=local_path.read_bytes()
            )
            logger.info(f"Uploaded {local_path.name} to s3://{self.bucket_name}/{s3_key}")
            return s3_key
        except ClientError as e:
            logger.error(f"Error uploading asset: {e}")
            return None

    def delete_bucket_recursive(self, dry_run: bool = False) -> bool:
        """Delete the bucket including all objects, versions and delete markers.

        Args:
            dry_run: If True, only log what would be deleted

        Returns:
            True if deletion succeeded (or would succeed in dry-run), False otherwise
        """
        try:
            try:
                self.s3_client.head_bucket(Bucket=self.bucket_name)
            except ClientError as e:
                if e.response["Error"]["Code"] in ("404", "NoSuchBucket"):
                    logger.info(f"Bucket {self.bucket_name} does not exist, nothing to delete")
                    return True
                raise

            # list_object_versions also returns objects of unversioned buckets
            paginator = self.s3_client.get_paginator("list_object_versions")
            total = 0
            for page in paginator.paginate(Bucket=self.bucket_name):
                objects = [
                    {"Key": item["Key"], "VersionId": item["VersionId"]}
                    for item in page.get("Versions", []) + page.get("DeleteMarkers", [])
                ]
                if not objects:
                    continue
                total += len(objects)
                if dry_run:
                    logger.debug(f"[DRY RUN] Would delete {len(objects)} objects from page")
                else:
                    self.s3_client.delete_objects(
                        Bucket=self.bucket_name, Delete={"Objects": objects}
                    )

            if dry_run:
                logger.info(
                    f"[DRY RUN] Would delete {total} objects and bucket {self.bucket_name}"
                )
                return True

            self.s3_client.delete_bucket(Bucket=self.bucket_name)
            logger.info(f"Deleted {total} objects and bucket {self.bucket_name}")
            return True
        except ClientError as e:
            logger.error(f"Error deleting bucket {self.bucket_name}: {e}")
            return False
