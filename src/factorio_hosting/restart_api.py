"""Restart function and HTTP endpoint for Factorio Hosting."""

import io
import logging
import time
import zipfile
from pathlib import Path
from typing import Optional

import boto3
from botocore.exceptions import ClientError, WaiterError

from .config import RESTART_API_STAGE, RESTART_FUNCTION_RUNTIME, RESTART_FUNCTION_TIMEOUT
from .exceptions import DeploymentError

logger = logging.getLogger(__name__)

HANDLER_MODULE = "restart_handler"
HANDLER = f"{HANDLER_MODULE}.handler"

# Fresh roles take a few seconds before Lambda can assume them
ROLE_PROPAGATION_RETRIES = 6
ROLE_PROPAGATION_DELAY = 5


def build_function_package() -> bytes:
    """Zip the restart handler module into a Lambda deployment package."""
    source = Path(__file__).parent / f"{HANDLER_MODULE}.py"
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        archive.writestr(f"{HANDLER_MODULE}.py", source.read_text())
    return buffer.getvalue()


class RestartApiManager:
    """Manages the restart Lambda function and its REST API."""

    def __init__(self, region: str = "us-east-1"):
        """Initialize restart API manager.

        Args:
            region: AWS region
        """
        self.region = region
        self.lambda_client = boto3.client("lambda", region_name=region)
        self.apigw_client = boto3.client("apigateway", region_name=region)

    def ensure_function(self, function_name: str, role_arn: str, instance_id: str) -> str:
        """Create or update the restart function bound to one instance.

        Args:
            function_name: Lambda function name
            role_arn: Execution role ARN
            instance_id: Instance the function starts

        Returns:
            Function ARN

        Raises:
            DeploymentError: If the function could not be created or updated
        """
        package = build_function_package()
        environment = {"Variables": {"INSTANCE_ID": instance_id}}

        try:
            try:
                self.lambda_client.get_function(FunctionName=function_name)
                exists = True
            except ClientError as e:
                if e.response["Error"]["Code"] != "ResourceNotFoundException":
                    raise
                exists = False

            if exists:
                logger.info(f"Updating function {function_name}")
                self.lambda_client.update_function_code(
                    FunctionName=function_name, ZipFile=package
                )
                self.lambda_client.get_waiter("function_updated").wait(
                    FunctionName=function_name
                )
                response = self.lambda_client.update_function_configuration(
                    FunctionName=function_name,
                    Role=role_arn,
                    Timeout=RESTART_FUNCTION_TIMEOUT,
                    Environment=environment,
                )
            else:
                response = self._create_function(function_name, role_arn, package, environment)

            self.lambda_client.get_waiter("function_active_v2").wait(FunctionName=function_name)
            logger.info(f"Function {function_name} starts instance {instance_id}")
            return response["FunctionArn"]
        except (ClientError, WaiterError) as e:
            raise DeploymentError(f"Error deploying function {function_name}: {e}") from e

    def _create_function(
        self, function_name: str, role_arn: str, package: bytes, environment: dict
    ) -> dict:
        for attempt in range(1, ROLE_PROPAGATION_RETRIES + 1):
            try:
                response = self.lambda_client.create_function(
                    FunctionName=function_name,
                    Runtime=RESTART_FUNCTION_RUNTIME,
                    Role=role_arn,
                    Handler=HANDLER,
                    Code={"ZipFile": package},
                    Description="Restart game server",
                    Timeout=RESTART_FUNCTION_TIMEOUT,
                    Environment=environment,
                )
                logger.info(f"Created function {function_name}")
                return response
            except ClientError as e:
                code = e.response["Error"]["Code"]
                if code != "InvalidParameterValueException" or attempt == ROLE_PROPAGATION_RETRIES:
                    raise
                logger.debug(
                    f"Role not assumable yet (attempt {attempt}/{ROLE_PROPAGATION_RETRIES}), "
                    f"retrying in {ROLE_PROPAGATION_DELAY}s"
                )
                time.sleep(ROLE_PROPAGATION_DELAY)
        raise DeploymentError(f"Could not create function {function_name}")

    def ensure_api(self, api_name: str, function_arn: str, account: str) -> str:
        """Expose the function through a REST API accepting any method and path.

        Args:
            api_name: REST API name
            function_arn: ARN of the restart function
            account: AWS account id

        Returns:
            Invoke URL of the deployed stage

        Raises:
            DeploymentError: If the API could not be created or deployed
        """
        try:
            api_id = self.find_api(api_name)
            if api_id is None:
                api_id = self._create_api(api_name, function_arn)

            self._allow_invoke(api_name, api_id, function_arn, account)

            self.apigw_client.create_deployment(restApiId=api_id, stageName=RESTART_API_STAGE)
            url = self.api_url(api_id)
            logger.info(f"Restart endpoint deployed at {url}")
            return url
        except ClientError as e:
            raise DeploymentError(f"Error deploying API {api_name}: {e}") from e

    def api_url(self, api_id: str) -> str:
        return f"https://{api_id}.execute-api.{self.region}.amazonaws.com/{RESTART_API_STAGE}/"

    def find_api(self, api_name: str) -> Optional[str]:
        """Find a REST API id by name.

        Raises:
            DeploymentError: If the APIs could not be listed
        """
        try:
            paginator = self.apigw_client.get_paginator("get_rest_apis")
            for page in paginator.paginate():
                for api in page.get("items", []):
                    if api["name"] == api_name:
                        return api["id"]
        except ClientError as e:
            raise DeploymentError(f"Error listing REST APIs: {e}") from e
        return None

    def _create_api(self, api_name: str, function_arn: str) -> str:
        response = self.apigw_client.create_rest_api(
            name=api_name,
            description="Trigger lambda function to start server",
            endpointConfiguration={"types": ["REGIONAL"]},
        )
        api_id = response["id"]
        logger.info(f"Created REST API {api_name}: {api_id}")

        resources = self.apigw_client.get_resources(restApiId=api_id)
        root_id = next(item["id"] for item in resources["items"] if item["path"] == "/")
        proxy = self.apigw_client.create_resource(
            restApiId=api_id, parentId=root_id, pathPart="{proxy+}"
        )

        uri = (
            f"arn:aws:apigateway:{self.region}:lambda:path/2015-03-31/functions/"
            f"{function_arn}/invocations"
        )
        for resource_id in (root_id, proxy["id"]):
            self.apigw_client.put_method(
                restApiId=api_id,
                resourceId=resource_id,
                httpMethod="ANY",
                authorizationType="NONE",
            )
            self.apigw_client.put_integration(
                restApiId=api_id,
                resourceId=resource_id,
                httpMethod="ANY",
                type="AWS_PROXY",
                integrationHttpMethod="POST",
                uri=uri,
            )
        return api_id

    def _allow_invoke(self, api_name: str, api_id: str, function_arn: str, account: str) -> None:
        # One statement per API id, so a recreated API gets its own grant
        try:
            self.lambda_client.add_permission(
                FunctionName=function_arn,
                StatementId=self.invoke_statement_id(api_name, api_id),
                Action="lambda:InvokeFunction",
                Principal="apigateway.amazonaws.com",
                SourceArn=f"arn:aws:execute-api:{self.region}:{account}:{api_id}/*/*",
            )
        except ClientError as e:
            if e.response["Error"]["Code"] != "ResourceConflictException":
                raise
            logger.debug(f"Invoke permission for {api_name} ({api_id}) already present")

    @staticmethod
    def invoke_statement_id(api_name: str, api_id: str) -> str:
        return f"{api_name}-{api_id}-invoke"

    def delete_api(self, api_name: str, dry_run: bool = False) -> bool:
        """Delete the REST API by name.

        Returns:
            True if the API is gone (or would be in dry-run), False otherwise
        """
        try:
            api_id = self.find_api(api_name)
            if api_id is None:
                logger.info(f"REST API {api_name} not found, nothing to delete")
                return True
            if dry_run:
                logger.info(f"[DRY RUN] Would delete REST API {api_name} ({api_id})")
                return True
            self.apigw_client.delete_rest_api(restApiId=api_id)
            logger.info(f"Deleted REST API {api_name} ({api_id})")
            return True
        except (ClientError, DeploymentError) as e:
            logger.error(f"Error deleting REST API {api_name}: {e}")
            return False

    def delete_function(self, function_name: str, dry_run: bool = False) -> bool:
        """Delete the restart function.

        Returns:
            True if the function is gone (or would be in dry-run), False otherwise
        """
        if dry_run:
            logger.info(f"[DRY RUN] Would delete function {function_name}")
            return True
        try:
            self.lambda_client.delete_function(FunctionName=function_name)
            logger.info(f"Deleted function {function_name}")
            return True
        except ClientError as e:
            if e.response["Error"]["Code"] == "ResourceNotFoundException":
                return True
            logger.error(f"Error deleting function {function_name}: {e}")
            return False
