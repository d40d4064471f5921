"""Lambda handler that starts the Factorio server.

This module is packaged on its own into the restart function, so it only
depends on the standard library and boto3 (available in the Lambda runtime).
"""

import json
import logging
import os

import boto3
from botocore.exceptions import ClientError

logger = logging.getLogger()
logger.setLevel(logging.INFO)

FORBIDDEN_CODES = ("UnauthorizedOperation", "AccessDenied", "AccessDeniedException")

_ec2_client = None


def _client():
    global _ec2_client
    if _ec2_client is None:
        _ec2_client = boto3.client("ec2")
    return _ec2_client


def _response(status_code: int, body: dict) -> dict:
    return {
        "statusCode": status_code,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps(body),
    }


def _status_for(error_code: str) -> int:
    if error_code in FORBIDDEN_CODES:
        return 403
    if error_code.startswith("InvalidInstanceID"):
        return 404
    return 502


def handler(event, context):
    """Issue StartInstances for the bound instance and return immediately.

    Any method and any path reach this handler; the request itself is
    ignored. Starting an instance that is already running is not an error.
    The handler does not wait for the instance to boot and never retries.
    """
    instance_id = os.environ["INSTANCE_ID"]
    logger.info(f"Starting instance {instance_id}")

    try:
        response = _client().start_instances(InstanceIds=[instance_id])
    except ClientError as e:
        error = e.response.get("Error", {})
        error_code = error.get("Code", "Unknown")
        logger.error(f"StartInstances failed for {instance_id} [{error_code}]: {e}")
        return _response(
            _status_for(error_code),
            {
                "instanceId": instance_id,
                "error": error_code,
                "message": error.get("Message", str(e)),
            },
        )

    changes = response.get("StartingInstances", [])
    body = {"instanceId": instance_id}
    if changes:
        body["previousState"] = changes[0]["PreviousState"]["Name"]
        body["currentState"] = changes[0]["CurrentState"]["Name"]
    logger.info(f"StartInstances accepted for {instance_id}: {body}")
    return _response(200, body)
