"""Unit tests for IAMManager."""

import json
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from factorio_hosting.config import LAMBDA_BASIC_EXECUTION_POLICY_ARN, SSM_MANAGED_POLICY_ARN
from factorio_hosting.exceptions import DeploymentError
from factorio_hosting.iam_manager import IAMManager


@pytest.fixture
def iam_manager(boto_clients) -> IAMManager:
    """Create IAMManager instance for testing."""
    return IAMManager("us-east-1")


def _no_such_entity(operation: str) -> ClientError:
    return ClientError({"Error": {"Code": "NoSuchEntity"}}, operation)


def test_ensure_instance_role_creates_new_resources(iam_manager: IAMManager) -> None:
    """Test ensure_instance_role when creating new resources."""
    iam_manager.iam_client.get_role = MagicMock(side_effect=_no_such_entity("get_role"))
    iam_manager.iam_client.create_role = MagicMock(
        return_value={"Role": {"Arn": "arn:aws:iam::123456789012:role/server-role"}}
    )
    iam_manager.iam_client.get_instance_profile = MagicMock(
        side_effect=[
            _no_such_entity("get_instance_profile"),
            {"InstanceProfile": {"Arn": "arn:profile", "Roles": []}},
        ]
    )
    iam_manager.iam_client.create_instance_profile = MagicMock(
        return_value={"InstanceProfile": {"Arn": "arn:profile"}}
    )

    result = iam_manager.ensure_instance_role("server-role", "server-profile")

    assert result == "server-profile"
    trust = json.loads(
        iam_manager.iam_client.create_role.call_args[1]["AssumeRolePolicyDocument"]
    )
    assert trust["Statement"][0]["Principal"] == {"Service": "ec2.amazonaws.com"}
    iam_manager.iam_client.add_role_to_instance_profile.assert_called_once_with(
        InstanceProfileName="server-profile", RoleName="server-role"
    )
    iam_manager.iam_client.attach_role_policy.assert_called_once_with(
        RoleName="server-role", PolicyArn=SSM_MANAGED_POLICY_ARN
    )
    iam_manager.iam_client.get_waiter.assert_called_once_with("instance_profile_exists")


def test_ensure_instance_role_uses_existing_resources(iam_manager: IAMManager) -> None:
    """Test ensure_instance_role when resources already exist."""
    iam_manager.iam_client.get_role = MagicMock(return_value={"Role": {"Arn": "arn:role"}})
    iam_manager.iam_client.get_instance_profile = MagicMock(
        return_value={
            "InstanceProfile": {"Arn": "arn:profile", "Roles": [{"RoleName": "server-role"}]}
        }
    )

    iam_manager.ensure_instance_role("server-role", "server-profile")

    iam_manager.iam_client.create_role.assert_not_called()
    iam_manager.iam_client.create_instance_profile.assert_not_called()
    iam_manager.iam_client.add_role_to_instance_profile.assert_not_called()


def test_ensure_instance_role_handles_permission_error(iam_manager: IAMManager) -> None:
    """Test ensure_instance_role wraps permission errors."""
    iam_manager.iam_client.get_role = MagicMock(
        side_effect=ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "User is not authorized"}},
            "get_role",
        )
    )

    with pytest.raises(DeploymentError) as exc_info:
        iam_manager.ensure_instance_role("server-role", "server-profile")

    assert "User is not authorized" in str(exc_info.value)


def test_grant_bucket_read_write(iam_manager: IAMManager) -> None:
    """Test the bucket grant covers the bucket and its objects."""
    iam_manager.grant_bucket_read_write("server-role", "saves-1")

    call_args = iam_manager.iam_client.put_role_policy.call_args[1]
    assert call_args["RoleName"] == "server-role"
    policy = json.loads(call_args["PolicyDocument"])
    statement = policy["Statement"][0]
    assert statement["Effect"] == "Allow"
    assert "s3:GetObject*" in statement["Action"]
    assert "s3:PutObject" in statement["Action"]
    assert "s3:DeleteObject*" in statement["Action"]
    assert "s3:List*" in statement["Action"]
    assert statement["Resource"] == ["arn:aws:s3:::saves-1", "arn:aws:s3:::saves-1/*"]


def test_ensure_restart_function_role_is_scoped_to_instance(iam_manager: IAMManager) -> None:
    """Test the function role may only start the bound instance."""
    iam_manager.iam_client.get_role = MagicMock(side_effect=_no_such_entity("get_role"))
    iam_manager.iam_client.create_role = MagicMock(
        return_value={"Role": {"Arn": "arn:aws:iam::123456789012:role/fn-role"}}
    )

    role_arn = iam_manager.ensure_restart_function_role("fn-role", "123456789012", "i-12345")

    assert role_arn == "arn:aws:iam::123456789012:role/fn-role"
    trust = json.loads(
        iam_manager.iam_client.create_role.call_args[1]["AssumeRolePolicyDocument"]
    )
    assert trust["Statement"][0]["Principal"] == {"Service": "lambda.amazonaws.com"}
    iam_manager.iam_client.attach_role_policy.assert_called_once_with(
        RoleName="fn-role", PolicyArn=LAMBDA_BASIC_EXECUTION_POLICY_ARN
    )
    policy = json.loads(iam_manager.iam_client.put_role_policy.call_args[1]["PolicyDocument"])
    assert policy["Statement"] == [
        {
            "Effect": "Allow",
            "Action": ["ec2:StartInstances"],
            "Resource": ["arn:aws:ec2:*:123456789012:instance/i-12345"],
        }
    ]


def test_delete_role_with_instance_profile(iam_manager: IAMManager) -> None:
    """Test deleting a role with policies and an instance profile."""
    iam_manager.iam_client.get_instance_profile = MagicMock(
        return_value={"InstanceProfile": {"Roles": [{"RoleName": "server-role"}]}}
    )
    iam_manager.iam_client.list_attached_role_policies = MagicMock(
        return_value={"AttachedPolicies": [{"PolicyArn": SSM_MANAGED_POLICY_ARN}]}
    )
    iam_manager.iam_client.list_role_policies = MagicMock(
        return_value={"PolicyNames": ["server-role-saves-bucket-access"]}
    )

    assert iam_manager.delete_role("server-role", "server-profile") is True

    iam_manager.iam_client.remove_role_from_instance_profile.assert_called_once_with(
        InstanceProfileName="server-profile", RoleName="server-role"
    )
    iam_manager.iam_client.delete_instance_profile.assert_called_once_with(
        InstanceProfileName="server-profile"
    )
    iam_manager.iam_client.detach_role_policy.assert_called_once_with(
        RoleName="server-role", PolicyArn=SSM_MANAGED_POLICY_ARN
    )
    iam_manager.iam_client.delete_role_policy.assert_called_once_with(
        RoleName="server-role", PolicyName="server-role-saves-bucket-access"
    )
    iam_manager.iam_client.delete_role.assert_called_once_with(RoleName="server-role")


def test_delete_role_missing(iam_manager: IAMManager) -> None:
    """Test deleting a role that does not exist."""
    iam_manager.iam_client.list_attached_role_policies = MagicMock(
        side_effect=_no_such_entity("list_attached_role_policies")
    )

    assert iam_manager.delete_role("fn-role") is True
    iam_manager.iam_client.delete_role.assert_not_called()
