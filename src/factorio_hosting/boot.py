"""Boot sequence (EC2 user data) for the Factorio server.

The boot sequence is an ordered list of typed steps. Each step declares
what happens when it fails: ``ABORT`` stops the whole sequence, ``CONTINUE``
logs the failure and moves on. The rendered script runs under
``set -euo pipefail``, so any ``ABORT`` step that fails halts the boot and
leaves the instance for manual recovery (there is no retry or rollback).
"""

import hashlib
import shlex
from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Iterator, List, Sequence, Tuple

AWS_CLI_URL = "https://awscli.amazonaws.com/awscli-exe-linux-x86_64.zip"
REDACTED = "****"


class FailureMode(Enum):
    """What the boot sequence does when a step fails."""

    ABORT = "abort"
    CONTINUE = "continue"


class BootStep:
    """A single provisioning step."""

    name = "step"
    failure_mode = FailureMode.ABORT

    def commands(self) -> List[str]:
        raise NotImplementedError

    def redacted_commands(self) -> List[str]:
        return self.commands()


@dataclass(frozen=True)
class RefreshPackageIndex(BootStep):
    """Refresh the apt package index; stale mirrors are tolerated."""

    name = "refresh-package-index"
    failure_mode = FailureMode.CONTINUE

    def commands(self) -> List[str]:
        return ["sudo apt-get update -y"]


@dataclass(frozen=True)
class InstallPackages(BootStep):
    """Install packages with apt."""

    packages: Tuple[str, ...] = ("unzip", "git")
    name = "install-packages"

    def commands(self) -> List[str]:
        return [f"sudo apt-get install {shlex.quote(package)} -y" for package in self.packages]


@dataclass(frozen=True)
class InstallAwsCli(BootStep):
    """Install AWS CLI v2 from the official bundle."""

    url: str = AWS_CLI_URL
    name = "install-aws-cli"

    def commands(self) -> List[str]:
        return [
            f"curl {shlex.quote(self.url)} -o awscliv2.zip",
            "unzip -q awscliv2.zip",
            "sudo ./aws/install --update",
        ]


@dataclass(frozen=True)
class DownloadFromS3(BootStep):
    """Download an object from S3 to a local path."""

    bucket: str
    key: str
    local_path: str
    name = "download-startup-script"

    def commands(self) -> List[str]:
        source = shlex.quote(f"s3://{self.bucket}/{self.key}")
        target = shlex.quote(self.local_path)
        return [
            f"mkdir -p \"$(dirname {target})\"",
            f"aws s3 cp {source} {target}",
        ]


@dataclass(frozen=True)
class NormalizeLineEndings(BootStep):
    """Strip carriage returns so scripts authored on Windows still run."""

    path: str
    name = "normalize-line-endings"

    def commands(self) -> List[str]:
        return [f"sed -i 's/\\r$//' {shlex.quote(self.path)}"]


@dataclass(frozen=True)
class MakeExecutable(BootStep):
    path: str
    name = "make-executable"

    def commands(self) -> List[str]:
        return [f"chmod +x {shlex.quote(self.path)}"]


@dataclass(frozen=True)
class RunScript(BootStep):
    """Run a script as root with positional arguments.

    Arguments whose index is in ``secret_args`` are masked by
    ``redacted_commands``.
    """

    path: str
    args: Tuple[str, ...] = ()
    secret_args: FrozenSet[int] = field(default_factory=frozenset)
    name = "run-startup-script"

    def commands(self) -> List[str]:
        return [self._command(redact=False)]

    def redacted_commands(self) -> List[str]:
        return [self._command(redact=True)]

    def _command(self, redact: bool) -> str:
        # Empty values stay as '' so positions never shift; the mask is
        # substituted after quoting and appears bare
        words = [
            REDACTED if redact and index in self.secret_args else shlex.quote(arg)
            for index, arg in enumerate(self.args)
        ]
        return " ".join(["sudo", shlex.quote(self.path)] + words)


class BootSequence:
    """Ordered boot steps rendered into a user data script."""

    def __init__(self, steps: Sequence[BootStep]):
        self.steps = list(steps)

    def __iter__(self) -> Iterator[BootStep]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    def render(self) -> str:
        """Render the user data script, secrets included."""
        return self._render(redact=False)

    def redacted(self) -> str:
        """Render the user data script with secret arguments masked."""
        return self._render(redact=True)

    def fingerprint(self) -> str:
        """Return the sha256 of the rendered script.

        A change of fingerprint means the instance must be replaced.
        """
        return hashlib.sha256(self.render().encode("utf-8")).hexdigest()

    def _render(self, redact: bool) -> str:
        lines = ["#!/bin/bash", "set -euo pipefail", ""]
        total = len(self.steps)
        for index, step in enumerate(self.steps, start=1):
            label = f"[boot {index}/{total}] {step.name}"
            lines.append(f'echo "{label}"')
            commands = step.redacted_commands() if redact else step.commands()
            for command in commands:
                if step.failure_mode is FailureMode.CONTINUE:
                    lines.append(f'{command} || echo "{label} failed, continuing" >&2')
                else:
                    lines.append(command)
            lines.append("")
        return "\n".join(lines)


def build_boot_sequence(
    bucket_name: str, script_key: str, username: str, auth_token: str
) -> BootSequence:
    """Build the server boot sequence.

    The startup script is invoked as ``install.sh <bucket> <username> <token>``.

    Args:
        bucket_name: Save bucket name (also holds the startup script asset)
        script_key: S3 key of the startup script
        username: Factorio username
        auth_token: Factorio auth token (secret)

    Returns:
        BootSequence
    """
    local_path = f"/tmp/{script_key}"
    return BootSequence(
        [
            RefreshPackageIndex(),
            InstallPackages(("unzip", "git")),
            InstallAwsCli(),
            DownloadFromS3(bucket=bucket_name, key=script_key, local_path=local_path),
            NormalizeLineEndings(local_path),
            MakeExecutable(local_path),
            RunScript(
                local_path,
                args=(bucket_name, username, auth_token),
                secret_args=frozenset({2}),
            ),
        ]
    )
