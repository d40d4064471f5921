"""Unit tests for the boot sequence."""

from factorio_hosting.boot import (
    REDACTED,
    BootSequence,
    DownloadFromS3,
    FailureMode,
    InstallAwsCli,
    InstallPackages,
    MakeExecutable,
    NormalizeLineEndings,
    RefreshPackageIndex,
    RunScript,
    build_boot_sequence,
)

SCRIPT_KEY = "assets/abc123.sh"
SCRIPT_PATH = f"/tmp/{SCRIPT_KEY}"


def _run_line(script: str) -> str:
    return next(line for line in script.splitlines() if line.startswith(f"sudo {SCRIPT_PATH}"))


def test_boot_sequence_step_order() -> None:
    """Test the boot steps run in the documented order."""
    boot = build_boot_sequence("saves-1", SCRIPT_KEY, "alice", "tok-xyz")

    assert [type(step) for step in boot] == [
        RefreshPackageIndex,
        InstallPackages,
        InstallAwsCli,
        DownloadFromS3,
        NormalizeLineEndings,
        MakeExecutable,
        RunScript,
    ]


def test_script_arguments_are_bucket_username_token() -> None:
    """Test the startup script receives bucket, username and token in that order."""
    script = build_boot_sequence("saves-1", SCRIPT_KEY, "alice", "tok-xyz").render()

    run_line = _run_line(script)
    assert run_line == f"sudo {SCRIPT_PATH} saves-1 alice tok-xyz"
    assert run_line.index("saves-1") < run_line.index("alice") < run_line.index("tok-xyz")
    assert "alice saves-1" not in script
    assert "tok-xyz alice" not in script


def test_empty_arguments_keep_their_position() -> None:
    """Test empty username and token are passed as empty arguments."""
    script = build_boot_sequence("saves-1", SCRIPT_KEY, "", "").render()

    assert _run_line(script) == f"sudo {SCRIPT_PATH} saves-1 '' ''"


def test_arguments_are_shell_quoted() -> None:
    """Test values with shell metacharacters are quoted."""
    script = build_boot_sequence("saves-1", SCRIPT_KEY, "alice smith", "tok;rm -rf /").render()

    assert _run_line(script) == f"sudo {SCRIPT_PATH} saves-1 'alice smith' 'tok;rm -rf /'"


def test_render_aborts_on_error() -> None:
    """Test the rendered script states the abort-on-error contract."""
    lines = build_boot_sequence("saves-1", SCRIPT_KEY, "alice", "tok-xyz").render().splitlines()

    assert lines[0] == "#!/bin/bash"
    assert lines[1] == "set -euo pipefail"


def test_render_contents() -> None:
    """Test installation, download and line ending normalization commands."""
    script = build_boot_sequence("saves-1", SCRIPT_KEY, "alice", "tok-xyz").render()

    assert "sudo apt-get install unzip -y" in script
    assert "sudo apt-get install git -y" in script
    assert "awscli-exe-linux-x86_64.zip" in script
    assert "sudo ./aws/install" in script
    assert f"aws s3 cp s3://saves-1/{SCRIPT_KEY} {SCRIPT_PATH}" in script
    assert f"sed -i 's/\\r$//' {SCRIPT_PATH}" in script
    assert f"chmod +x {SCRIPT_PATH}" in script
    assert script.index("aws s3 cp") < script.index("sed -i") < script.index("chmod +x")


def test_continue_steps_do_not_abort() -> None:
    """Test only CONTINUE steps are allowed to fail."""
    script = build_boot_sequence("saves-1", SCRIPT_KEY, "alice", "tok-xyz").render()

    assert RefreshPackageIndex.failure_mode is FailureMode.CONTINUE
    assert InstallPackages.failure_mode is FailureMode.ABORT
    assert RunScript.failure_mode is FailureMode.ABORT
    refresh_line = next(line for line in script.splitlines() if "apt-get update" in line)
    assert "||" in refresh_line
    assert "||" not in _run_line(script)


def test_redacted_masks_token() -> None:
    """Test the auth token never appears in the redacted script."""
    boot = build_boot_sequence("saves-1", SCRIPT_KEY, "alice", "tok-xyz")

    redacted = boot.redacted()

    assert "tok-xyz" not in redacted
    assert f"sudo {SCRIPT_PATH} saves-1 alice {REDACTED}" in redacted
    assert "tok-xyz" in boot.render()


def test_redacted_mask_is_not_quoted() -> None:
    """Test the mask replaces the quoted token as a bare word."""
    boot = build_boot_sequence("saves-1", SCRIPT_KEY, "alice smith", "tok;rm -rf /")

    assert _run_line(boot.redacted()) == f"sudo {SCRIPT_PATH} saves-1 'alice smith' ****"
    assert "'****'" not in boot.redacted()


def test_fingerprint_tracks_boot_sequence() -> None:
    """Test the fingerprint changes whenever the rendered script changes."""
    first = build_boot_sequence("saves-1", SCRIPT_KEY, "alice", "tok-xyz")
    same = build_boot_sequence("saves-1", SCRIPT_KEY, "alice", "tok-xyz")
    other_token = build_boot_sequence("saves-1", SCRIPT_KEY, "alice", "tok-new")
    other_script = build_boot_sequence("saves-1", "assets/def456.sh", "alice", "tok-xyz")

    assert first.fingerprint() == same.fingerprint()
    assert first.fingerprint() != other_token.fingerprint()
    assert first.fingerprint() != other_script.fingerprint()


def test_step_labels_are_numbered() -> None:
    """Test every step echoes its position."""
    boot = BootSequence([MakeExecutable("/tmp/a.sh"), RunScript("/tmp/a.sh", ("x",))])

    script = boot.render()

    assert 'echo "[boot 1/2] make-executable"' in script
    assert 'echo "[boot 2/2] run-startup-script"' in script
    assert len(boot) == 2
