"""Command-line interface for Factorio Hosting."""

import logging
import sys
from pathlib import Path
from typing import Optional

import click

from .config import FACTORIO_UDP_PORT, ConfigError, HostingConfig, load_config
from .deployer import Deployer
from .exceptions import DeploymentError
from .network import ExplicitSubnet
from .storage import ExistingBucket

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

config_option = click.option(
    "--config",
    "config_path",
    default="config.yaml",
    type=click.Path(path_type=Path),
    help="Path to the YAML configuration file (default: config.yaml)",
)


def _load(config_path: Path) -> HostingConfig:
    try:
        return load_config(config_path)
    except ConfigError as e:
        click.echo(click.style(f"✗ Invalid configuration: {e}", fg="red", bold=True))
        sys.exit(2)


@click.group()
@click.version_option(package_name="factorio-hosting")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """Factorio Hosting - run a Factorio server on AWS.

    Provisions a single EC2 instance with a save bucket, installs the
    Factorio headless server at first boot, and exposes an HTTP endpoint
    that starts the instance again after it was stopped.
    """
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


@main.command()
@config_option
@click.option(
    "--script",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Startup script to run at first boot (default: bundled install.sh)",
)
def deploy(config_path: Path, script: Optional[Path]) -> None:
    """Deploy the server, save bucket and restart endpoint.

    Example:
        factorio-hosting deploy
        factorio-hosting deploy --config prod.yaml
    """
    config = _load(config_path)
    deployer = Deployer(config)

    click.echo(f"Deploying {config.prefix} to {config.account}/{config.region}...")
    try:
        outputs = deployer.deploy(script)
    except (ConfigError, DeploymentError) as e:
        click.echo(click.style(f"✗ Deployment failed: {e}", fg="red", bold=True))
        sys.exit(1)

    click.echo(click.style("✓ Deployment successful!", fg="green", bold=True))
    click.echo(f"\nInstance ID: {outputs.instance_id}")
    click.echo(f"Save bucket: {outputs.bucket_name}")
    click.echo(f"Security group: {outputs.security_group_id}")
    click.echo(f"Restart endpoint: {outputs.api_url}")
    click.echo("\nThe server is installing and will be available in a few minutes.")


@main.command()
@config_option
@click.option(
    "--script",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Startup script to run at first boot (default: bundled install.sh)",
)
def synth(config_path: Path, script: Optional[Path]) -> None:
    """Show what deploy would create, without touching AWS.

    The auth token is masked in the printed boot sequence.
    """
    config = _load(config_path)
    plan = Deployer(config).synth(script)

    subnet = plan["subnet"]
    if isinstance(subnet, ExplicitSubnet):
        subnet_text = f"{subnet.subnet_id} ({subnet.availability_zone})"
    else:
        subnet_text = "public subnet, auto-placed"

    bucket = plan["bucket"]
    origin = "existing" if isinstance(bucket, ExistingBucket) else "new"
    bucket_text = f"{bucket.name} ({origin})"

    click.echo(click.style("Deployment plan", bold=True))
    click.echo(f"  Environment: {plan['account']}/{plan['region']}")
    click.echo(f"  VPC: {plan['vpc']}")
    click.echo(f"  Subnet: {subnet_text}")
    click.echo(f"  Save bucket: {bucket_text}")
    click.echo(f"  Instance: {plan['instance_name']}")
    click.echo(f"  Security group: {plan['security_group']}")
    click.echo(f"  Restart function: {plan['function']}")
    click.echo(f"  Restart API: {plan['api']}")
    click.echo(f"  Boot sequence hash: {plan['boot_hash']}")
    click.echo(click.style("\nBoot sequence", bold=True))
    click.echo(plan["user_data"])


@main.command()
@config_option
def start(config_path: Path) -> None:
    """Start the stopped server instance.

    Example:
        factorio-hosting start
    """
    deployer = Deployer(_load(config_path))

    click.echo("Starting Factorio server instance...")
    try:
        started = deployer.start()
    except DeploymentError as e:
        click.echo(click.style(f"✗ {e}", fg="red", bold=True))
        sys.exit(1)

    if started:
        click.echo(click.style("✓ Instance starting", fg="green", bold=True))
    else:
        click.echo(click.style("✗ Failed to start instance", fg="red", bold=True))
        sys.exit(1)


@main.command()
@config_option
def status(config_path: Path) -> None:
    """Show server instance status and connection details.

    Example:
        factorio-hosting status
    """
    deployer = Deployer(_load(config_path))

    try:
        details = deployer.status()
    except DeploymentError as e:
        click.echo(click.style(f"✗ {e}", fg="red", bold=True))
        sys.exit(1)

    if not details:
        click.echo(click.style("✗ No server instance found", fg="red", bold=True))
        sys.exit(1)

    state = details["state"]
    state_color = "green" if state == "running" else "yellow"
    click.echo(f"Instance ID: {details['instance_id']}")
    click.echo(f"State: {click.style(state, fg=state_color)}")
    click.echo(f"Instance Type: {details['instance_type']}")
    click.echo(f"Launch Time: {details['launch_time']}")
    if details.get("subnet_id"):
        click.echo(f"Subnet: {details['subnet_id']}")
    if details.get("boot_hash"):
        click.echo(f"Boot sequence hash: {details['boot_hash']}")
    click.echo(f"Save bucket: {details['bucket']}")
    if details.get("public_ip"):
        click.echo(f"Public IP: {details['public_ip']}")
        click.echo(f"Connect: {details['public_ip']}:{FACTORIO_UDP_PORT}")
    if details.get("api_url"):
        click.echo(f"Restart endpoint: {details['api_url']}")


@main.command()
@config_option
@click.option(
    "--delete-bucket", is_flag=True, help="Also delete the generated save bucket and all saves"
)
@click.option(
    "--dry-run", is_flag=True, help="Show what would be deleted without performing deletions"
)
@click.option("--force", is_flag=True, help="Skip confirmation prompt")
def destroy(config_path: Path, delete_bucket: bool, dry_run: bool, force: bool) -> None:
    """Tear down the server, restart endpoint and roles.

    The save bucket is kept unless --delete-bucket is given. A bucket named
    in the configuration is never deleted.

    Examples:
        factorio-hosting destroy
        factorio-hosting destroy --dry-run
        factorio-hosting destroy --delete-bucket --force
    """
    config = _load(config_path)

    if not force and not dry_run:
        click.echo(
            click.style(
                "\n⚠️  WARNING: This will permanently delete your Factorio server!",
                fg="red",
                bold=True,
            )
        )
        if delete_bucket:
            click.echo("  • The save bucket and ALL saves will be deleted")
        click.confirm("Continue?", abort=True)

    deployer = Deployer(config)
    try:
        ok = deployer.destroy(delete_bucket=delete_bucket, dry_run=dry_run)
    except DeploymentError as e:
        click.echo(click.style(f"✗ {e}", fg="red", bold=True))
        sys.exit(1)

    if ok:
        prefix = "[DRY RUN] " if dry_run else ""
        click.echo(click.style(f"✓ {prefix}Teardown complete", fg="green", bold=True))
    else:
        click.echo(click.style("✗ Teardown finished with errors", fg="red", bold=True))
        sys.exit(1)


if __name__ == "__main__":
    main()
