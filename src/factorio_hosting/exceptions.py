"""Exceptions raised while provisioning the Factorio server."""


class DeploymentError(Exception):
    """Raised when a deploy-time lookup or AWS call fails."""
