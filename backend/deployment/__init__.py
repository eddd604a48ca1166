"""
Deployment module for Stardeck

Handles single container deployment: validation, image pull, host volume
directories, creation and start, with progress reporting.
"""

from .container_deployer import ContainerDeployer, DeployRequest

__all__ = [
    "ContainerDeployer",
    "DeployRequest",
]
