"""Azure DevOps pull request statistics."""

__version__ = "0.1.0"
