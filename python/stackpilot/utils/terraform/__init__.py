"""
stackpilot/utils/terraform/__init__.py

Provides a convenient import interface for the Terraform backend submodules:

- base.py for the abstract backend and its guard rails
- cli.py for the local engine process backend
- cloud.py for the remote workspace API backend
- selector.py for choosing between them

Exports:
  - TerraformBackend, TerraformCli, TerraformCloud
  - get_terraform_client for backend selection
"""

from stackpilot.utils.terraform.base import LogSink, TerraformBackend
from stackpilot.utils.terraform.cli import TerraformCli
from stackpilot.utils.terraform.cloud import TerraformCloud
from stackpilot.utils.terraform.selector import get_terraform_client

__all__ = [
    "LogSink",
    "TerraformBackend",
    "TerraformCli",
    "TerraformCloud",
    "get_terraform_client",
]
