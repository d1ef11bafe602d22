"""
stackpilot/utils/terraform/cli.py

Implements the local engine backend: runs the Terraform CLI inside the stack's
working directory, streaming its output line by line through the log extractor.

  init    -> terraform init
  plan    -> terraform plan -out=<fresh file> [-destroy], then show -json <file>
  deploy  -> terraform apply -auto-approve <plan file>
  destroy -> terraform destroy -auto-approve
  output  -> terraform output -json

Plan files created here are removed again by close().
"""

from __future__ import annotations

import os
import json
import uuid
from typing import Any, Dict, List, Optional

from stackpilot.models.terraform import TerraformPlan, flatten_outputs
from stackpilot.utils.async_command_runner import run_command, stream_command
from stackpilot.utils.terraform.base import TerraformBackend

_AUTOMATION_ENV = {"TF_IN_AUTOMATION": "1"}


def _engine_error_parser(stderr: str) -> Optional[str]:
    """Parse stderr for well-known engine failures, returning a short message if found.

    Args:
        stderr (str): The standard error output from Terraform.

    Returns:
        Optional[str]: A short user-friendly message, otherwise None.
    """
    low = stderr.lower()
    if "error acquiring the state lock" in low:
        return (
            "The Terraform state is locked by another operation. Wait for it to "
            "finish or release the lock with 'terraform force-unlock'."
        )
    if "429 too many requests" in low or "toomanyrequests" in low:
        return (
            "A provider or module registry rate-limited the engine (HTTP 429). "
            "Wait and retry, or authenticate to raise the limit."
        )
    return None


def _make_base_command(
    binary: str, action: str, parallelism: Optional[int] = None
) -> List[str]:
    """Builds the initial Terraform command, adding the flags each action needs.

    Args:
        binary: The engine executable.
        action: "init", "plan", "apply", "destroy", "show" or "output".
        parallelism: If set, '-parallelism=<n>' for apply/destroy.

    Returns:
        A list of command tokens, e.g. ["terraform","apply","-no-color","-input=false","-auto-approve"].
    """
    base = [binary, action, "-no-color"]

    input_flags = (
        ["-input=false"] if action in ("init", "plan", "apply", "destroy") else []
    )
    json_flags = ["-json"] if action in ("show", "output") else []
    apply_destroy_flags = (
        ["-auto-approve"]
        + ([f"-parallelism={parallelism}"] if parallelism is not None else [])
        if action in ("apply", "destroy")
        else []
    )
    return base + input_flags + json_flags + apply_destroy_flags


class TerraformCli(TerraformBackend):
    """Drives a local Terraform process in the stack's working directory."""

    kind = "cli"

    @property
    def working_directory(self) -> str:
        return self.stack.working_directory

    def _command(self, action: str) -> List[str]:
        return _make_base_command(
            self.settings.terraform_binary, action, self.settings.parallelism
        )

    async def _stream(self, phase: str, command: List[str]) -> None:
        self.logger.debug("Running %s", " ".join(command))
        await stream_command(
            command,
            on_stdout=self._line_sink(phase),
            on_stderr=self._line_sink(phase, is_error=True),
            env=_AUTOMATION_ENV,
            cwd=self.working_directory,
            error_parser=_engine_error_parser,
            abort_signal=self.abort_signal,
        )

    async def _capture(self, command: List[str]) -> str:
        self.logger.debug("Running %s", " ".join(command))
        return await run_command(
            command,
            sensitive=False,
            env=_AUTOMATION_ENV,
            cwd=self.working_directory,
            retries=1,
            error_parser=_engine_error_parser,
            abort_signal=self.abort_signal,
        )

    async def _init(self) -> None:
        if not os.path.isdir(self.working_directory):
            raise ValueError(
                f"Stack working directory not found: {self.working_directory}"
            )
        await self._stream("init", self._command("init"))

    async def _plan(self, destructive: bool) -> TerraformPlan:
        plan_file = os.path.join(
            os.path.abspath(self.working_directory),
            f"{self.settings.plan_file_prefix}-{uuid.uuid4().hex[:12]}",
        )
        command = self._command("plan") + [f"-out={plan_file}"]
        if destructive:
            command.append("-destroy")
        await self._stream("plan", command)

        raw = await self._capture(self._command("show") + [plan_file])
        return TerraformPlan.from_plan_json(plan_file, json.loads(raw) if raw else {})

    async def _deploy(self, plan_file: str) -> None:
        await self._stream("deploy", self._command("apply") + [plan_file])

    async def _destroy(self) -> None:
        await self._stream("destroy", self._command("destroy"))

    async def _output(self) -> Dict[str, Any]:
        raw = await self._capture(self._command("output"))
        return flatten_outputs(json.loads(raw)) if raw else {}

    async def close(self) -> None:
        for plan_file in self._issued_plans:
            if os.path.exists(plan_file):
                os.remove(plan_file)
