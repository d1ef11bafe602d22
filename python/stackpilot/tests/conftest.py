"""
Pytest configuration and fixtures for stackpilot tests.
"""

import json
import os
import stat
from typing import Any, Dict, List, Optional

import pytest

from stackpilot.models.settings import StackSettings
from stackpilot.models.synthesized_stack import SynthesizedStack
from stackpilot.models.terraform import TerraformPlan
from stackpilot.utils.terraform.base import TerraformBackend

DEFINITION = {
    "//": {
        "metadata": {"stackName": "app", "version": "0.20.0"},
        "outputs": {
            "app": {
                "bucket": {"arn": "bucket_arn_1A2B"},
                "queue": {"url": "queue_url_3C4D"},
            }
        },
    },
    "output": {
        "bucket_arn_1A2B": {"value": "${aws_s3_bucket.bucket.arn}"},
        "queue_url_3C4D": {"value": "${aws_sqs_queue.queue.url}"},
    },
}

OUTPUTS = {
    "bucket_arn_1A2B": "arn:aws:s3:::bucket",
    "queue_url_3C4D": "https://sqs/queue",
    "removed_output_9Z": "left over from an older definition",
}


class FakeBackend(TerraformBackend):
    """Scripted backend recording every call it receives."""

    kind = "fake"

    def __init__(
        self,
        abort_signal,
        stack,
        send_log,
        settings=None,
        logger=None,
        *,
        is_speculative: bool = False,
        needs_apply: bool = True,
        outputs: Optional[Dict[str, Any]] = None,
        fail_on: Optional[str] = None,
        calls: Optional[List[str]] = None,
    ) -> None:
        super().__init__(abort_signal, stack, send_log, settings, logger)
        self.is_speculative = is_speculative
        self.needs_apply = needs_apply
        self.outputs = OUTPUTS if outputs is None else outputs
        self.fail_on = fail_on
        self.calls = calls if calls is not None else []

    def _record(self, call: str) -> None:
        self.calls.append(call)
        if self.fail_on == call.split(":")[0]:
            raise RuntimeError(f"{call} failed")

    async def _init(self) -> None:
        self._record("init")
        self._send("init", "Terraform has been successfully initialized!")

    async def _plan(self, destructive: bool) -> TerraformPlan:
        self._record(f"plan:{destructive}")
        self._send("plan", '{"@level":"info","@message":"Plan: 1 to add"}')
        return TerraformPlan(
            plan_file=f"plan-{len(self.calls)}", needs_apply=self.needs_apply
        )

    async def _deploy(self, plan_file: str) -> None:
        self._record("deploy")
        self._send("deploy", '{"@level":"info","@message":"Apply complete!"}')

    async def _destroy(self) -> None:
        self._record("destroy")
        self._send("destroy", "Destroy complete!")

    async def _output(self) -> Dict[str, Any]:
        self._record("output")
        return dict(self.outputs)

    async def close(self) -> None:
        self.calls.append("close")


class FakeFactory:
    """Backend factory with the same signature as get_terraform_client."""

    def __init__(self, **backend_options: Any) -> None:
        self.backend_options = backend_options
        self.backends: List[FakeBackend] = []
        self.calls: List[str] = []

    async def __call__(
        self, abort_signal, stack, is_speculative, send_log, settings=None, logger=None
    ) -> FakeBackend:
        backend = FakeBackend(
            abort_signal,
            stack,
            send_log,
            settings,
            logger,
            is_speculative=is_speculative,
            calls=self.calls,
            **self.backend_options,
        )
        self.backends.append(backend)
        return backend


@pytest.fixture
def stack(tmp_path):
    """A synthesized stack whose definition declares two outputs."""
    content = json.dumps(DEFINITION)
    (tmp_path / "cdk.tf.json").write_text(content)
    return SynthesizedStack(name="app", content=content, working_directory=str(tmp_path))


@pytest.fixture
def fake_factory():
    """Build a FakeFactory with the given backend options."""
    return FakeFactory


FAKE_TERRAFORM = """#!/bin/sh
action="$1"
shift
if [ "$FAKE_TF_SLEEP" = "$action" ]; then
  exec sleep 30
fi
if [ "$FAKE_TF_FAIL" = "$action" ]; then
  echo "Error: $action exploded" >&2
  exit 1
fi
case "$action" in
  init)
    echo "Terraform has been successfully initialized!"
    ;;
  plan)
    out=""
    mode=create
    for arg in "$@"; do
      case "$arg" in
        -out=*) out="${arg#-out=}" ;;
        -destroy) mode=delete ;;
      esac
    done
    echo "$mode" > "$out"
    echo '{"@level":"info","@message":"Plan: 1 to add, 0 to change, 0 to destroy."}'
    echo "Warning: fake engine in use" >&2
    ;;
  show)
    for arg in "$@"; do plan="$arg"; done
    mode=$(cat "$plan")
    printf '{"resource_changes":[{"address":"null_resource.a","change":{"actions":["%s"]}},{"address":"null_resource.b","change":{"actions":["no-op"]}}],"output_changes":{}}\\n' "$mode"
    ;;
  apply)
    echo "Apply complete! Resources: 1 added, 0 changed, 0 destroyed."
    ;;
  destroy)
    echo "Destroy complete! Resources: 1 destroyed."
    ;;
  output)
    echo '{"bucket_arn_1A2B":{"sensitive":false,"type":"string","value":"arn:aws:s3:::bucket"},"removed_output_9Z":{"sensitive":true,"type":"string","value":"old"}}'
    ;;
  *)
    echo "unknown command $action" >&2
    exit 1
    ;;
esac
"""


@pytest.fixture
def fake_terraform(tmp_path):
    """Settings pointing at a shell script that imitates the engine CLI."""
    script = tmp_path / "bin" / "terraform"
    script.parent.mkdir()
    script.write_text(FAKE_TERRAFORM)
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return StackSettings(terraform_binary=str(script), remote_poll_interval_seconds=0)


@pytest.fixture
def no_cloud_token(monkeypatch):
    """Make sure no ambient API token leaks into selector tests."""
    for name in list(os.environ):
        if name.startswith("TF_TOKEN_") or name == "STACKPILOT_TERRAFORM_CLOUD_TOKEN":
            monkeypatch.delenv(name, raising=False)
