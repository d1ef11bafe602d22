"""Tests for stackpilot models."""

import json

import pytest
from pydantic import TypeAdapter

from stackpilot.errors import StackDefinitionError
from stackpilot.models.stack_events import Planned, StackUpdate
from stackpilot.models.synthesized_stack import SynthesizedStack, load_synthesized_stack
from stackpilot.models.terraform import TerraformJson, TerraformPlan, flatten_outputs


def test_plan_from_show_json():
    raw = {
        "resource_changes": [
            {"address": "aws_s3_bucket.a", "change": {"actions": ["create"]}},
            {"address": "aws_s3_bucket.b", "change": {"actions": ["no-op"]}},
            {"address": "aws_s3_bucket.c", "change": {"actions": ["delete", "create"]}},
            {"address": "data.aws_region.r", "change": {"actions": ["read"]}},
        ]
    }
    plan = TerraformPlan.from_plan_json("plan.out", raw)

    assert plan.needs_apply
    assert [c.address for c in plan.resources] == ["aws_s3_bucket.a", "aws_s3_bucket.c"]
    assert (plan.summary.add, plan.summary.change, plan.summary.destroy) == (2, 0, 1)


def test_empty_plan_needs_no_apply():
    raw = {"resource_changes": [{"address": "x.y", "change": {"actions": ["no-op"]}}]}
    assert not TerraformPlan.from_plan_json("plan.out", raw).needs_apply
    assert not TerraformPlan.from_plan_json("plan.out", {}).needs_apply


def test_output_only_changes_need_apply():
    raw = {"output_changes": {"url": {"actions": ["update"]}}}
    assert TerraformPlan.from_plan_json("plan.out", raw).needs_apply


def test_plan_is_immutable():
    plan = TerraformPlan(plan_file="p", needs_apply=True)
    with pytest.raises(Exception):
        plan.needs_apply = False


def test_flatten_outputs():
    raw = {
        "url": {"sensitive": False, "type": "string", "value": "https://x"},
        "ids": {"sensitive": True, "type": ["list", "string"], "value": ["a", "b"]},
    }
    assert flatten_outputs(raw) == {"url": "https://x", "ids": ["a", "b"]}


def test_remote_backend_declarations():
    local = TerraformJson.model_validate({"terraform": {"backend": {"local": {"path": "x"}}}})
    assert local.remote_backend() is None
    assert TerraformJson.model_validate({}).remote_backend() is None

    remote = TerraformJson.model_validate(
        {
            "terraform": {
                "backend": {
                    "remote": {"organization": "acme", "workspaces": {"name": "prod"}}
                }
            }
        }
    ).remote_backend()
    assert remote is not None
    assert remote.hostname == "app.terraform.io"
    assert remote.workspace_name == "prod"

    cloud = TerraformJson.model_validate(
        {
            "terraform": {
                "cloud": {
                    "hostname": "tfe.example.com",
                    "organization": "acme",
                    "workspaces": {"name": "dev"},
                }
            }
        }
    ).remote_backend()
    assert cloud is not None
    assert cloud.hostname == "tfe.example.com"


def test_stack_parse_errors_are_definition_errors():
    with pytest.raises(StackDefinitionError):
        SynthesizedStack(name="s", content="not json").parse()


def test_events_validate_through_the_union():
    adapter = TypeAdapter(StackUpdate)
    event = adapter.validate_python(
        {
            "type": "planned",
            "stack_name": "app",
            "plan": {"plan_file": "p", "needs_apply": False},
        }
    )
    assert isinstance(event, Planned)
    assert json.loads(event.model_dump_json())["type"] == "planned"


@pytest.mark.asyncio
async def test_load_synthesized_stack(tmp_path):
    (tmp_path / "cdk.tf.json").write_text('{"resource": {}}')

    stack = await load_synthesized_stack(str(tmp_path))

    assert stack.name == tmp_path.name
    assert stack.content == '{"resource": {}}'
    assert stack.working_directory == str(tmp_path)


@pytest.mark.asyncio
async def test_load_synthesized_stack_requires_the_file(tmp_path):
    with pytest.raises(StackDefinitionError):
        await load_synthesized_stack(str(tmp_path), name="empty")
