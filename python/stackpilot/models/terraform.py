"""
stackpilot/models/terraform.py

Defines Pydantic models related to Terraform, including:
 - TerraformJson: the parsed synthesized definition (only the parts we read).
 - RemoteBackendConfig: a remote workspace backend declaration.
 - TerraformPlan: the result of a plan, built from 'terraform show -json <plan>'
   or from a remote run.
 - OutputValue: one entry of 'terraform output -json'.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, model_validator

# Actions that leave infrastructure untouched when a plan is applied.
NOOP_ACTIONS = ({"no-op"}, {"read"})


class RemoteWorkspaces(BaseModel):
    """Workspace selector of a remote backend declaration.

    Attributes:
        name: A single named workspace.
        prefix: A workspace prefix (multi-workspace usage).
    """

    name: Optional[str] = None
    prefix: Optional[str] = None


class RemoteBackendConfig(BaseModel):
    """A remote workspace backend, as declared under terraform.backend.remote
    or terraform.cloud.

    Attributes:
        hostname: Host of the workspace API. Defaults to 'app.terraform.io'.
        organization: Organization owning the workspace.
        workspaces: Which workspace to run in.
        token: Optional API token embedded in the declaration.
    """

    model_config = ConfigDict(extra="ignore")

    hostname: str = "app.terraform.io"
    organization: str
    workspaces: RemoteWorkspaces = Field(default_factory=RemoteWorkspaces)
    token: Optional[str] = None

    @property
    def workspace_name(self) -> Optional[str]:
        """The single workspace this declaration points at, if any."""
        return self.workspaces.name


class TerraformBlock(BaseModel):
    """The 'terraform' block of a synthesized definition."""

    model_config = ConfigDict(extra="ignore")

    backend: Optional[Dict[str, Any]] = None
    cloud: Optional[RemoteBackendConfig] = None


class ConstructMetadata(BaseModel):
    """The '//' block that records construct ids for every output.

    Attributes:
        outputs: Nested mapping of construct id -> ... -> output name.
    """

    model_config = ConfigDict(extra="ignore")

    outputs: Dict[str, Any] = Field(default_factory=dict)


class TerraformJson(BaseModel):
    """The parsed JSON form of a synthesized Terraform definition.

    Only the parts needed to drive the engine are modelled; everything else is
    kept untouched as extra fields.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    terraform: Optional[TerraformBlock] = None
    construct_metadata: ConstructMetadata = Field(
        default_factory=ConstructMetadata, alias="//"
    )

    def remote_backend(self) -> Optional[RemoteBackendConfig]:
        """Return the remote workspace declaration, or None for local execution."""
        if self.terraform is None:
            return None
        remote = (self.terraform.backend or {}).get("remote")
        if isinstance(remote, dict):
            return RemoteBackendConfig.model_validate(remote)
        return self.terraform.cloud


class PlannedResourceChange(BaseModel):
    """A single resource change in a plan.

    Attributes:
        address: Resource address, e.g. 'aws_s3_bucket.bucket'.
        actions: Terraform actions, e.g. ['create'] or ['delete', 'create'].
    """

    address: str
    actions: List[str]

    @property
    def is_noop(self) -> bool:
        """True if applying this change touches nothing."""
        return set(self.actions) in NOOP_ACTIONS


class PlanSummary(BaseModel):
    """Counts of resources a plan adds, changes and destroys."""

    add: int = 0
    change: int = 0
    destroy: int = 0

    @classmethod
    def from_changes(cls, changes: List[PlannedResourceChange]) -> PlanSummary:
        """Tally resource changes. A replacement counts as one add and one destroy."""
        add = sum(1 for c in changes if "create" in c.actions)
        change = sum(1 for c in changes if "update" in c.actions)
        destroy = sum(1 for c in changes if "delete" in c.actions)
        return cls(add=add, change=change, destroy=destroy)


class TerraformPlan(BaseModel):
    """The computed diff between desired and observed state.

    Attributes:
        plan_file: Opaque handle to the persisted plan (file path or remote run id).
        needs_apply: False when the diff is empty.
        resources: Per-resource changes, when the backend reports them.
        summary: Add/change/destroy counts.
    """

    model_config = ConfigDict(frozen=True)

    plan_file: str
    needs_apply: bool
    resources: List[PlannedResourceChange] = Field(default_factory=list)
    summary: PlanSummary = Field(default_factory=PlanSummary)

    @classmethod
    def from_plan_json(cls, plan_file: str, raw: Dict[str, Any]) -> TerraformPlan:
        """Build a plan from the JSON printed by 'terraform show -json <plan_file>'.

        Args:
            plan_file: The plan artifact the JSON describes.
            raw: The decoded JSON document.

        Returns:
            TerraformPlan: needs_apply is true iff any resource or output change
            is not a no-op.
        """
        resources = [
            PlannedResourceChange(
                address=str(rc.get("address", "")),
                actions=list((rc.get("change") or {}).get("actions") or ["no-op"]),
            )
            for rc in raw.get("resource_changes") or []
        ]
        output_changes = [
            PlannedResourceChange(
                address=f"output.{name}",
                actions=list((oc or {}).get("actions") or ["no-op"]),
            )
            for name, oc in (raw.get("output_changes") or {}).items()
        ]
        needs_apply = any(not c.is_noop for c in resources + output_changes)
        return cls(
            plan_file=plan_file,
            needs_apply=needs_apply,
            resources=[c for c in resources if not c.is_noop],
            summary=PlanSummary.from_changes(resources),
        )


class OutputValue(BaseModel):
    """Represents a Terraform output value as printed by 'terraform output -json'.

    Attributes:
        sensitive: True if the output is marked sensitive.
        value: Arbitrary data from the Terraform output.
        type: Optional Terraform type hint (string, list, etc.).
    """

    sensitive: bool = False
    value: Any = None
    type: Union[str, List[Any], None] = None

    @model_validator(mode="before")
    @classmethod
    def _accept_bare_values(cls, data: Any) -> Any:
        """Some callers hand over plain values instead of output objects."""
        if isinstance(data, dict) and "value" in data:
            return data
        return {"value": data}


def flatten_outputs(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Turn 'terraform output -json' into a flat name -> value mapping."""
    return {
        name: OutputValue.model_validate(entry).value for name, entry in raw.items()
    }
