"""
stackpilot/models/stack_events.py

The typed event stream a stack controller emits:

 - StackState: every state a controller can be in.
 - One frozen model per lifecycle event, tagged by a literal 'type' field, and
   StackUpdate, the discriminated union over them.
 - ApprovalGate: the value emitted while the controller waits for a decision.
 - LogLine: one normalized line of engine output.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from typing_extensions import Annotated

from stackpilot.models.terraform import TerraformPlan

NestedOutputs = Dict[str, Any]


class StackState(str, Enum):
    """States of a stack controller. Event-carrying states share the event's type tag."""

    IDLE = "idle"
    PLANNING = "planning"
    PLANNED = "planned"
    WAITING_FOR_APPROVAL = "waiting-for-approval"
    DEPLOYING = "deploying"
    DEPLOY_UPDATE = "deploy-update"
    DEPLOYED = "deployed"
    DESTROYING = "destroying"
    DESTROY_UPDATE = "destroy-update"
    DESTROYED = "destroyed"
    OUTPUTS_FETCHED = "outputs-fetched"
    ERRORED = "errored"
    DISMISSED = "dismissed"
    DONE = "done"


class LogLine(BaseModel):
    """One line of engine output after extraction."""

    model_config = ConfigDict(frozen=True)

    message: str
    is_error: bool = False


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    stack_name: str


class Planning(_Event):
    type: Literal["planning"] = "planning"


class Planned(_Event):
    type: Literal["planned"] = "planned"
    plan: TerraformPlan


class Deploying(_Event):
    type: Literal["deploying"] = "deploying"


class DeployUpdate(_Event):
    type: Literal["deploy-update"] = "deploy-update"
    deploy_output: str


class Deployed(_Event):
    type: Literal["deployed"] = "deployed"
    outputs: Dict[str, Any]
    outputs_by_construct_id: NestedOutputs


class Destroying(_Event):
    type: Literal["destroying"] = "destroying"


class DestroyUpdate(_Event):
    type: Literal["destroy-update"] = "destroy-update"
    destroy_output: str


class Destroyed(_Event):
    type: Literal["destroyed"] = "destroyed"


class OutputsFetched(_Event):
    type: Literal["outputs-fetched"] = "outputs-fetched"
    outputs: Dict[str, Any]
    outputs_by_construct_id: NestedOutputs


class Errored(_Event):
    type: Literal["errored"] = "errored"
    error: str


class Dismissed(_Event):
    type: Literal["dismissed"] = "dismissed"


StackUpdate = Annotated[
    Union[
        Planning,
        Planned,
        Deploying,
        DeployUpdate,
        Deployed,
        Destroying,
        DestroyUpdate,
        Destroyed,
        OutputsFetched,
        Errored,
        Dismissed,
    ],
    Field(discriminator="type"),
]


class ApprovalGate:
    """A pending approve/reject decision for a computed plan.

    The controller awaits `wait()`; a UI or policy calls `approve()` or
    `reject()`. Only the first call counts, later calls are ignored. Waiting
    costs nothing but a registered future.
    """

    type: Literal["waiting-for-approval"] = "waiting-for-approval"

    def __init__(self, stack_name: str, plan: TerraformPlan) -> None:
        self.stack_name = stack_name
        self.plan = plan
        self._decision: asyncio.Future[bool] = (
            asyncio.get_running_loop().create_future()
        )

    @property
    def resolved(self) -> bool:
        """True once approve() or reject() has fired."""
        return self._decision.done()

    def approve(self) -> None:
        self._resolve(True)

    def reject(self) -> None:
        self._resolve(False)

    def _resolve(self, approved: bool) -> None:
        if not self._decision.done():
            self._decision.set_result(approved)

    async def wait(self) -> bool:
        """Suspend until a decision is made. True means approved."""
        return await self._decision

    def __repr__(self) -> str:
        state: Optional[bool] = self._decision.result() if self.resolved else None
        return (
            f"ApprovalGate(stack_name={self.stack_name!r}, "
            f"needs_apply={self.plan.needs_apply}, approved={state})"
        )


StackEvent = Union[
    Planning,
    Planned,
    Deploying,
    DeployUpdate,
    Deployed,
    Destroying,
    DestroyUpdate,
    Destroyed,
    OutputsFetched,
    Errored,
    Dismissed,
    ApprovalGate,
]
