"""
stackpilot/deployment/stack.py

The stack lifecycle controller. One StackController owns one synthesized stack
for one run and drives it through:

  diff          planning -> planned -> done
  deploy        planning -> planned -> [waiting-for-approval] -> deploying
                  -> deploy-update* -> deployed -> done      (or dismissed)
  destroy       planning -> planned -> [waiting-for-approval] -> destroying
                  -> destroy-update* -> destroyed -> done    (or dismissed)
  fetch_outputs outputs-fetched -> done

Any failure ends the run with a single 'errored' event instead of 'done'.
stop() suppresses every later event of the current run and turns further entry
calls into no-ops. Aborting the AbortSignal fails in-flight backend calls.

Controllers share no mutable state, so many can run concurrently (run_stacks).
"""

from __future__ import annotations

import asyncio
import logging
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    TypeVar,
    Union,
)

from stackpilot.errors import OperationInFlightError
from stackpilot.models.settings import StackSettings
from stackpilot.models.stack_events import (
    ApprovalGate,
    Deployed,
    Deploying,
    DeployUpdate,
    Destroyed,
    Destroying,
    DestroyUpdate,
    Dismissed,
    Errored,
    LogLine,
    NestedOutputs,
    OutputsFetched,
    Planned,
    Planning,
    StackEvent,
    StackState,
)
from stackpilot.models.synthesized_stack import SynthesizedStack
from stackpilot.models.terraform import TerraformPlan
from stackpilot.utils.abort_signal import AbortSignal
from stackpilot.utils.outputs import get_construct_ids_for_outputs
from stackpilot.utils.terraform.base import Logger, TerraformBackend
from stackpilot.utils.terraform.selector import get_terraform_client

T = TypeVar("T")

ClientFactory = Callable[..., Awaitable[TerraformBackend]]

ENTRY_OPERATIONS = ("diff", "deploy", "destroy", "fetch_outputs")


class StackController:
    """Runs diff/deploy/destroy/fetch_outputs for one synthesized stack.

    Attributes:
        stack: The definition being run.
        stack_name: Its name, used to tag every event.
        current_state: Last state entered.
        current_plan: Plan computed by the latest diff/deploy/destroy.
        outputs: Flat outputs of the latest deployed/outputs-fetched event.
        outputs_by_construct_id: Their projection onto the construct tree.
        stopped: True once stop() was called.
        current_work: Awaitable handle of the in-flight operation, if any.
    """

    def __init__(
        self,
        stack: SynthesizedStack,
        on_update: Callable[[StackEvent], None],
        on_log: Optional[Callable[[LogLine], None]] = None,
        auto_approve: bool = False,
        abort_signal: Optional[AbortSignal] = None,
        settings: Optional[StackSettings] = None,
        client_factory: ClientFactory = get_terraform_client,
        logger: Optional[Logger] = None,
    ) -> None:
        """
        Initialize a StackController.

        Args:
            stack (SynthesizedStack): The definition to run. Referenced, not copied.
            on_update (Callable[[StackEvent], None]): Receives every lifecycle event
                and approval gate, in order.
            on_log (Optional[Callable[[LogLine], None]]): Receives every extracted
                engine log line.
            auto_approve (bool): Skip the approval gate.
            abort_signal (Optional[AbortSignal]): Aborts in-flight backend work;
                handed unchanged to the backend. A private one is made if omitted.
            settings (Optional[StackSettings]): Shared read-only settings.
            client_factory (ClientFactory): Builds the backend, see
                get_terraform_client for the signature.
            logger (Optional[Logger]): Where diagnostics go. Defaults to this
                module's logger tagged with the stack name.
        """
        self.stack = stack
        self.stack_name = stack.name
        self.on_update = on_update
        self.on_log = on_log
        self.auto_approve = auto_approve
        self.abort_signal = abort_signal or AbortSignal()
        self.settings = settings or StackSettings()
        self.logger: Logger = logger or logging.LoggerAdapter(
            logging.getLogger(__name__), {"stack": stack.name}
        )
        self._client_factory = client_factory

        self.current_state = StackState.IDLE
        self.current_plan: Optional[TerraformPlan] = None
        self.outputs: Optional[Dict[str, Any]] = None
        self.outputs_by_construct_id: Optional[NestedOutputs] = None
        self.stopped = False
        self.current_work: Optional[asyncio.Future[Any]] = None
        self._pending_gate: Optional[ApprovalGate] = None

    # ----- observability -----

    @property
    def _in_flight(self) -> bool:
        return self.current_work is not None and not self.current_work.done()

    @property
    def is_pending(self) -> bool:
        """Nothing has run yet and the controller was not stopped."""
        return (
            self.current_state == StackState.IDLE
            and not self._in_flight
            and not self.stopped
        )

    @property
    def is_done(self) -> bool:
        """The last run finished (done or errored), or the controller was stopped."""
        return self.stopped or (
            not self._in_flight
            and self.current_state in (StackState.DONE, StackState.ERRORED)
        )

    @property
    def is_running(self) -> bool:
        """Work has started and has not finished yet."""
        return not self.is_pending and not self.is_done

    # ----- event plumbing -----

    def _notify(self, update: StackEvent) -> None:
        if self.stopped:
            return
        self.logger.debug("[%s]: %s", self.stack_name, update.type)
        self.current_state = StackState(update.type)
        if isinstance(update, (Deployed, OutputsFetched)):
            self.logger.debug("Outputs: %s", update.outputs)
            self.logger.debug("OutputsByConstructId: %s", update.outputs_by_construct_id)
            self.outputs = update.outputs
            self.outputs_by_construct_id = update.outputs_by_construct_id
        self.on_update(update)

    def _log_callback(self, phase: str) -> Callable[[LogLine], None]:
        def send(line: LogLine) -> None:
            if self.stopped:
                return
            self.logger.debug("[%s](%s): %s", self.stack_name, phase, line.message)
            if self.on_log is not None:
                self.on_log(line)
            if phase == "deploy":
                self._notify(
                    DeployUpdate(stack_name=self.stack_name, deploy_output=line.message)
                )
            elif phase == "destroy":
                self._notify(
                    DestroyUpdate(stack_name=self.stack_name, destroy_output=line.message)
                )

        return send

    async def _wait_for_approval(self, plan: TerraformPlan) -> bool:
        gate = ApprovalGate(self.stack_name, plan)
        self._pending_gate = gate
        try:
            self._notify(gate)
            return await self.abort_signal.guard(gate.wait())
        finally:
            self._pending_gate = None

    async def _approved(self, plan: TerraformPlan) -> bool:
        if self.auto_approve:
            return True
        return await self._wait_for_approval(plan)

    async def _initialize_terraform(self, is_speculative: bool) -> TerraformBackend:
        terraform = await self._client_factory(
            self.abort_signal,
            self.stack,
            is_speculative,
            self._log_callback,
            settings=self.settings,
            logger=self.logger,
        )
        try:
            await terraform.init()
        except BaseException:
            await terraform.close()
            raise
        return terraform

    def _outputs_by_construct_id(self, outputs: Dict[str, Any]) -> NestedOutputs:
        return get_construct_ids_for_outputs(self.stack.parse(), outputs)

    # ----- execution wrapper -----

    async def _run(self, body: Callable[[], Awaitable[T]]) -> Optional[T]:
        try:
            result = await body()
        except asyncio.CancelledError:
            self._notify(Errored(stack_name=self.stack_name, error="Operation cancelled"))
            raise
        except Exception as exc:
            self.logger.debug("[%s]: operation failed", self.stack_name, exc_info=True)
            self._notify(
                Errored(stack_name=self.stack_name, error=str(exc) or repr(exc))
            )
            return None

        if not self.stopped:
            self.logger.debug("[%s]: done", self.stack_name)
            self.current_state = StackState.DONE
        return result

    async def _handle_state(self, body: Callable[[], Awaitable[T]]) -> Optional[T]:
        if self.stopped:
            return None
        if self._in_flight:
            raise OperationInFlightError(
                f"Stack '{self.stack_name}' already has an operation in flight."
            )

        work = asyncio.ensure_future(self._run(body))
        self.current_work = work
        try:
            return await work
        finally:
            if self.current_work is work:
                self.current_work = None

    # ----- operation bodies -----

    async def _plan(
        self, terraform: TerraformBackend, destructive: bool
    ) -> TerraformPlan:
        plan = await terraform.plan(destructive)
        self.current_plan = plan
        self._notify(Planned(stack_name=self.stack_name, plan=plan))
        return plan

    async def _diff(self) -> None:
        self._notify(Planning(stack_name=self.stack_name))
        async with await self._initialize_terraform(is_speculative=True) as terraform:
            await self._plan(terraform, destructive=False)

    async def _deploy(self) -> None:
        self._notify(Planning(stack_name=self.stack_name))
        async with await self._initialize_terraform(is_speculative=False) as terraform:
            plan = await self._plan(terraform, destructive=False)

            if not await self._approved(plan):
                self._notify(Dismissed(stack_name=self.stack_name))
                return
            if self.stopped:
                return

            self._notify(Deploying(stack_name=self.stack_name))
            if plan.needs_apply:
                await terraform.deploy(plan.plan_file)

            outputs = await terraform.output()
            self._notify(
                Deployed(
                    stack_name=self.stack_name,
                    outputs=outputs,
                    outputs_by_construct_id=self._outputs_by_construct_id(outputs),
                )
            )

    async def _destroy(self) -> None:
        self._notify(Planning(stack_name=self.stack_name))
        async with await self._initialize_terraform(is_speculative=False) as terraform:
            plan = await self._plan(terraform, destructive=True)

            if not await self._approved(plan):
                self._notify(Dismissed(stack_name=self.stack_name))
                return
            if self.stopped:
                return

            self._notify(Destroying(stack_name=self.stack_name))
            await terraform.destroy()
            self._notify(Destroyed(stack_name=self.stack_name))

    async def _fetch_outputs(self) -> Dict[str, Any]:
        async with await self._initialize_terraform(is_speculative=False) as terraform:
            outputs = await terraform.output()
        self._notify(
            OutputsFetched(
                stack_name=self.stack_name,
                outputs=outputs,
                outputs_by_construct_id=self._outputs_by_construct_id(outputs),
            )
        )
        return outputs

    # ----- public operations -----

    async def diff(self) -> None:
        """Compute and report a non-destructive plan."""
        await self._handle_state(self._diff)

    async def deploy(self) -> None:
        """Plan, wait for approval unless auto-approved, apply, report outputs."""
        await self._handle_state(self._deploy)

    async def destroy(self) -> None:
        """Plan a destruction, wait for approval unless auto-approved, destroy."""
        await self._handle_state(self._destroy)

    async def fetch_outputs(self) -> Optional[Dict[str, Any]]:
        """Fetch current outputs without planning.

        Returns:
            The flat outputs fetched by this call, or None if it did not get that
            far (errored, stopped).
        """
        return await self._handle_state(self._fetch_outputs)

    def stop(self) -> None:
        """Suppress every later event and make further entry calls no-ops.

        Backend work already dispatched keeps running; trip the AbortSignal to
        abort it. A pending approval gate is rejected so the run can unwind.
        """
        self.stopped = True
        if self._pending_gate is not None:
            self._pending_gate.reject()


async def run_stacks(
    controllers: Sequence[StackController], operation: str
) -> List[Union[None, Dict[str, Any]]]:
    """Run one entry operation on many independent controllers concurrently.

    Args:
        controllers: Controllers over distinct stacks.
        operation: One of 'diff', 'deploy', 'destroy', 'fetch_outputs'.

    Returns:
        Each controller's result, in order (outputs for fetch_outputs, else None).
    """
    if operation not in ENTRY_OPERATIONS:
        raise ValueError(
            f"Unknown operation '{operation}', expected one of {ENTRY_OPERATIONS}."
        )
    return list(
        await asyncio.gather(*(getattr(c, operation)() for c in controllers))
    )
