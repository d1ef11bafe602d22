"""
stackpilot/utils/terraform/base.py

Defines the abstract Terraform backend a stack controller drives. Two variants
exist: TerraformCli (a local engine process) and TerraformCloud (a remote
workspace API). Both share this class's guard rails:

  - init() must complete before any other operation.
  - plan() always yields a fresh artifact.
  - A plan artifact is consumed at most once, and only by the backend that
    produced it. Its freshness is not re-validated.
  - Every output line goes through the log extractor before reaching the sink.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Set, Type, Union

from stackpilot.errors import BackendNotInitializedError, PlanArtifactError
from stackpilot.models.settings import StackSettings
from stackpilot.models.stack_events import LogLine
from stackpilot.models.synthesized_stack import SynthesizedStack
from stackpilot.models.terraform import TerraformPlan
from stackpilot.utils.abort_signal import AbortSignal
from stackpilot.utils.terraform_logs import extract_json_log_if_present

# send_log(phase) returns the sink for that phase's log lines.
LogSink = Callable[[str], Callable[[LogLine], None]]
Logger = Union[logging.Logger, logging.LoggerAdapter]


class TerraformBackend(ABC):
    """Abstract base class for executing a synthesized stack."""

    kind = "abstract"

    def __init__(
        self,
        abort_signal: AbortSignal,
        stack: SynthesizedStack,
        send_log: LogSink,
        settings: Optional[StackSettings] = None,
        logger: Optional[Logger] = None,
    ) -> None:
        """
        Initialize a TerraformBackend.

        Args:
            abort_signal (AbortSignal):
                Aborts in-flight engine work when tripped.
            stack (SynthesizedStack):
                The definition to run. Referenced, not copied.
            send_log (LogSink):
                Returns the log sink for a phase name ('init', 'plan', 'deploy', ...).
            settings (Optional[StackSettings]):
                Shared read-only settings. Defaults to StackSettings().
            logger (Optional[Logger]):
                Where diagnostics go. Defaults to this module's logger.
        """
        self.abort_signal = abort_signal
        self.stack = stack
        self.settings = settings or StackSettings()
        self._send_log = send_log
        self.logger: Logger = logger or logging.getLogger(__name__)
        self._initialized = False
        self._issued_plans: Set[str] = set()
        self._consumed_plans: Set[str] = set()

    # ----- logging -----

    def _send(self, phase: str, line: str, is_error: bool = False) -> None:
        """Extract one raw output line and hand it to the phase's sink."""
        extracted = extract_json_log_if_present(line)
        self._send_log(phase)(
            LogLine(
                message=extracted.message,
                is_error=is_error or extracted.is_error,
            )
        )

    def _line_sink(self, phase: str, is_error: bool = False) -> Callable[[str], None]:
        """A line callback for one output stream of one phase."""
        return lambda line: self._send(phase, line, is_error)

    # ----- guard rails -----

    def _require_init(self, operation: str) -> None:
        if not self._initialized:
            raise BackendNotInitializedError(
                f"{type(self).__name__}.{operation}() called before init() completed."
            )

    def _consume_plan(self, plan_file: str) -> None:
        if plan_file not in self._issued_plans:
            raise PlanArtifactError(
                f"Plan artifact '{plan_file}' was not produced by this backend."
            )
        if plan_file in self._consumed_plans:
            raise PlanArtifactError(f"Plan artifact '{plan_file}' was already used.")
        self._consumed_plans.add(plan_file)

    # ----- public operations -----

    async def init(self) -> None:
        """Prepare the backend. Must complete before anything else is called."""
        await self._init()
        self._initialized = True

    async def plan(self, destructive: bool) -> TerraformPlan:
        """Compute a fresh plan.

        Args:
            destructive: If True, plan the destruction of every resource.
        """
        self._require_init("plan")
        plan = await self._plan(destructive)
        if plan.plan_file in self._issued_plans:
            raise PlanArtifactError(
                f"Backend returned a reused plan artifact '{plan.plan_file}'."
            )
        self._issued_plans.add(plan.plan_file)
        return plan

    async def deploy(self, plan_file: str) -> None:
        """Apply a plan produced by this backend's plan()."""
        self._require_init("deploy")
        self._consume_plan(plan_file)
        await self._deploy(plan_file)

    async def destroy(self) -> None:
        """Destroy every resource of the stack."""
        self._require_init("destroy")
        await self._destroy()

    async def output(self) -> Dict[str, Any]:
        """Return the current flat outputs (name -> value)."""
        self._require_init("output")
        return await self._output()

    async def close(self) -> None:
        """Release resources held by the backend. Safe to call more than once."""

    async def __aenter__(self) -> TerraformBackend:
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[Any],
    ) -> None:
        await self.close()

    # ----- variant hooks -----

    @abstractmethod
    async def _init(self) -> None:
        pass

    @abstractmethod
    async def _plan(self, destructive: bool) -> TerraformPlan:
        pass

    @abstractmethod
    async def _deploy(self, plan_file: str) -> None:
        pass

    @abstractmethod
    async def _destroy(self) -> None:
        pass

    @abstractmethod
    async def _output(self) -> Dict[str, Any]:
        pass
