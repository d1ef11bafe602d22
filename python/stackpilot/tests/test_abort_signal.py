"""Tests for AbortSignal and ApprovalGate."""

import asyncio

import pytest

from stackpilot.models.stack_events import ApprovalGate
from stackpilot.models.terraform import TerraformPlan
from stackpilot.utils.abort_signal import AbortSignal, OperationAborted


@pytest.mark.asyncio
async def test_first_reason_wins():
    signal = AbortSignal()
    assert not signal.aborted
    assert signal.reason is None

    signal.abort("first")
    signal.abort("second")

    assert signal.aborted
    assert signal.reason == "first"
    with pytest.raises(OperationAborted) as exc_info:
        signal.raise_if_aborted()
    assert exc_info.value.reason == "first"
    assert str(exc_info.value) == "Operation aborted: first"


@pytest.mark.asyncio
async def test_guard_returns_the_result():
    async def work():
        await asyncio.sleep(0)
        return 42

    assert await AbortSignal().guard(work()) == 42


@pytest.mark.asyncio
async def test_guard_cancels_work_on_abort():
    signal = AbortSignal()
    cancelled = asyncio.Event()

    async def work():
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    guarded = asyncio.ensure_future(signal.guard(work()))
    await asyncio.sleep(0.05)
    signal.abort("enough")

    with pytest.raises(OperationAborted):
        await guarded
    assert cancelled.is_set()


@pytest.mark.asyncio
async def test_guard_propagates_work_errors():
    async def work():
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        await AbortSignal().guard(work())


@pytest.mark.asyncio
async def test_approval_gate_first_decision_wins():
    gate = ApprovalGate("app", TerraformPlan(plan_file="p", needs_apply=True))
    assert gate.type == "waiting-for-approval"
    assert not gate.resolved

    gate.reject()
    gate.approve()

    assert gate.resolved
    assert await gate.wait() is False
    assert "approved=False" in repr(gate)


@pytest.mark.asyncio
async def test_approval_gate_resolves_a_waiter():
    gate = ApprovalGate("app", TerraformPlan(plan_file="p", needs_apply=True))
    waiter = asyncio.ensure_future(gate.wait())
    await asyncio.sleep(0)
    assert not waiter.done()

    gate.approve()

    assert await waiter is True
