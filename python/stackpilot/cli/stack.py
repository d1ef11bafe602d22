#!/usr/bin/env python3
"""
stackpilot/cli/stack.py

CLI driving one or more synthesized stacks through a lifecycle operation:

  python -m stackpilot.cli.stack diff    cdktf.out/stacks/app
  python -m stackpilot.cli.stack deploy  cdktf.out/stacks/app cdktf.out/stacks/db
  python -m stackpilot.cli.stack destroy --auto-approve cdktf.out/stacks/app
  python -m stackpilot.cli.stack output  cdktf.out/stacks/app

Stacks run concurrently. Every event is printed as one JSON line on stdout;
approvals are asked on stdin, one stack at a time. Ctrl-C aborts in-flight
engine work. Exits 1 if any stack errored.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import List, Set

from stackpilot.deployment.stack import StackController, run_stacks
from stackpilot.models.settings import StackSettings
from stackpilot.models.stack_events import ApprovalGate, Errored, LogLine, StackEvent
from stackpilot.models.synthesized_stack import load_synthesized_stack
from stackpilot.utils.abort_signal import AbortSignal

_OPERATIONS = {
    "diff": "diff",
    "deploy": "deploy",
    "destroy": "destroy",
    "output": "fetch_outputs",
}


async def _ask(gate: ApprovalGate, prompt_lock: asyncio.Lock) -> None:
    """Ask on stdin whether `gate`'s plan may be applied."""
    async with prompt_lock:
        summary = gate.plan.summary
        question = (
            f"[{gate.stack_name}] Plan: {summary.add} to add, {summary.change} to change, "
            f"{summary.destroy} to destroy. Approve? [y/N] "
        )
        answer = await asyncio.to_thread(input, question)
    if answer.strip().lower() in ("y", "yes"):
        gate.approve()
    else:
        gate.reject()


async def _run(args: argparse.Namespace) -> int:
    settings = StackSettings()
    abort_signal = AbortSignal()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, abort_signal.abort, "interrupted by user")
    except NotImplementedError:
        pass

    stacks = await asyncio.gather(
        *(load_synthesized_stack(directory) for directory in args.directories)
    )

    errored: List[str] = []
    prompt_lock = asyncio.Lock()
    prompts: Set[asyncio.Task[None]] = set()

    def on_update(update: StackEvent) -> None:
        if isinstance(update, ApprovalGate):
            print(json.dumps({"type": update.type, "stack_name": update.stack_name}))
            task = loop.create_task(_ask(update, prompt_lock))
            prompts.add(task)
            task.add_done_callback(prompts.discard)
            return
        if isinstance(update, Errored):
            errored.append(update.stack_name)
        print(update.model_dump_json())

    def on_log(line: LogLine) -> None:
        if args.show_logs:
            print(line.message, file=sys.stderr)

    controllers = [
        StackController(
            stack,
            on_update=on_update,
            on_log=on_log,
            auto_approve=args.auto_approve,
            abort_signal=abort_signal,
            settings=settings,
        )
        for stack in stacks
    ]

    operation = _OPERATIONS[args.command]
    results = await run_stacks(controllers, operation)
    if operation == "fetch_outputs":
        print(
            json.dumps(
                {c.stack_name: r for c, r in zip(controllers, results)},
                indent=2,
                default=str,
            )
        )
    return 1 if errored else 0


def main() -> int:
    """Entry point for the stack CLI."""
    parser = argparse.ArgumentParser(
        description="Plan, deploy, destroy or read outputs of synthesized stacks."
    )
    parser.add_argument("command", choices=sorted(_OPERATIONS))
    parser.add_argument(
        "directories", nargs="+", help="Synthesized stack directories (cdk.tf.json)."
    )
    parser.add_argument("--auto-approve", action="store_true")
    parser.add_argument(
        "--show-logs", action="store_true", help="Print engine logs to stderr."
    )
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args()

    logging.basicConfig(level=(args.log_level or StackSettings().log_level).upper())

    try:
        return asyncio.run(_run(args))
    except Exception as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
