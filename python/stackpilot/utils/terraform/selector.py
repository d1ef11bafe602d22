"""
stackpilot/utils/terraform/selector.py

Chooses the backend for a synthesized stack: the remote workspace when the
definition declares one and it answers the liveness probe, the local CLI
otherwise. A failed probe falls back to the CLI rather than failing the run.
"""

from __future__ import annotations

import logging
from typing import Optional

from stackpilot.models.settings import StackSettings
from stackpilot.models.synthesized_stack import SynthesizedStack
from stackpilot.utils.abort_signal import AbortSignal
from stackpilot.utils.terraform.base import LogSink, Logger, TerraformBackend
from stackpilot.utils.terraform.cli import TerraformCli
from stackpilot.utils.terraform.cloud import TerraformCloud

_default_logger = logging.getLogger(__name__)


async def get_terraform_client(
    abort_signal: AbortSignal,
    stack: SynthesizedStack,
    is_speculative: bool,
    send_log: LogSink,
    settings: Optional[StackSettings] = None,
    logger: Optional[Logger] = None,
) -> TerraformBackend:
    """Build the backend that should run `stack`.

    Args:
        abort_signal (AbortSignal): Propagated unchanged to the backend.
        stack (SynthesizedStack): The definition to run.
        is_speculative (bool): True for plan-only (dry-run) usage.
        send_log (LogSink): Phase-keyed log sinks for the backend.
        settings (Optional[StackSettings]): Shared read-only settings.
        logger (Optional[Logger]): Where diagnostics go.

    Returns:
        TerraformBackend: A TerraformCloud or a TerraformCli instance, not yet
        initialized.

    Raises:
        StackDefinitionError: If the stack content cannot be parsed.
    """
    log = logger or _default_logger
    remote = stack.parse().remote_backend()

    if remote is not None:
        client = TerraformCloud(
            abort_signal,
            stack,
            remote,
            is_speculative,
            send_log,
            settings=settings,
            logger=log,
        )
        selected = False
        try:
            selected = await client.is_remote_workspace()
        finally:
            if not selected:
                await client.close()
        if selected:
            log.debug("Using remote workspace backend for '%s'.", stack.name)
            return client
        log.warning(
            "Remote workspace for '%s' unavailable, falling back to the local CLI.",
            stack.name,
        )

    return TerraformCli(abort_signal, stack, send_log, settings=settings, logger=log)
