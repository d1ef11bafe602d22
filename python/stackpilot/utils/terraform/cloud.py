"""
stackpilot/utils/terraform/cloud.py

Implements the remote workspace backend: drives runs through the workspace
HTTP API (JSON:API over aiohttp) instead of a local process.

  init    -> create a configuration version and upload the working directory
  plan    -> queue a run ('is-destroy' when destructive) and follow its plan log
  deploy  -> apply that run and follow its apply log
  destroy -> apply the latest destructive run of this backend
  output  -> read the outputs of the workspace's current state version

Logs are polled from the plan/apply 'log-read-url' and only complete lines are
forwarded. When the abort signal trips mid-run, the run is cancelled best effort
and OperationAborted is raised.
"""

from __future__ import annotations

import io
import os
import asyncio
import tarfile
from typing import Any, Awaitable, Dict, List, Optional, Sequence, TypeVar

import aiohttp

from stackpilot.errors import PlanArtifactError, RemoteApiError, RemoteRunError
from stackpilot.models.settings import StackSettings
from stackpilot.models.synthesized_stack import SynthesizedStack
from stackpilot.models.terraform import (
    OutputValue,
    PlanSummary,
    RemoteBackendConfig,
    TerraformPlan,
)
from stackpilot.utils.abort_signal import AbortSignal, OperationAborted
from stackpilot.utils.async_retry import async_retry
from stackpilot.utils.terraform.base import LogSink, Logger, TerraformBackend

T = TypeVar("T")

JSONAPI_CONTENT_TYPE = "application/vnd.api+json"

RUN_PLANNED = frozenset(
    {
        "planned",
        "planned_and_finished",
        "planned_and_saved",
        "cost_estimated",
        "policy_checked",
        "policy_override",
        "policy_soft_failed",
        "post_plan_completed",
    }
)
RUN_APPLIED = frozenset({"applied"})
RUN_FAILED = frozenset({"errored", "canceled", "force_canceled", "discarded"})
# A run that planned no changes ends here and cannot be applied.
RUN_NOTHING_TO_APPLY = "planned_and_finished"

_OUTPUTS_PAGE_SIZE = 100

# Never uploaded with the configuration.
_EXCLUDED_DIRS = frozenset({".terraform", ".git"})


def _pack_directory(directory: str, excluded_prefix: str) -> bytes:
    """Build an in-memory .tar.gz of `directory`, skipping local engine state."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for root, dirs, files in os.walk(directory):
            dirs[:] = sorted(d for d in dirs if d not in _EXCLUDED_DIRS)
            for file_name in sorted(files):
                if file_name.startswith(excluded_prefix):
                    continue
                path = os.path.join(root, file_name)
                tar.add(path, arcname=os.path.relpath(path, directory))
    return buffer.getvalue()


def _log_lines(text: str, finished: bool) -> List[str]:
    """Split polled log text into lines, holding back a trailing partial line."""
    lines = [line.strip("\x02\x03") for line in text.splitlines()]
    if not finished and text and not text.endswith("\n"):
        lines = lines[:-1]
    return lines


def token_env_var(hostname: str) -> str:
    """The environment variable the engine reads the API token for `hostname` from."""
    return "TF_TOKEN_" + hostname.replace("-", "__").replace(".", "_")


class TerraformCloud(TerraformBackend):
    """Drives runs in a remote workspace through its HTTP API."""

    kind = "remote"

    def __init__(
        self,
        abort_signal: AbortSignal,
        stack: SynthesizedStack,
        config: RemoteBackendConfig,
        is_speculative: bool,
        send_log: LogSink,
        settings: Optional[StackSettings] = None,
        logger: Optional[Logger] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        """
        Initialize a TerraformCloud backend.

        Args:
            abort_signal (AbortSignal): Aborts in-flight requests and runs.
            stack (SynthesizedStack): The definition to run.
            config (RemoteBackendConfig): The declared remote workspace.
            is_speculative (bool): If True, upload a plan-only configuration.
            send_log (LogSink): Phase-keyed log sinks.
            settings (Optional[StackSettings]): Shared read-only settings.
            logger (Optional[Logger]): Where diagnostics go.
            session (Optional[aiohttp.ClientSession]): A session to reuse; closed
                by close() only if this backend created it.
        """
        super().__init__(abort_signal, stack, send_log, settings, logger)
        self.config = config
        self.is_speculative = is_speculative
        self._session = session
        self._owns_session = session is None
        self._workspace_id: Optional[str] = None
        self._configuration_version_id: Optional[str] = None
        self._destroy_run_id: Optional[str] = None
        self._run_status: Dict[str, str] = {}

    @property
    def base_url(self) -> str:
        return f"https://{self.config.hostname}/api/v2"

    def _token(self) -> Optional[str]:
        return (
            self.config.token
            or self.settings.terraform_cloud_token
            or os.environ.get(token_env_var(self.config.hostname))
        )

    # ----- HTTP plumbing -----

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _guarded(self, work: Awaitable[T], guarded: bool) -> T:
        return await (self.abort_signal.guard(work) if guarded else work)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[Dict[str, Any]] = None,
        expected: Sequence[int] = (200, 201, 202, 204),
        guarded: bool = True,
    ) -> Optional[Dict[str, Any]]:
        """Call the workspace API and return the decoded JSON body, if any.

        Raises:
            RemoteApiError: If the status is not in `expected`.
            OperationAborted: If `guarded` and the abort signal trips.
        """
        session = await self._ensure_session()
        headers = {
            "Authorization": f"Bearer {self._token()}",
            "Content-Type": JSONAPI_CONTENT_TYPE,
        }

        async def call() -> Optional[Dict[str, Any]]:
            async with session.request(
                method, self.base_url + path, json=json_body, headers=headers
            ) as resp:
                if resp.status not in expected:
                    body = await resp.text()
                    raise RemoteApiError(
                        f"{method} {path} failed with status {resp.status}: {body}",
                        resp.status,
                    )
                if resp.status == 204:
                    return None
                text = await resp.text()
                if not text:
                    return None
                return await resp.json(content_type=None)

        return await self._guarded(call(), guarded)

    async def _get(self, path: str) -> Dict[str, Any]:
        """GET a JSON:API resource and return its 'data' member, with retries."""

        @async_retry(
            retries=self.settings.request_retries,
            delay=self.settings.remote_poll_interval_seconds,
            noisy=True,
            no_retry=(OperationAborted,),
        )
        async def fetch() -> Dict[str, Any]:
            body = await self._request("GET", path, expected=(200,))
            return (body or {}).get("data") or {}

        return await fetch()

    async def _get_text(self, url: str) -> str:
        """GET a pre-signed absolute URL (log archives) as text."""
        session = await self._ensure_session()

        async def call() -> str:
            async with session.get(url) as resp:
                if resp.status != 200:
                    raise RemoteApiError(
                        f"GET log failed with status {resp.status}", resp.status
                    )
                return await resp.text()

        return await self.abort_signal.guard(call())

    async def _upload(self, url: str, payload: bytes) -> None:
        session = await self._ensure_session()

        async def call() -> None:
            async with session.put(
                url,
                data=payload,
                headers={"Content-Type": "application/octet-stream"},
            ) as resp:
                if resp.status not in (200, 201, 204):
                    raise RemoteApiError(
                        f"Configuration upload failed with status {resp.status}",
                        resp.status,
                    )

        await self.abort_signal.guard(call())

    async def _sleep(self) -> None:
        await self.abort_signal.guard(
            asyncio.sleep(self.settings.remote_poll_interval_seconds)
        )

    # ----- workspace -----

    async def _fetch_workspace(self) -> Dict[str, Any]:
        workspace = await self._get(
            f"/organizations/{self.config.organization}"
            f"/workspaces/{self.config.workspace_name}"
        )
        self._workspace_id = workspace.get("id")
        return workspace

    async def is_remote_workspace(self) -> bool:
        """Probe the declared workspace.

        Returns:
            bool: True iff the workspace answers and runs remotely. Transport and
            API failures give False, so the caller can fall back to the CLI.
        """
        if not self.config.workspace_name:
            self.logger.warning(
                "Remote backend for '%s' names no single workspace.", self.stack.name
            )
            return False
        if not self._token():
            self.logger.warning(
                "No API token for %s (set %s or STACKPILOT_TERRAFORM_CLOUD_TOKEN).",
                self.config.hostname,
                token_env_var(self.config.hostname),
            )
            return False

        try:
            body = await asyncio.wait_for(
                self._request(
                    "GET",
                    f"/organizations/{self.config.organization}"
                    f"/workspaces/{self.config.workspace_name}",
                    expected=(200,),
                ),
                timeout=self.settings.remote_probe_timeout_seconds,
            )
        except (
            aiohttp.ClientError, asyncio.TimeoutError, RemoteApiError, ValueError
        ) as exc:
            self.logger.warning(
                "Remote workspace %s/%s is not reachable: %s",
                self.config.organization,
                self.config.workspace_name,
                exc,
            )
            return False

        workspace = body.get("data") if isinstance(body, dict) else None
        if not isinstance(workspace, dict):
            self.logger.warning(
                "Remote workspace %s/%s answered without a workspace document.",
                self.config.organization,
                self.config.workspace_name,
            )
            return False
        self._workspace_id = workspace.get("id")
        mode = (workspace.get("attributes") or {}).get("execution-mode", "remote")
        return self._workspace_id is not None and mode != "local"

    async def _require_workspace_id(self) -> str:
        if self._workspace_id is None:
            await self._fetch_workspace()
        if self._workspace_id is None:
            raise RemoteApiError(
                f"Workspace {self.config.workspace_name} has no id.", 404
            )
        return self._workspace_id

    # ----- runs -----

    async def _follow(
        self, run_id: str, log_path: str, phase: str, done: frozenset
    ) -> Dict[str, Any]:
        """Poll a run until it reaches `done`, forwarding new log lines to `phase`.

        Raises:
            RemoteRunError: If the run errors, is canceled or is discarded.
        """
        lines_sent = 0
        while True:
            run = await self._get(f"/runs/{run_id}")
            status = (run.get("attributes") or {}).get("status", "")
            self._run_status[run_id] = status
            finished = status in done or status in RUN_FAILED

            log_owner = await self._get(log_path)
            log_url = (log_owner.get("attributes") or {}).get("log-read-url")
            if log_url:
                lines = _log_lines(await self._get_text(log_url), finished)
                for line in lines[lines_sent:]:
                    self._send(phase, line)
                lines_sent = max(lines_sent, len(lines))

            if status in RUN_FAILED:
                raise RemoteRunError(f"Run {run_id} finished with status '{status}'.")
            if status in done:
                return run
            await self._sleep()

    async def _cancel_run(self, run_id: str) -> None:
        try:
            await self._request(
                "POST",
                f"/runs/{run_id}/actions/cancel",
                json_body={"comment": "Aborted by stackpilot"},
                guarded=False,
            )
        except (aiohttp.ClientError, RemoteApiError) as exc:
            self.logger.warning("Could not cancel run %s: %s", run_id, exc)

    async def _cancel_on_abort(self, run_id: str, work: Awaitable[T]) -> T:
        try:
            return await work
        except OperationAborted:
            await self._cancel_run(run_id)
            raise

    @staticmethod
    def _related_id(run: Dict[str, Any], name: str) -> str:
        related = ((run.get("relationships") or {}).get(name) or {}).get("data") or {}
        related_id = related.get("id")
        if not related_id:
            raise RemoteApiError(f"Run has no related {name}.", 404)
        return related_id

    # ----- backend operations -----

    async def _init(self) -> None:
        workspace_id = await self._require_workspace_id()
        body = await self._request(
            "POST",
            f"/workspaces/{workspace_id}/configuration-versions",
            json_body={
                "data": {
                    "type": "configuration-versions",
                    "attributes": {
                        "auto-queue-runs": False,
                        "speculative": self.is_speculative,
                    },
                }
            },
            expected=(201,),
        )
        version = (body or {}).get("data") or {}
        self._configuration_version_id = version.get("id")
        upload_url = (version.get("attributes") or {}).get("upload-url")
        if not self._configuration_version_id or not upload_url:
            raise RemoteApiError("Configuration version has no upload URL.", 500)

        payload = await asyncio.to_thread(
            _pack_directory, self.stack.working_directory, self.settings.plan_file_prefix
        )
        await self._upload(upload_url, payload)
        self._send("init", f"Uploaded configuration ({len(payload)} bytes).")

        while True:
            version = await self._get(
                f"/configuration-versions/{self._configuration_version_id}"
            )
            status = (version.get("attributes") or {}).get("status")
            if status == "uploaded":
                return
            if status == "errored":
                raise RemoteRunError(
                    f"Configuration version {self._configuration_version_id} errored."
                )
            await self._sleep()

    async def _plan(self, destructive: bool) -> TerraformPlan:
        workspace_id = await self._require_workspace_id()
        body = await self._request(
            "POST",
            "/runs",
            json_body={
                "data": {
                    "type": "runs",
                    "attributes": {
                        "is-destroy": destructive,
                        "plan-only": self.is_speculative,
                        "message": f"Queued by stackpilot for stack {self.stack.name}",
                    },
                    "relationships": {
                        "workspace": {
                            "data": {"type": "workspaces", "id": workspace_id}
                        },
                        "configuration-version": {
                            "data": {
                                "type": "configuration-versions",
                                "id": self._configuration_version_id,
                            }
                        },
                    },
                }
            },
            expected=(201,),
        )
        created = (body or {}).get("data") or {}
        run_id = created.get("id")
        if not run_id:
            raise RemoteApiError("Run creation returned no id.", 500)
        plan_id = self._related_id(created, "plan")

        run = await self._cancel_on_abort(
            run_id, self._follow(run_id, f"/plans/{plan_id}", "plan", RUN_PLANNED)
        )
        plan_attributes = (await self._get(f"/plans/{plan_id}")).get("attributes") or {}

        if destructive:
            self._destroy_run_id = run_id
        return TerraformPlan(
            plan_file=run_id,
            needs_apply=bool((run.get("attributes") or {}).get("has-changes")),
            summary=PlanSummary(
                add=plan_attributes.get("resource-additions") or 0,
                change=plan_attributes.get("resource-changes") or 0,
                destroy=plan_attributes.get("resource-destructions") or 0,
            ),
        )

    async def _apply_run(self, run_id: str, phase: str) -> None:
        if self.is_speculative:
            raise RemoteRunError("Speculative runs cannot be applied.")
        if self._run_status.get(run_id) == RUN_NOTHING_TO_APPLY:
            self._send(phase, f"Run {run_id} has nothing to apply.")
            return

        await self._request(
            "POST",
            f"/runs/{run_id}/actions/apply",
            json_body={"comment": f"Applied by stackpilot for stack {self.stack.name}"},
            expected=(202,),
        )
        apply_id = self._related_id(await self._get(f"/runs/{run_id}"), "apply")
        await self._cancel_on_abort(
            run_id, self._follow(run_id, f"/applies/{apply_id}", phase, RUN_APPLIED)
        )

    async def _deploy(self, plan_file: str) -> None:
        await self._apply_run(plan_file, "deploy")

    async def _destroy(self) -> None:
        if self._destroy_run_id is None:
            raise PlanArtifactError(
                "destroy() on a remote workspace needs a prior plan(destructive=True)."
            )
        self._consume_plan(self._destroy_run_id)
        await self._apply_run(self._destroy_run_id, "destroy")

    async def _output(self) -> Dict[str, Any]:
        workspace_id = await self._require_workspace_id()
        outputs: Dict[str, Any] = {}
        page: Optional[int] = 1
        while page:
            body = await self._request(
                "GET",
                f"/workspaces/{workspace_id}/current-state-version-outputs"
                f"?page%5Bnumber%5D={page}&page%5Bsize%5D={_OUTPUTS_PAGE_SIZE}",
                expected=(200, 404),
            ) or {}
            for entry in body.get("data") or []:
                attributes = entry.get("attributes") or {}
                if "name" in attributes:
                    outputs[attributes["name"]] = OutputValue.model_validate(
                        attributes
                    ).value
            page = ((body.get("meta") or {}).get("pagination") or {}).get("next-page")
        return outputs

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None
