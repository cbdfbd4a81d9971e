import asyncio
import logging
from typing import Awaitable, Callable

import httpx

from specpilot.agent.code_generator import CodeGeneratorAgent
from specpilot.agent.prompts import build_fix_instruction
from specpilot.agent.runner import RunObserver
from specpilot.config import DeploySettings
from specpilot.deploy.scripts import (
    build_launch_command,
    build_proxy_command,
    build_reset_command,
    build_upload_script,
    in_app_dir,
)
from specpilot.errors import VerificationFailedError
from specpilot.sandbox.vm import ExecResult, VMClient
from specpilot.vfs import VirtualFileSystem


logger = logging.getLogger("specpilot.deploy")

Emit = Callable[[str], Awaitable[None]]


async def _noop_emit(line: str) -> None:
    return None


def _is_success(status: int | None) -> bool:
    return status is not None and 200 <= status < 400


def is_ready(api_status: int | None, root_status: int | None) -> bool:
    """Readiness rule for the API and root probes.

    2xx/3xx on either path is ready. A 4xx on one path (the server is up
    but the route is missing) neither helps nor blocks; the other path decides.
    """
    return _is_success(api_status) or _is_success(root_status)


class DeploymentPipeline:
    """Ships ``code/`` from a VFS to one VM and brings the app up.

    Phases can run together through :meth:`deploy` or one at a time; the
    lint-fix loop re-runs the upload phase between verification attempts.

    Args:
        vm: VM capability used for every remote action.
        code_generator: Agent asked to repair verification failures. Without
            one, failures are reported and the pipeline moves on.
        settings: Ports, commands and retry/poll bounds.
        http_client: Optional client for the readiness probe (tests inject a
            mock transport).
    """

    def __init__(
        self,
        vm: VMClient,
        code_generator: CodeGeneratorAgent | None = None,
        settings: DeploySettings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.vm = vm
        self.code_generator = code_generator
        self.settings = settings or DeploySettings()
        self._http_client = http_client

    async def deploy(
        self,
        vm_id: str,
        vfs: VirtualFileSystem,
        emit: Emit | None = None,
        observer: RunObserver | None = None,
    ) -> str:
        emit = emit or _noop_emit
        await self.reset_and_upload(vm_id, vfs, emit)
        await self.install(vm_id, emit)
        await self.verify_and_repair(vm_id, vfs, emit, observer)
        return await self.launch(vm_id, emit)

    async def warm_up(self, vm_id: str, vfs: VirtualFileSystem, emit: Emit | None = None) -> str:
        """First deployment on a fresh VM, run at project creation.

        Same four phases as :meth:`deploy`, without the repair loop since
        nothing persists the code generator's edits here. Dependencies
        installed now make the first chat-triggered deploy faster.
        """
        emit = emit or _noop_emit
        await emit("Warming up VM with the project template")
        await self.reset_and_upload(vm_id, vfs, emit)
        await self.install(vm_id, emit)
        await self.verify(vm_id, emit)
        return await self.launch(vm_id, emit)

    async def reset_and_upload(self, vm_id: str, vfs: VirtualFileSystem, emit: Emit) -> int:
        s = self.settings
        await emit("Stopping previous app and clearing app directory")
        reset = await self.vm.exec(vm_id, build_reset_command(s))
        if not reset.ok:
            logger.warning("reset[%s] exit=%d %s", vm_id, reset.status_code, reset.output())

        public_url = await self.vm.public_url(vm_id)
        script, count = build_upload_script(vfs, s, public_url)
        upload = await self.vm.exec(vm_id, script)
        if not upload.ok:
            logger.error("upload[%s] exit=%d %s", vm_id, upload.status_code, upload.output())
            await emit(f"Upload failed (exit {upload.status_code}): {upload.output()}")
        else:
            await emit(f"Uploaded {count} files")

        # Package install and /etc/nginx writes need root
        proxy = await self.vm.exec(vm_id, build_proxy_command(s), sudo=True)
        if proxy.ok:
            await emit(
                f"Configured proxy :{s.public_port} -> :{s.frontend_port}, /api/ -> :{s.backend_port}"
            )
        else:
            logger.warning("proxy[%s] exit=%d %s", vm_id, proxy.status_code, proxy.output())
            await emit(f"Proxy configuration failed (exit {proxy.status_code})")
        return count

    async def install(self, vm_id: str, emit: Emit) -> ExecResult:
        await emit("Installing dependencies")
        result = await self.vm.exec(vm_id, in_app_dir(self.settings, self.settings.install_command))
        if result.ok:
            await emit("Dependencies installed")
        else:
            logger.warning("install[%s] exit=%d %s", vm_id, result.status_code, result.output())
            await emit(f"Dependency install failed (exit {result.status_code})")
        return result

    async def verify(self, vm_id: str, emit: Emit) -> ExecResult:
        result = await self.vm.exec(vm_id, in_app_dir(self.settings, self.settings.verify_command))
        if result.ok:
            await emit("Verification passed")
        else:
            await emit(f"Verification failed (exit {result.status_code})")
        return result

    async def verify_and_repair(
        self,
        vm_id: str,
        vfs: VirtualFileSystem,
        emit: Emit,
        observer: RunObserver | None = None,
    ) -> bool:
        """Verify, asking the code generator to fix failures between attempts.

        Returns True once verification passes. After ``max_fix_attempts``
        fixes the result depends on ``proceed_on_verification_failure``: log
        and return False, or raise :class:`VerificationFailedError`.
        """
        s = self.settings
        result = await self.verify(vm_id, emit)
        attempts = 0
        can_repair = self.code_generator is not None
        while not result.ok and can_repair and attempts < s.max_fix_attempts:
            attempts += 1
            await emit(f"Fixing verification errors (attempt {attempts}/{s.max_fix_attempts})")
            instruction = build_fix_instruction(s.verify_command, result.stdout, result.stderr)
            await self.code_generator.run(
                vfs, instruction=instruction, observer=observer, max_steps=s.fix_max_steps
            )
            await self.reset_and_upload(vm_id, vfs, emit)
            result = await self.verify(vm_id, emit)

        if result.ok:
            return True
        if not s.proceed_on_verification_failure:
            raise VerificationFailedError(attempts, result.output())
        logger.warning(
            "verify[%s] still failing after %d fix attempts; launching anyway", vm_id, attempts
        )
        await emit("Verification still failing; launching anyway")
        return False

    async def launch(self, vm_id: str, emit: Emit) -> str:
        await emit("Starting app")
        result = await self.vm.exec(vm_id, build_launch_command(self.settings))
        if not result.ok:
            logger.warning("launch[%s] exit=%d %s", vm_id, result.status_code, result.output())
        url = await self.vm.public_url(vm_id)
        if await self.wait_until_ready(url, emit):
            await emit(f"App is ready at {url}")
        else:
            await emit(f"App did not respond in time; it may still be starting at {url}")
        return url

    async def wait_until_ready(self, url: str, emit: Emit | None = None) -> bool:
        s = self.settings
        emit = emit or _noop_emit
        base = url.rstrip("/")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + s.health_timeout_seconds
        client = self._http_client or httpx.AsyncClient(
            timeout=s.health_request_timeout_seconds, follow_redirects=False
        )
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                # Both probes share one window that never passes the deadline
                request_timeout = min(s.health_request_timeout_seconds, remaining)
                api_status, root_status = await asyncio.gather(
                    self._probe(client, base + s.health_api_path, request_timeout),
                    self._probe(client, base + s.health_root_path, request_timeout),
                )
                if is_ready(api_status, root_status):
                    return True
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                await asyncio.sleep(min(s.health_interval_seconds, remaining))
        finally:
            if self._http_client is None:
                await client.aclose()
        logger.warning("health check timed out after %.0fs url=%s", s.health_timeout_seconds, url)
        return False

    async def _probe(self, client: httpx.AsyncClient, url: str, timeout: float) -> int | None:
        try:
            resp = await asyncio.wait_for(client.get(url, timeout=timeout), timeout)
        except (httpx.HTTPError, asyncio.TimeoutError):
            return None
        return resp.status_code
