"""Tests for the deployment pipeline and the shell scripts it sends."""

import asyncio

import httpx
import pytest

from conftest import FakeModel, FakeVM, tool_call
from specpilot.agent.code_generator import CodeGeneratorAgent
from specpilot.agent.model import ModelResponse
from specpilot.config import DeploySettings
from specpilot.deploy.pipeline import DeploymentPipeline, is_ready
from specpilot.deploy.scripts import (
    build_launch_command,
    build_proxy_command,
    build_reset_command,
    build_upload_script,
)
from specpilot.errors import VerificationFailedError
from specpilot.sandbox.vm import ExecResult
from specpilot.vfs import VirtualFileSystem


def _client(status_for_path: dict[str, int] | None = None, default: int = 200) -> httpx.AsyncClient:
    statuses = status_for_path or {}

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(statuses.get(request.url.path, default))

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class Lines:
    def __init__(self) -> None:
        self.lines: list[str] = []

    async def __call__(self, line: str) -> None:
        self.lines.append(line)


class TestUploadScript:
    def test_only_code_files_are_uploaded(self, vfs, fast_settings):
        script, count = build_upload_script(vfs, fast_settings, "https://vm.test")
        assert count == 3
        assert "/vercel/sandbox/app/package.json" in script
        assert "index.md" not in script

    def test_env_placeholder_replaced_with_public_backend_url(self, vfs, fast_settings):
        script, _ = build_upload_script(vfs, fast_settings, "https://vm.test/")
        assert "VITE_CONVEX_URL=https://vm.test/api" in script
        assert "127.0.0.1:3210" not in script

    def test_placeholder_kept_outside_env_files(self, fast_settings):
        vfs = VirtualFileSystem.from_template({"code/src/api.ts": "http://127.0.0.1:3210"})
        script, _ = build_upload_script(vfs, fast_settings, "https://vm.test")
        assert "http://127.0.0.1:3210" in script

    def test_heredoc_delimiter_avoids_content_collision(self, fast_settings):
        vfs = VirtualFileSystem.from_template({"code/notes.txt": "a\nEOF\nb"})
        script, _ = build_upload_script(vfs, fast_settings, "https://vm.test")
        assert "<< 'EOF_1'\na\nEOF\nb\nEOF_1\n" in script

    def test_nested_directories_created(self, vfs, fast_settings):
        script, _ = build_upload_script(vfs, fast_settings, "https://vm.test")
        assert "mkdir -p /vercel/sandbox/app/src" in script

    def test_trailing_newline_not_doubled(self, fast_settings):
        vfs = VirtualFileSystem.from_template({"code/a.txt": "a\n"})
        script, _ = build_upload_script(vfs, fast_settings, "https://vm.test")
        assert "<< 'EOF'\na\nEOF\n" in script
        assert "truncate" not in script

    def test_missing_trailing_newline_is_trimmed_after_write(self, fast_settings):
        vfs = VirtualFileSystem.from_template({"code/a.txt": "a"})
        script, _ = build_upload_script(vfs, fast_settings, "https://vm.test")
        assert "<< 'EOF'\na\nEOF\ntruncate -s -1 /vercel/sandbox/app/a.txt\n" in script

    def test_empty_file_written_without_heredoc(self, fast_settings):
        vfs = VirtualFileSystem.from_template({"code/empty.txt": ""})
        script, count = build_upload_script(vfs, fast_settings, "https://vm.test")
        assert count == 1
        assert ": > /vercel/sandbox/app/empty.txt" in script
        assert "<<" not in script


class TestCommands:
    def test_reset_keeps_node_modules(self, fast_settings):
        cmd = build_reset_command(fast_settings)
        assert "! -name node_modules" in cmd

    def test_reset_pkill_pattern_does_not_match_its_own_shell(self, fast_settings):
        cmd = build_reset_command(fast_settings)
        # The reset runs as `bash -lc <cmd>`, so a literal pattern would match
        # that shell's argv and kill it before the wipe runs.
        assert "pkill -f '[p]npm dev'" in cmd
        assert "pnpm dev" not in cmd

    def test_default_app_dir_is_writable_sandbox_path(self):
        assert DeploySettings.model_fields["app_dir"].default.startswith("/vercel/sandbox/")

    def test_proxy_routes(self, fast_settings):
        cmd = build_proxy_command(fast_settings)
        assert "listen 3000" in cmd
        assert "location /api/" in cmd
        assert "proxy_pass http://127.0.0.1:3210/;" in cmd
        assert "proxy_pass http://127.0.0.1:5173;" in cmd
        assert "Upgrade $http_upgrade" in cmd

    def test_launch_in_detached_screen(self, fast_settings):
        cmd = build_launch_command(fast_settings)
        assert "screen -dmS app" in cmd
        assert "pnpm dev" in cmd


class TestReadiness:
    @pytest.mark.parametrize(
        "api,root,expected",
        [
            (200, None, True),
            (None, 302, True),
            (404, 200, True),
            (404, 404, False),
            (None, None, False),
            (500, 502, False),
            (404, None, False),
            (302, 404, True),
        ],
    )
    def test_is_ready(self, api, root, expected):
        assert is_ready(api, root) is expected

    @pytest.mark.asyncio
    async def test_ready_immediately(self, fake_vm, fast_settings):
        pipeline = DeploymentPipeline(fake_vm, settings=fast_settings, http_client=_client())
        assert await pipeline.wait_until_ready("https://vm.test") is True

    @pytest.mark.asyncio
    async def test_times_out_within_bound(self, fake_vm, fast_settings):
        pipeline = DeploymentPipeline(
            fake_vm, settings=fast_settings, http_client=_client(default=502)
        )
        loop = asyncio.get_running_loop()
        started = loop.time()

        assert await pipeline.wait_until_ready("https://vm.test") is False

        elapsed = loop.time() - started
        assert elapsed >= fast_settings.health_timeout_seconds
        assert elapsed < fast_settings.health_timeout_seconds + 1.0

    @pytest.mark.asyncio
    async def test_hanging_server_does_not_overrun_deadline(self, fake_vm, fast_settings):
        in_flight = 0
        peak = 0

        async def handler(request: httpx.Request) -> httpx.Response:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            try:
                await asyncio.sleep(10)
            finally:
                in_flight -= 1
            return httpx.Response(200)

        settings = fast_settings.model_copy(update={"health_request_timeout_seconds": 5.0})
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        pipeline = DeploymentPipeline(fake_vm, settings=settings, http_client=client)
        loop = asyncio.get_running_loop()
        started = loop.time()

        assert await pipeline.wait_until_ready("https://vm.test") is False

        elapsed = loop.time() - started
        assert elapsed < settings.health_timeout_seconds + settings.health_interval_seconds + 0.2
        assert peak == 2

    @pytest.mark.asyncio
    async def test_transport_errors_count_as_not_ready(self, fake_vm, fast_settings):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        pipeline = DeploymentPipeline(fake_vm, settings=fast_settings, http_client=client)
        assert await pipeline.wait_until_ready("https://vm.test") is False


class TestVerifyAndRepair:
    def _pipeline(self, vm: FakeVM, settings: DeploySettings, with_codegen: bool = True):
        codegen = None
        if with_codegen:
            codegen = CodeGeneratorAgent(FakeModel([ModelResponse(text="fixed")]))
        return DeploymentPipeline(
            vm, code_generator=codegen, settings=settings, http_client=_client()
        )

    @pytest.mark.asyncio
    async def test_exactly_max_fix_attempts_then_launch(self, fake_vm, fast_settings, vfs):
        fake_vm.results["pnpm run lint"] = ExecResult(stderr="lint error", status_code=1)
        pipeline = self._pipeline(fake_vm, fast_settings)
        emit = Lines()

        url = await pipeline.deploy("vm-1", vfs, emit)

        assert url == fake_vm.url
        assert fake_vm.count("pnpm run lint") == 1 + fast_settings.max_fix_attempts
        fixes = [l for l in emit.lines if l.startswith("Fixing verification errors")]
        assert fixes[-1] == "Fixing verification errors (attempt 5/5)"
        assert len(fixes) == 5
        assert "Verification still failing; launching anyway" in emit.lines
        assert fake_vm.count("screen -dmS") == 1

    @pytest.mark.asyncio
    async def test_strict_mode_raises(self, fake_vm, fast_settings, vfs):
        fake_vm.results["pnpm run lint"] = ExecResult(stderr="lint error", status_code=1)
        settings = fast_settings.model_copy(update={"proceed_on_verification_failure": False})
        pipeline = self._pipeline(fake_vm, settings)

        with pytest.raises(VerificationFailedError) as exc_info:
            await pipeline.deploy("vm-1", vfs, Lines())

        assert exc_info.value.attempts == 5
        assert fake_vm.count("screen -dmS") == 0

    @pytest.mark.asyncio
    async def test_passing_verification_skips_repair(self, fake_vm, fast_settings, vfs):
        pipeline = self._pipeline(fake_vm, fast_settings)
        emit = Lines()

        await pipeline.deploy("vm-1", vfs, emit)

        assert fake_vm.count("pnpm run lint") == 1
        assert "Verification passed" in emit.lines
        assert not any(l.startswith("Fixing") for l in emit.lines)
        assert emit.lines[-1] == f"App is ready at {fake_vm.url}"

    @pytest.mark.asyncio
    async def test_without_code_generator_no_attempts(self, fake_vm, fast_settings, vfs):
        fake_vm.results["pnpm run lint"] = ExecResult(status_code=2)
        pipeline = self._pipeline(fake_vm, fast_settings, with_codegen=False)

        assert await pipeline.verify_and_repair("vm-1", vfs, Lines()) is False
        assert fake_vm.count("pnpm run lint") == 1

    @pytest.mark.asyncio
    async def test_fix_edits_are_reuploaded(self, fake_vm, fast_settings, vfs):
        fake_vm.results["pnpm run lint"] = ExecResult(status_code=1)
        model = FakeModel(
            [
                ModelResponse(
                    tool_calls=[
                        tool_call("c1", "writeFile", '{"path": "code/src/fixed.ts", "content": "ok"}')
                    ]
                ),
                ModelResponse(text="fixed"),
            ]
        )
        pipeline = DeploymentPipeline(
            fake_vm,
            code_generator=CodeGeneratorAgent(model),
            settings=fast_settings.model_copy(update={"max_fix_attempts": 1}),
            http_client=_client(),
        )

        await pipeline.verify_and_repair("vm-1", vfs, Lines())

        assert vfs.read_file("code/src/fixed.ts") == "ok"
        assert fake_vm.count("/vercel/sandbox/app/src/fixed.ts") == 1


class TestPhases:
    @pytest.mark.asyncio
    async def test_deploy_phase_order(self, fake_vm, fast_settings, vfs):
        pipeline = DeploymentPipeline(fake_vm, settings=fast_settings, http_client=_client())

        await pipeline.deploy("vm-1", vfs, Lines())

        order = [
            "! -name node_modules",
            "cat > /vercel/sandbox/app/package.json",
            "nginx -t",
            "pnpm install",
            "pnpm run lint",
            "screen -dmS",
        ]
        positions = [
            next(i for i, (_, cmd) in enumerate(fake_vm.commands) if needle in cmd)
            for needle in order
        ]
        assert positions == sorted(positions)

    @pytest.mark.asyncio
    async def test_only_proxy_setup_runs_as_root(self, fake_vm, fast_settings, vfs):
        pipeline = DeploymentPipeline(fake_vm, settings=fast_settings, http_client=_client())

        await pipeline.deploy("vm-1", vfs, Lines())

        assert len(fake_vm.sudo_commands) == 1
        assert "nginx -t" in fake_vm.sudo_commands[0]
        assert "dnf install -y nginx screen" in fake_vm.sudo_commands[0]
        assert not any("pnpm" in cmd for cmd in fake_vm.sudo_commands)

    @pytest.mark.asyncio
    async def test_upload_failure_reported(self, fake_vm, fast_settings, vfs):
        fake_vm.results["set -e"] = ExecResult(stderr="disk full", status_code=1)
        pipeline = DeploymentPipeline(fake_vm, settings=fast_settings, http_client=_client())
        emit = Lines()

        await pipeline.reset_and_upload("vm-1", vfs, emit)

        assert any(l.startswith("Upload failed (exit 1)") for l in emit.lines)

    @pytest.mark.asyncio
    async def test_warm_up_never_repairs(self, fake_vm, fast_settings, vfs):
        fake_vm.results["pnpm run lint"] = ExecResult(status_code=1)
        model = FakeModel([ModelResponse(text="fixed")])
        pipeline = DeploymentPipeline(
            fake_vm,
            code_generator=CodeGeneratorAgent(model),
            settings=fast_settings,
            http_client=_client(),
        )

        await pipeline.warm_up("vm-1", vfs)

        assert model.calls == []
        assert fake_vm.count("screen -dmS") == 1
