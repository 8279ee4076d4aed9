"""Contract tests for HttpSandboxProvider, verifying HTTP request shapes."""

from __future__ import annotations

import base64
import json

import httpx
import pytest
import respx

from sortie.errors import AppError, ErrorCode
from sortie.sandbox.network_policy import NoNetworkPolicy, select_policy
from sortie.sandbox.provider import GitSource, HttpSandboxProvider, SandboxFile
from sortie.sandbox.transcript import LogLine

API = "https://sandbox.test"


@pytest.fixture
async def sandbox_api():
    provider = HttpSandboxProvider(api_url=API + "/", token="sbx-token", team_id="team_1")
    await provider.start()
    yield provider
    await provider.close()


class TestCreate:
    @respx.mock
    async def test_create_with_source(self, sandbox_api):
        route = respx.post(f"{API}/v1/sandboxes").mock(
            return_value=httpx.Response(200, json={"sandbox": {"id": "sbx_9", "status": "pending"}})
        )
        handle = await sandbox_api.create(
            runtime="python3.13",
            vcpus=2,
            timeout_ms=60_000,
            network_policy=select_policy("python", "restricted"),
            source=GitSource(
                url="https://github.com/acme/widgets.git",
                revision="main",
                username="x-access-token",
                password="ghp_secret",
            ),
        )
        assert handle.sandbox_id == "sbx_9"
        assert handle.status == "pending"

        request = route.calls.last.request
        assert request.headers["Authorization"] == "Bearer sbx-token"
        assert request.url.params["teamId"] == "team_1"
        body = json.loads(request.content)
        assert body["runtime"] == "python3.13"
        assert body["resources"] == {"vcpus": 2}
        assert body["timeout"] == 60_000
        assert body["networkPolicy"]["type"] == "restricted"
        assert "pypi.org" in body["networkPolicy"]["allowedDomains"]
        assert body["source"] == {
            "type": "git",
            "url": "https://github.com/acme/widgets.git",
            "revision": "main",
            "depth": 1,
            "username": "x-access-token",
            "password": "ghp_secret",
        }

    @respx.mock
    async def test_create_without_source(self, sandbox_api):
        route = respx.post(f"{API}/v1/sandboxes").mock(
            return_value=httpx.Response(200, json={"sandbox": {"id": "sbx_1"}})
        )
        await sandbox_api.create(runtime="node24", vcpus=1, timeout_ms=1000, network_policy=NoNetworkPolicy())
        body = json.loads(route.calls.last.request.content)
        assert "source" not in body
        assert body["networkPolicy"] == {"type": "none"}

    def test_source_repr_hides_password(self):
        assert "ghp_secret" not in repr(GitSource(url="u", password="ghp_secret"))

    @respx.mock
    async def test_create_failure(self, sandbox_api):
        respx.post(f"{API}/v1/sandboxes").mock(return_value=httpx.Response(500))
        with pytest.raises(AppError) as exc:
            await sandbox_api.create(runtime="node24", vcpus=1, timeout_ms=1, network_policy=NoNetworkPolicy())
        assert exc.value.code == ErrorCode.BAD_GATEWAY
        assert exc.value.message == "Sandbox API failed to create sandbox (HTTP 500)."

    async def test_missing_token(self):
        provider = HttpSandboxProvider(api_url=API, token=None)
        await provider.start()
        try:
            with pytest.raises(AppError) as exc:
                await provider.get("sbx_1")
            assert exc.value.code == ErrorCode.ENV_INVALID
        finally:
            await provider.close()


class TestCommands:
    @respx.mock
    async def test_run_stream_and_wait(self, sandbox_api):
        run_route = respx.post(f"{API}/v1/sandboxes/sbx_1/cmd").mock(
            return_value=httpx.Response(200, json={"command": {"id": "cmd_1"}})
        )
        lines = "\n".join(
            [
                json.dumps({"stream": "stdout", "data": "hello\n"}),
                "not json",
                "",
                json.dumps({"stream": "stderr", "data": "warn\n"}),
            ]
        )
        respx.get(f"{API}/v1/sandboxes/sbx_1/cmd/cmd_1/logs").mock(return_value=httpx.Response(200, text=lines))
        wait_route = respx.get(f"{API}/v1/sandboxes/sbx_1/cmd/cmd_1").mock(
            return_value=httpx.Response(200, json={"command": {"id": "cmd_1", "exitCode": 3}})
        )

        handle = await sandbox_api.run_command("sbx_1", "npm", ["test"], cwd="/vercel/sandbox", env={"CI": "1"})
        logs = [line async for line in handle.logs()]
        exit_code = await handle.wait()

        assert json.loads(run_route.calls.last.request.content) == {
            "command": "npm",
            "args": ["test"],
            "env": {"CI": "1"},
            "cwd": "/vercel/sandbox",
        }
        assert logs == [LogLine(stream="stdout", data="hello\n"), LogLine(stream="stderr", data="warn\n")]
        assert exit_code == 3
        assert wait_route.calls.last.request.url.params["wait"] == "true"

    @respx.mock
    async def test_wait_without_exit_code(self, sandbox_api):
        respx.post(f"{API}/v1/sandboxes/sbx_1/cmd").mock(
            return_value=httpx.Response(200, json={"command": {"id": "cmd_1"}})
        )
        respx.get(f"{API}/v1/sandboxes/sbx_1/cmd/cmd_1").mock(
            return_value=httpx.Response(200, json={"command": {"id": "cmd_1"}})
        )
        handle = await sandbox_api.run_command("sbx_1", "ls", [])
        with pytest.raises(AppError) as exc:
            await handle.wait()
        assert exc.value.code == ErrorCode.BAD_GATEWAY

    @respx.mock
    async def test_timeout(self, sandbox_api):
        respx.post(f"{API}/v1/sandboxes/sbx_1/cmd").mock(side_effect=httpx.ReadTimeout("slow"))
        with pytest.raises(AppError) as exc:
            await sandbox_api.run_command("sbx_1", "ls", [])
        assert exc.value.code == ErrorCode.UPSTREAM_TIMEOUT


class TestLifecycle:
    @respx.mock
    async def test_write_files_base64(self, sandbox_api):
        route = respx.post(f"{API}/v1/sandboxes/sbx_1/fs/write").mock(return_value=httpx.Response(200, json={}))
        await sandbox_api.write_files("sbx_1", [SandboxFile(path="/vercel/sandbox/a.txt", content=b"\x00hi")])
        body = json.loads(route.calls.last.request.content)
        assert body == {"files": [{"path": "/vercel/sandbox/a.txt", "content": base64.b64encode(b"\x00hi").decode()}]}

    @respx.mock
    async def test_get_not_found(self, sandbox_api):
        respx.get(f"{API}/v1/sandboxes/sbx_gone").mock(return_value=httpx.Response(404))
        with pytest.raises(AppError) as exc:
            await sandbox_api.get("sbx_gone")
        assert exc.value.code == ErrorCode.NOT_FOUND

    @respx.mock
    async def test_stop(self, sandbox_api):
        route = respx.post(f"{API}/v1/sandboxes/sbx_1/stop").mock(return_value=httpx.Response(200, json={}))
        await sandbox_api.stop("sbx_1")
        assert route.called


def _mock_run_command() -> None:
    respx.post(f"{API}/v1/sandboxes/sbx_1/cmd").mock(
        return_value=httpx.Response(200, json={"command": {"id": "cmd_1"}})
    )


class TestTransportFailures:
    @respx.mock
    async def test_log_stream_timeout(self, sandbox_api):
        _mock_run_command()
        respx.get(f"{API}/v1/sandboxes/sbx_1/cmd/cmd_1/logs").mock(side_effect=httpx.ReadTimeout("slow"))
        handle = await sandbox_api.run_command("sbx_1", "npm", ["test"])
        with pytest.raises(AppError) as exc:
            async for _ in handle.logs():
                pass
        assert exc.value.code == ErrorCode.UPSTREAM_TIMEOUT
        assert exc.value.message == "Sandbox API timed out (stream command logs)."

    @respx.mock
    async def test_log_stream_dropped(self, sandbox_api):
        _mock_run_command()
        respx.get(f"{API}/v1/sandboxes/sbx_1/cmd/cmd_1/logs").mock(side_effect=httpx.RemoteProtocolError("eof"))
        handle = await sandbox_api.run_command("sbx_1", "npm", ["test"])
        with pytest.raises(AppError) as exc:
            async for _ in handle.logs():
                pass
        assert exc.value.code == ErrorCode.BAD_GATEWAY

    @respx.mock
    async def test_log_stream_http_error(self, sandbox_api):
        _mock_run_command()
        respx.get(f"{API}/v1/sandboxes/sbx_1/cmd/cmd_1/logs").mock(return_value=httpx.Response(502))
        handle = await sandbox_api.run_command("sbx_1", "npm", ["test"])
        with pytest.raises(AppError) as exc:
            async for _ in handle.logs():
                pass
        assert exc.value.code == ErrorCode.BAD_GATEWAY
        assert exc.value.message == "Sandbox API failed to stream command logs (HTTP 502)."


class TestMalformedResponses:
    @respx.mock
    async def test_create_without_id(self, sandbox_api):
        respx.post(f"{API}/v1/sandboxes").mock(return_value=httpx.Response(200, json={"sandbox": {}}))
        with pytest.raises(AppError) as exc:
            await sandbox_api.create(runtime="node24", vcpus=1, timeout_ms=1, network_policy=NoNetworkPolicy())
        assert exc.value.code == ErrorCode.BAD_GATEWAY

    @respx.mock
    async def test_run_command_without_command(self, sandbox_api):
        respx.post(f"{API}/v1/sandboxes/sbx_1/cmd").mock(return_value=httpx.Response(200, json={}))
        with pytest.raises(AppError) as exc:
            await sandbox_api.run_command("sbx_1", "ls", [])
        assert exc.value.code == ErrorCode.BAD_GATEWAY
        assert exc.value.message == "Sandbox API returned a malformed response (run command)."

    @respx.mock
    async def test_non_json_body(self, sandbox_api):
        respx.get(f"{API}/v1/sandboxes/sbx_1").mock(return_value=httpx.Response(200, text="<html>"))
        with pytest.raises(AppError) as exc:
            await sandbox_api.get("sbx_1")
        assert exc.value.code == ErrorCode.BAD_GATEWAY
