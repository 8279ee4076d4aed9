"""Sortie CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from sortie.agent.code_mode import CodeModeBudgets, CodeModeRequest, CodeModeRunner
from sortie.audit_bundle import build_implementation_audit_bundle, upload_audit_bundle
from sortie.blob import BlobStore, HttpBlobStore, LocalBlobStore
from sortie.config import SortieConfig, load_config, read_secret
from sortie.context7 import Context7Client
from sortie.errors import AppError, ErrorCode
from sortie.github_client import GitHubClient
from sortie.llm import ChatClient
from sortie.models import Project, Repo, RunKind
from sortie.pipeline.engine import ImplementationRunEngine
from sortie.registry import Registry
from sortie.sandbox.provider import HttpSandboxProvider
from sortie.sandbox.session import SandboxRunner
from sortie.stream import EventChannel

logger = logging.getLogger("sortie")


# ── Wiring ───────────────────────────────────────────────────────────────────


@dataclass
class Services:
    config: SortieConfig
    registry: Registry
    provider: HttpSandboxProvider
    github: GitHubClient
    chat: ChatClient
    context7: Context7Client | None
    blob: BlobStore
    sandboxes: SandboxRunner


def build_blob_store(config: SortieConfig) -> BlobStore:
    if config.blob.kind == "local":
        return LocalBlobStore(Path(config.blob.root))
    if config.blob.kind == "http":
        if not config.blob.base_url:
            raise AppError(ErrorCode.ENV_INVALID, "blob.base_url is required for http blob storage.")
        return HttpBlobStore(config.blob.base_url, read_secret(config.blob.token_env))
    raise AppError(ErrorCode.ENV_INVALID, f"Unknown blob storage kind: {config.blob.kind!r}.")


@asynccontextmanager
async def open_services(config: SortieConfig) -> AsyncIterator[Services]:
    """Open the registry and start every HTTP client; close them on exit."""
    Path(config.database.path).parent.mkdir(parents=True, exist_ok=True)
    registry = Registry(config.database.path)
    await registry.initialize()

    provider = HttpSandboxProvider(
        api_url=config.sandbox.api_url,
        token=read_secret(config.sandbox.token_env),
        team_id=config.sandbox.team_id,
        timeout=config.sandbox.request_timeout_s,
    )
    github = GitHubClient(token=read_secret(config.github.token_env), api_url=config.github.api_url)
    chat = ChatClient(
        base_url=config.ai_gateway.base_url,
        api_key=read_secret(config.ai_gateway.api_key_env),
        model=config.ai_gateway.chat_model,
        timeout=config.ai_gateway.request_timeout_s,
    )
    context7 = None
    if config.context7.enabled:
        context7 = Context7Client(
            base_url=config.context7.base_url,
            api_key=read_secret(config.context7.api_key_env),
            timeout=config.context7.timeout_s,
            max_response_bytes=config.budgets.max_context7_response_bytes,
        )

    clients = [c for c in (provider, github, chat, context7) if c is not None]
    try:
        for client in clients:
            await client.start()
        blob = build_blob_store(config)
        yield Services(
            config=config,
            registry=registry,
            provider=provider,
            github=github,
            chat=chat,
            context7=context7,
            blob=blob,
            sandboxes=SandboxRunner(
                provider=provider,
                jobs=registry.jobs,
                blob=blob,
                workspace_root=config.sandbox.workspace_root,
                transcript_limits=config.transcript,
            ),
        )
    finally:
        for client in clients:
            await client.close()
        await registry.close()


async def _stream_events(work: Callable[[EventChannel], Awaitable[object]]) -> object:
    """Run ``work`` while printing each event it emits as a JSON line."""
    channel = EventChannel()

    async def printer() -> None:
        async for event in channel:
            print(event.model_dump_json(), flush=True)

    printer_task = asyncio.create_task(printer())
    try:
        return await work(channel)
    finally:
        await channel.close()
        await printer_task


# ── Commands ─────────────────────────────────────────────────────────────────


async def _init_db(config: SortieConfig) -> None:
    Path(config.database.path).parent.mkdir(parents=True, exist_ok=True)
    registry = Registry(config.database.path)
    await registry.initialize()
    await registry.close()
    print(f"Initialized database at {config.database.path}")


async def _create_run(config: SortieConfig, args) -> None:
    registry = Registry(config.database.path)
    await registry.initialize()
    try:
        project = await registry.projects.upsert_project(
            Project(id=args.project_id, name=args.name or args.project_id, slug=args.slug or args.project_id)
        )
        if args.owner and args.repo:
            await registry.projects.ensure_repo(
                Repo(
                    id=f"{project.id}:{args.owner}/{args.repo}",
                    project_id=project.id,
                    owner=args.owner,
                    name=args.repo,
                    clone_url=f"https://github.com/{args.owner}/{args.repo}.git",
                    html_url=f"https://github.com/{args.owner}/{args.repo}",
                    default_branch=args.default_branch,
                )
            )
        run = await registry.runs.create_run(project_id=project.id, kind=RunKind(args.kind))
    finally:
        await registry.close()
    print(run.id)


async def _run(config: SortieConfig, run_id: str) -> None:
    async with open_services(config) as svc:
        engine = ImplementationRunEngine(
            config=config,
            runs=svc.registry.runs,
            projects=svc.registry.projects,
            sandboxes=svc.sandboxes,
            github=svc.github,
            chat=svc.chat,
            context7=svc.context7,
        )
        await _stream_events(lambda sink: engine.run(run_id, sink))


async def _code_mode(config: SortieConfig, args) -> None:
    async with open_services(config) as svc:
        run = await svc.registry.runs.get_run(args.run)
        if run is None:
            run = await svc.registry.runs.create_run(
                project_id=args.project, kind=RunKind.CODE_MODE, run_id=args.run
            )
        runner = CodeModeRunner(
            config=config,
            sandboxes=svc.sandboxes,
            chat=svc.chat,
            projects=svc.registry.projects,
            github=svc.github,
        )
        request = CodeModeRequest(
            project_id=args.project,
            run_id=run.id,
            prompt=args.prompt,
            network_access=args.network_access,
            budgets=CodeModeBudgets(max_steps=args.max_steps, timeout_ms=args.timeout_ms),
        )
        await _stream_events(lambda sink: runner.run(request, sink))


async def _export(config: SortieConfig, args) -> None:
    registry = Registry(config.database.path)
    await registry.initialize(migrate=False)
    try:
        bundle = await build_implementation_audit_bundle(registry, args.run_id)
    finally:
        await registry.close()

    output: Path = args.output or Path(f"{args.run_id}.zip")
    output.write_bytes(bundle.data)
    print(f"Wrote {output} ({len(bundle.data)} bytes)")
    if args.upload:
        ref = await upload_audit_bundle(bundle, build_blob_store(config))
        print(f"Uploaded to {ref.url}")


# ── Entry point ──────────────────────────────────────────────────────────────


def main():
    parser = argparse.ArgumentParser(
        prog="sortie",
        description="Sortie: sandboxed code-mode agents and implementation runs",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("sortie.yaml"),
        help="Path to sortie.yaml (default: ./sortie.yaml)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    subparsers = parser.add_subparsers(dest="command")

    # sortie init-db
    subparsers.add_parser("init-db", help="Create the database tables")

    # sortie create-run
    create_parser = subparsers.add_parser("create-run", help="Register a project/repo and create a run")
    create_parser.add_argument("--project-id", required=True)
    create_parser.add_argument("--name", help="Project name (default: project id)")
    create_parser.add_argument("--slug", help="Project slug (default: project id)")
    create_parser.add_argument("--owner", help="GitHub repo owner")
    create_parser.add_argument("--repo", help="GitHub repo name")
    create_parser.add_argument("--default-branch", default="main")
    create_parser.add_argument(
        "--kind", default=RunKind.IMPLEMENTATION.value, choices=[k.value for k in RunKind]
    )

    # sortie run
    run_parser = subparsers.add_parser("run", help="Execute (or resume) an implementation run")
    run_parser.add_argument("run_id")

    # sortie code-mode
    code_parser = subparsers.add_parser("code-mode", help="Run the code-mode agent once")
    code_parser.add_argument("--project", required=True, help="Project id")
    code_parser.add_argument("--run", required=True, help="Run id (created if missing)")
    code_parser.add_argument("--prompt", required=True)
    code_parser.add_argument("--network-access", default="restricted", choices=["none", "restricted"])
    code_parser.add_argument("--max-steps", type=int)
    code_parser.add_argument("--timeout-ms", type=int)

    # sortie export
    export_parser = subparsers.add_parser("export", help="Export a run's audit bundle")
    export_parser.add_argument("run_id")
    export_parser.add_argument("--output", type=Path, help="Zip path (default: <run_id>.zip)")
    export_parser.add_argument("--upload", action="store_true", help="Also upload to blob storage")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )

    config = load_config(args.config)
    commands = {
        "init-db": lambda: _init_db(config),
        "create-run": lambda: _create_run(config, args),
        "run": lambda: _run(config, args.run_id),
        "code-mode": lambda: _code_mode(config, args),
        "export": lambda: _export(config, args),
    }
    try:
        asyncio.run(commands[args.command]())
    except AppError as e:
        print(f"Error [{e.code.value}]: {e.message}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
