"""Implementation run steps.

Each step is a plain async function taking a ``StepContext`` plus the typed
outputs of earlier steps, and returning a pydantic output model. Steps are
the only place side effects happen; ``pipeline.engine`` sequences them and
persists their outputs.

Sandbox steps wrap their work in ``session.guard()`` so any failure
finalizes the job as failed and stops the sandbox before the error
propagates.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field

from sortie.agent.code_mode import AttachTarget, CodeModeBudgets, CodeModeRequest, CodeModeRunner
from sortie.config import SortieConfig, read_secret
from sortie.context7 import Context7Client
from sortie.errors import AppError, ErrorCode
from sortie.github_client import GitHubClient
from sortie.llm import ChatClient
from sortie.models import JobStatus, RepoKind
from sortie.pipeline.planning import ImplementationPlan, Planner
from sortie.registry import ProjectStore
from sortie.sandbox.allowlist import CommandPolicy
from sortie.sandbox.network_policy import detect_custom_registries, select_policy
from sortie.sandbox.provider import GitSource, SandboxFile
from sortie.sandbox.session import CommandResult, SandboxJobSession, SandboxRunner
from sortie.stream import EventSink, NullSink

logger = logging.getLogger(__name__)

_SHA_LINE = re.compile(r"^[0-9a-f]{7,40}$", re.IGNORECASE)

ASKPASS_SCRIPT = "\n".join(
    [
        "#!/bin/sh",
        'case "$1" in',
        '*Username*) echo "x-access-token" ;;',
        '*Password*) echo "$GITHUB_TOKEN" ;;',
        '*) echo "" ;;',
        "esac",
        "",
    ]
)

# Kept inside .git so `git add -A` never stages them.
ASKPASS_PATH = ".git/sortie-askpass.sh"
COMMIT_MESSAGE_PATH = ".git/SORTIE_COMMIT_MSG"

_REGISTRY_FILES: dict[str, tuple[str, ...]] = {
    "node": (".npmrc", ".yarnrc.yml"),
    "python": ("pip.conf", "uv.toml", "pyproject.toml"),
}


# ── Context ──────────────────────────────────────────────────────────────────


@dataclass
class StepContext:
    """Collaborators shared by every step of one run."""

    config: SortieConfig
    project_id: str
    run_id: str
    projects: ProjectStore
    sandboxes: SandboxRunner
    github: GitHubClient
    chat: ChatClient
    context7: Context7Client | None = None
    events: EventSink | None = None

    @property
    def provider(self):
        return self.sandboxes.provider

    @property
    def workspace_root(self) -> str:
        return self.sandboxes.workspace_root

    def github_token(self) -> str:
        token = (read_secret(self.config.github.token_env) or "").strip()
        if not token:
            raise AppError(ErrorCode.ENV_INVALID, f"Invalid {self.config.github.token_env}.")
        return token


# ── Step outputs ─────────────────────────────────────────────────────────────


class PreflightResult(BaseModel):
    ai_gateway_base_url: str
    chat_model: str
    context7_enabled: bool


class RepoContext(BaseModel):
    project_id: str
    project_name: str
    project_slug: str
    repo_id: str
    provider: str = "github"
    repo_kind: RepoKind
    owner: str
    name: str
    clone_url: str
    html_url: str
    default_branch: str
    branch_name: str
    custom_registries: list[str] = Field(default_factory=list)


class SandboxJobOutput(BaseModel):
    sandbox_job_id: str
    transcript_blob_ref: str | None = None
    transcript_truncated: bool = False


class CheckoutResult(SandboxJobOutput):
    sandbox_id: str
    repo_path: str
    branch_name: str
    base_branch: str
    install_command: list[str]


class ExecutionResult(BaseModel):
    sandbox_job_id: str
    exit_code: int
    steps: int
    assistant_text: str
    transcript_blob_ref: str | None = None
    transcript_truncated: bool = False


class CommitPushResult(SandboxJobOutput):
    branch_name: str
    commit_sha: str


class VerifyResult(SandboxJobOutput):
    kind: RepoKind
    exit_codes: dict[str, int]
    typecheck_tool: str | None = None


class PullRequestResult(BaseModel):
    number: int
    html_url: str
    title: str
    head_ref: str
    base_ref: str


class StopSandboxResult(BaseModel):
    sandbox_id: str | None = None
    stopped: bool


# ── Helpers ──────────────────────────────────────────────────────────────────


def run_branch_name(slug: str, run_id: str) -> str:
    return f"agent/{slug}/{run_id}"


def extract_commit_sha(stdout: str) -> str | None:
    """Last line of ``stdout`` that looks like a commit sha."""
    for line in reversed(stdout.splitlines()):
        candidate = line.strip()
        if _SHA_LINE.match(candidate):
            return candidate.lower()
    return None


def select_node_install(
    *,
    has_bun: bool,
    has_bun_lock: bool,
    has_pnpm_lock: bool,
    has_package_lock: bool,
) -> list[str]:
    """Pick the dependency install command for a Node repo."""
    if has_bun and has_bun_lock:
        return ["bun", "install", "--frozen-lockfile"]
    if has_pnpm_lock:
        return ["pnpm", "install", "--frozen-lockfile"]
    if has_package_lock:
        return ["npm", "ci"]
    return ["npm", "install"]


def _check(result: CommandResult, message: str) -> None:
    if result.exit_code != 0:
        raise AppError(ErrorCode.BAD_GATEWAY, f"{message} (exit {result.exit_code}).")


async def _finalize_succeeded(session: SandboxJobSession) -> SandboxJobOutput:
    finalized = await session.finalize(exit_code=0, status=JobStatus.SUCCEEDED)
    return SandboxJobOutput(
        sandbox_job_id=finalized.job.id,
        transcript_blob_ref=finalized.job.transcript_blob_ref,
        transcript_truncated=finalized.transcript.truncated,
    )


# ── Steps ────────────────────────────────────────────────────────────────────


async def preflight(ctx: StepContext) -> PreflightResult:
    """Check required credentials before anything is provisioned."""
    ctx.github_token()
    gateway = ctx.config.ai_gateway
    if not (read_secret(gateway.api_key_env) or "").strip():
        raise AppError(ErrorCode.ENV_INVALID, f"Invalid {gateway.api_key_env}.")
    if not gateway.base_url.strip() or not gateway.chat_model.strip():
        raise AppError(ErrorCode.ENV_INVALID, "AI gateway base URL and chat model must be configured.")
    return PreflightResult(
        ai_gateway_base_url=gateway.base_url,
        chat_model=gateway.chat_model,
        context7_enabled=ctx.context7 is not None,
    )


async def repo_context(ctx: StepContext) -> RepoContext:
    project = await ctx.projects.get_project(ctx.project_id)
    if project is None:
        raise AppError(ErrorCode.NOT_FOUND, "Project not found.")
    repo = await ctx.projects.get_primary_repo(ctx.project_id)
    if repo is None:
        raise AppError(
            ErrorCode.CONFLICT,
            "No repository is connected to this project. "
            "Connect a GitHub repository to enable implementation runs.",
        )

    kind = await ctx.github.detect_repo_kind(repo.owner, repo.name, ref=repo.default_branch)

    files: dict[str, str] = {}
    for path in _REGISTRY_FILES[kind]:
        content = await ctx.github.read_text_file(repo.owner, repo.name, path, ref=repo.default_branch)
        if content is not None:
            files[path] = content
    policy = select_policy(kind, "restricted", ctx.config.network_policy)

    return RepoContext(
        project_id=project.id,
        project_name=project.name,
        project_slug=project.slug,
        repo_id=repo.id,
        provider=repo.provider,
        repo_kind=kind,
        owner=repo.owner,
        name=repo.name,
        clone_url=repo.clone_url,
        html_url=repo.html_url,
        default_branch=repo.default_branch,
        branch_name=run_branch_name(project.slug, ctx.run_id),
        custom_registries=detect_custom_registries(files, policy),
    )


async def checkout(ctx: StepContext, repo: RepoContext, *, step_id: str | None = None) -> CheckoutResult:
    """Clone the repo into a fresh sandbox, branch, and install dependencies."""
    token = ctx.github_token()
    sandbox_cfg = ctx.config.sandbox
    metadata: dict[str, Any] = {
        "baseBranch": repo.default_branch,
        "branchName": repo.branch_name,
        "repoKind": repo.repo_kind,
    }
    if repo.custom_registries:
        metadata["customRegistries"] = repo.custom_registries

    session = await ctx.sandboxes.start(
        job_type="implementation_checkout",
        project_id=ctx.project_id,
        run_id=ctx.run_id,
        step_id=step_id,
        network_policy=select_policy(repo.repo_kind, "restricted", ctx.config.network_policy),
        runtime=sandbox_cfg.python_runtime if repo.repo_kind == "python" else sandbox_cfg.node_runtime,
        timeout_ms=sandbox_cfg.checkout_timeout_ms,
        vcpus=sandbox_cfg.vcpus,
        source=GitSource(
            url=repo.clone_url,
            revision=repo.default_branch,
            depth=1,
            username="x-access-token",
            password=token,
        ),
        metadata=metadata,
        stop_on_finalize=False,
    )
    root = session.workspace_root
    policy = CommandPolicy.IMPLEMENTATION_RUN

    async with session.guard():
        result = await session.run_command(
            "git", ["checkout", "-b", repo.branch_name], cwd=root, policy=policy, extra_secrets=[token]
        )
        _check(result, "Failed to create run branch")

        if repo.repo_kind == "python":
            lock = await session.run_command("test", ["-f", f"{root}/uv.lock"], cwd=root, policy=policy)
            install = ["uv", "sync", "--frozen"] if lock.exit_code == 0 else ["uv", "sync"]
            result = await session.run_command(install[0], install[1:], cwd=root, policy=policy)
            _check(result, "uv sync failed")
        else:
            # Every lockfile check settles before the guard can finalize the session.
            checks = await asyncio.gather(
                session.run_command("test", ["-f", f"{root}/bun.lockb"], cwd=root, policy=policy),
                session.run_command("test", ["-f", f"{root}/bun.lock"], cwd=root, policy=policy),
                session.run_command("test", ["-f", f"{root}/pnpm-lock.yaml"], cwd=root, policy=policy),
                session.run_command("test", ["-f", f"{root}/package-lock.json"], cwd=root, policy=policy),
                session.run_command("which", ["bun"], cwd=root, policy=policy),
                return_exceptions=True,
            )
            for check in checks:
                if isinstance(check, BaseException):
                    raise check
            bun_lockb, bun_lock, pnpm_lock, package_lock, which_bun = checks
            install = select_node_install(
                has_bun=which_bun.exit_code == 0,
                has_bun_lock=bun_lockb.exit_code == 0 or bun_lock.exit_code == 0,
                has_pnpm_lock=pnpm_lock.exit_code == 0,
                has_package_lock=package_lock.exit_code == 0,
            )
            result = await session.run_command(install[0], install[1:], cwd=root, policy=policy)
            _check(result, "Dependency install failed")

        logger.info("Checked out %s/%s@%s in %s", repo.owner, repo.name, repo.branch_name, session.sandbox_id)
        job = await _finalize_succeeded(session)

    return CheckoutResult(
        **job.model_dump(),
        sandbox_id=session.sandbox_id,
        repo_path=root,
        branch_name=repo.branch_name,
        base_branch=repo.default_branch,
        install_command=install,
    )


async def planning(ctx: StepContext, repo: RepoContext) -> ImplementationPlan:
    budgets = ctx.config.budgets
    planner = Planner(
        ctx.chat,
        context7=ctx.context7,
        max_steps=budgets.planning_max_steps,
        max_context7_calls=budgets.max_context7_calls_per_turn,
    )
    return await planner.plan(
        project_name=repo.project_name,
        project_slug=repo.project_slug,
        run_id=ctx.run_id,
        repo_owner=repo.owner,
        repo_name=repo.name,
        repo_kind=repo.repo_kind,
    )


def build_execution_prompt(repo: RepoContext, plan: ImplementationPlan) -> str:
    return "\n".join(
        [
            f"Implement the following plan in {repo.owner}/{repo.name} ({repo.repo_kind}).",
            f"The repository is checked out on branch {repo.branch_name}.",
            "Edit files in the workspace; do not commit or push, that happens after you finish.",
            "",
            plan.plan_markdown,
        ]
    )


async def execution(
    ctx: StepContext,
    repo: RepoContext,
    checkout_result: CheckoutResult,
    plan: ImplementationPlan,
    *,
    step_id: str | None = None,
) -> ExecutionResult:
    """Run the code-mode agent against the checked-out sandbox."""
    runner = CodeModeRunner(
        config=ctx.config,
        sandboxes=ctx.sandboxes,
        chat=ctx.chat,
        projects=ctx.projects,
        github=ctx.github,
    )
    request = CodeModeRequest(
        project_id=ctx.project_id,
        run_id=ctx.run_id,
        prompt=build_execution_prompt(repo, plan),
        network_access="restricted",
        budgets=CodeModeBudgets(),
    )
    result = await runner.run(
        request,
        ctx.events or NullSink(),
        attach=AttachTarget(
            sandbox_id=checkout_result.sandbox_id,
            job_type="implementation_execution",
            step_id=step_id,
            metadata={"branchName": checkout_result.branch_name},
        ),
    )
    return ExecutionResult(
        sandbox_job_id=result.job_id,
        exit_code=result.exit_code,
        steps=result.steps,
        assistant_text=result.assistant_text,
        transcript_blob_ref=result.transcript_blob_ref,
        transcript_truncated=result.transcript_truncated,
    )


async def commit_push(
    ctx: StepContext,
    checkout_result: CheckoutResult,
    plan: ImplementationPlan,
    *,
    step_id: str | None = None,
) -> CommitPushResult:
    """Commit the working tree (plus the plan file) and push the run branch."""
    token = ctx.github_token()
    author = ctx.config.github
    branch = checkout_result.branch_name
    repo_path = checkout_result.repo_path

    session = await ctx.sandboxes.attach(
        sandbox_id=checkout_result.sandbox_id,
        job_type="implementation_patch",
        project_id=ctx.project_id,
        run_id=ctx.run_id,
        step_id=step_id,
        metadata={"branchName": branch},
        stop_on_finalize=False,
    )
    policy = CommandPolicy.IMPLEMENTATION_RUN
    secrets = [token]
    askpass = f"{repo_path}/{ASKPASS_PATH}"

    async def git(*args: str, env: dict[str, str] | None = None) -> CommandResult:
        return await session.run_command(
            "git", ["-C", repo_path, *args], cwd=repo_path, policy=policy, env=env, extra_secrets=secrets
        )

    async with session.guard():
        await session.write_files(
            [
                SandboxFile(path=askpass, content=ASKPASS_SCRIPT.encode("utf-8")),
                SandboxFile(path=f"{repo_path}/{COMMIT_MESSAGE_PATH}", content=plan.commit_message.encode("utf-8")),
                SandboxFile(
                    path=f"{repo_path}/implementation-run-{ctx.run_id}.md",
                    content=plan.plan_markdown.encode("utf-8"),
                ),
            ]
        )
        _check(
            await session.run_command("chmod", ["700", askpass], cwd=repo_path, policy=policy),
            "Failed to chmod askpass script",
        )

        _check(await git("add", "-A", "--", ".", f":(exclude){ctx.config.compaction.sandbox_dir}"), "git add failed")
        _check(await git("config", "user.name", author.commit_author_name), "Failed to set git user.name")
        _check(await git("config", "user.email", author.commit_author_email), "Failed to set git user.email")
        _check(
            await git("commit", "--no-gpg-sign", "-F", f"{repo_path}/{COMMIT_MESSAGE_PATH}"),
            "git commit failed",
        )

        rev = await git("rev-parse", "HEAD")
        _check(rev, "Failed to resolve commit SHA")
        commit_sha = extract_commit_sha(rev.transcript.stdout)
        if commit_sha is None:
            raise AppError(ErrorCode.BAD_GATEWAY, "Missing commit SHA output.")

        push = await git(
            "push",
            "--set-upstream",
            "origin",
            branch,
            env={"GIT_ASKPASS": askpass, "GIT_TERMINAL_PROMPT": "0", "GITHUB_TOKEN": token},
        )
        _check(push, "git push failed")

        logger.info("Pushed %s (%s)", branch, commit_sha[:12])
        job = await _finalize_succeeded(session)

    return CommitPushResult(**job.model_dump(), branch_name=branch, commit_sha=commit_sha)


async def _verify_python(session: SandboxJobSession, cwd: str) -> tuple[dict[str, int], str]:
    policy = CommandPolicy.IMPLEMENTATION_RUN

    async def uv_run(*args: str) -> CommandResult:
        return await session.run_command("uv", ["run", *args], cwd=cwd, policy=policy)

    ruff_version = await uv_run("ruff", "--version")
    if ruff_version.exit_code != 0:
        raise AppError(
            ErrorCode.BAD_GATEWAY,
            "Python repo is missing ruff. Add it to the project and run via `uv run ruff`.",
        )
    lint = await uv_run("ruff", "check", ".")
    _check(lint, "ruff failed")

    if (await uv_run("pyright", "--version")).exit_code == 0:
        tool = "pyright"
        typecheck = await uv_run("pyright")
    else:
        if (await uv_run("mypy", "--version")).exit_code != 0:
            raise AppError(
                ErrorCode.BAD_GATEWAY,
                "Python repo is missing a type checker (pyright or mypy). Add one and run via `uv run`.",
            )
        tool = "mypy"
        typecheck = await uv_run("mypy", ".")
    _check(typecheck, f"{tool} failed")

    if (await uv_run("pytest", "--version")).exit_code != 0:
        raise AppError(
            ErrorCode.BAD_GATEWAY,
            "Python repo is missing pytest. Add it to the project and run via `uv run pytest`.",
        )
    tests = await uv_run("pytest")
    _check(tests, "pytest failed")

    return {"lint": lint.exit_code, "typecheck": typecheck.exit_code, "test": tests.exit_code}, tool


async def select_node_runner(session: SandboxJobSession, repo_path: str) -> str:
    policy = CommandPolicy.IMPLEMENTATION_RUN
    if (await session.run_command("which", ["bun"], cwd=repo_path, policy=policy)).exit_code == 0:
        return "bun"
    pnpm_lock = await session.run_command("test", ["-f", f"{repo_path}/pnpm-lock.yaml"], cwd=repo_path, policy=policy)
    if pnpm_lock.exit_code == 0:
        return "pnpm"
    return "npm"


async def _verify_node(session: SandboxJobSession, cwd: str) -> dict[str, int]:
    runner = await select_node_runner(session, cwd)
    exit_codes: dict[str, int] = {}
    for script in ("lint", "typecheck", "test", "build"):
        result = await session.run_command(
            runner, ["run", script], cwd=cwd, policy=CommandPolicy.IMPLEMENTATION_RUN
        )
        _check(result, f"{script} failed")
        exit_codes[script] = result.exit_code
    return exit_codes


async def verify(
    ctx: StepContext,
    repo: RepoContext,
    checkout_result: CheckoutResult,
    *,
    step_id: str | None = None,
) -> VerifyResult:
    """Run lint, typecheck and tests. The sandbox is stopped when this step ends."""
    session = await ctx.sandboxes.attach(
        sandbox_id=checkout_result.sandbox_id,
        job_type="implementation_verify",
        project_id=ctx.project_id,
        run_id=ctx.run_id,
        step_id=step_id,
        metadata={"repoKind": repo.repo_kind},
        stop_on_finalize=True,
    )
    tool: str | None = None
    async with session.guard():
        if repo.repo_kind == "python":
            exit_codes, tool = await _verify_python(session, checkout_result.repo_path)
        else:
            exit_codes = await _verify_node(session, checkout_result.repo_path)
        job = await _finalize_succeeded(session)

    return VerifyResult(**job.model_dump(), kind=repo.repo_kind, exit_codes=exit_codes, typecheck_tool=tool)


async def pull_request(
    ctx: StepContext,
    repo: RepoContext,
    plan: ImplementationPlan,
    commit: CommitPushResult,
) -> PullRequestResult:
    pr = await ctx.github.create_or_get_pull_request(
        owner=repo.owner,
        repo=repo.name,
        head=commit.branch_name,
        base=repo.default_branch,
        title=plan.pr_title,
        body=plan.pr_body,
        draft=True,
    )
    return PullRequestResult(
        number=pr.number,
        html_url=pr.html_url,
        title=pr.title,
        head_ref=pr.head_ref,
        base_ref=pr.base_ref,
    )


async def stop_sandbox(ctx: StepContext, sandbox_id: str | None) -> StopSandboxResult:
    """Best-effort stop. Never raises for lookup or stop failures."""
    if not sandbox_id:
        return StopSandboxResult(sandbox_id=None, stopped=False)
    try:
        await ctx.provider.get(sandbox_id)
        await ctx.provider.stop(sandbox_id)
    except Exception:
        logger.warning("Failed to stop sandbox %s", sandbox_id, exc_info=True)
        return StopSandboxResult(sandbox_id=sandbox_id, stopped=False)
    return StopSandboxResult(sandbox_id=sandbox_id, stopped=True)
