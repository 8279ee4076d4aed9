"""Implementation planning: one structured LLM call with optional doc lookup.

The planner asks the model for a minimal plan (commit message, plan
markdown, PR title/body). When Context7 is configured the model may look up
library docs first; those lookups are capped per planning call and an
over-budget call is answered with a ``conflict`` tool error instead of
aborting the plan.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from sortie.agent.tools import tool_error
from sortie.context7 import Context7Budget, Context7Client, QueryDocsParams, ResolveLibraryParams
from sortie.errors import AppError, ErrorCode
from sortie.llm import ChatClient, ToolCall, function_tool, json_schema_format, parse_json_output

logger = logging.getLogger(__name__)

PLANNING_TEMPERATURE = 0.2

RESOLVE_TOOL = "context7-resolve-library-id"
QUERY_TOOL = "context7-query-docs"

PLANNER_INSTRUCTIONS = "\n".join(
    [
        "You are generating a minimal implementation-run plan for a GitOps workflow.",
        "",
        "Constraints:",
        "- Output must match the JSON schema exactly.",
        "- Keep the plan markdown short (under ~200 lines).",
        "- The plan drives a coding agent that runs in a later step.",
    ]
)


class ImplementationPlan(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    commit_message: str = Field(min_length=1)
    plan_markdown: str = Field(min_length=1)
    pr_title: str = Field(min_length=1)
    pr_body: str = Field(min_length=1)


class Planner:
    def __init__(
        self,
        chat: ChatClient,
        *,
        context7: Context7Client | None = None,
        max_steps: int = 10,
        max_context7_calls: int = 2,
    ):
        self.chat = chat
        self.context7 = context7
        self.max_steps = max_steps
        self.max_context7_calls = max_context7_calls

    def _tools(self) -> list[dict[str, Any]]:
        if self.context7 is None:
            return []
        return [
            function_tool(
                RESOLVE_TOOL,
                "Resolve a library/package name to a Context7 library id for documentation lookup.",
                ResolveLibraryParams,
            ),
            function_tool(QUERY_TOOL, "Query Context7 docs for a library id.", QueryDocsParams),
        ]

    async def plan(
        self,
        *,
        project_name: str,
        project_slug: str,
        run_id: str,
        repo_owner: str,
        repo_name: str,
        repo_kind: str,
    ) -> ImplementationPlan:
        """Produce a validated plan.

        Raises:
            AppError(bad_gateway): the model never produced a valid plan.
        """
        budget = Context7Budget(self.max_context7_calls)
        tools = self._tools()
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": PLANNER_INSTRUCTIONS},
            {
                "role": "user",
                "content": "\n".join(
                    [
                        f"Project: {project_name} ({project_slug})",
                        f"Repo: {repo_owner}/{repo_name} ({repo_kind})",
                        f"Run ID: {run_id}",
                        "",
                        "Provide:",
                        "- a PR title/body for the pull request this run opens",
                        "- a single commit message",
                        "- a markdown plan",
                    ]
                ),
            },
        ]

        for _ in range(self.max_steps):
            turn = await self.chat.complete(
                messages,
                tools=tools or None,
                temperature=PLANNING_TEMPERATURE,
                response_format=json_schema_format(ImplementationPlan),
            )
            if not turn.tool_calls:
                plan = parse_json_output(turn.text, ImplementationPlan)
                logger.info("Planned run %s (%d context7 calls)", run_id, budget.calls)
                return plan

            messages.append(turn.to_message())
            for call in turn.tool_calls:
                result = await self._call_tool(call, budget)
                messages.append(
                    {"role": "tool", "tool_call_id": call.id, "content": json.dumps(result, default=str)}
                )

        raise AppError(ErrorCode.BAD_GATEWAY, "Planner did not produce a plan within its step budget.")

    async def _call_tool(self, call: ToolCall, budget: Context7Budget) -> Any:
        try:
            if self.context7 is None or call.name not in (RESOLVE_TOOL, QUERY_TOOL):
                raise AppError(ErrorCode.BAD_REQUEST, f"Unknown tool: {call.name}.")
            arguments = call.parsed_arguments()
            try:
                if call.name == RESOLVE_TOOL:
                    resolve = ResolveLibraryParams.model_validate(arguments)
                else:
                    query = QueryDocsParams.model_validate(arguments)
            except ValidationError as e:
                raise AppError(ErrorCode.BAD_REQUEST, "Invalid Context7 input.", cause=e) from e

            budget.consume()
            if call.name == RESOLVE_TOOL:
                return {"result": await self.context7.resolve_library_id(resolve)}
            return {"result": await self.context7.query_docs(query)}
        except AppError as err:
            logger.info("Planner tool %s failed: %s", call.name, err.code.value)
            return tool_error(err)
