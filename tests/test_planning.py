"""Tests for the implementation planner.

The chat model is scripted; Context7 is an AsyncMock.
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest

from conftest import ScriptedChat, tool_turn
from sortie.errors import AppError, ErrorCode
from sortie.llm import ChatTurn
from sortie.pipeline.planning import (
    PLANNING_TEMPERATURE,
    QUERY_TOOL,
    RESOLVE_TOOL,
    ImplementationPlan,
    Planner,
)

PLAN_JSON = json.dumps(
    {
        "commit_message": "Add health endpoint",
        "plan_markdown": "# Plan\n- add /health",
        "pr_title": "Add health endpoint",
        "pr_body": "Adds a health endpoint.",
    }
)

PLAN_ARGS = dict(
    project_name="Demo",
    project_slug="demo",
    run_id="run1",
    repo_owner="acme",
    repo_name="widgets",
    repo_kind="python",
)


def _tool_messages(request: list[dict]) -> list[dict]:
    return [json.loads(m["content"]) for m in request if m["role"] == "tool"]


class TestPlanner:
    async def test_direct_plan(self):
        chat = ScriptedChat([ChatTurn(text=PLAN_JSON)])
        plan = await Planner(chat).plan(**PLAN_ARGS)

        assert isinstance(plan, ImplementationPlan)
        assert plan.commit_message == "Add health endpoint"
        kwargs = chat.kwargs[0]
        assert kwargs["temperature"] == PLANNING_TEMPERATURE
        assert kwargs["tools"] is None
        assert kwargs["response_format"]["json_schema"]["name"] == "ImplementationPlan"
        prompt = chat.requests[0][1]["content"]
        assert "acme/widgets (python)" in prompt
        assert "run1" in prompt

    async def test_blank_fields_rejected(self):
        bad = json.dumps({"commit_message": "  ", "plan_markdown": "x", "pr_title": "t", "pr_body": "b"})
        with pytest.raises(AppError) as exc:
            await Planner(ScriptedChat([ChatTurn(text=bad)])).plan(**PLAN_ARGS)
        assert exc.value.code == ErrorCode.BAD_GATEWAY

    async def test_context7_lookup_then_plan(self):
        context7 = AsyncMock()
        context7.resolve_library_id.return_value = {"results": [{"id": "/pallets/flask"}]}
        chat = ScriptedChat(
            [
                tool_turn(("c1", RESOLVE_TOOL, '{"library_name": "flask", "query": "routing"}')),
                ChatTurn(text=PLAN_JSON),
            ]
        )
        plan = await Planner(chat, context7=context7).plan(**PLAN_ARGS)

        assert plan.pr_title == "Add health endpoint"
        assert [t["function"]["name"] for t in chat.kwargs[0]["tools"]] == [RESOLVE_TOOL, QUERY_TOOL]
        assert _tool_messages(chat.requests[1]) == [{"result": {"results": [{"id": "/pallets/flask"}]}}]
        context7.resolve_library_id.assert_awaited_once()

    async def test_budget_exceeded_is_tool_error(self):
        context7 = AsyncMock()
        context7.query_docs.return_value = "docs"
        call = '{"library_id": "/pallets/flask", "query": "blueprints"}'
        chat = ScriptedChat(
            [
                tool_turn(("c1", QUERY_TOOL, call), ("c2", QUERY_TOOL, call), ("c3", QUERY_TOOL, call)),
                ChatTurn(text=PLAN_JSON),
            ]
        )
        await Planner(chat, context7=context7, max_context7_calls=2).plan(**PLAN_ARGS)

        results = _tool_messages(chat.requests[1])
        assert results[:2] == [{"result": "docs"}, {"result": "docs"}]
        assert results[2]["error"]["code"] == "conflict"
        assert context7.query_docs.await_count == 2

    async def test_invalid_context7_input(self):
        context7 = AsyncMock()
        chat = ScriptedChat([tool_turn(("c1", RESOLVE_TOOL, '{"library_name": ""}')), ChatTurn(text=PLAN_JSON)])
        await Planner(chat, context7=context7).plan(**PLAN_ARGS)

        error = _tool_messages(chat.requests[1])[0]["error"]
        assert error == {"code": "bad_request", "message": "Invalid Context7 input."}
        context7.resolve_library_id.assert_not_awaited()

    async def test_unknown_tool_without_context7(self):
        chat = ScriptedChat([tool_turn(("c1", RESOLVE_TOOL, "{}")), ChatTurn(text=PLAN_JSON)])
        await Planner(chat).plan(**PLAN_ARGS)
        assert _tool_messages(chat.requests[1])[0]["error"]["code"] == "bad_request"

    async def test_step_budget(self):
        chat = ScriptedChat([tool_turn(("c", "x", "{}")) for _ in range(3)])
        with pytest.raises(AppError) as exc:
            await Planner(chat, max_steps=3).plan(**PLAN_ARGS)
        assert exc.value.code == ErrorCode.BAD_GATEWAY
