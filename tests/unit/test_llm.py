import json

import pytest

from recurring_tasks.capabilities import CapabilityContext, build_default_registry
from recurring_tasks.config.settings import Settings
from recurring_tasks.llm import OpenAIToolCallingModel, build_reasoning_model

CONTEXT = CapabilityContext(task_id="t1", agent_id="a1", owner_id="o1")


def _response(message: dict, prompt_tokens: int = 10, completion_tokens: int = 5) -> dict:
    return {
        "choices": [{"message": message}],
        "usage": {"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens},
    }


def test_missing_api_key_raises() -> None:
    with pytest.raises(RuntimeError, match="OPENAI_API_KEY"):
        OpenAIToolCallingModel(api_key="")


def test_unsupported_provider_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(RuntimeError, match="Unsupported LLM provider"):
        build_reasoning_model(Settings(llm_provider="ollama", openai_api_key="k"))


def test_tool_calls_are_dispatched_and_fed_back(monkeypatch: pytest.MonkeyPatch) -> None:
    model = OpenAIToolCallingModel(api_key="test-key")
    capabilities = build_default_registry().resolve(["text"], [], CONTEXT)
    sent: list[dict] = []
    replies = [
        _response(
            {
                "role": "assistant",
                "content": None,
                "tool_calls": [
                    {
                        "id": "call_1",
                        "type": "function",
                        "function": {
                            "name": "summarize",
                            "arguments": json.dumps({"text": "one two three", "max_words": 2}),
                        },
                    }
                ],
            }
        ),
        _response({"role": "assistant", "content": "Summary: one two"}, 20, 8),
    ]

    def fake_request(body: dict) -> dict:
        sent.append(json.loads(json.dumps(body)))
        return replies.pop(0)

    monkeypatch.setattr(model, "_request", fake_request)

    outcome = model.generate(
        model="gpt-4o-mini",
        system_prompt="You watch release boards.",
        prompt="[Task Iteration 1] Summarize",
        capabilities=capabilities,
        max_steps=10,
    )

    assert outcome.text == "Summary: one two"
    assert outcome.steps == 2
    assert outcome.usage.input_tokens == 30
    assert outcome.usage.output_tokens == 13
    [call] = outcome.tool_calls
    assert call.tool_name == "summarize"
    assert call.result["status"] == "ok"
    assert call.result["output"] == {"summary": "one two"}

    assert sent[0]["messages"][0] == {"role": "system", "content": "You watch release boards."}
    assert {tool["function"]["name"] for tool in sent[0]["tools"]} == set(capabilities)
    tool_message = sent[1]["messages"][-1]
    assert tool_message["role"] == "tool"
    assert tool_message["tool_call_id"] == "call_1"


def test_step_cap_bounds_the_loop(monkeypatch: pytest.MonkeyPatch) -> None:
    model = OpenAIToolCallingModel(api_key="test-key")
    calls = {"count": 0}

    def always_calls_tool(body: dict) -> dict:
        calls["count"] += 1
        return _response(
            {
                "role": "assistant",
                "content": "thinking",
                "tool_calls": [
                    {"id": "c", "function": {"name": "ghost", "arguments": "{}"}},
                ],
            }
        )

    monkeypatch.setattr(model, "_request", always_calls_tool)

    outcome = model.generate(
        model="gpt-4o-mini",
        system_prompt="",
        prompt="loop",
        capabilities={},
        max_steps=3,
    )

    assert calls["count"] == 3
    assert outcome.steps == 3
    assert len(outcome.tool_calls) == 3
    assert outcome.tool_calls[0].result["status"] == "failed"
    assert outcome.text == "thinking"


def test_request_retries_then_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    model = OpenAIToolCallingModel(api_key="test-key", max_retries=2, backoff_s=0.0)
    attempts = {"count": 0}

    def flaky(body: dict) -> dict:
        attempts["count"] += 1
        raise ValueError("LLM returned non-JSON response")

    monkeypatch.setattr(model, "_request", flaky)

    with pytest.raises(ValueError):
        model.generate(
            model="gpt-4o-mini", system_prompt="", prompt="x", capabilities={}, max_steps=1
        )
    assert attempts["count"] == 3
