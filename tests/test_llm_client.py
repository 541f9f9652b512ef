"""Tests for the LLM client against a mocked HTTP transport."""

import asyncio
import json

import httpx
import pytest

from pilot.common.llm_client import LLMClient, estimate_cost, extract_json, provider_for


def _anthropic_reply(text, usage=None):
    return httpx.Response(200, json={
        "content": [{"type": "text", "text": text}],
        "usage": usage or {"input_tokens": 1000, "output_tokens": 500},
    })


class Recorder:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        return self.responses.pop(0)


def _client(handler):
    sleeps = []

    async def sleep(seconds):
        sleeps.append(seconds)

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return LLMClient(http=http, sleep=sleep), sleeps


@pytest.fixture
def keys(monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
    monkeypatch.setenv("DEEPSEEK_API_KEY", "ds-test")


class TestHelpers:
    def test_extract_json_variants(self):
        assert extract_json('{"a": 1}') == {"a": 1}
        assert extract_json('Sure!\n```json\n{"a": 2}\n```') == {"a": 2}
        assert extract_json('Here you go: {"a": 3} hope that helps') == {"a": 3}
        with pytest.raises(ValueError):
            extract_json("no json here")

    def test_provider_detection(self):
        assert provider_for("deepseek-chat").name == "deepseek"
        assert provider_for("gpt-4o-mini").name == "openai"
        assert provider_for("claude-opus-4").name == "anthropic"

    def test_cost_estimate(self):
        assert estimate_cost("deepseek-chat", {"prompt_tokens": 1_000_000, "completion_tokens": 0}) == pytest.approx(0.27)
        assert estimate_cost("unknown-model", {"input_tokens": 0, "output_tokens": 1_000_000}) == pytest.approx(15.0)


class TestLLMClient:
    def test_missing_key_is_an_error_dict(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        client, _ = _client(Recorder())
        result = asyncio.run(client.generate(prompt="hi", model="claude-opus-4"))
        assert result["error"]
        assert "ANTHROPIC_API_KEY" in result["message"]

    def test_anthropic_generate_json(self, keys):
        recorder = Recorder(_anthropic_reply('```json\n{"task_type": "booking"}\n```'))
        client, _ = _client(recorder)
        result = asyncio.run(client.generate_json(prompt="classify", system="be brief", model="claude-opus-4"))

        assert result["content"] == {"task_type": "booking"}
        assert result["cost"] == pytest.approx((1000 * 15.0 + 500 * 75.0) / 1_000_000)
        sent = json.loads(recorder.requests[0].content)
        assert sent["system"] == "be brief"
        assert recorder.requests[0].headers["x-api-key"] == "sk-test"

    def test_openai_style_request(self, keys):
        recorder = Recorder(httpx.Response(200, json={
            "choices": [{"message": {"content": "hello"}}],
            "usage": {"prompt_tokens": 10, "completion_tokens": 5},
        }))
        client, _ = _client(recorder)
        result = asyncio.run(client.generate(prompt="hi", system="sys", model="deepseek-chat"))

        assert result["content"] == "hello"
        assert result["provider"] == "deepseek"
        sent = json.loads(recorder.requests[0].content)
        assert sent["messages"][0] == {"role": "system", "content": "sys"}
        assert recorder.requests[0].url.host == "api.deepseek.com"

    def test_unparseable_json_keeps_cost(self, keys):
        client, _ = _client(Recorder(_anthropic_reply("I can't do that.")))
        result = asyncio.run(client.generate_json(prompt="x", model="claude-opus-4"))
        assert result["error"]
        assert result["cost"] > 0

    def test_rate_limit_backs_off_then_succeeds(self, keys):
        client, sleeps = _client(Recorder(httpx.Response(429), httpx.Response(429), _anthropic_reply("ok")))
        result = asyncio.run(client.generate(prompt="x", model="claude-opus-4"))
        assert result["content"] == "ok"
        assert sleeps == [2.0, 4.0]

    def test_server_error_retried_once(self, keys):
        client, sleeps = _client(Recorder(httpx.Response(503), httpx.Response(503)))
        result = asyncio.run(client.generate(prompt="x", model="claude-opus-4"))
        assert result["error"]
        assert "HTTP 503" in result["message"]
        assert sleeps == [3.0]

    def test_bad_key_not_retried(self, keys):
        recorder = Recorder(httpx.Response(401))
        client, sleeps = _client(recorder)
        result = asyncio.run(client.generate(prompt="x", model="claude-opus-4"))
        assert "API key invalid" in result["message"]
        assert sleeps == []
        assert len(recorder.requests) == 1
