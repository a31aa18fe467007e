"""Tests for LLM client module."""

from unittest.mock import MagicMock, patch

import pytest

from book_teacher.config.app_config import AppConfig, ProviderConfig
from book_teacher.llm.client import (
    FinalReply,
    LLMClient,
    LLMConfig,
    LLMConnectionError,
    LLMError,
    LLMResponseError,
    Message,
    ToolCall,
    ToolCallBatch,
    strip_think,
)


def _completion(content="", tool_calls=None, usage=True):
    """Fake chat.completions.create response."""
    message = MagicMock()
    message.content = content
    message.tool_calls = tool_calls

    choice = MagicMock()
    choice.message = message

    response = MagicMock()
    response.choices = [choice]
    response.model = "gpt-4o-mini"
    if usage:
        response.usage.prompt_tokens = 10
        response.usage.completion_tokens = 5
        response.usage.total_tokens = 15
    else:
        response.usage = None
    return response


def _raw_tool_call(call_id, name, arguments):
    raw = MagicMock()
    raw.id = call_id
    raw.function.name = name
    raw.function.arguments = arguments
    return raw


@pytest.fixture
def openai_mock():
    with patch("book_teacher.llm.client.OpenAI") as mock_cls:
        yield mock_cls.return_value


@pytest.fixture
def client(openai_mock):
    return LLMClient(config=LLMConfig(api_key="test-key"))


class TestLLMConfig:
    """Tests for LLMConfig."""

    def test_defaults(self):
        config = LLMConfig()
        assert config.provider == "openai"
        assert config.model == "gpt-4o-mini"
        assert config.api_key is None

    def test_from_app_config(self, monkeypatch):
        monkeypatch.setenv("XAI_API_KEY", "xai-key")
        app_config = AppConfig(
            providers={
                "xai": ProviderConfig(
                    base_url="https://api.x.ai/v1", default_model="grok-2", api_key_env="XAI_API_KEY"
                )
            }
        )

        config = LLMConfig.from_app_config(app_config, provider="xai")

        assert config.provider == "xai"
        assert config.base_url == "https://api.x.ai/v1"
        assert config.model == "grok-2"
        assert config.api_key == "xai-key"

    def test_unknown_provider_falls_back(self):
        config = LLMConfig.from_app_config(AppConfig(), provider="missing")
        assert config == LLMConfig()


class TestMessage:
    """Tests for Message serialization."""

    def test_plain(self):
        assert Message(role="user", content="Hi").to_dict() == {"role": "user", "content": "Hi"}

    def test_assistant_tool_calls(self):
        call = ToolCall(id="c1", name="get_book_info", arguments="{}")
        data = Message(role="assistant", content="", tool_calls=[call]).to_dict()
        assert data["tool_calls"] == [
            {"id": "c1", "type": "function", "function": {"name": "get_book_info", "arguments": "{}"}}
        ]

    def test_tool_result(self):
        data = Message(role="tool", content='{"ok": true}', tool_call_id="c1").to_dict()
        assert data["tool_call_id"] == "c1"


class TestChat:
    """Tests for LLMClient.chat."""

    def test_sends_tools_and_model_override(self, client, openai_mock):
        openai_mock.chat.completions.create.return_value = _completion("Hello")
        tools = [{"type": "function", "function": {"name": "get_book_info"}}]

        response = client.chat([Message(role="user", content="Hi")], tools=tools, model="gpt-4o")

        kwargs = openai_mock.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o"
        assert kwargs["tools"] == tools
        assert kwargs["messages"] == [{"role": "user", "content": "Hi"}]
        assert response.content == "Hello"
        assert response.total_tokens == 15

    def test_no_tools_key_without_tools(self, client, openai_mock):
        openai_mock.chat.completions.create.return_value = _completion("Hello", usage=False)

        response = client.chat([Message(role="user", content="Hi")])

        assert "tools" not in openai_mock.chat.completions.create.call_args.kwargs
        assert response.usage == {}

    def test_connection_error(self, client, openai_mock):
        openai_mock.chat.completions.create.side_effect = Exception("Connection refused")

        with pytest.raises(LLMConnectionError):
            client.chat([Message(role="user", content="Hi")])

    def test_other_failure(self, client, openai_mock):
        openai_mock.chat.completions.create.side_effect = Exception("rate limited")

        with pytest.raises(LLMError) as exc_info:
            client.chat([Message(role="user", content="Hi")])
        assert not isinstance(exc_info.value, LLMConnectionError)

    def test_empty_choices(self, client, openai_mock):
        response = _completion()
        response.choices = []
        openai_mock.chat.completions.create.return_value = response

        with pytest.raises(LLMResponseError):
            client.chat([Message(role="user", content="Hi")])


class TestStep:
    """Tests for LLMClient.step."""

    def test_final_reply_strips_thinking(self, client, openai_mock):
        openai_mock.chat.completions.create.return_value = _completion(
            "<think>plan the answer</think>Ownership means one owner."
        )

        step = client.step([Message(role="user", content="What is ownership?")])

        assert step == FinalReply(content="Ownership means one owner.")

    def test_tool_call_batch(self, client, openai_mock):
        openai_mock.chat.completions.create.return_value = _completion(
            tool_calls=[
                _raw_tool_call("c1", "get_book_info", "{}"),
                _raw_tool_call("c2", "update_study_plan", '{"plan_text": "Chapter 2"}'),
            ]
        )

        step = client.step([Message(role="user", content="Plan?")])

        assert isinstance(step, ToolCallBatch)
        assert [c.name for c in step.calls] == ["get_book_info", "update_study_plan"]
        assert step.calls[1].arguments == '{"plan_text": "Chapter 2"}'

    def test_empty_reply_is_response_error(self, client, openai_mock):
        openai_mock.chat.completions.create.return_value = _completion("<think>hmm</think>")

        with pytest.raises(LLMResponseError):
            client.step([Message(role="user", content="Hi")])

    def test_tool_call_without_name(self, client, openai_mock):
        openai_mock.chat.completions.create.return_value = _completion(
            tool_calls=[_raw_tool_call("c1", None, "{}")]
        )

        with pytest.raises(LLMResponseError):
            client.step([Message(role="user", content="Hi")])


def test_strip_think_removes_reasoning_blocks():
    text = "<reasoning>x</reasoning>\n<analysis>y</analysis>Answer"
    assert strip_think(text) == "Answer"
