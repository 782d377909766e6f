# tests/test_llm_wrapper.py
import pytest

import cn_portal.llm_wrapper as llm

PROMPT = [
    {"role": "system", "content": "be brief"},
    {"role": "user", "content": "How many open?\n\n[DATA SNAPSHOT - Live Portal Data]\nTotal Records: 3"},
]


@pytest.mark.parametrize("explicit,anthropic_key,expected", [
    ("claude", "", "anthropic"),
    ("GPT", "sk-ant", "openai"),
    ("", "sk-ant", "anthropic"),
    ("", "", "openai"),
    ("mistral", "", "openai"),
])
def test_resolve_provider(explicit, anthropic_key, expected):
    assert llm.resolve_provider(explicit, anthropic_key) == expected


def test_mock_reply_echoes_question_without_snapshot(monkeypatch):
    monkeypatch.setattr(llm, "MOCK_LLM", True)
    assert llm.call_llm(PROMPT, model="m")["text"] == "(mock) You asked: How many open?"
    assert "".join(llm.stream_llm(PROMPT)) == "(mock) You asked: How many open?"


def test_provider_errors_become_llm_error(monkeypatch):
    def boom(*args):
        raise ConnectionError("reset by peer")

    def boom_stream(*args):
        raise ConnectionError("reset by peer")
        yield  # pragma: no cover

    monkeypatch.setattr(llm, "MOCK_LLM", False)
    monkeypatch.setattr(llm, "LLM_PROVIDER", "openai")
    monkeypatch.setitem(llm._COMPLETE, "openai", boom)
    monkeypatch.setitem(llm._STREAM, "openai", boom_stream)

    with pytest.raises(llm.LLMError, match="reset by peer"):
        llm.call_llm(PROMPT)
    with pytest.raises(llm.LLMError):
        list(llm.stream_llm(PROMPT))


def test_real_provider_result_passes_through(monkeypatch):
    monkeypatch.setattr(llm, "MOCK_LLM", False)
    monkeypatch.setattr(llm, "LLM_PROVIDER", "anthropic")
    monkeypatch.setitem(llm._COMPLETE, "anthropic",
                        lambda messages, model, *rest: {"text": "3 open", "model": model,
                                                        "response_id": "r1", "raw": None})
    out = llm.call_llm(PROMPT, model="claude-test")
    assert out["text"] == "3 open"
    assert out["model"] == "claude-test"
