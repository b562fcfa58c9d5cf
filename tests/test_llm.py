from types import SimpleNamespace

import pytest

from candidate_pipeline import llm
from candidate_pipeline.llm import MAX_OUTPUT_TOKENS, EvaluationLLM, LLMRequestError, retry_after_seconds


class FakeModel:
    instances = []

    def __init__(self, model_name, system_instruction=None):
        self.model_name = model_name
        self.system_instruction = system_instruction
        self.calls = []
        self.response = SimpleNamespace(text='{"score": 80}')
        FakeModel.instances.append(self)

    def generate_content(self, prompt, generation_config=None):
        self.calls.append((prompt, generation_config))
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


@pytest.fixture
def fake_genai(monkeypatch):
    FakeModel.instances = []
    configured = {}
    module = SimpleNamespace(
        configure=lambda api_key: configured.update(api_key=api_key),
        GenerativeModel=FakeModel,
    )
    monkeypatch.setattr(llm, "genai", module)
    return configured


def test_requires_api_key(fake_genai, monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)

    with pytest.raises(RuntimeError, match="GEMINI_API_KEY"):
        EvaluationLLM()


def test_complete_requests_json(fake_genai):
    client = EvaluationLLM(api_key="key", model_name="gemini-test")

    assert client.complete("Evaluate Ada") == '{"score": 80}'

    model = FakeModel.instances[0]
    prompt, config = model.calls[0]
    assert fake_genai == {"api_key": "key"}
    assert model.model_name == "gemini-test"
    assert "valid JSON only" in model.system_instruction
    assert prompt.startswith("Context window limit is 8192 tokens.")
    assert prompt.endswith("Evaluate Ada")
    assert config["response_mime_type"] == "application/json"
    assert config["max_output_tokens"] == MAX_OUTPUT_TOKENS


def test_model_built_once(fake_genai):
    client = EvaluationLLM(api_key="key")
    client.complete("a")
    client.complete("b")

    assert len(FakeModel.instances) == 1


def test_text_from_candidate_parts(fake_genai):
    class NoText:
        @property
        def text(self):
            raise ValueError("no text parts")

        candidates = [
            SimpleNamespace(content=SimpleNamespace(parts=[SimpleNamespace(text='{"a":'), SimpleNamespace(text=" 1}")])),
        ]

    client = EvaluationLLM(api_key="key")
    client._model_instance().response = NoText()

    assert client.complete("x") == '{"a":\n 1}'


def test_provider_errors_keep_message(fake_genai):
    client = EvaluationLLM(api_key="key")
    client._model_instance().response = Exception("429 Resource has been exhausted")

    with pytest.raises(RuntimeError, match="Gemini request failed: 429"):
        client.complete("x")


def test_retry_after_header_carried_on_error(fake_genai):
    class HttpError(Exception):
        response = SimpleNamespace(headers={"Retry-After": "7"})

    client = EvaluationLLM(api_key="key")
    client._model_instance().response = HttpError("429 Too Many Requests")

    with pytest.raises(LLMRequestError) as excinfo:
        client.complete("x")
    assert excinfo.value.retry_after == 7.0


@pytest.mark.parametrize("headers,expected", [
    ({"retry-after": "2.5"}, 2.5),
    ({"Retry-After": "0"}, None),
    ({"Retry-After": "Wed, 21 Oct 2026 07:28:00 GMT"}, None),
    ({}, None),
])
def test_retry_after_seconds(headers, expected):
    error = Exception("x")
    error.response = SimpleNamespace(headers=headers)

    assert retry_after_seconds(error) == expected
