from __future__ import annotations

import httpx
import pytest

from hirebot.services.generator.service import QuestionGeneratorService, build_prompt


@pytest.fixture
def generator():
    return QuestionGeneratorService(api_key=None, base_url="https://llm.example/v1", model_id="gpt-4.1", use_mock=True)


async def test_mock_generation_covers_every_difficulty(generator):
    response = await generator.generate("Backend Engineer", "Build APIs in Python")

    assert response.mock
    assert response.position == "Backend Engineer"
    assert {q.difficulty for q in response.questions} == {"EASY", "MEDIUM", "HARD"}
    assert len({q.id for q in response.questions}) == len(response.questions)
    coding = [q for q in response.questions if q.type == "CODING"]
    assert coding and coding[0].starter_code


@pytest.mark.parametrize("position, description", [("", "desc"), ("Engineer", "  "), (None, None)])
async def test_generation_requires_position_and_description(generator, position, description):
    with pytest.raises(ValueError):
        await generator.generate(position, description)


async def test_live_mode_without_key_is_a_runtime_error():
    service = QuestionGeneratorService(api_key=None, base_url="https://llm.example/v1", model_id="m")
    with pytest.raises(RuntimeError):
        await service.generate("Engineer", "Write code")


def test_parse_questions_normalizes_fields(generator):
    content = """
    {"questions": [
      {"question": "Reverse a list", "type": "coding", "difficulty": "easy",
       "starterCode": "def rev(xs):\\n    pass\\n",
       "examples": [{"input": "[1,2]", "output": "[2,1]"}], "constraints": ["n <= 10"]},
      {"question": "Explain GIL", "type": "system design", "difficulty": "legendary"},
      {"type": "THEORY"},
      "not an object"
    ]}
    """

    questions = generator.parse_questions(content)

    assert [q.prompt for q in questions] == ["Reverse a list", "Explain GIL"]
    first, second = questions
    assert (first.type, first.difficulty) == ("CODING", "EASY")
    assert first.starter_code.startswith("def rev")
    assert first.examples[0].output == "[2,1]"
    assert first.constraints == ["n <= 10"]
    assert (second.type, second.difficulty) == ("SYSTEM_DESIGN", "MEDIUM")


def test_parse_questions_accepts_bare_list(generator):
    questions = generator.parse_questions('[{"question": "What is a deadlock?", "type": "THEORY"}]')
    assert len(questions) == 1
    assert questions[0].type == "THEORY"


def test_parse_questions_tolerates_garbage(generator):
    assert generator.parse_questions("{: broken") == []
    assert generator.parse_questions("just text") == []


def test_build_prompt_fills_placeholders():
    prompt = build_prompt("Data Engineer", "Spark pipelines")
    assert "Data Engineer" in prompt
    assert "Spark pipelines" in prompt
    assert "{{" not in prompt


def _live_service(payload):
    service = QuestionGeneratorService(api_key="sk-test", base_url="https://llm.example/v1", model_id="gpt-4.1")
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json=payload))
    service._client = httpx.AsyncClient(base_url=service.base_url, transport=transport)
    return service


@pytest.mark.parametrize("payload", [{"choices": []}, {}, {"choices": [{"message": {"content": ""}}]}])
async def test_empty_provider_reply_is_a_runtime_error(payload):
    service = _live_service(payload)
    try:
        with pytest.raises(RuntimeError):
            await service.generate("Engineer", "Write code")
    finally:
        await service.close()


async def test_live_reply_is_parsed_into_questions():
    content = '{"questions": [{"question": "Merge intervals", "type": "CODING", "difficulty": "HARD"}]}'
    service = _live_service({"choices": [{"message": {"content": content}}]})
    try:
        response = await service.generate("Engineer", "Write code")
    finally:
        await service.close()

    assert not response.mock
    assert [(q.prompt, q.difficulty) for q in response.questions] == [("Merge intervals", "HARD")]
