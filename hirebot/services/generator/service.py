from __future__ import annotations

import logging
import textwrap
import uuid
from typing import Any, Dict, List, Optional

import httpx
import yaml

from hirebot.services.questions.schema import Example, Question
from hirebot.services.questions.service import normalize_difficulty, normalize_type

from .schema import GenerateResponse

logger = logging.getLogger("hirebot.generator")

_PROMPT = textwrap.dedent(
    """
    You are an expert technical interviewer. Based on the job below, write a list of
    interview questions that test the skills the role needs.

    Job position: {{job-position}}
    Job description: {{job-description}}

    Mix CODING, THEORY and SYSTEM_DESIGN questions and spread them across EASY, MEDIUM
    and HARD. For CODING questions include starter code, a couple of examples and the
    input constraints.

    Respond ONLY with a JSON object of the form:
    {"questions": [{"question": "...", "type": "CODING|THEORY|SYSTEM_DESIGN",
      "difficulty": "EASY|MEDIUM|HARD", "starterCode": "...",
      "examples": [{"input": "...", "output": "...", "explanation": "..."}],
      "constraints": ["..."]}]}
    """
).strip()


def build_prompt(position: str, description: str) -> str:
    return _PROMPT.replace("{{job-position}}", position).replace("{{job-description}}", description)


class QuestionGeneratorService:
    """LLM-backed interview question generator with mock fallback."""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str,
        model_id: str,
        *,
        temperature: float = 0.7,
        use_mock: bool = False,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model_id = model_id
        self.temperature = temperature
        self.use_mock = use_mock
        self._client: Optional[httpx.AsyncClient] = None

    async def start(self) -> None:
        if self.use_mock or self._client is not None:
            return
        timeout = httpx.Timeout(60.0, connect=10.0)
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def generate(self, position: Optional[str], description: Optional[str]) -> GenerateResponse:
        position = (position or "").strip()
        description = (description or "").strip()
        if not position or not description:
            raise ValueError("Position and description are required")
        if self.use_mock:
            return GenerateResponse(position=position, questions=self._mock(position), mock=True)
        if not self.api_key:
            raise RuntimeError("OPENAI_API_KEY not configured for question generator")
        client = self._client
        if client is None:
            await self.start()
            client = self._client
        assert client is not None
        headers = {"Authorization": f"Bearer {self.api_key}"}
        request_body = {
            "model": self.model_id,
            "messages": [{"role": "user", "content": build_prompt(position, description)}],
            "temperature": self.temperature,
            "response_format": {"type": "json_object"},
        }
        logger.info("Requesting questions for %r from %s", position, self.model_id)
        response = await client.post("/chat/completions", json=request_body, headers=headers)
        response.raise_for_status()
        data = response.json()
        choices = data.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            raise RuntimeError("Question generator returned no choices")
        content = (choices[0].get("message") or {}).get("content") or ""
        if not content:
            raise RuntimeError("No content received from question generator")
        questions = self.parse_questions(content)
        if not questions:
            raise RuntimeError("Question generator returned no usable questions")
        return GenerateResponse(position=position, questions=questions)

    def parse_questions(self, content: str) -> List[Question]:
        try:
            parsed = yaml.safe_load(content)
        except yaml.YAMLError:
            logger.warning("Generator output was not valid JSON/YAML")
            return []
        if isinstance(parsed, dict):
            items = parsed.get("questions") or []
        elif isinstance(parsed, list):
            items = parsed
        else:
            items = []
        questions: List[Question] = []
        for item in items:
            question = self._coerce_question(item)
            if question is not None:
                questions.append(question)
        return questions

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _coerce_question(self, data: Any) -> Optional[Question]:
        if not isinstance(data, dict):
            return None
        prompt = str(data.get("question") or data.get("prompt") or "").strip()
        if not prompt:
            return None
        starter = data.get("starterCode") or data.get("starter_code")
        examples: List[Example] = []
        for raw in data.get("examples") or []:
            if not isinstance(raw, dict):
                continue
            examples.append(
                Example(
                    input=str(raw.get("input", "")),
                    output=str(raw.get("output", "")),
                    explanation=str(raw["explanation"]) if raw.get("explanation") else None,
                )
            )
        constraints = [str(item) for item in data.get("constraints") or [] if str(item).strip()]
        return Question(
            id=str(data.get("id") or uuid.uuid4()),
            prompt=prompt,
            type=normalize_type(data.get("type")),  # type: ignore[arg-type]
            difficulty=normalize_difficulty(data.get("difficulty")),  # type: ignore[arg-type]
            starter_code=str(starter) if starter else None,
            examples=examples,
            constraints=constraints,
        )

    def _mock(self, position: str) -> List[Question]:
        seeds: List[Dict[str, Any]] = [
            {
                "question": "Given an array of integers nums and an integer target, return the indices of the two numbers that add up to target.",
                "type": "CODING",
                "difficulty": "EASY",
                "starterCode": "def two_sum(nums, target):\n    # Your code here\n    pass\n",
                "examples": [{"input": "nums = [2,7,11,15], target = 9", "output": "[0,1]"}],
                "constraints": ["2 <= len(nums) <= 10^4"],
            },
            {
                "question": f"What trade-offs would you weigh when choosing a data store for a {position} project?",
                "type": "THEORY",
                "difficulty": "MEDIUM",
            },
            {
                "question": f"Design a rate limiter for a public API owned by a {position} team.",
                "type": "SYSTEM_DESIGN",
                "difficulty": "HARD",
            },
        ]
        return [question for question in (self._coerce_question(seed) for seed in seeds) if question is not None]


__all__ = ["QuestionGeneratorService", "build_prompt"]
