from __future__ import annotations

import logging

import httpx
from pydantic import ValidationError

from choicebook.modules.generation.base import ContentGenerator
from choicebook.modules.generation.errors import (
    GeneratedContentInvalidError,
    GenerationTimeoutError,
    GenerationUnavailableError,
)
from choicebook.modules.generation.grammarcheck import (
    CHAPTER_OUTPUT_SCHEMA,
    ENDING_OUTPUT_SCHEMA,
    validate_generated_output,
)
from choicebook.modules.generation.schemas import (
    BranchingStrategy,
    EndingRequest,
    GeneratedChapter,
    GeneratedEnding,
    GenerationContext,
    RecentChoice,
)
from choicebook.modules.structure.schemas import ChoiceRequirement, EndingType

logger = logging.getLogger(__name__)


class HttpContentGenerator(ContentGenerator):
    """JSON-over-HTTP client for an external generation service."""

    name = "http"

    def __init__(self, base_url: str, *, api_key: str = "", timeout_s: float = 20.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_s = float(timeout_s)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post(self, path: str, payload: dict) -> object:
        timeout = httpx.Timeout(self.timeout_s)
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                resp = await client.post(f"{self.base_url}/{path}", headers=self._headers(), json=payload)
                resp.raise_for_status()
                data = resp.json()
        except httpx.TimeoutException as exc:
            raise GenerationTimeoutError(timeout_s=self.timeout_s, detail=type(exc).__name__) from exc
        except httpx.HTTPError as exc:
            logger.warning("content generator request failed path=%s error=%s", path, exc)
            raise GenerationUnavailableError(detail=str(exc) or type(exc).__name__) from exc
        except ValueError as exc:
            raise GeneratedContentInvalidError(detail="response body is not JSON") from exc
        return data

    async def generate_chapter_content(
        self,
        context: GenerationContext,
        choice_count: int,
        branching_strategy: BranchingStrategy,
    ) -> GeneratedChapter:
        data = await self._post(
            "chapters",
            {
                "context": context.model_dump(mode="json"),
                "choice_count": int(choice_count),
                "branching_strategy": branching_strategy,
            },
        )
        validate_generated_output(data, schema_name="chapter", schema=CHAPTER_OUTPUT_SCHEMA)
        try:
            return GeneratedChapter.model_validate(data)
        except ValidationError as exc:
            raise GeneratedContentInvalidError(detail=f"{exc.error_count()} validation error(s)") from exc

    async def generate_ending_content(
        self,
        choice_path: list[RecentChoice],
        ending_type: EndingType,
        requirements: list[ChoiceRequirement],
    ) -> str:
        request = EndingRequest(choice_path=list(choice_path), ending_type=ending_type, requirements=list(requirements))
        data = await self._post("endings", request.model_dump(mode="json"))
        validate_generated_output(data, schema_name="ending", schema=ENDING_OUTPUT_SCHEMA)
        try:
            return GeneratedEnding.model_validate(data).content
        except ValidationError as exc:
            raise GeneratedContentInvalidError(detail=f"{exc.error_count()} validation error(s)") from exc
