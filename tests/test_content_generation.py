from __future__ import annotations

import asyncio

import httpx
import pytest

from choicebook.modules.consequences.engine import ConsequenceEngine
from choicebook.modules.generation.errors import (
    GeneratedContentInvalidError,
    GenerationTimeoutError,
    GenerationUnavailableError,
)
from choicebook.modules.generation.grammarcheck import CHAPTER_OUTPUT_SCHEMA, validate_generated_output
from choicebook.modules.generation.providers import get_content_generator
from choicebook.modules.generation.providers import http as http_provider
from choicebook.modules.generation.providers.fake import FakeContentGenerator
from choicebook.modules.generation.providers.http import HttpContentGenerator
from choicebook.modules.generation.schemas import GeneratedChapter, GenerationContext, RecentChoice
from choicebook.modules.generation.service import (
    NarrationService,
    build_generation_context,
    choose_branching_strategy,
    ending_proximity,
    expand_chapter,
)
from choicebook.modules.paths.errors import PathError
from choicebook.modules.paths.schemas import SessionKey
from choicebook.modules.paths.tracker import ReaderPathTracker
from tests.support.stories import linear_builder, linear_story, long_story

KEY = SessionKey("reader-a", "long_v1", "s-1")


def _narration(generator, *, timeout_s: float = 5.0) -> tuple[ReaderPathTracker, ConsequenceEngine, NarrationService]:
    structure = long_story()
    engine = ConsequenceEngine(structure_provider={structure.story_id: structure}.get)
    tracker = ReaderPathTracker(consequence_engine=engine)
    tracker.register_structure(structure)
    for choice_id in ("c1_light", "c2_on"):
        tracker.record_choice(KEY, choice_id)
    return tracker, engine, NarrationService(tracker, engine, generator, timeout_s=timeout_s)


def test_generation_context_snapshot() -> None:
    tracker, engine, _ = _narration(FakeContentGenerator())
    structure = tracker.structure_for("long_v1")
    path = tracker.get_path("s-1")

    context = build_generation_context(structure, path, engine.pending(KEY), engine.resolve_consequences(KEY))

    assert context.current_chapter == "C3"
    assert [item.choice_id for item in context.recent_choices] == ["c1_light", "c2_on"]
    assert [item.type for item in context.pending_consequences] == ["ending_modifier"]
    assert [item.description for item in context.resolutions] == ["The keeper wakes"]
    assert context.ending_proximity == 0.5
    assert context.available_chapters == ["END"]
    assert context.reachable_endings == ["E_dawn"]


def test_ending_proximity_and_branching_strategy() -> None:
    structure = linear_story()
    assert ending_proximity(structure, "END") == 1.0
    assert ending_proximity(structure, "C1") == pytest.approx(0.3333)

    assert choose_branching_strategy(2, 0) == "conservative"
    assert choose_branching_strategy(4, 1) == "moderate"
    assert choose_branching_strategy(2, 6) == "aggressive"


def test_successful_narration_acknowledges_resolutions() -> None:
    generator = FakeContentGenerator()
    _, engine, service = _narration(generator)

    result = asyncio.run(service.prepare_next_chapter(KEY, choice_count=3))

    assert generator.chapter_calls == 1
    assert "The keeper wakes" in result.chapter.content
    assert len(result.chapter.choices) == 3
    assert result.delivered_resolution_ids == ["s-1:c1_light#1@1"]
    assert engine.resolve_consequences(KEY) == []


def test_timeout_keeps_resolutions_for_redelivery() -> None:
    generator = FakeContentGenerator()
    generator.delay_s = 0.5
    tracker, engine, service = _narration(generator, timeout_s=0.01)

    with pytest.raises(GenerationTimeoutError) as exc_info:
        asyncio.run(service.prepare_next_chapter(KEY))
    assert exc_info.value.code == "GENERATION_TIMEOUT"
    assert exc_info.value.retryable is True

    # the choice stays committed and the resolution is offered again
    assert tracker.get_path("s-1").current_chapter == "C3"
    assert [item.description for item in engine.resolve_consequences(KEY)] == ["The keeper wakes"]

    generator.delay_s = 0.0
    retry = asyncio.run(service.prepare_next_chapter(KEY))
    assert retry.delivered_resolution_ids == ["s-1:c1_light#1@1"]
    assert engine.resolve_consequences(KEY) == []


def test_generator_failure_propagates_without_acknowledging() -> None:
    generator = FakeContentGenerator()
    generator.fail_generate = True
    _, engine, service = _narration(generator)

    with pytest.raises(GenerationUnavailableError):
        asyncio.run(service.prepare_next_chapter(KEY))
    assert len(engine.resolve_consequences(KEY)) == 1


def test_ending_narration_requires_an_ending() -> None:
    generator = FakeContentGenerator()
    tracker, _, service = _narration(generator)

    with pytest.raises(PathError) as exc_info:
        asyncio.run(service.prepare_ending(KEY))
    assert exc_info.value.code == "ENDING_NOT_REACHED"

    tracker.record_choice(KEY, "c3_on")
    content = asyncio.run(service.prepare_ending(KEY))
    assert content.startswith("A mysterious ending reached after 3 choice(s)")
    assert generator.ending_calls == 1


def test_expand_chapter_builds_next_version() -> None:
    structure = linear_builder().add_chapter("SIDE").build()
    generated = GeneratedChapter.model_validate(
        {
            "content": "A side room.",
            "choices": [
                {"text": "Search the shelves", "consequences": [{"type": "delayed", "description": "dust"}]},
                {"text": "Leave quietly", "leads_to_chapter": "C2"},
            ],
        }
    )

    expanded = expand_chapter(structure, "SIDE", generated, target_chapters=["END"])

    assert expanded.version == 2
    point = expanded.choice_points_at("SIDE")[0]
    assert point.id == "cp_SIDE_v2"
    assert point.choice_type == "binary"
    assert [(choice.id, choice.leads_to_chapter) for choice in point.choices] == [
        ("SIDE_choice_1", "END"),
        ("SIDE_choice_2", "C2"),
    ]
    assert structure.choice_points_at("SIDE") == []


def test_expand_chapter_rejects_dangling_generated_choice() -> None:
    structure = linear_builder().add_chapter("SIDE").build()
    generated = GeneratedChapter(content="x", choices=[{"text": "Fall", "leads_to_chapter": "NOWHERE"}])

    with pytest.raises(GeneratedContentInvalidError):
        expand_chapter(structure, "SIDE", generated)
    with pytest.raises(GeneratedContentInvalidError):
        expand_chapter(structure, "C1", generated)


class _FakeResponse:
    def __init__(self, *, status_code: int, payload: object = None, body_is_json: bool = True):
        self.status_code = status_code
        self._payload = payload
        self._body_is_json = body_is_json
        self.request = httpx.Request("POST", "http://generator.test/v1/chapters")

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise httpx.HTTPStatusError(f"status {self.status_code}", request=self.request, response=self)

    def json(self) -> object:
        if not self._body_is_json:
            raise ValueError("Expecting value")
        return self._payload


class _FakeAsyncClient:
    scenarios: list[object] = []
    requests: list[dict] = []

    def __init__(self, *, timeout):
        self.timeout = timeout

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def post(self, url: str, *, headers: dict, json: dict):
        _FakeAsyncClient.requests.append({"url": url, "headers": headers, "json": json})
        if not _FakeAsyncClient.scenarios:
            raise RuntimeError("no fake scenario configured")
        outcome = _FakeAsyncClient.scenarios.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _context() -> GenerationContext:
    return GenerationContext(story_id="long_v1", session_id="s-1", current_chapter="C2")


def _install(monkeypatch: pytest.MonkeyPatch, *scenarios: object) -> None:
    _FakeAsyncClient.scenarios = list(scenarios)
    _FakeAsyncClient.requests = []
    monkeypatch.setattr(http_provider.httpx, "AsyncClient", _FakeAsyncClient)


def test_http_generator_posts_context(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(
        monkeypatch,
        _FakeResponse(status_code=200, payload={"content": "Rain.", "choices": [{"text": "Wait"}], "extra": 1}),
    )
    generator = HttpContentGenerator("http://generator.test/v1/", api_key="k", timeout_s=3)

    chapter = asyncio.run(generator.generate_chapter_content(_context(), 2, "moderate"))

    assert chapter.content == "Rain."
    assert [choice.text for choice in chapter.choices] == ["Wait"]
    req = _FakeAsyncClient.requests[0]
    assert req["url"] == "http://generator.test/v1/chapters"
    assert req["headers"]["authorization"] == "Bearer k"
    assert req["json"]["choice_count"] == 2
    assert req["json"]["branching_strategy"] == "moderate"
    assert req["json"]["context"]["current_chapter"] == "C2"


def test_http_generator_ending(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(monkeypatch, _FakeResponse(status_code=200, payload={"content": "The end."}))
    generator = HttpContentGenerator("http://generator.test/v1")

    content = asyncio.run(
        generator.generate_ending_content([RecentChoice(choice_id="c", choice_text="Go", chapter_id="C1")], "happy", [])
    )

    assert content == "The end."
    req = _FakeAsyncClient.requests[0]
    assert req["url"] == "http://generator.test/v1/endings"
    assert "authorization" not in req["headers"]
    assert req["json"]["ending_type"] == "happy"


@pytest.mark.parametrize(
    ("outcome", "expected"),
    [
        (httpx.ReadTimeout("slow"), GenerationTimeoutError),
        (httpx.ConnectError("refused"), GenerationUnavailableError),
        (_FakeResponse(status_code=502, payload={}), GenerationUnavailableError),
        (_FakeResponse(status_code=200, body_is_json=False), GeneratedContentInvalidError),
        (_FakeResponse(status_code=200, payload=["not", "an", "object"]), GeneratedContentInvalidError),
        (_FakeResponse(status_code=200, payload={"choices": []}), GeneratedContentInvalidError),
        (
            _FakeResponse(
                status_code=200,
                payload={"content": "x", "choices": [{"text": "a", "consequences": [{"type": "later", "description": "d"}]}]},
            ),
            GeneratedContentInvalidError,
        ),
    ],
)
def test_http_generator_error_mapping(monkeypatch: pytest.MonkeyPatch, outcome: object, expected: type) -> None:
    _install(monkeypatch, outcome)
    generator = HttpContentGenerator("http://generator.test/v1")

    with pytest.raises(expected):
        asyncio.run(generator.generate_chapter_content(_context(), 2, "conservative"))


def test_provider_selection() -> None:
    assert isinstance(get_content_generator(), FakeContentGenerator)
    assert isinstance(get_content_generator("http"), HttpContentGenerator)


def test_grammarcheck_reports_schema_path() -> None:
    ok = {"content": "Rain.", "choices": [{"text": "Wait", "leads_to_chapter": None}]}
    assert validate_generated_output(ok, schema_name="chapter", schema=CHAPTER_OUTPUT_SCHEMA) is ok

    with pytest.raises(GeneratedContentInvalidError) as exc_info:
        validate_generated_output({"content": ""}, schema_name="chapter", schema=CHAPTER_OUTPUT_SCHEMA)
    assert "chapter: schema validate failed" in exc_info.value.message
    assert exc_info.value.code == "GENERATION_INVALID_OUTPUT"

    with pytest.raises(GeneratedContentInvalidError):
        validate_generated_output(["content"], schema_name="chapter", schema=CHAPTER_OUTPUT_SCHEMA)
