from choicebook.config import settings
from choicebook.modules.generation.base import ContentGenerator
from choicebook.modules.generation.providers.fake import FakeContentGenerator
from choicebook.modules.generation.providers.http import HttpContentGenerator


def get_content_generator(provider: str | None = None) -> ContentGenerator:
    name = (provider or settings.generator_provider or "fake").strip().lower()
    if name == "http":
        return HttpContentGenerator(
            settings.generator_base_url,
            api_key=settings.generator_api_key,
            timeout_s=settings.generator_timeout_s,
        )
    return FakeContentGenerator()


__all__ = [
    "ContentGenerator",
    "FakeContentGenerator",
    "HttpContentGenerator",
    "get_content_generator",
]
