import pytest

from chatflow.titles import TitleGenerator, clean_title, fallback_title
from tests.fakes import FakeLLMClient


def test_fallback_title():
    assert fallback_title("") == "New chat"
    assert fallback_title("  hi   there ") == "hi there"
    assert fallback_title("Explain photosynthesis in plants") == "Explain photosy..."


def test_clean_title_strips_quotes_prefix_and_punctuation():
    assert clean_title('"Photosynthesis Basics"', "q") == "Photosynthesis Basics"
    assert clean_title("Title: Cat drawing!", "q") == "Cat drawing"
    assert clean_title("광합성 설명\nextra line", "q") == "광합성 설명"


def test_clean_title_truncates_long_titles():
    title = clean_title("A very long title that keeps going and going", "q")
    assert len(title) == 30
    assert title.endswith("...")


def test_clean_title_falls_back_when_empty():
    assert clean_title("", "Explain photosynthesis in plants") == "Explain photosy..."
    assert clean_title('"!"', "hello") == "hello"


@pytest.mark.asyncio
async def test_generator_uses_low_temperature_and_answer_excerpt():
    llm = FakeLLMClient(title='"Plant energy"')
    generator = TitleGenerator()
    title = await generator.generate(llm, "Explain photosynthesis", "x" * 500)
    assert title == "Plant energy"
    call = llm.calls[-1]
    assert call["options"].temperature == 0.3
    assert call["options"].max_tokens == 50
    assert "x" * 200 + "..." in call["user"]
    assert "x" * 201 not in call["user"]
