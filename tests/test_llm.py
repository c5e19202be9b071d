import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from reservation_scraper.llm import Disambiguator

REFERENCE = {"name": "Sushi Saito", "area": "Roppongi", "phone": "03-3589-4412"}
CANDIDATES = [
    {"title": "Sushi Saito Ginza", "link": "https://omakase.in/en/r/ab123456"},
    {"title": "Sushi Saito", "link": "https://omakase.in/en/r/cd789012", "snippet": "Roppongi Itchome"},
]


def fake_model(answer=None, error=None):
    model = MagicMock()
    if error is not None:
        model.generate_content_async = AsyncMock(side_effect=error)
    else:
        model.generate_content_async = AsyncMock(return_value=MagicMock(text=answer))
    return model


@pytest.mark.parametrize("text,expected", [
    ("2", 1),
    (" 1.\n", 0),
    ("none", None),
    ("None.", None),
    ("3", None),
    ("0", None),
    ("Candidate 2", None),
    ("", None),
])
def test_parse_answer(text, expected):
    assert Disambiguator.parse_answer(text, 2) == expected


def test_choose_returns_candidate():
    model = fake_model("2")
    chosen = asyncio.run(Disambiguator(model=model).choose(REFERENCE, "omakase", CANDIDATES))
    assert chosen is CANDIDATES[1]

    prompt = model.generate_content_async.await_args.args[0]
    assert "Name: Sushi Saito" in prompt
    assert "Phone: 03-3589-4412" in prompt
    assert "2. Sushi Saito | https://omakase.in/en/r/cd789012 | Roppongi Itchome" in prompt


def test_choose_none_answer():
    assert asyncio.run(Disambiguator(model=fake_model("none")).choose(REFERENCE, "omakase", CANDIDATES)) is None


def test_choose_model_error_is_no_match():
    model = fake_model(error=RuntimeError("quota"))
    assert asyncio.run(Disambiguator(model=model).choose(REFERENCE, "omakase", CANDIDATES)) is None


def test_disabled_without_key(monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    disambiguator = Disambiguator()
    assert not disambiguator.enabled
    assert asyncio.run(disambiguator.choose(REFERENCE, "omakase", CANDIDATES)) is None


def test_no_candidates():
    model = fake_model("1")
    assert asyncio.run(Disambiguator(model=model).choose(REFERENCE, "omakase", [])) is None
    model.generate_content_async.assert_not_awaited()
