"""Tests for prompt rendering, layered prompt composition and mood classification."""

import pytest

from storyforge.models import CharacterProfile
from storyforge.prompts import (
    BASE_DIRECTIVE,
    GENERIC_MOODS,
    PromptError,
    classify_mood,
    compose,
    compose_sections,
    render_prompt,
)

ILYRA = CharacterProfile(
    id="ilyra",
    name="Ilyra",
    role="Exiled Astronomer",
    personality=["reserved", "analytical", "curious"],
    speech_style="Measured and metaphor-heavy.",
    default_mood="wary",
    relationship_to_user="uncertain",
    description="Once the court astronomer.",
    mood_options=["wary", "curious"],
)

NARRATOR = CharacterProfile(id="narrator", name="Narrator", default_mood="observant")


# ── render_prompt ────────────────────────────────────────────


def test_render_simple_variable():
    assert render_prompt("Hello {{ name }}!", {"name": "World"}) == "Hello World!"


def test_render_join_filter():
    assert render_prompt("{{ items | join(', ') }}", {"items": ["a", "b", "c"]}) == "a, b, c"


def test_render_missing_variable():
    assert render_prompt("Hello {{ name }}!", {}) == "Hello !"


def test_render_invalid_template():
    with pytest.raises(PromptError):
        render_prompt("{% if %}", {})


# ── compose ──────────────────────────────────────────────────


def test_narrator_gets_base_directive_verbatim():
    assert compose(NARRATOR) == BASE_DIRECTIVE


def test_narrator_id_is_case_insensitive():
    assert compose(NARRATOR.model_copy(update={"id": "Narrator"})) == BASE_DIRECTIVE


def test_character_section_order():
    names = [s.name for s in compose_sections(ILYRA)]
    assert names == [
        "base", "identity", "role", "personality", "style",
        "mood", "relationship", "background", "instruction",
    ]


def test_character_prompt_contents():
    prompt = compose(ILYRA)
    assert prompt.startswith(BASE_DIRECTIVE + "\n\n")
    assert "**Ilyra**" in prompt
    assert "**Role:** Exiled Astronomer" in prompt
    assert "**Personality Traits:** reserved, analytical, curious" in prompt
    assert "**Speech Style:** Measured and metaphor-heavy." in prompt
    assert "**Current Mood:** wary" in prompt
    assert "**Relationship to User:** uncertain" in prompt
    assert "**Background:** Once the court astronomer." in prompt
    assert prompt.endswith("Show their current mood through subtle cues.")


def test_mood_override():
    assert "**Current Mood:** pleased" in compose(ILYRA, mood="pleased")


def test_empty_personality_renders_blank_list():
    bare = CharacterProfile(id="x", name="X")
    assert "**Personality Traits:** \n\n**Speech Style:** " in compose(bare)


def test_response_format_adds_sections():
    sections = compose_sections(ILYRA, response_format=True)
    assert [s.name for s in sections][-2:] == ["mood_options", "response_format"]
    options = sections[-2].text
    assert "MOOD OPTIONS for Ilyra" in options
    assert '- "wary"\n- "curious"' in options
    assert '"mood": "current_emotional_state"' in sections[-1].text


def test_generic_mood_options_when_profile_has_none():
    profile = ILYRA.model_copy(update={"mood_options": []})
    options = compose_sections(profile, response_format=True)[-2].text
    assert ", ".join(GENERIC_MOODS) in options
    assert "for Ilyra" not in options


def test_narrator_response_format():
    names = [s.name for s in compose_sections(NARRATOR, response_format=True)]
    assert names == ["base", "narrator", "response_format"]


# ── classify_mood ────────────────────────────────────────────


@pytest.mark.parametrize("text, expected", [
    ("She smiles faintly.", "pleased"),
    ("He LAUGHS at the sky.", "pleased"),
    ("Her eyes narrow.", "wary"),
    ("A suspicious glance.", "wary"),
    ("She sighs and looks away.", "melancholic"),
    ("A wistful note in her voice.", "melancholic"),
    ("He is eager to begin!", "enthusiastic"),
])
def test_classify_mood_keywords(text, expected):
    assert classify_mood(text, ILYRA) == expected


def test_classify_mood_first_category_wins():
    assert classify_mood("She frowns, then smiles.", ILYRA) == "pleased"


@pytest.mark.parametrize("text", [None, "", "The wind moves through the dome."])
def test_classify_mood_falls_back_to_default(text):
    assert classify_mood(text, ILYRA) == "wary"
