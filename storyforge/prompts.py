"""Layered system prompts and keyword mood classification.

A layered prompt is a list of named sections rendered from Jinja templates
and joined with blank lines:

    base          fixed narrative directive, shared by every character
    identity      "You are currently embodying: **Name**"
    role          **Role:**
    personality   **Personality Traits:** (joined in profile order)
    style         **Speech Style:**
    mood          **Current Mood:**
    relationship  **Relationship to User:**
    background    **Background:**
    instruction   stay-in-character instruction

The narrator gets the base section only. Structured turns append
``mood_options`` and ``response_format`` so the generator answers with a
JSON object (see narrative.parse_reply).
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import jinja2

from storyforge.models import CharacterProfile

_env = jinja2.Environment(autoescape=False, keep_trailing_newline=False)
_cache: dict[str, Callable[..., str]] = {}


class PromptError(Exception):
    """Raised when a prompt template fails to compile or render."""


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Jinja template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _env.from_string(template_str).render
            _cache[template_str] = compiled
        return compiled(**context)
    except jinja2.TemplateError as e:
        raise PromptError(f"Template error: {e}") from e


# ---------------------------------------------------------------------------
# Fixed text
# ---------------------------------------------------------------------------

BASE_DIRECTIVE = """You are an interactive narrative engine for a fantasy roleplay experience.
Your role is to create immersive, engaging story moments that respond to the player's choices.

Guidelines:
- Write in a natural, flowing style
- Show, don't tell - use vivid sensory details
- Let character personalities shine through dialogue and actions
- Keep responses focused and meaningful (2-4 paragraphs)
- Maintain consistency with established character traits
- Create moments that invite player interaction"""

CHARACTER_SECTIONS: tuple[tuple[str, str], ...] = (
    ("identity", "## Current Character\nYou are currently embodying: **{{ name }}**"),
    ("role", "**Role:** {{ role }}"),
    ("personality", "**Personality Traits:** {{ personality | join(', ') }}"),
    ("style", "**Speech Style:** {{ speech_style }}"),
    ("mood", "**Current Mood:** {{ mood }}"),
    ("relationship", "**Relationship to User:** {{ relationship }}"),
    ("background", "**Background:** {{ description }}"),
    (
        "instruction",
        "Respond in character. Maintain {{ name }}'s distinct voice, personality, "
        "and speaking patterns. Show their current mood through subtle cues.",
    ),
)

NARRATOR_BLOCK = """## Current Character: Narrator
You are the omniscient narrator. Describe scenes in third-person with rich detail.
Set atmosphere, describe environments, and guide the story forward.
Your voice is neutral, observant, and immersive."""

NARRATOR_FORMAT = """CRITICAL: You MUST respond with valid JSON in this EXACT format:
{
  "dialogue": "Your spoken narration here",
  "actionText": "Brief scene description (1-2 sentences)"
}

Guidelines:
- dialogue: Your narrative description (what you observe and describe)
- actionText: Physical scene details, atmosphere, movements (1-2 sentences max)
- ALWAYS include BOTH fields
- Keep actionText concise and evocative"""

MOOD_OPTIONS_TEMPLATE = """**MOOD OPTIONS{% if options %} for {{ name }}{% endif %}:**
Choose the mood that best reflects your current emotional state:
{% if options %}{% for option in options %}- "{{ option }}"{% if not loop.last %}
{% endif %}{% endfor %}{% else %}{{ generic | join(', ') }}{% endif %}

Select ONE mood that best fits this moment."""

GENERIC_MOODS = ("wary", "curious", "pleased", "concerned", "contemplative", "defiant", "calm")

CHARACTER_FORMAT_TEMPLATE = """CRITICAL: You MUST respond with valid JSON in this EXACT format:
{
  "dialogue": "Your spoken words here",
  "actionText": "Brief action/gesture description (1-2 sentences)",
  "mood": "current_emotional_state"
}

Guidelines for JSON response:
- dialogue: What {{ name }} says (in their voice)
- actionText: What {{ name }} does - gestures, expressions, movements (1-2 sentences max)
- mood: Your current emotional state (see mood options above)
- ALWAYS include ALL THREE fields
- Use present tense for actionText"""


# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class PromptSection:
    name: str
    text: str


def _profile_context(profile: CharacterProfile, mood: str | None) -> dict[str, Any]:
    return {
        "name": profile.name,
        "role": profile.role,
        "personality": list(profile.personality),
        "speech_style": profile.speech_style,
        "mood": mood or profile.default_mood,
        "relationship": profile.relationship_to_user,
        "description": profile.description,
        "options": list(profile.mood_options),
        "generic": list(GENERIC_MOODS),
    }


def compose_sections(
    profile: CharacterProfile,
    *,
    mood: str | None = None,
    response_format: bool = False,
) -> list[PromptSection]:
    """Build the ordered prompt sections for one character.

    ``mood`` overrides the profile's default mood in the mood section.
    """
    sections = [PromptSection("base", BASE_DIRECTIVE)]

    if profile.is_narrator:
        if response_format:
            sections.append(PromptSection("narrator", NARRATOR_BLOCK))
            sections.append(PromptSection("response_format", NARRATOR_FORMAT))
        return sections

    ctx = _profile_context(profile, mood)
    for name, template in CHARACTER_SECTIONS:
        sections.append(PromptSection(name, render_prompt(template, ctx)))

    if response_format:
        sections.append(PromptSection("mood_options", render_prompt(MOOD_OPTIONS_TEMPLATE, ctx)))
        sections.append(PromptSection("response_format", render_prompt(CHARACTER_FORMAT_TEMPLATE, ctx)))
    return sections


def join_sections(sections: list[PromptSection]) -> str:
    return "\n\n".join(s.text for s in sections)


def compose(
    profile: CharacterProfile,
    *,
    mood: str | None = None,
    response_format: bool = False,
) -> str:
    """Return the layered system prompt for ``profile``.

    The narrator (without response format) gets BASE_DIRECTIVE verbatim.
    """
    return join_sections(compose_sections(profile, mood=mood, response_format=response_format))


# ---------------------------------------------------------------------------
# Mood classification
# ---------------------------------------------------------------------------

# Checked in order; the first category with any keyword present wins.
MOOD_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("pleased", ("smile", "laugh", "grin")),
    ("wary", ("frown", "scowl", "glare", "narrow", "suspicious", "cautious")),
    ("melancholic", ("sigh", "distant", "wistful")),
    ("enthusiastic", ("excited", "eager", "exclaim", "enthusiasm")),
)


def classify_mood(response_text: str | None, profile: CharacterProfile) -> str:
    """Guess a mood label from response text, falling back to the default mood."""
    if not response_text:
        return profile.default_mood
    lowered = response_text.lower()
    for mood, keywords in MOOD_KEYWORDS:
        if any(k in lowered for k in keywords):
            return mood
    return profile.default_mood
