"""Narrative turns — one player input in, one character reply out.

Turn flow (generate_response):
  1. Look up the character. Unknown id → NotFoundError, state untouched.
  2. Compose the layered prompt and install it as the system prompt.
  3. Append the user message.
  4. Await the text generator.
  5. Only on success append the assistant message and return it.

If step 4 fails the user message stays in the log with no answer
(``state.awaiting_reply`` is True). The turn is not rolled back; callers
decide whether to retry or drop the pending message.

narrate_turn wraps this with the structured reply contract: it parses
the JSON reply, settles the mood, looks for an ``[END:ending_id]`` marker
and asks the generator for the next ``[CHOICE: label | speaker]`` options.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from storyforge.catalog import CharacterCatalog
from storyforge.conversation import ConversationState
from storyforge.errors import TransientError, ValidationError
from storyforge.llm import LLMError, TextGenerator
from storyforge.models import (
    NARRATOR_ID,
    CharacterProfile,
    CharacterReply,
    Choice,
    NarrativeTurn,
)
from storyforge.prompts import classify_mood, compose

logger = logging.getLogger(__name__)

ENDING_PATTERN = re.compile(r"\[END:([a-z_]+)\]", re.IGNORECASE)
CHOICE_PATTERN = re.compile(r"\[CHOICE:\s*([^|\]]+?)\s*\|\s*([^\]]+?)\s*\]")
MAX_CHOICES = 3
CHOICE_REQUEST = "Generate 2-3 narrative choices based on the context."


async def generate_response(
    user_input: str,
    character_id: str,
    state: ConversationState,
    characters: CharacterCatalog,
    generator: TextGenerator,
    *,
    mood: str | None = None,
    response_format: bool = False,
) -> str:
    """Run one turn against ``state`` and return the assistant text."""
    if user_input is None or not user_input.strip():
        raise ValidationError("User input cannot be blank")
    profile = characters.get_character(character_id)

    state.set_system_prompt(compose(profile, mood=mood, response_format=response_format))
    state.append_user_message(user_input)

    reply = await generator(state)
    if not reply or not reply.strip():
        raise LLMError(f"LLM backend returned an empty reply for {character_id!r}")

    state.append_assistant_message(reply)
    logger.info("%s responded (%d chars)", profile.name, len(reply))
    return reply


# ---------------------------------------------------------------------------
# Reply parsing
# ---------------------------------------------------------------------------

def parse_reply(raw: str) -> CharacterReply:
    """Pull the {"dialogue", "actionText", "mood"} object out of a reply.

    The generator sometimes wraps the object in prose or code fences, so
    every ``{`` is tried in turn. Falls back to the raw text as dialogue.
    """
    decoder = json.JSONDecoder()
    start = raw.find("{")
    while start >= 0:
        try:
            obj, _ = decoder.raw_decode(raw, start)
        except json.JSONDecodeError:
            obj = None
        if isinstance(obj, dict) and "dialogue" in obj:
            return CharacterReply(
                dialogue=_as_text(obj.get("dialogue")) or "",
                action_text=_as_text(obj.get("actionText")),
                mood=_as_text(obj.get("mood")),
            )
        start = raw.find("{", start + 1)

    logger.debug("no JSON reply object found, using raw text")
    return CharacterReply(dialogue=raw.strip())


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def detect_ending(*texts: str | None) -> str | None:
    """Return the first ``[END:ending_id]`` id (lowercased) in the given texts."""
    for text in texts:
        if not text:
            continue
        match = ENDING_PATTERN.search(text)
        if match:
            return match.group(1).lower()
    return None


def parse_choices(text: str, valid_speakers: set[str] | None = None) -> list[Choice]:
    """Parse ``[CHOICE: label | speaker]`` markers, keeping at most three.

    Speakers not in ``valid_speakers`` are redirected to the narrator.
    """
    choices: list[Choice] = []
    for match in CHOICE_PATTERN.finditer(text or ""):
        label = match.group(1).strip()
        speaker = match.group(2).strip().lower()
        if valid_speakers is not None and speaker not in valid_speakers:
            logger.warning("Invalid speaker %r in choice, defaulting to narrator", speaker)
            speaker = NARRATOR_ID
        choices.append(Choice(id=f"choice_{len(choices) + 1}", label=label, next_speaker=speaker))
        if len(choices) == MAX_CHOICES:
            break
    return choices


def fallback_choices(current_speaker: str) -> list[Choice]:
    if current_speaker == NARRATOR_ID:
        return [
            Choice(id="continue", label="Continue exploring", next_speaker=NARRATOR_ID),
            Choice(id="look_around", label="Look around", next_speaker=NARRATOR_ID),
        ]
    return [
        Choice(id="continue", label="Continue the conversation", next_speaker=current_speaker),
        Choice(id="step_back", label="Step back", next_speaker=NARRATOR_ID),
    ]


def _choice_prompt(speaker: str, last_dialogue: str, speakers: list[str]) -> str:
    if len(last_dialogue) > 200:
        last_dialogue = last_dialogue[:200] + "..."
    return (
        "You are a narrative choice generator for an interactive fantasy story.\n\n"
        "Current situation:\n"
        f"- Active character: {speaker}\n"
        f'- Last dialogue: "{last_dialogue}"\n\n'
        "Your task: Generate 2-3 meaningful choices for the player.\n\n"
        "Requirements:\n"
        "- Make choices distinct and interesting\n"
        "- Include at least one choice that switches to a different character\n"
        "- Vary choice types: actions, questions, observations\n"
        "- Keep choices concise (3-8 words each)\n\n"
        f"Available characters: {', '.join(speakers)}\n\n"
        "Format each choice EXACTLY like this:\n"
        "[CHOICE: Step back and observe | narrator]\n\n"
        "Generate the choices now:"
    )


async def request_choices(
    generator: TextGenerator,
    speaker: str,
    last_dialogue: str,
    speakers: list[str],
) -> list[Choice]:
    """Ask the generator for the next choices in a throwaway conversation.

    A failed request degrades to fallback choices; the turn that produced
    ``last_dialogue`` has already been recorded.
    """
    scratch = ConversationState(_choice_prompt(speaker, last_dialogue, speakers))
    scratch.append_user_message(CHOICE_REQUEST)
    try:
        text = await generator(scratch)
    except TransientError as e:
        logger.warning("Choice generation failed (%s), using fallback choices", e)
        return fallback_choices(speaker)

    valid = set(speakers) | {NARRATOR_ID}
    choices = parse_choices(text, valid)
    if not choices:
        logger.warning("No choices parsed from response, using fallback choices")
        return fallback_choices(speaker)
    return choices


def _story_speakers(characters: CharacterCatalog, story_id: str | None) -> list[str]:
    return [
        c.id for c in characters.list_characters()
        if story_id is None or c.story_id in (None, story_id)
    ]


async def narrate_turn(
    user_input: str,
    character_id: str,
    state: ConversationState,
    characters: CharacterCatalog,
    generator: TextGenerator,
    *,
    story_id: str | None = None,
    mood: str | None = None,
) -> NarrativeTurn:
    """Run a structured turn: reply, mood, ending detection and next choices."""
    raw = await generate_response(
        user_input, character_id, state, characters, generator,
        mood=mood, response_format=True,
    )
    profile: CharacterProfile = characters.get_character(character_id)
    reply = parse_reply(raw)

    if reply.mood:
        turn_mood = reply.mood
    else:
        turn_mood = classify_mood(" ".join(filter(None, [reply.dialogue, reply.action_text])), profile)

    ending_id = detect_ending(reply.dialogue, reply.action_text)
    if ending_id:
        logger.info("Story ending detected: %s (ending: %s)", character_id, ending_id)
        choices: list[Choice] = []
    else:
        choices = await request_choices(
            generator, profile.id, reply.dialogue, _story_speakers(characters, story_id),
        )

    return NarrativeTurn(
        speaker=profile.id,
        speaker_name=profile.name,
        dialogue=reply.dialogue,
        action_text=reply.action_text,
        mood=turn_mood,
        choices=choices,
        ending_id=ending_id,
        avatar_url=profile.avatar_url,
        raw=raw,
    )
