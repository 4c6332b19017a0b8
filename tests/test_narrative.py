"""Tests for storyforge.narrative — turns, reply parsing, endings and choices."""

import json

import pytest

from storyforge.conversation import ConversationState
from storyforge.errors import NotFoundError, ValidationError
from storyforge.llm import LLMError
from storyforge.narrative import (
    MAX_CHOICES,
    detect_ending,
    fallback_choices,
    generate_response,
    narrate_turn,
    parse_choices,
    parse_reply,
    request_choices,
)
from storyforge.prompts import BASE_DIRECTIVE, compose

CHOICES = "[CHOICE: Ask about the omen | ilyra]\n[CHOICE: Step outside | narrator]"


def _reply(dialogue: str, action: str | None = None, mood: str | None = None) -> str:
    obj = {"dialogue": dialogue}
    if action is not None:
        obj["actionText"] = action
    if mood is not None:
        obj["mood"] = mood
    return json.dumps(obj)


# ---------------------------------------------------------------------------
# generate_response
# ---------------------------------------------------------------------------

class TestGenerateResponse:
    async def test_happy_path(self, characters, stub_llm) -> None:
        state = ConversationState()
        stub_llm.queue("The stars remember.")
        reply = await generate_response("Who are you?", "ilyra", state, characters, stub_llm)

        assert reply == "The stars remember."
        assert state.system_prompt == compose(characters.get_character("ilyra"))
        assert [(m.role, m.content) for m in state.messages] == [
            ("user", "Who are you?"),
            ("assistant", "The stars remember."),
        ]

    async def test_generator_sees_prompt_and_user_message(self, characters, stub_llm) -> None:
        state = ConversationState()
        stub_llm.queue("ok")
        await generate_response("Hello", "narrator", state, characters, stub_llm)
        seen = stub_llm.calls[0]
        assert seen.system_prompt == BASE_DIRECTIVE
        assert seen.messages[-1].content == "Hello"

    async def test_history_accumulates(self, characters, stub_llm) -> None:
        state = ConversationState()
        stub_llm.queue("first", "second")
        await generate_response("one", "ilyra", state, characters, stub_llm)
        await generate_response("two", "ilyra", state, characters, stub_llm)
        assert stub_llm.calls[1].message_count() == 3
        assert state.message_count() == 4

    async def test_unknown_character_leaves_state_untouched(self, characters, stub_llm) -> None:
        state = ConversationState("previous prompt")
        with pytest.raises(NotFoundError):
            await generate_response("hi", "ghost", state, characters, stub_llm)
        assert state.system_prompt == "previous prompt"
        assert state.is_empty()
        assert stub_llm.calls == []

    @pytest.mark.parametrize("text", ["", "   "])
    async def test_blank_input_rejected(self, characters, stub_llm, text) -> None:
        state = ConversationState()
        with pytest.raises(ValidationError):
            await generate_response(text, "ilyra", state, characters, stub_llm)
        assert state.is_empty()
        assert state.system_prompt is None

    async def test_generator_failure_leaves_pending_user_message(self, characters, stub_llm) -> None:
        state = ConversationState()
        stub_llm.queue(LLMError("LLM backend timed out after 60s"))
        with pytest.raises(LLMError):
            await generate_response("hello?", "ilyra", state, characters, stub_llm)
        assert state.message_count() == 1
        assert state.awaiting_reply

    async def test_empty_reply_is_an_error(self, characters, stub_llm) -> None:
        state = ConversationState()
        stub_llm.queue("  ")
        with pytest.raises(LLMError):
            await generate_response("hello?", "ilyra", state, characters, stub_llm)
        assert state.awaiting_reply


# ---------------------------------------------------------------------------
# parse_reply / detect_ending / parse_choices
# ---------------------------------------------------------------------------

class TestParseReply:
    def test_plain_json(self) -> None:
        reply = parse_reply(_reply("Welcome.", "She bows.", "pleased"))
        assert reply.dialogue == "Welcome."
        assert reply.action_text == "She bows."
        assert reply.mood == "pleased"

    def test_json_wrapped_in_prose_and_fences(self) -> None:
        raw = "Here you go:\n```json\n" + _reply("Hi.", mood="wary") + "\n```"
        reply = parse_reply(raw)
        assert reply.dialogue == "Hi."
        assert reply.mood == "wary"
        assert reply.action_text is None

    def test_skips_braces_that_are_not_the_reply(self) -> None:
        raw = "{not json} {\"other\": 1} " + _reply("Found it.")
        assert parse_reply(raw).dialogue == "Found it."

    def test_falls_back_to_raw_text(self) -> None:
        reply = parse_reply("  Just words, no JSON.  ")
        assert reply.dialogue == "Just words, no JSON."
        assert reply.mood is None

    def test_blank_fields_become_none(self) -> None:
        reply = parse_reply(_reply("Hi.", action="  ", mood=""))
        assert reply.action_text is None
        assert reply.mood is None


class TestDetectEnding:
    def test_marker_in_dialogue(self) -> None:
        assert detect_ending("And so it ends. [END:Tragic_Ending]") == "tragic_ending"

    def test_marker_in_action_text(self) -> None:
        assert detect_ending("Farewell.", "The ship sinks. [END:tragic_ending]") == "tragic_ending"

    def test_no_marker(self) -> None:
        assert detect_ending("Not yet.", None) is None

    def test_dialogue_wins(self) -> None:
        assert detect_ending("[END:first_ending]", "[END:second_ending]") == "first_ending"


class TestParseChoices:
    def test_parses_markers(self) -> None:
        choices = parse_choices(CHOICES, {"ilyra", "narrator"})
        assert [(c.id, c.label, c.next_speaker) for c in choices] == [
            ("choice_1", "Ask about the omen", "ilyra"),
            ("choice_2", "Step outside", "narrator"),
        ]

    def test_unknown_speaker_goes_to_narrator(self) -> None:
        choices = parse_choices("[CHOICE: Call the guards | captain]", {"ilyra", "narrator"})
        assert choices[0].next_speaker == "narrator"

    def test_at_most_three(self) -> None:
        text = "\n".join(f"[CHOICE: Option {i} | narrator]" for i in range(5))
        assert len(parse_choices(text)) == MAX_CHOICES

    def test_no_markers(self) -> None:
        assert parse_choices("Nothing to choose.") == []

    def test_fallback_choices(self) -> None:
        assert [c.next_speaker for c in fallback_choices("narrator")] == ["narrator", "narrator"]
        assert [c.next_speaker for c in fallback_choices("ilyra")] == ["ilyra", "narrator"]


class TestRequestChoices:
    async def test_uses_throwaway_state(self, stub_llm) -> None:
        stub_llm.queue(CHOICES)
        choices = await request_choices(stub_llm, "ilyra", "The stars...", ["narrator", "ilyra"])
        assert len(choices) == 2
        seen = stub_llm.calls[0]
        assert "Active character: ilyra" in seen.system_prompt
        assert seen.message_count() == 1

    async def test_failure_falls_back(self, stub_llm) -> None:
        stub_llm.queue(LLMError("Cannot connect"))
        choices = await request_choices(stub_llm, "ilyra", "...", ["narrator", "ilyra"])
        assert choices == fallback_choices("ilyra")

    async def test_unparseable_falls_back(self, stub_llm) -> None:
        stub_llm.queue("Sure! Here are some ideas.")
        choices = await request_choices(stub_llm, "narrator", "...", ["narrator"])
        assert choices == fallback_choices("narrator")

    async def test_long_dialogue_is_truncated(self, stub_llm) -> None:
        stub_llm.queue(CHOICES)
        await request_choices(stub_llm, "ilyra", "x" * 500, ["ilyra"])
        assert "x" * 200 + "..." in stub_llm.calls[0].system_prompt
        assert "x" * 201 not in stub_llm.calls[0].system_prompt


# ---------------------------------------------------------------------------
# narrate_turn
# ---------------------------------------------------------------------------

class TestNarrateTurn:
    async def test_structured_turn(self, characters, stub_llm) -> None:
        state = ConversationState()
        stub_llm.queue(_reply("The omen was real.", "She traces a star.", "melancholic"), CHOICES)
        turn = await narrate_turn("Tell me", "ilyra", state, characters, stub_llm, story_id="observatory")

        assert turn.speaker == "ilyra"
        assert turn.speaker_name == "Ilyra"
        assert turn.dialogue == "The omen was real."
        assert turn.action_text == "She traces a star."
        assert turn.mood == "melancholic"
        assert len(turn.choices) == 2
        assert not turn.is_ending
        assert "MOOD OPTIONS" in state.system_prompt
        # choice request does not leak into the session
        assert state.message_count() == 2

    async def test_mood_classified_when_reply_has_none(self, characters, stub_llm) -> None:
        state = ConversationState()
        stub_llm.queue(_reply("Perhaps.", "She smiles."), CHOICES)
        turn = await narrate_turn("Hi", "ilyra", state, characters, stub_llm)
        assert turn.mood == "pleased"

    async def test_default_mood_when_nothing_matches(self, characters, stub_llm) -> None:
        state = ConversationState()
        stub_llm.queue("Plain answer.", CHOICES)
        turn = await narrate_turn("Hi", "ilyra", state, characters, stub_llm)
        assert turn.mood == "wary"
        assert turn.dialogue == "Plain answer."

    async def test_ending_skips_choices(self, characters, stub_llm) -> None:
        state = ConversationState()
        stub_llm.queue(_reply("The dome goes dark. [END:neutral_ending]"))
        turn = await narrate_turn("Goodbye", "ilyra", state, characters, stub_llm)
        assert turn.ending_id == "neutral_ending"
        assert turn.choices == []
        assert len(stub_llm.calls) == 1

    async def test_choice_speakers_limited_to_story(self, characters, stub_llm) -> None:
        state = ConversationState()
        stub_llm.queue(_reply("Aye."), "[CHOICE: Ask Isla | isla]")
        turn = await narrate_turn("Hi", "ilyra", state, characters, stub_llm, story_id="observatory")
        assert turn.choices[0].next_speaker == "narrator"
