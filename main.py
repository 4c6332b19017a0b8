"""Storyforge — dev launcher. Console chat against a configured LLM backend.

Commands inside the chat:
  /save [slot]        save the conversation to a slot
  /load [slot]        replace the conversation with a saved one
  /as <character>     switch the speaking character
  /unlock <id>        spend gems on a content item
  /gems               show the balance
  /endings            list discovered endings
  /quit               leave
"""

import argparse
import asyncio
import logging
from pathlib import Path

from storyforge.config import load_settings
from storyforge.demo import DEMO_USER, demo_catalogs, seed_demo
from storyforge.engine import StoryEngine
from storyforge.errors import StoryforgeError
from storyforge.llm import EchoLLM

ROOT = Path(__file__).parent
SESSION = "console"


async def chat(engine: StoryEngine, user_id: str, story_id: str, character_id: str, slot: int) -> None:
    await engine.start_session(SESSION)
    print(f"Story: {story_id}  speaker: {character_id}  (/quit to leave)")

    while True:
        try:
            line = input("> ").strip()
        except EOFError:
            break
        if not line:
            continue

        try:
            if line.startswith("/"):
                cmd, _, arg = line[1:].partition(" ")
                arg = arg.strip()
                if cmd == "quit":
                    break
                elif cmd == "save":
                    info = await engine.save_session(SESSION, story_id, int(arg or slot), user_id, character_id)
                    print(f"Saved slot {info.slot} ({info.message_count} messages)")
                elif cmd == "load":
                    info = await engine.load_session(SESSION, story_id, int(arg or slot), user_id)
                    character_id = info.current_speaker or character_id
                    print(f"Loaded slot {info.slot} ({info.message_count} messages)")
                elif cmd == "as":
                    engine.characters.get_character(arg)
                    character_id = arg
                elif cmd == "unlock":
                    outcome = await engine.unlock(user_id, arg)
                    print(f"{outcome.reason}: balance {outcome.balance}")
                elif cmd == "gems":
                    print(f"{await engine.ledger.get_balance(user_id)} gems")
                elif cmd == "endings":
                    for e in await engine.endings(user_id, story_id):
                        print(f"  {'*' if e.discovered else ' '} {e.title}")
                else:
                    print(f"Unknown command: /{cmd}")
                continue

            result = await engine.take_turn(
                SESSION, user_id, story_id, character_id, line, save_slot=slot,
            )
        except StoryforgeError as e:
            print(f"[{e.kind}] {e}")
            continue

        turn = result.turn
        if turn.action_text:
            print(f"*{turn.action_text}*")
        print(f"{turn.speaker_name} ({turn.mood}): {turn.dialogue}")
        if result.gems_awarded:
            print(f"  +{result.gems_awarded} gems (balance {result.balance})")
        if turn.is_ending:
            print(f"== Ending reached: {turn.ending_id} ==")
            break
        for choice in turn.choices:
            print(f"  - {choice.label} [{choice.next_speaker}]")


async def run(args: argparse.Namespace) -> None:
    settings = load_settings(args.env_file)
    if args.db:
        settings = settings.model_copy(update={"db_path": args.db})
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    characters, content = demo_catalogs()
    engine = await StoryEngine.from_settings(
        settings,
        characters=characters,
        content=content,
        generator=EchoLLM() if args.echo else None,
    )
    if args.demo:
        await seed_demo(engine, args.user, settings.starting_gems)
    await chat(engine, args.user, args.story, args.character, args.slot)


def main():
    parser = argparse.ArgumentParser(description="Storyforge dev launcher")
    parser.add_argument("--env-file", type=Path, default=ROOT / ".env",
                        help="Settings file (default: ./.env)")
    parser.add_argument("--db", type=Path, default=None,
                        help="SQLite database path (default: STORYFORGE_DB_PATH)")
    parser.add_argument("--demo", action="store_true",
                        help="Register demo endings and open a starter gem account")
    parser.add_argument("--echo", action="store_true",
                        help="Use the echo generator instead of the configured backend")
    parser.add_argument("--user", default=DEMO_USER)
    parser.add_argument("--story", default="observatory")
    parser.add_argument("--character", default="ilyra")
    parser.add_argument("--slot", type=int, default=1)
    args = parser.parse_args()

    asyncio.run(run(args))


if __name__ == "__main__":
    main()
