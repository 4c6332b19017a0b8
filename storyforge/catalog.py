"""Character and content catalogs.

Both are collaborators owned outside the core: the turn code only reads
characters, the unlock gate only reads content prices. The in-memory
implementations load from JSON files shaped as a plain list of objects:

    characters.json   [{"id": "ilyra", "name": "Ilyra", "role": ..., ...}]
    content.json      [{"id": "7", "story_id": "observatory", "title": ..., "unlock_cost": 20}]
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Protocol

from storyforge.errors import NotFoundError
from storyforge.models import CharacterProfile, ContentItem


class CharacterCatalog(Protocol):
    def get_character(self, character_id: str) -> CharacterProfile: ...

    def list_characters(self) -> list[CharacterProfile]: ...


class ContentCatalog(Protocol):
    def get_content(self, content_id: str) -> ContentItem: ...

    def list_content(self, story_id: str | None = None) -> list[ContentItem]: ...


class InMemoryCharacterCatalog:
    def __init__(self, characters: list[CharacterProfile] | None = None) -> None:
        self._by_id: dict[str, CharacterProfile] = {}
        for c in characters or []:
            self.add(c)

    @classmethod
    def from_json_file(cls, path: Path) -> InMemoryCharacterCatalog:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls([CharacterProfile.model_validate(c) for c in data])

    def add(self, character: CharacterProfile) -> None:
        """Upsert a character by id."""
        self._by_id[character.id] = character

    def get_character(self, character_id: str) -> CharacterProfile:
        try:
            return self._by_id[character_id]
        except KeyError:
            raise NotFoundError(f"Character {character_id!r} not found") from None

    def list_characters(self) -> list[CharacterProfile]:
        return list(self._by_id.values())

    def list_for_story(self, story_id: str) -> list[CharacterProfile]:
        return [c for c in self._by_id.values() if c.story_id in (None, story_id)]


class InMemoryContentCatalog:
    def __init__(self, items: list[ContentItem] | None = None) -> None:
        self._by_id: dict[str, ContentItem] = {}
        for item in items or []:
            self.add(item)

    @classmethod
    def from_json_file(cls, path: Path) -> InMemoryContentCatalog:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls([ContentItem.model_validate(c) for c in data])

    def add(self, item: ContentItem) -> None:
        self._by_id[item.id] = item

    def get_content(self, content_id: str) -> ContentItem:
        try:
            return self._by_id[str(content_id)]
        except KeyError:
            raise NotFoundError(f"Content {content_id!r} not found") from None

    def list_content(self, story_id: str | None = None) -> list[ContentItem]:
        items = list(self._by_id.values())
        if story_id is not None:
            items = [i for i in items if i.story_id == story_id]
        return items
