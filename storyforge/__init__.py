"""Storyforge — conversation state, save slots and the gem ledger for
character-driven interactive stories.

Layers, leaves first:
  conversation  message buffer + per-token session registry
  prompts       layered system prompt and mood classification
  narrative     one turn against a text generator (llm)
  store         SQLite saves, ledger and unlocks
  engine        StoryEngine facade tying the above together
"""
