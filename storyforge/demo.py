"""Demo stories for development and testing.

Two stories ship out of the box: "observatory" (Ilyra, the exiled court
astronomer) and "pirates" (Captain Blackwood and his navigator Isla). The
narrator is shared. seed_demo() registers their endings on an engine and
opens a starter gem account.
"""

from __future__ import annotations

import logging

from storyforge.catalog import InMemoryCharacterCatalog, InMemoryContentCatalog
from storyforge.models import CharacterProfile, ContentItem, EndingSummary, LedgerAccount

logger = logging.getLogger(__name__)

DEMO_USER = "default"

DEMO_CHARACTERS = [
    CharacterProfile(
        id="narrator",
        name="Narrator",
        role="Storyteller",
        personality=["omniscient", "descriptive", "neutral"],
        speech_style="Rich, detailed descriptions. Sets scenes and atmosphere.",
        default_mood="observant",
        relationship_to_user="guide",
        description="The narrator weaves the story, describing scenes, actions, and the world around you.",
    ),
    CharacterProfile(
        id="ilyra",
        name="Ilyra",
        role="Exiled Astronomer",
        personality=["reserved", "analytical", "emotionally guarded", "curious"],
        speech_style="Measured and metaphor-heavy. Uses celestial imagery. Avoids direct answers.",
        default_mood="wary",
        relationship_to_user="uncertain",
        description=(
            "Once the court astronomer, Ilyra was exiled after predicting an omen the king "
            "refused to believe. She now lives in isolation, studying the stars that betrayed "
            "her position but never her passion."
        ),
        story_id="observatory",
        mood_options=["wary", "curious", "pleased", "melancholic", "guarded"],
    ),
    CharacterProfile(
        id="blackwood",
        name="Captain Nathaniel Blackwood",
        role="Legendary Pirate Captain",
        personality=["ruthless", "cunning", "melancholic", "commanding", "haunted"],
        speech_style=(
            "Poetic maritime language and dark humor. Alternates between commanding "
            "authority and vulnerable longing. Uses seafaring metaphors."
        ),
        default_mood="defiant",
        relationship_to_user="distant",
        description=(
            "A weathered pirate captain in his 40s with a graying beard and eyes that have "
            "seen too many storms. Legendary for his ruthlessness at sea and cunning in battle."
        ),
        story_id="pirates",
    ),
    CharacterProfile(
        id="isla",
        name="Isla Hartwell",
        role="Ship's Navigator & Mapmaker",
        personality=["sharp-witted", "pragmatic", "loyal", "professional"],
        speech_style="Direct, technical nautical terminology. Grounded and practical.",
        default_mood="wary",
        relationship_to_user="professional",
        description=(
            "A sharp-eyed navigator in her 30s with navigational tools always at hand. "
            "Her intelligence and independence make her invaluable aboard ship."
        ),
        story_id="pirates",
    ),
]

DEMO_CONTENT = [
    ContentItem(id="1", story_id="observatory", title="The Star Chart",
                unlock_cost=20, content_type="lore", rarity="common",
                description="Ilyra's hand-drawn map of the omen constellation."),
    ContentItem(id="2", story_id="observatory", title="The King's Refusal",
                unlock_cost=50, content_type="scene", rarity="rare",
                description="The night the court laughed at the prophecy."),
    ContentItem(id="3", story_id="pirates", title="Portrait of Isla",
                unlock_cost=30, content_type="character", rarity="common"),
    ContentItem(id="4", story_id="pirates", title="The Kraken's Wake",
                unlock_cost=150, content_type="scene", rarity="legendary"),
    ContentItem(id="5", story_id="pirates", title="Ship's Log, First Entry",
                unlock_cost=0, content_type="extra"),
]

DEMO_ENDINGS: dict[str, list[EndingSummary]] = {
    "observatory": [
        EndingSummary(id="enlightenment_ending", title="Cosmic Truth",
                      description="Ilyra unlocks the secrets hidden in the stars"),
        EndingSummary(id="tragic_ending", title="The Price of Knowledge",
                      description="Obsession leads to an inevitable downfall"),
        EndingSummary(id="neutral_ending", title="The Journey Continues",
                      description="Some mysteries are meant to remain unsolved"),
    ],
    "pirates": [
        EndingSummary(id="romantic_ending", title="Heart's True Course",
                      description="Blackwood and Isla navigate love on the high seas"),
        EndingSummary(id="treasure_ending", title="Fortune's Favor",
                      description="The crew discovers legendary treasure beyond imagination"),
        EndingSummary(id="tragic_ending", title="Lost at Sea",
                      description="The Kraken claims another ship to the depths"),
        EndingSummary(id="redemption_ending", title="New Horizons",
                      description="Blackwood finds peace beyond the pirate life"),
    ],
}


def demo_catalogs() -> tuple[InMemoryCharacterCatalog, InMemoryContentCatalog]:
    return InMemoryCharacterCatalog(DEMO_CHARACTERS), InMemoryContentCatalog(DEMO_CONTENT)


async def seed_demo(engine, user_id: str = DEMO_USER, starting_gems: int = 100) -> LedgerAccount:
    """Register demo endings on ``engine`` and open ``user_id``'s account.

    Safe to run repeatedly: an existing account keeps its balance.
    """
    for story_id, endings in DEMO_ENDINGS.items():
        engine.register_endings(story_id, endings)
    account = await engine.ledger.open_account(user_id, starting_gems)
    logger.info("Demo data ready for %s (%d gems)", user_id, account.balance)
    return account
