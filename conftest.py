import shutil
from pathlib import Path

import pytest

from storyforge.catalog import InMemoryCharacterCatalog, InMemoryContentCatalog
from storyforge.demo import DEMO_CHARACTERS, DEMO_CONTENT
from storyforge.store import Database, Ledger, SaveStore, UnlockGate

TEST_DATA_DIR = Path("data-tests")


@pytest.fixture(autouse=True)
def clean_test_data():
    """Wipe and re-create data-tests/ before every test."""
    if TEST_DATA_DIR.exists():
        shutil.rmtree(TEST_DATA_DIR)
    TEST_DATA_DIR.mkdir(parents=True)
    yield
    # leave data-tests around after tests for inspection; CI can ignore it


@pytest.fixture
async def db() -> Database:
    database = Database(TEST_DATA_DIR / "storyforge.db")
    await database.init()
    return database


@pytest.fixture
def characters() -> InMemoryCharacterCatalog:
    return InMemoryCharacterCatalog(DEMO_CHARACTERS)


@pytest.fixture
def content() -> InMemoryContentCatalog:
    return InMemoryContentCatalog(DEMO_CONTENT)


@pytest.fixture
def saves(db: Database) -> SaveStore:
    return SaveStore(db)


@pytest.fixture
def ledger(db: Database) -> Ledger:
    return Ledger(db)


@pytest.fixture
def gate(db: Database, ledger: Ledger, content: InMemoryContentCatalog) -> UnlockGate:
    return UnlockGate(db, ledger, content)


class StubLLM:
    """Scripted text generator: returns queued replies in order, records every call.

    A queued exception is raised instead of returned.
    """

    def __init__(self) -> None:
        self.replies: list = []
        self.calls = []

    def queue(self, *replies) -> "StubLLM":
        self.replies.extend(replies)
        return self

    async def __call__(self, state) -> str:
        self.calls.append(state.snapshot())
        if not self.replies:
            raise AssertionError("StubLLM has no reply queued")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def stub_llm() -> StubLLM:
    return StubLLM()
