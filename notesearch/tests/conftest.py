"""Shared fixtures: a small notes vault and a scripted model provider."""

from pathlib import Path
from typing import Callable, List, Optional, Union

import pytest

from notesearch.engine.cancellation import CancellationToken, NONE
from notesearch.engine.config import Config
from notesearch.engine.providers.llm import ModelHandle


VAULT_NOTES = {
    "2025-01-10 standup.md": (
        "Attendees: Ana, Raj\n"
        "Discussed the database migration timeline.\n"
        "#work #meeting\n"
    ),
    "2025-02-20 incident.txt": (
        "Problem: login fails after deploy\n"
        "Solution: rotate the signing keys\n"
        "#bug #work\n"
    ),
    "research-notes.md": (
        "---\n"
        "tags: [research, database]\n"
        "template: research\n"
        "---\n"
        "Research questions: how do we index the database?\n"
        "Findings: partial indexes help.\n"
    ),
    "database-migration.md": (
        "The database migration plan.\n"
        "Step one: freeze writes to the database.\n"
        "Step two: run the migration scripts.\n"
    ),
    "ideas.txt": "quick idea about caching\n",
}


@pytest.fixture
def vault(tmp_path) -> Path:
    """Create a temporary notes vault."""
    root = tmp_path / "vault"
    root.mkdir()
    for name, content in VAULT_NOTES.items():
        (root / name).write_text(content, encoding="utf-8")

    templates = root / ".templates"
    templates.mkdir()
    (templates / "meeting.md").write_text("Attendees:\nAgenda:\n", encoding="utf-8")
    (root / "diagram.png").write_bytes(b"\x89PNG")
    return root


@pytest.fixture
def config(vault) -> Config:
    return Config(notes_path=vault, search={"min_relevance_score": 0.1})


Reply = Union[str, Exception]


class FakeModelProvider:
    """
    Scripted stand-in for a model server.

    ``scores`` are consumed in order by relevance prompts; once exhausted
    ``default_score`` is used. ``excerpt`` answers excerpt and explanation
    prompts. ``on_score`` runs before each relevance reply is produced.
    """

    def __init__(
        self,
        scores: Optional[List[Reply]] = None,
        default_score: Reply = "0.9",
        excerpt: Reply = "Relevant excerpt",
        available: bool = True,
        on_score: Optional[Callable[[int], None]] = None,
    ):
        self.scores = list(scores or [])
        self.default_score = default_score
        self.excerpt = excerpt
        self.available = available
        self.on_score = on_score
        self.acquire_calls = 0
        self.prompts: List[str] = []

    @property
    def score_prompts(self) -> List[str]:
        return [p for p in self.prompts if p.startswith("Rate how relevant")]

    async def try_acquire(self, vendor: str, family: str) -> Optional[ModelHandle]:
        self.acquire_calls += 1
        if not self.available:
            return None
        return ModelHandle(vendor=vendor, family=family, name=f"{family}:7b")

    async def send_prompt(self, handle: ModelHandle, text: str, cancellation: CancellationToken = NONE):
        self.prompts.append(text)
        if text.startswith("Rate how relevant"):
            if self.on_score:
                self.on_score(len(self.score_prompts))
            reply = self.scores.pop(0) if self.scores else self.default_score
        else:
            reply = self.excerpt

        if isinstance(reply, Exception):
            raise reply
        first, *rest = reply.split(" ")
        yield first
        for word in rest:
            yield f" {word}"


@pytest.fixture
def provider() -> FakeModelProvider:
    return FakeModelProvider()


@pytest.fixture
def make_provider() -> Callable[..., FakeModelProvider]:
    return FakeModelProvider
