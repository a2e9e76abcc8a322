"""Shared fixtures: temporary LanceDB stores and deterministic providers.

No test touches the network. ``ConceptProvider`` maps synonyms onto shared
dimensions so that related sentences land close together, which is enough
to exercise ranking and thresholds end to end.
"""

import hashlib
import json
from dataclasses import replace

import pytest

from config import CONFIG
from credentials import Credentials
from embeddings import EmbeddingGenerator, EmbeddingProvider
from errors import ProviderError
from indexer import Indexer
from knowledge import KnowledgeCache
from memories import MemoryLog
from retrieval import RetrievalOrchestrator
from store import MemoryStore
from utils import tokenize
from vector_store import VectorStore

CONCEPTS = [
    {"quick", "fast", "speedy"},
    {"fox", "dog", "animal", "cat"},
    {"jump", "jumps", "jumping", "leap"},
    {"lazy", "sleeping", "sleepy"},
    {"over"},
    {"programming", "code", "coding"},
    {"fun", "challenging"},
]
CONCEPT_DIM = 32


class ConceptProvider(EmbeddingProvider):
    """Bag-of-concepts embeddings; unknown words hash into the spare dimensions."""

    name = "concept"

    def __init__(self, model: str = "concept-v1", dimensions: int = CONCEPT_DIM):
        super().__init__(model, dimensions, timeout=1.0, max_retries=0)
        self.calls = 0

    def _call(self, texts):
        self.calls += 1
        return [self.vector(text) for text in texts]

    def vector(self, text):
        values = [0.0] * self.dimensions
        spare = self.dimensions - len(CONCEPTS)
        for word in tokenize(text):
            for i, group in enumerate(CONCEPTS):
                if word in group:
                    values[i] += 1.0
                    break
            else:
                values[len(CONCEPTS) + hashlib.md5(word.encode()).digest()[0] % spare] += 1.0
        return values


class FailingProvider(EmbeddingProvider):
    """Always fails; ``quota`` makes it look like a 429."""

    name = "failing"

    def __init__(self, model: str = "concept-v1", quota: bool = False):
        super().__init__(model, CONCEPT_DIM, timeout=1.0, max_retries=0)
        self.quota = quota
        self.calls = 0

    def _call(self, texts):
        self.calls += 1
        raise ProviderError(self.name, "service unavailable", quota=self.quota)


class FakeGenerator:
    def __init__(self, reply: str = "A conversation about animals.", fail: bool = False):
        self.reply = reply
        self.fail = fail
        self.prompts = []

    def generate(self, prompt):
        self.prompts.append(prompt)
        if self.fail:
            raise ProviderError("fake", "generation failed")
        return self.reply


@pytest.fixture
def config(tmp_path):
    sessions = tmp_path / "sessions"
    sessions.mkdir()
    return replace(
        CONFIG,
        db_path=tmp_path / "lancedb",
        sessions_dir=sessions,
        secrets_dir=tmp_path / "secrets",
        index_interval_hours=0,
    )


@pytest.fixture
def store(config):
    memory_store = MemoryStore(config.db_path)
    memory_store.init()
    return memory_store


@pytest.fixture
def credentials(tmp_path):
    return Credentials(environ={}, secrets_dir=tmp_path / "secrets")


@pytest.fixture
def concept():
    return ConceptProvider()


@pytest.fixture
def embeddings(concept, credentials):
    return EmbeddingGenerator([concept], credentials)


@pytest.fixture
def vectors(store):
    return VectorStore(store)


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def indexer(store, embeddings, vectors, config, generator):
    return Indexer(store, embeddings, vectors, config, generator=generator)


@pytest.fixture
def knowledge(store, embeddings, vectors):
    return KnowledgeCache(store, embeddings, vectors)


@pytest.fixture
def memories(store, embeddings, vectors):
    return MemoryLog(store, embeddings, vectors)


@pytest.fixture
def retrieval(store, embeddings, vectors, config):
    return RetrievalOrchestrator(store, embeddings, vectors, config)


@pytest.fixture
def write_transcript(config):
    """Write ``[(user, assistant), ...]`` exchanges as a JSONL transcript."""

    def write(name, exchanges, extra_lines=()):
        lines = [json.dumps({"type": "session", "id": name})]
        for i, (user, assistant) in enumerate(exchanges):
            timestamp = f"2026-01-0{1 + i % 9}T10:00:00Z"
            lines.append(
                json.dumps({"type": "message", "timestamp": timestamp, "message": {"role": "user", "content": user}})
            )
            if assistant is not None:
                lines.append(
                    json.dumps(
                        {
                            "type": "message",
                            "timestamp": timestamp,
                            "message": {"role": "assistant", "content": [{"type": "text", "text": assistant}]},
                        }
                    )
                )
        lines.extend(extra_lines)
        path = config.sessions_dir / name
        path.write_text("\n".join(lines) + "\n")
        return path

    return write


@pytest.fixture
def write_note(config):
    def write(name, text):
        path = config.sessions_dir / name
        path.write_text(text)
        return path

    return write
