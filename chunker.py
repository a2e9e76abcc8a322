"""Split session transcripts and notes into bounded, deterministic units.

Transcripts are JSONL files with one event per line; events of
``type == "message"`` carry ``message.role`` and ``message.content`` (a string
or a list of ``{"type": "text", "text": ...}`` parts). A user message and the
assistant reply that follows it form one exchange. Plain ``.txt`` / ``.md``
notes are split on paragraphs.
"""

from __future__ import annotations

import json
import logging
import re
from collections import Counter
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from errors import MalformedSourceError
from utils import STOPWORDS, estimate_tokens, parse_timestamp

logger = logging.getLogger("recall.chunker")

TRANSCRIPT_SUFFIXES = (".jsonl",)
NOTE_SUFFIXES = (".txt", ".md")

_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")
_TOPIC_STOPWORDS = STOPWORDS | {"user", "assistant"}

DECISION_PATTERNS = [
    re.compile(r"\b(decided?|choose|chose|conclude|resolved?|determined?|agreed?)\b", re.I),
    re.compile(r"\b(final decision|conclusion|resolution)\b", re.I),
    re.compile(r"\b(let's go with|we'll use|I'll proceed with)\b", re.I),
    re.compile(r"\b(settled on|opted for)\b", re.I),
]

ACTION_PATTERNS = [
    re.compile(r"\b(todo|to-do|action item|task|need to|should do|will do|plan to)\b", re.I),
    re.compile(r"\b(implement|build|create|develop|write|code|fix)\b", re.I),
    re.compile(r"\b(next step|follow up|remember to)\b", re.I),
    re.compile(r"\b(schedule|deadline|due date)\b", re.I),
]


@dataclass(slots=True)
class Message:
    role: str
    content: str
    timestamp: str | None = None


@dataclass(slots=True)
class ChunkUnit:
    sequence_index: int
    text: str
    speakers: list[str] = field(default_factory=list)
    timestamp: str | None = None

    @property
    def token_count(self) -> int:
        return estimate_tokens(self.text)


def extract_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return " ".join(
            part.get("text") or part.get("content") or ""
            for part in content
            if isinstance(part, dict) and part.get("type") == "text"
        )
    return ""


def extract_topics(text: str, limit: int = 3) -> list[str]:
    """Most frequent meaningful words, hyphens turned into underscores."""
    words = [
        w
        for w in re.sub(r"[^\w\s-]", " ", text.lower()).split()
        if len(w) > 3 and w not in _TOPIC_STOPWORDS and not w.isdigit()
    ]
    return [w.replace("-", "_") for w, _ in Counter(words).most_common(limit)]


def detect_decision(text: str) -> bool:
    return any(p.search(text) for p in DECISION_PATTERNS)


def detect_action(text: str) -> bool:
    return any(p.search(text) for p in ACTION_PATTERNS)


def iter_sources(root: Path) -> Iterator[Path]:
    """Transcript and note files under ``root``, in a stable order."""
    if not root.is_dir():
        return
    for path in sorted(root.rglob("*")):
        if path.is_file() and path.suffix in TRANSCRIPT_SUFFIXES + NOTE_SUFFIXES:
            yield path


class SessionChunker:
    def __init__(self, max_chunk_tokens: int = 500, max_chunks_per_source: int = 2000, overlap_chars: int = 200):
        self.max_chunk_tokens = max_chunk_tokens
        self.max_chunks_per_source = max_chunks_per_source
        self.overlap_chars = overlap_chars

    @property
    def target_chars(self) -> int:
        return self.max_chunk_tokens * 4

    # -------------------------------------------------------------------------
    # Parsing
    # -------------------------------------------------------------------------

    def parse_line(self, source_id: str, line_number: int, line: str) -> Message | None:
        """One JSONL event as a ``Message``; None for non-message events."""
        try:
            event = json.loads(line)
        except json.JSONDecodeError as e:
            raise MalformedSourceError(source_id, line_number, f"invalid JSON: {e.msg}") from e
        if not isinstance(event, dict):
            raise MalformedSourceError(source_id, line_number, "event is not an object")
        if event.get("type") != "message":
            return None
        message = event.get("message")
        if not isinstance(message, dict) or not isinstance(message.get("role"), str):
            raise MalformedSourceError(source_id, line_number, "message without role")
        text = extract_text(message.get("content"))
        if not text.strip():
            return None
        return Message(role=message["role"], content=text, timestamp=event.get("timestamp"))

    def parse_messages(self, source_id: str, text: str) -> tuple[list[Message], int]:
        """Messages of a transcript plus the number of malformed lines skipped."""
        messages: list[Message] = []
        skipped = 0
        for line_number, line in enumerate(text.splitlines(), 1):
            if not line.strip():
                continue
            try:
                message = self.parse_line(source_id, line_number, line)
            except MalformedSourceError as e:
                logger.warning("Skipping malformed line: %s", e)
                skipped += 1
                continue
            if message is not None:
                messages.append(message)
        return messages, skipped

    # -------------------------------------------------------------------------
    # Chunking
    # -------------------------------------------------------------------------

    def chunk_by_exchange(self, messages: list[Message]) -> list[ChunkUnit]:
        """Pair each user message with the next assistant reply."""
        units: list[ChunkUnit] = []
        i = 0
        while i < len(messages):
            user = messages[i]
            if user.role != "user":
                i += 1
                continue
            reply_index = next(
                (j for j in range(i + 1, len(messages)) if messages[j].role == "assistant"), None
            )
            text = f"User: {user.content.strip()}"
            speakers = ["user"]
            if reply_index is not None:
                text += f"\n\nAssistant: {messages[reply_index].content.strip()}"
                speakers.append("assistant")
            timestamp = _normalize_timestamp(user.timestamp)
            for part in self.split_large(text):
                units.append(ChunkUnit(len(units), part, list(speakers), timestamp))
            i = reply_index + 1 if reply_index is not None else i + 1
        return units

    def split_large(self, text: str) -> list[str]:
        """Split ``text`` into pieces of at most ``target_chars`` where possible.

        Paragraphs first, sentences for paragraphs that are still too long.
        Each piece after the first starts with the tail of the previous one.
        A single sentence longer than the target is kept whole.
        """
        if len(text) <= self.target_chars:
            return [text]

        parts: list[str] = []
        for paragraph in (p.strip() for p in text.split("\n\n")):
            if not paragraph:
                continue
            if len(paragraph) <= self.target_chars:
                parts.append(paragraph)
            else:
                parts.extend(s for s in _SENTENCE_RE.split(paragraph) if s.strip())

        pieces: list[str] = []
        current = ""
        for part in parts:
            proposed = f"{current}\n\n{part}" if current else part
            if len(proposed) > self.target_chars and current:
                pieces.append(current)
                current = part
            else:
                current = proposed
        if current:
            pieces.append(current)

        result = [pieces[0]]
        for prev, piece in zip(pieces, pieces[1:]):
            overlap = self._overlap(prev)
            result.append(f"{overlap}\n\n{piece}" if overlap else piece)
        return result

    def _overlap(self, text: str) -> str:
        if self.overlap_chars <= 0 or len(text) <= self.overlap_chars:
            return ""
        tail = text[-self.overlap_chars :]
        # start the overlap at a word boundary
        space = tail.find(" ")
        return tail[space + 1 :].strip() if space != -1 else tail.strip()

    def chunk_notes(self, text: str, timestamp: str | None = None) -> list[ChunkUnit]:
        text = text.strip()
        if not text:
            return []
        return [ChunkUnit(i, part, [], timestamp) for i, part in enumerate(self.split_large(text))]

    def chunk_file(self, source_id: str, path: Path, timestamp: str | None = None) -> tuple[list[ChunkUnit], int]:
        """Chunk one source file; returns units and malformed lines skipped."""
        text = path.read_text(encoding="utf-8", errors="replace")
        if path.suffix in TRANSCRIPT_SUFFIXES:
            messages, skipped = self.parse_messages(source_id, text)
            units = self.chunk_by_exchange(messages)
        else:
            units, skipped = self.chunk_notes(text, timestamp), 0
        if len(units) > self.max_chunks_per_source:
            logger.warning(
                "Source %s has %d chunks, capping at %d",
                source_id,
                len(units),
                self.max_chunks_per_source,
            )
            units = units[: self.max_chunks_per_source]
        return units, skipped


def _normalize_timestamp(value: Any) -> str | None:
    if isinstance(value, (int, float)):  # epoch milliseconds
        return datetime.fromtimestamp(value / 1000).isoformat()
    parsed = parse_timestamp(value) if isinstance(value, str) else None
    return parsed.isoformat() if parsed else None
