"""
Source Citations for Agent Answers

Answers grounded in searchNotes output end with a sources block:

    ---sources---
    - meeting-notes.md (relevance: 0.87)
    ---end-sources---

The model writes the block; this module checks it against what the tool
actually returned. Unknown sources are dropped and relevance values are
replaced by the tool's own similarity scores. It also holds the streaming
filter that withholds the model's block until it has been checked, and the
grouping used by the referenced-files view.
"""

import re
import logging
from typing import Optional
from dataclasses import dataclass, field

from .prompts import SOURCES_START, SOURCES_END

logger = logging.getLogger(__name__)

_BLOCK_PATTERN = re.compile(
    re.escape(SOURCES_START) + r"(.*?)(?:" + re.escape(SOURCES_END) + r"|\Z)",
    re.DOTALL,
)
_LINE_PATTERN = re.compile(r"^\s*[-*•]\s*(.+?)\s*(?:\(\s*relevance:\s*([0-9]*\.?[0-9]+)\s*\))?\s*$")


@dataclass
class Citation:
    """A cited note with the relevance searchNotes reported for it."""
    source: str
    relevance: float
    chunk_ids: list[str] = field(default_factory=list)

    def format_line(self) -> str:
        return f"- {self.source} (relevance: {self.relevance:.2f})"

    def to_dict(self) -> dict:
        return {
            "name": self.source,
            "relevance": round(self.relevance, 4),
            "chunkIds": list(self.chunk_ids),
        }


def normalize_source_name(name: str) -> str:
    """Comparison key for source names: trimmed, case-folded, ``.md`` optional."""
    key = name.strip().strip("`*\"'").strip().lower()
    if key.endswith(".md"):
        key = key[:-3]
    return key


def source_name_variants(names) -> list[str]:
    """Each name with and without the ``.md`` suffix, for exact-match lookups."""
    variants = []
    for name in names:
        base = name[:-3] if name.lower().endswith(".md") else name
        for candidate in (name, base, f"{base}.md"):
            if candidate and candidate not in variants:
                variants.append(candidate)
    return variants


def format_sources_block(citations: list[Citation]) -> str:
    lines = [SOURCES_START]
    lines.extend(c.format_line() for c in citations)
    lines.append(SOURCES_END)
    return "\n".join(lines)


def parse_sources_block(text: str) -> tuple[str, Optional[list[tuple[str, Optional[float]]]]]:
    """
    Split an answer into body and cited entries.

    Returns:
        (body, entries) where entries is None when the text has no sources
        block, otherwise a list of (source name, relevance or None).
    """
    match = _BLOCK_PATTERN.search(text or "")
    if not match:
        return text or "", None

    entries = []
    for line in match.group(1).splitlines():
        line_match = _LINE_PATTERN.match(line)
        if not line_match:
            continue
        relevance = float(line_match.group(2)) if line_match.group(2) else None
        entries.append((line_match.group(1), relevance))

    body = text[:match.start()] + text[match.end():]
    return body, entries


class SourceTracker:
    """Collects the sources searchNotes returned during one turn."""

    def __init__(self):
        self._by_key: dict[str, Citation] = {}

    def record(self, result: dict) -> None:
        """Record hits from a successful searchNotes result payload."""
        for hit in result.get("results") or []:
            source = hit.get("source")
            similarity = hit.get("similarity")
            if not source or similarity is None:
                continue
            key = normalize_source_name(source)
            entry = self._by_key.get(key)
            if entry is None:
                entry = self._by_key[key] = Citation(source=source, relevance=float(similarity))
            else:
                entry.relevance = max(entry.relevance, float(similarity))
            chunk_id = hit.get("chunkId")
            if chunk_id and chunk_id not in entry.chunk_ids:
                entry.chunk_ids.append(chunk_id)

    def resolve(self, name: str) -> Optional[Citation]:
        return self._by_key.get(normalize_source_name(name))

    def __len__(self) -> int:
        return len(self._by_key)


def finalize_answer(text: str, tracker: SourceTracker) -> tuple[str, list[Citation]]:
    """
    Rebuild the answer's sources block from what the tools really returned.

    Entries naming a source searchNotes never returned this turn are dropped;
    relevance values come from the tool. An answer without a block is left
    without one.

    Returns:
        (answer text, citations kept)
    """
    body, entries = parse_sources_block(text)
    if entries is None:
        return (text or "").strip(), []

    citations = []
    seen = set()
    for name, claimed in entries:
        found = tracker.resolve(name)
        if found is None:
            logger.warning(f"Dropping citation of unseen source: {name!r}")
            continue
        if found.source in seen:
            continue
        seen.add(found.source)
        if claimed is not None and abs(claimed - found.relevance) >= 0.01:
            logger.debug(f"Corrected relevance for {found.source}: {claimed} -> {found.relevance:.2f}")
        citations.append(Citation(found.source, found.relevance, list(found.chunk_ids)))

    body = body.strip()
    if not citations:
        return body, []
    return f"{body}\n\n{format_sources_block(citations)}", citations


class SourcesBlockFilter:
    """
    Pass streamed text through while withholding a sources block.

    Text is released as it arrives, except for a trailing fragment that could
    still turn into the start marker. Once the marker is seen, everything
    after it is held back for :func:`finalize_answer` to rewrite.
    """

    def __init__(self):
        self._pending = ""
        self._in_block = False
        self.emitted = ""

    def feed(self, text: str) -> str:
        if self._in_block:
            return ""
        self._pending += text

        idx = self._pending.find(SOURCES_START)
        if idx != -1:
            out = self._pending[:idx]
            self._pending = ""
            self._in_block = True
            return self._emit(out)

        keep = _partial_marker_length(self._pending)
        out = self._pending[:len(self._pending) - keep]
        self._pending = self._pending[len(out):]
        return self._emit(out)

    def flush(self) -> str:
        """Release any held-back text that did not turn into a block."""
        out = "" if self._in_block else self._pending
        self._pending = ""
        return self._emit(out)

    def _emit(self, out: str) -> str:
        self.emitted += out
        return out


def _partial_marker_length(text: str) -> int:
    """Length of the longest suffix of ``text`` that is a proper prefix of the marker."""
    for size in range(min(len(text), len(SOURCES_START) - 1), 0, -1):
        if SOURCES_START.startswith(text[-size:]):
            return size
    return 0


def group_referenced_files(chunks: list[dict], message_sources: list) -> list[dict]:
    """
    Group a chat's cited files into chunk lists for display.

    A chunk is marked referenced when its id was cited. When a citation
    carried no chunk ids, every chunk of that file is marked: a best-effort
    highlight, not a precise link.

    Args:
        chunks: Rows from VectorStore.get_source_chunks
        message_sources: ``sources`` values of the chat's messages

    Returns:
        [{"source", "chunks": [{"id", "content", "chunkIndex", "isReferenced"}]}]
    """
    referenced: dict[str, set] = {}
    for sources in message_sources:
        for src in sources or []:
            if not isinstance(src, dict) or not src.get("name"):
                continue
            ids = referenced.setdefault(normalize_source_name(src["name"]), set())
            ids.update(src.get("chunkIds") or [])
            if src.get("chunkId"):
                ids.add(src["chunkId"])

    files: dict[str, dict] = {}
    for chunk in chunks:
        meta = chunk["metadata"]
        key = normalize_source_name(meta.label)
        if key not in referenced:
            continue
        cited_ids = referenced[key]
        entry = files.setdefault(key, {"source": meta.label, "chunks": []})
        entry["chunks"].append({
            "id": chunk["id"],
            "content": chunk["content"],
            "chunkIndex": meta.chunk_index,
            "isReferenced": chunk["id"] in cited_ids or not cited_ids,
        })

    for entry in files.values():
        entry["chunks"].sort(key=lambda c: c["chunkIndex"] if c["chunkIndex"] is not None else float("inf"))
    return list(files.values())


def collect_cited_names(message_sources: list) -> list[str]:
    """Distinct source names cited across a chat's messages, in first-seen order."""
    names = []
    for sources in message_sources:
        for src in sources or []:
            if isinstance(src, dict) and src.get("name") and src["name"] not in names:
                names.append(src["name"])
    return names
