from __future__ import annotations

import re

# Sentence pieces keep their trailing whitespace so joining them is lossless.
_SENTENCE_RE = re.compile(r".*?[.!?](?:\s+|$)|.+?$", re.DOTALL)


def split_sentences(text: str) -> list[str]:
    return [piece for piece in _SENTENCE_RE.findall(text) if piece]


def chunk_text(text: str, limit: int) -> list[str]:
    """Split ``text`` into pieces of at most ``limit`` characters.

    Pieces break after sentence punctuation where possible. A sentence longer
    than ``limit`` is cut into fixed slices; the final slice is carried into
    the next chunk. ``"".join(chunk_text(t, n)) == t`` always holds.
    """
    if limit < 1:
        raise ValueError(f"chunk limit must be positive, got {limit}")
    if not text:
        return []
    if len(text) <= limit:
        return [text]

    chunks: list[str] = []
    current = ""
    for sentence in split_sentences(text):
        if len(current) + len(sentence) <= limit:
            current += sentence
            continue
        if current:
            chunks.append(current)
        if len(sentence) <= limit:
            current = sentence
            continue
        slices = [
            sentence[start : start + limit]
            for start in range(0, len(sentence), limit)
        ]
        chunks.extend(slices[:-1])
        current = slices[-1]
    if current:
        chunks.append(current)
    return chunks
