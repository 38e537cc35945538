"""Split replies into channel-sized messages."""

import re
from typing import List, Tuple

_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")
_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")


def split_message(text: str, max_length: int) -> List[str]:
    """
    Split ``text`` into parts no longer than ``max_length``.

    Paragraph boundaries are preferred, then sentence boundaries, then spaces;
    a single word longer than the limit is cut.
    """
    text = text.strip()
    if not text:
        return []
    if max_length <= 0 or len(text) <= max_length:
        return [text]

    parts: List[str] = []
    current = ""
    for starts_paragraph, unit in _units(text, max_length):
        separator = "\n\n" if starts_paragraph else " "
        candidate = f"{current}{separator}{unit}" if current else unit
        if len(candidate) <= max_length:
            current = candidate
        else:
            if current:
                parts.append(current)
            current = unit
    if current:
        parts.append(current)
    return parts


def _units(text: str, max_length: int) -> List[Tuple[bool, str]]:
    """Sentences (or word runs) each within the limit, flagged at paragraph starts."""
    units: List[Tuple[bool, str]] = []
    for paragraph in _PARAGRAPH_BREAK.split(text):
        paragraph = paragraph.strip()
        if not paragraph:
            continue
        first = True
        for sentence in _SENTENCE_END.split(paragraph):
            chunks = [sentence] if len(sentence) <= max_length else _split_words(sentence, max_length)
            for chunk in chunks:
                units.append((first, chunk))
                first = False
    return units


def _split_words(sentence: str, max_length: int) -> List[str]:
    chunks: List[str] = []
    current = ""
    for word in sentence.split():
        while len(word) > max_length:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(word[:max_length])
            word = word[max_length:]
        if not word:
            continue
        candidate = f"{current} {word}" if current else word
        if len(candidate) <= max_length:
            current = candidate
        else:
            chunks.append(current)
            current = word
    if current:
        chunks.append(current)
    return chunks
