from __future__ import annotations
from dataclasses import dataclass
from typing import List
import math
import re

# Sentence-like units end in terminal punctuation plus whitespace, or at a blank line.
SENTENCE_DELIMITER = re.compile(r"([.!?]+\s+|\n\n)")


@dataclass
class TextChunk:
    text: str
    index: int
    token_count: int


def estimate_token_count(text: str) -> int:
    """Rough token estimation: ~4 characters per token, rounded up."""
    return math.ceil(len(text) / 4)


def split_sentences(text: str) -> List[str]:
    """Split text into sentence-like units, keeping each unit's delimiter."""
    parts = SENTENCE_DELIMITER.split(text)
    sentences = []
    for i in range(0, len(parts), 2):
        delimiter = parts[i + 1] if i + 1 < len(parts) else ""
        sentence = parts[i] + delimiter
        if sentence.strip():
            sentences.append(sentence)
    return sentences


class Chunker:
    """Sentence-greedy chunker with sentence-level overlap.

    Every chunk is prefixed with ``# {title}`` so a passage retrieved on its own
    still says which article it came from. The title's token cost is reserved
    from the budget up front.
    """

    def __init__(self, target_size: int = 500, overlap: int = 50):
        assert overlap < target_size
        self.target_size = target_size
        self.overlap = overlap

    def _overlap_tail(self, sentences: List[str]) -> List[str]:
        """Longest suffix of ``sentences`` whose estimate fits the overlap budget."""
        tail: List[str] = []
        tokens = 0
        for sentence in reversed(sentences):
            sentence_tokens = estimate_token_count(sentence)
            if tokens + sentence_tokens > self.overlap:
                break
            tail.insert(0, sentence)
            tokens += sentence_tokens
        return tail

    def _split_words(self, sentence: str, budget: int, prefix: str,
                     prefix_tokens: int, start_index: int) -> List[TextChunk]:
        """Break one oversized sentence at word boundaries into budget-sized pieces."""
        pieces: List[TextChunk] = []
        words: List[str] = []
        word_tokens = 0

        for word in sentence.split():
            tokens = estimate_token_count(word + " ")
            if word_tokens + tokens > budget and words:
                pieces.append(TextChunk(
                    text=prefix + " ".join(words),
                    index=start_index + len(pieces),
                    token_count=prefix_tokens + word_tokens,
                ))
                words = []
                word_tokens = 0
            words.append(word)
            word_tokens += tokens

        if words:
            pieces.append(TextChunk(
                text=prefix + " ".join(words),
                index=start_index + len(pieces),
                token_count=prefix_tokens + word_tokens,
            ))
        return pieces

    def split(self, text: str, title: str) -> List[TextChunk]:
        """Split one article's normalized text into ordered, overlapping chunks."""
        prefix = f"# {title}\n\n"
        sentences = split_sentences(text or "")

        if not sentences:
            heading = prefix.strip()
            return [TextChunk(text=heading, index=0, token_count=estimate_token_count(heading))]

        prefix_tokens = estimate_token_count(prefix)
        budget = max(1, self.target_size - prefix_tokens)

        chunks: List[TextChunk] = []
        current: List[str] = []
        current_tokens = 0

        for sentence in sentences:
            sentence_tokens = estimate_token_count(sentence)

            # An oversized sentence opening an empty chunk is split by words.
            if sentence_tokens > budget and not current:
                chunks.extend(self._split_words(sentence, budget, prefix, prefix_tokens, len(chunks)))
                continue

            if current_tokens + sentence_tokens > budget and current:
                chunks.append(TextChunk(
                    text=prefix + " ".join(current),
                    index=len(chunks),
                    token_count=prefix_tokens + current_tokens,
                ))
                current = self._overlap_tail(current)
                current_tokens = sum(estimate_token_count(s) for s in current)

            current.append(sentence)
            current_tokens += sentence_tokens

        if current:
            chunks.append(TextChunk(
                text=prefix + " ".join(current),
                index=len(chunks),
                token_count=prefix_tokens + current_tokens,
            ))

        return chunks


def chunk_text(text: str, title: str, target_size: int = 500, overlap: int = 50) -> List[TextChunk]:
    """Convenience wrapper around :class:`Chunker`."""
    return Chunker(target_size=target_size, overlap=overlap).split(text, title)
