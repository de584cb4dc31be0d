"""
Transcript Chunking Service

Splits a transcript into word-window chunks for embedding and retrieval.

Strategy:
---------
1. Split every transcript segment into sentences (abbreviations such as
   "Dr." or "e.g." do not end a sentence)
2. Spread each segment's time range over its sentences by word count
3. Greedily pack sentences into chunks of CHUNK_MIN_WORDS..CHUNK_MAX_WORDS
4. Prefix every chunk after the first with the last CHUNK_OVERLAP_WORDS
   words of the previous chunk for context continuity

Chunking is deterministic: the same transcript always produces the same
chunk list, which is what lets the chunk stage be re-run safely.

Configuration from settings:
- CHUNK_MIN_WORDS: 500 (default)
- CHUNK_MAX_WORDS: 1000 (default)
- CHUNK_OVERLAP_WORDS: 100 (default)
"""

import re
from typing import Any, Optional

import tiktoken

from mediaflow.core.config import settings


ABBREVIATIONS = ["Dr.", "Mr.", "Mrs.", "Ms.", "Prof.", "Sr.", "Jr.", "vs.", "etc.", "e.g.", "i.e."]

_SENTENCE_END = re.compile(r'(?<=[.!?])\s+')
_PLACEHOLDER = "\u0000"


def count_words(text: str) -> int:
    return len(text.split())


def last_words(text: str, n: int) -> str:
    return " ".join(text.split()[-n:]) if n > 0 else ""


def split_into_sentences(text: str) -> list[str]:
    """
    Split text on sentence-ending punctuation followed by whitespace.

    >>> split_into_sentences("Dr. Smith arrived. He sat down!")
    ['Dr. Smith arrived.', 'He sat down!']
    """
    if not text or not text.strip():
        return []

    protected = text
    for abbreviation in ABBREVIATIONS:
        protected = protected.replace(abbreviation, abbreviation.replace(".", _PLACEHOLDER))

    sentences = _SENTENCE_END.split(protected.strip())
    return [s.replace(_PLACEHOLDER, ".").strip() for s in sentences if s.strip()]


class TranscriptChunker:
    """
    Sentence-preserving word-window chunker for transcripts.

    Usage:
    ------
    chunker = TranscriptChunker()
    chunks = chunker.chunk(item.transcript, item.transcript_segments)

    for chunk_data in chunks:
        chunk = MediaChunk(
            media_item_id=item.id,
            chunk_index=chunk_data["index"],
            text=chunk_data["text"],
            ...
        )
    """

    def __init__(
        self,
        min_words: Optional[int] = None,
        max_words: Optional[int] = None,
        overlap_words: Optional[int] = None,
    ):
        self.min_words = settings.CHUNK_MIN_WORDS if min_words is None else min_words
        self.max_words = settings.CHUNK_MAX_WORDS if max_words is None else max_words
        self.overlap_words = settings.CHUNK_OVERLAP_WORDS if overlap_words is None else overlap_words

        if self.min_words > self.max_words:
            raise ValueError("min_words must not exceed max_words")

        # cl100k_base: general purpose BPE, used for token accounting only
        self.tokenizer = tiktoken.get_encoding("cl100k_base")

    def count_tokens(self, text: str) -> int:
        return len(self.tokenizer.encode(text))

    def chunk(
        self,
        transcript: Optional[str],
        segments: Optional[list[dict]] = None,
    ) -> list[dict[str, Any]]:
        """
        Chunk a transcript.

        Args:
            transcript: Full transcript text (used when there are no segments)
            segments: Optional [{start, end, text}] segments with timestamps

        Returns:
            List of chunk dictionaries:
            - index: 0-based ordinal
            - text: chunk text (overlap prefix included)
            - word_count / token_count
            - start_seconds / end_seconds (None without timestamps)
            - metadata: has_overlap, overlap_word_count, sentence_count
        """
        sentences = self._timed_sentences(transcript, segments)
        if not sentences:
            return []

        groups: list[list[dict]] = []
        current: list[dict] = []
        current_words = 0

        for sentence in sentences:
            words = sentence["words"]
            if current and current_words + words > self.max_words and current_words >= self.min_words:
                groups.append(current)
                current, current_words = [], 0
            current.append(sentence)
            current_words += words

        if current:
            groups.append(current)

        chunks = []
        previous_text = ""
        for index, group in enumerate(groups):
            body = " ".join(s["text"] for s in group)
            overlap = last_words(previous_text, self.overlap_words) if previous_text else ""
            text = f"{overlap} {body}" if overlap else body

            chunks.append({
                "index": index,
                "text": text,
                "word_count": count_words(text),
                "token_count": self.count_tokens(text),
                "start_seconds": group[0]["start"],
                "end_seconds": group[-1]["end"],
                "metadata": {
                    "has_overlap": bool(overlap),
                    "overlap_word_count": count_words(overlap) if overlap else 0,
                    "sentence_count": len(group),
                    "method": "sentence_window",
                },
            })
            previous_text = body

        return chunks

    def _timed_sentences(
        self,
        transcript: Optional[str],
        segments: Optional[list[dict]],
    ) -> list[dict]:
        """Sentences with start/end interpolated from their segment by word count."""
        timed = []

        if segments:
            for segment in segments:
                text = (segment.get("text") or "").strip()
                if not text:
                    continue
                start = float(segment.get("start") or 0.0)
                end = float(segment.get("end") or start)
                total_words = count_words(text)
                per_word = (end - start) / total_words if total_words else 0.0

                cursor = start
                for sentence in split_into_sentences(text):
                    words = count_words(sentence)
                    timed.append({
                        "text": sentence,
                        "words": words,
                        "start": round(cursor, 3),
                        "end": round(cursor + words * per_word, 3),
                    })
                    cursor += words * per_word
            if timed:
                return timed

        for sentence in split_into_sentences(transcript or ""):
            timed.append({
                "text": sentence,
                "words": count_words(sentence),
                "start": None,
                "end": None,
            })
        return timed


def estimate_chunk_count(word_count: int, max_words: int = 1000) -> int:
    """Rough chunk estimate for progress/capacity displays."""
    if word_count <= 0:
        return 0
    return max(1, -(-word_count // max_words))
