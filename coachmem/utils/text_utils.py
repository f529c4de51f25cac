"""
Text helpers shared by search, ranking and detection.
"""

import re
import unicodedata
from typing import Iterable, List, Set

WORD_RE = re.compile(r"[^\W_]+(?:['’-][^\W_]+)*", re.UNICODE)

STOPWORDS = frozenset({
    'a', 'about', 'after', 'again', 'all', 'also', 'am', 'an', 'and', 'any', 'are', 'as', 'at', 'be', 'been', 'before',
    'being', 'but', 'by', 'can', 'could', 'did', 'do', 'does', 'doing', 'done', 'for', 'from', 'get', 'got', 'had',
    'has', 'have', 'having', 'he', 'her', 'here', 'him', 'his', 'how', 'i', 'if', 'in', 'into', 'is', 'it', 'its',
    'just', 'let', 'like', 'me', 'more', 'most', 'my', 'no', 'not', 'now', 'of', 'on', 'one', 'or', 'our', 'out',
    'over', 'really', 'she', 'should', 'so', 'some', 'than', 'that', 'the', 'their', 'them', 'then', 'there', 'these',
    'they', 'this', 'those', 'to', 'too', 'up', 'very', 'was', 'we', 'were', 'what', 'when', 'where', 'which', 'while',
    'who', 'why', 'will', 'with', 'would', 'you', 'your', 'today', 'yesterday', 'tomorrow', 'think', 'know', 'want',
    'going', 'still', 'been', 'much', 'many', 'lot', 'thing', 'things', 'way', 'well', 'yes', 'yeah', 'ok', 'okay'
})

# Rough characters-per-token ratio for budget estimates.
CHARS_PER_TOKEN = 4


def fold_diacritics(text: str) -> str:
    """Strip combining marks, e.g. 'José' -> 'Jose'."""
    decomposed = unicodedata.normalize('NFKD', text)
    return ''.join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_text(text: str) -> str:
    """Lowercase, fold diacritics and collapse everything but word characters."""
    if not text:
        return ''
    folded = fold_diacritics(text).casefold()
    return ' '.join(WORD_RE.findall(folded))


def tokenize(text: str) -> List[str]:
    return normalize_text(text).split()


def extract_keywords(text: str, min_length: int = 3) -> Set[str]:
    """Significant lowercase tokens of a text, stopwords removed."""
    return {token for token in tokenize(text) if len(token) >= min_length and token not in STOPWORDS}


def overlap_ratio(left: Iterable[str], right: Iterable[str]) -> float:
    """Share of the larger set covered by the intersection, in [0, 1]."""
    left_set, right_set = set(left), set(right)
    if not left_set or not right_set:
        return 0.0
    return len(left_set & right_set) / max(len(left_set), len(right_set))


def text_overlap(left: str, right: str) -> float:
    """Token overlap between two texts after normalization."""
    return overlap_ratio(tokenize(left), tokenize(right))


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return max(1, -(-len(text) // CHARS_PER_TOKEN))


def chunk_text(text: str, max_tokens: int = 500) -> List[str]:
    """Split long text into chunks of at most ``max_tokens`` estimated tokens.

    Paragraph blocks are kept together where possible; an oversized block is
    split on lines, and an oversized line is cut hard.
    """
    if not text or not text.strip():
        return []
    if estimate_tokens(text) <= max_tokens:
        return [text.strip()]

    max_chars = max_tokens * CHARS_PER_TOKEN
    pieces: List[str] = []
    for block in re.split(r'\n\s*\n', text):
        block = block.strip()
        if not block:
            continue
        if len(block) <= max_chars:
            pieces.append(block)
            continue
        for line in block.splitlines():
            line = line.strip()
            while len(line) > max_chars:
                pieces.append(line[:max_chars])
                line = line[max_chars:]
            if line:
                pieces.append(line)

    chunks: List[str] = []
    current = ''
    for piece in pieces:
        candidate = f'{current}\n\n{piece}' if current else piece
        if current and len(candidate) > max_chars:
            chunks.append(current)
            current = piece
        else:
            current = candidate
    if current:
        chunks.append(current)
    return chunks
