"""
Text helpers shared by the fetchers, story grouping and fusion.

Everything here is pure: no database, no network.
"""

import hashlib
import json
import re
from collections import Counter
from typing import Any, Dict, List, Optional, Sequence

from sklearn.feature_extraction.text import CountVectorizer
from sklearn.metrics.pairwise import cosine_similarity as pairwise_cosine

URL_PATTERN = re.compile(r"https?://\S+")
EMOJI_PATTERN = re.compile(
    "["
    "\U0001F600-\U0001F64F"
    "\U0001F300-\U0001F5FF"
    "\U0001F680-\U0001F6FF"
    "\u2600-\u26FF"
    "\u2700-\u27BF"
    "]"
)
FENCE_PATTERN = re.compile(r"```(?:json)?", re.IGNORECASE)
TOKEN_REGEX = r"(?u)\b\w{3,}\b"

TITLE_MAX_LENGTH = 200
TITLE_SHORT_LENGTH = 100


class MalformedResponseError(ValueError):
    """Raised when no JSON object can be recovered from a model response."""


def content_hash(text: str) -> str:
    """SHA-256 hex digest used for exact-duplicate detection."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def strip_urls(text: str) -> str:
    return URL_PATTERN.sub("", text)


def strip_emojis(text: str) -> str:
    return EMOJI_PATTERN.sub("", text)


def normalize_text(text: Optional[str], remove_urls: bool = False, remove_emojis: bool = False) -> str:
    """Apply the per-source stripping rules and collapse leftover blank runs."""
    if not text:
        return ""
    if remove_urls:
        text = strip_urls(text)
    if remove_emojis:
        text = strip_emojis(text)
    lines = [re.sub(r"[ \t]+", " ", line).strip() for line in text.splitlines()]
    text = "\n".join(lines)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def truncate(text: Optional[str], limit: int) -> str:
    if not text:
        return ""
    return text if len(text) <= limit else text[:limit]


def generate_title(text: Optional[str]) -> str:
    """
    Derive a title from message text.

    First non-empty line when there is one (cut to 200 chars), otherwise the
    text itself cut to 100 chars.
    """
    if not text or not text.strip():
        return "Untitled"

    first_line = next((line.strip() for line in text.splitlines() if line.strip()), "")
    if first_line:
        if len(first_line) > TITLE_MAX_LENGTH:
            return first_line[:TITLE_MAX_LENGTH - 3] + "..."
        return first_line

    stripped = text.strip()
    if len(stripped) > TITLE_SHORT_LENGTH:
        return stripped[:TITLE_SHORT_LENGTH - 3] + "..."
    return stripped


def slugify(text: Optional[str]) -> str:
    if not text:
        return ""
    slug = re.sub(r"[^a-z0-9\s-]", "", text.lower().strip())
    slug = re.sub(r"[\s-]+", "-", slug)
    return slug.strip("-")


def _count_vectorizer() -> CountVectorizer:
    return CountVectorizer(lowercase=True, token_pattern=TOKEN_REGEX)


def tokenize(text: Optional[str]) -> Counter:
    """Word frequency vector, case-insensitive, words of 3+ characters."""
    if not text:
        return Counter()
    return Counter(_count_vectorizer().build_analyzer()(text))


def cosine_scores(text: Optional[str], others: Sequence[Optional[str]]) -> List[float]:
    """Cosine similarity of `text` against each of `others` over word counts, in [0, 1]."""
    if not others:
        return []

    try:
        matrix = _count_vectorizer().fit_transform([text or ""] + [other or "" for other in others])
    except ValueError:
        # empty vocabulary: no text has a word of 3+ characters
        return [0.0] * len(others)

    return [float(score) for score in pairwise_cosine(matrix[0], matrix[1:])[0]]


def cosine_similarity(text_a: Optional[str], text_b: Optional[str]) -> float:
    return cosine_scores(text_a, [text_b])[0]


def _first_balanced_object(text: str) -> Optional[str]:
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
            elif char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start:index + 1]
        # Unbalanced from this brace, try the next one
        start = text.find("{", start + 1)
    return None


def extract_json_object(text: Optional[str]) -> Dict[str, Any]:
    """
    Pull the first JSON object out of a model response.

    Code fences are stripped and the first balanced {...} span is parsed.
    """
    if not text or not text.strip():
        raise MalformedResponseError("Empty response")

    cleaned = FENCE_PATTERN.sub("", text).strip()
    candidate = _first_balanced_object(cleaned)
    if candidate is None:
        raise MalformedResponseError(f"No JSON object in response: {cleaned[:200]}")

    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as e:
        raise MalformedResponseError(f"Invalid JSON in response: {e}") from e

    if not isinstance(data, dict):
        raise MalformedResponseError("Response JSON is not an object")
    return data
