"""
Text cleanup for RSS and social content.

Both functions are pure and never raise for empty input.
"""

import re
import warnings
from typing import Optional

from bs4 import BeautifulSoup, MarkupResemblesLocatorWarning

from content_pipeline.constants import ELLIPSIS_MARKER

# Plain text that looks like a URL or file name is still valid input here
warnings.filterwarnings("ignore", category=MarkupResemblesLocatorWarning)

# Elements whose contents are never article text
_NON_TEXT_ELEMENTS = ["script", "style"]

_WHITESPACE_RE = re.compile(r"\s+")
_DOTS_RE = re.compile(r"\.{3,}")

# Footers appended by feed generators; everything from the match onwards goes
_BOILERPLATE_TRAILERS = [
    re.compile(r"Continue reading.*$", re.IGNORECASE),
    re.compile(r"The post .* appeared first on.*$", re.IGNORECASE),
    re.compile(r"Read more.*$", re.IGNORECASE),
    re.compile(r"(?:\s*\[(?:…|\.\.\.)\])+\s*$"),
]

# Fraction of max_length before which a sentence break is not worth keeping
_SENTENCE_BREAK_THRESHOLD = 0.6


def _strip_markup(text: str) -> str:
    # Decoding entities can expose more markup ("&lt;b&gt;"), so repeat until stable
    while True:
        soup = BeautifulSoup(text, "html.parser")
        for element in soup(_NON_TEXT_ELEMENTS):
            element.decompose()
        stripped = _WHITESPACE_RE.sub(" ", soup.get_text(separator=" ", strip=True))
        if stripped == text:
            return stripped
        text = stripped


def normalize(raw_text: Optional[str]) -> str:
    """Clean raw article text or markup into canonical plain text."""
    if not raw_text:
        return ""

    text = _strip_markup(raw_text)
    text = _WHITESPACE_RE.sub(" ", text)
    text = _DOTS_RE.sub(ELLIPSIS_MARKER, text)
    for trailer in _BOILERPLATE_TRAILERS:
        text = trailer.sub("", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def excerpt(text: Optional[str], max_length: int = 150) -> str:
    """Build a short excerpt of at most max_length characters plus a marker.

    Prefers cutting after the last sentence that ends past 60% of the limit,
    then at the last word boundary, and hard-truncates otherwise.
    """
    cleaned = normalize(text)
    if len(cleaned) <= max_length:
        return cleaned

    truncated = cleaned[:max_length]
    last_sentence = truncated.rfind(".")
    if last_sentence >= max_length * _SENTENCE_BREAK_THRESHOLD:
        return truncated[:last_sentence + 1]

    last_space = truncated.rfind(" ")
    if last_space > 0:
        return truncated[:last_space].rstrip() + ELLIPSIS_MARKER

    return truncated + ELLIPSIS_MARKER
