from __future__ import annotations
import unicodedata
from enum import Enum

BLANK_MARKER = "__"

# Unicode categories Pc, Pd, Ps, Pe, Pi, Pf, Po
_PUNCT_CATEGORIES = frozenset({"Pc", "Pd", "Ps", "Pe", "Pi", "Pf", "Po"})

# Full-width and CJK marks that may fall outside the P* categories
_CJK_PUNCTUATION = frozenset("，。？！；：、（）《》【】“”‘’—…·,.!?;:()<>[]")


class CharClass(str, Enum):
    WHITESPACE = "whitespace"
    PUNCTUATION = "punctuation"
    CONTENT = "content"


def is_punctuation(ch: str) -> bool:
    return unicodedata.category(ch) in _PUNCT_CATEGORIES or ch in _CJK_PUNCTUATION


def classify(ch: str) -> CharClass:
    if ch.isspace():
        return CharClass.WHITESPACE
    if is_punctuation(ch):
        return CharClass.PUNCTUATION
    return CharClass.CONTENT


def normalize_for_compare(text: str) -> str:
    """Keep only content characters, in order."""
    return "".join(ch for ch in text if classify(ch) is CharClass.CONTENT)


def build_blank_mask(answer: str) -> str:
    """
    Answer-shaped blank: whitespace and punctuation are kept verbatim,
    every content character becomes BLANK_MARKER.
    e.g. "床前明月光，" -> "__________，"
    """
    return "".join(
        ch if classify(ch) is not CharClass.CONTENT else BLANK_MARKER
        for ch in answer
    )
