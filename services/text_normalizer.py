"""Clean up pasted or transcribed recipe text before rule-based parsing.

Every function here is pure and idempotent: running ``normalize`` on its own
output returns the same string.
"""
import re

from services.units import UNIT_PATTERN

VULGAR_FRACTIONS = {
    "½": "1/2",
    "⅓": "1/3",
    "⅔": "2/3",
    "¼": "1/4",
    "¾": "3/4",
    "⅕": "1/5",
    "⅖": "2/5",
    "⅗": "3/5",
    "⅘": "4/5",
    "⅙": "1/6",
    "⅚": "5/6",
    "⅐": "1/7",
    "⅛": "1/8",
    "⅜": "3/8",
    "⅝": "5/8",
    "⅞": "7/8",
    "⅑": "1/9",
    "⅒": "1/10",
}
_VULGAR_CLASS = "[" + "".join(VULGAR_FRACTIONS) + "]"

EMOJI_RE = re.compile(
    "["
    "\U0001F000-\U0001FAFF"
    "\u2600-\u27BF"
    "\u2B00-\u2BFF"
    "\uFE0E\uFE0F"
    "\u200B-\u200D\u2060\uFEFF"
    "]"
)
URL_RE = re.compile(r"https?://\S+|www\.\S+", re.IGNORECASE)
# Chained tags ("#a#b") go in one match so a pass never leaves a tag behind.
HASHTAG_MENTION_RE = re.compile(r"(?<![\w&])(?:[#@][A-Za-z_]\w*)+")

_DIGIT_BEFORE_VULGAR_RE = re.compile(rf"(\d)[ \t\u00a0]*(?={_VULGAR_CLASS})")
_VULGAR_RE = re.compile(rf"({_VULGAR_CLASS})")
_SPACED_SLASH_RE = re.compile(r"(\d)[ \t\u00a0]*/[ \t\u00a0]*(?=\d)")
_SPLIT_QUANTITY_RE = re.compile(
    rf"^[ \t]*(\d+(?:[ \t]+\d+/\d+|/\d+|\.\d+)?)[ \t]*\n\s*(?=(?:{UNIT_PATTERN})\b)",
    re.IGNORECASE | re.MULTILINE,
)
_HSPACE_RE = re.compile(r"[ \t\u00a0]+")
_BLANK_RUN_RE = re.compile(r"\n{3,}")


def strip_noise(text: str) -> str:
    """Drop emoji, zero-width characters, links, hashtags and @mentions."""
    # Emoji first: removing one can join a "#" or "http" to the word after it.
    text = EMOJI_RE.sub("", text or "")
    text = URL_RE.sub("", text)
    return HASHTAG_MENTION_RE.sub("", text)


def _replace_vulgar(match: "re.Match[str]") -> str:
    ascii_fraction = VULGAR_FRACTIONS[match.group(1)]
    end = match.end()
    following = match.string[end:end + 1]
    if following.isalpha():
        return ascii_fraction + " "
    return ascii_fraction


def normalize_fractions(text: str) -> str:
    """Turn unicode fractions into ``a/b`` and tighten ``a / b`` to ``a/b``."""
    text = (text or "").replace("\u2044", "/")
    text = _DIGIT_BEFORE_VULGAR_RE.sub(r"\1 ", text)
    text = _VULGAR_RE.sub(_replace_vulgar, text)
    return _SPACED_SLASH_RE.sub(r"\1/", text)


def _reglue_quantities(text: str) -> str:
    return _SPLIT_QUANTITY_RE.sub(r"\1 ", text)


def _collapse_whitespace(text: str) -> str:
    lines = [_HSPACE_RE.sub(" ", line).strip() for line in text.splitlines()]
    joined = "\n".join(lines)
    return _BLANK_RUN_RE.sub("\n\n", joined).strip()


def normalize(text: str) -> str:
    if not text:
        return ""
    # Noise goes first so its removal cannot leave a new "1 / 2" behind.
    cleaned = strip_noise(text)
    cleaned = normalize_fractions(cleaned)
    cleaned = _reglue_quantities(cleaned)
    return _collapse_whitespace(cleaned)
