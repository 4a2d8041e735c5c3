"""Compile normalized text into SSML, or into plain text for providers without markup."""

import html
import re
from typing import Optional, Union

from audiobookforge.text.normalizer import (
    DIALOGUE_PAUSE,
    PHONEME_RE,
    SCENE_BREAK,
)

# Pause length in milliseconds per boundary class.
BREAKS_MS = {
    "comma": 250,
    "clause": 400,
    "sentence": 600,
    "emphatic": 700,
    "dialogue": 300,
    "paragraph": 1000,
    "scene": 2000,
}

NAMED_RATES = {
    "x-slow": 0.5,
    "slow": 0.75,
    "medium": 1.0,
    "default": 1.0,
    "fast": 1.25,
    "x-fast": 1.5,
}

# Tags a pre-authored chapter may carry; anything else is escaped as text.
ALLOWED_TAGS = ("phoneme", "break", "prosody", "emphasis", "say-as", "sub", "p", "s")

_PUNCT_CLASS = {
    "...": "sentence",
    ".": "sentence",
    "!": "emphatic",
    "?": "emphatic",
    ";": "clause",
    ":": "clause",
    ",": "comma",
}

# A ";" that ends an escaped entity is not punctuation.
_PUNCT_RE = re.compile(r"(?<!&amp)(?<!&lt)(?<!&gt)(?P<p>\.\.\.|[.!?;:,])(?P<close>[»”’)\]]*)(?=\s)")
_TAG_RE = re.compile(r"<[^<>]*>")
_BARE_AMP_RE = re.compile(r"&(?!(?:amp|lt|gt|apos|quot|#\d+|#x[0-9a-fA-F]+);)")
_FOREIGN_TAG_RE = re.compile(r"<(?!/?(?:" + "|".join(re.escape(t) for t in ALLOWED_TAGS) + r")(?=[\s/>]))")
_SPEAK_RE = re.compile(r"^\s*<speak\b[^>]*>(.*)</speak>\s*$", re.DOTALL)


def parse_speaking_rate(rate: Union[str, float, int, None]) -> float:
    """Turn ``"85%"``, ``"slow"``, ``0.9`` or ``"1.1"`` into a multiplier (1.0 = normal).

    Unrecognised values fall back to 1.0; the result is clamped to 0.5-2.0.
    """
    if rate is None:
        return 1.0
    if isinstance(rate, (int, float)):
        value = float(rate)
    else:
        raw = rate.strip().lower()
        if raw in NAMED_RATES:
            return NAMED_RATES[raw]
        try:
            if raw.endswith("%"):
                value = float(raw[:-1]) / 100.0
            else:
                value = float(raw)
        except ValueError:
            return 1.0
    if value <= 0:
        return 1.0
    return max(0.5, min(2.0, value))


def prosody_rate(rate: Union[str, float, int, None]) -> str:
    """Rate attribute for ``<prosody>``, always as a percentage."""
    return f"{round(parse_speaking_rate(rate) * 100)}%"


def escape_xml(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def _break(kind: str) -> str:
    return f'<break time="{BREAKS_MS[kind]}ms"/>'


def _punctuation_break(match: re.Match) -> str:
    return match.group("p") + match.group("close") + _break(_PUNCT_CLASS[match.group("p")])


def _phoneme(match: re.Match) -> str:
    # The paragraph is already XML-escaped; only the attribute quote is left.
    ipa = match.group(2).replace('"', "&quot;")
    return f'<phoneme alphabet="ipa" ph="{ipa}">{match.group(1)}</phoneme>'


def _compile_paragraph(paragraph: str) -> str:
    body = escape_xml(paragraph)
    body = _PUNCT_RE.sub(_punctuation_break, body)
    body = body.replace(DIALOGUE_PAUSE, _break("dialogue"))
    body = PHONEME_RE.sub(_phoneme, body)
    return f"<p>{body}</p>"


def compile_ssml(normalized: str, rate: Union[str, float, None] = "100%") -> str:
    """Build an SSML document from normalizer output.

    Paragraphs become ``<p>`` elements separated by a paragraph pause; a scene
    marker becomes a long pause instead. Punctuation gets a pause sized by its
    class, and the whole document is wrapped in one ``<prosody>`` carrying the
    speaking rate.
    """
    parts = []
    pending_pause: Optional[str] = None
    for paragraph in normalized.split("\n\n"):
        paragraph = paragraph.strip()
        if not paragraph:
            continue
        if paragraph == SCENE_BREAK:
            if parts:
                pending_pause = "scene"
            continue
        if pending_pause:
            parts.append(_break(pending_pause))
        parts.append(_compile_paragraph(paragraph))
        pending_pause = "paragraph"

    body = "\n".join(parts)
    return f'<speak><prosody rate="{prosody_rate(rate)}">{body}</prosody></speak>'


def prepare_authored_markup(markup: str, rate: Union[str, float, None] = "100%") -> str:
    """Wrap pre-authored chapter markup, escaping anything that is not an allowed tag.

    An outer ``<speak>`` is unwrapped first so the rate can be applied.
    """
    match = _SPEAK_RE.match(markup)
    if match:
        markup = match.group(1)
    markup = _BARE_AMP_RE.sub("&amp;", markup)
    markup = _FOREIGN_TAG_RE.sub("&lt;", markup)
    return f'<speak><prosody rate="{prosody_rate(rate)}">{markup.strip()}</prosody></speak>'


def render_plain_text(normalized: str) -> str:
    """Plain-text rendering for providers without markup support.

    Markers are dropped, phoneme hints keep the original word, and paragraphs
    stay separated by a blank line.
    """
    text = PHONEME_RE.sub(lambda m: m.group(1), normalized)
    text = text.replace(DIALOGUE_PAUSE, "")
    paragraphs = [p.strip() for p in text.split("\n\n")]
    return "\n\n".join(p for p in paragraphs if p and p != SCENE_BREAK)


def strip_markup(markup: str) -> str:
    """Reduce SSML to the text a listener would hear."""
    text = _TAG_RE.sub(" ", markup)
    text = html.unescape(text)
    return re.sub(r"[ \t]+", " ", text).strip()
