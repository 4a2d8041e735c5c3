"""Text normalization for TTS: a fixed sequence of pure text transforms.

Each stage takes and returns a string and never raises on content; a rule
that does not apply leaves the text untouched. Structural cues that must
survive until markup compilation (scene breaks, dialogue pauses, phoneme
hints) are carried as private-use marker characters.
"""

import logging
import re
from dataclasses import dataclass
from typing import Mapping, Optional

from audiobookforge.text import spanish

logger = logging.getLogger(__name__)

SCENE_BREAK = "\ue000"
DIALOGUE_PAUSE = "\ue001"
PHONEME_OPEN = "\ue002"
PHONEME_SEP = "\ue003"
PHONEME_CLOSE = "\ue004"

PHONEME_RE = re.compile(f"{PHONEME_OPEN}([^{PHONEME_SEP}]*){PHONEME_SEP}([^{PHONEME_CLOSE}]*){PHONEME_CLOSE}")

# Loanwords Spanish voices commonly mispronounce, with their IPA reading.
DEFAULT_LEXICON = {
    "software": "ˈsoftweɾ",
    "hardware": "ˈxaɾweɾ",
    "email": "iˈmeil",
    "online": "onˈlain",
    "marketing": "ˈmaɾketin",
    "WhatsApp": "ˈwatsap",
    "Facebook": "ˈfeisbuk",
    "iPhone": "ˈaifon",
}

_UPPER = "A-ZÁÉÍÓÚÑÜ"
_LOWER = "a-záéíóúñü"

_INVISIBLE_RE = re.compile("[\u200b-\u200f\u2060-\u2064\ufeff\u00ad\ue000-\ue004]")
_CONTROL_RE = re.compile("[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")
_SPACE_LIKE_RE = re.compile("[\t\u00a0\u2007\u202f\u2000-\u200a\u3000]")

_SCENE_LINE_RE = re.compile(r"^[ \t]*(?:(?:[*\-=_~#•·◦●∗+][ \t]*){3,}|⁂|§)[ \t]*$", re.MULTILINE)

_URL_RE = re.compile(r"\b(?:https?://|www\.)\S+?(?=[.,;:!?)]*(?:\s|$))", re.IGNORECASE)
_EMAIL_RE = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+")
_HASHTAG_RE = re.compile(r"(?<!\w)#\w+")
_EMPHASIS_STAR_RE = re.compile(r"(\*{1,3})(?=\S)(.+?)(?<=\S)\1")
_EMPHASIS_UNDERSCORE_RE = re.compile(r"(?<!\w)(_{1,3})(?=\S)(.+?)(?<=\S)\1(?!\w)")


@dataclass(frozen=True)
class NormalizerOptions:
    """Switches for the optional stages. Cleanup stages always run."""
    language: str = "es"
    expand_roman_numerals: bool = True
    expand_abbreviations: bool = True
    convert_numbers: bool = True
    dialogue_pauses: bool = True
    pronunciation: bool = True
    lexicon: Optional[Mapping[str, str]] = None


def _tidy_spaces(text: str) -> str:
    text = re.sub(r"[ ]{2,}", " ", text)
    return re.sub(r"[ ]*\n[ ]*", "\n", text).strip(" ")


def clean_characters(text: str) -> str:
    """Stage 1: drop zero-width and control characters, unify spaces."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _INVISIBLE_RE.sub("", text)
    text = _CONTROL_RE.sub("", text)
    text = _SPACE_LIKE_RE.sub(" ", text)
    return _tidy_spaces(text)


def normalize_line_breaks(text: str) -> str:
    """Stage 2: three or more newlines collapse to one paragraph break."""
    return re.sub(r"\n{3,}", "\n\n", text).strip("\n")


def mark_scene_breaks(text: str) -> str:
    """Stage 3: glyph separator lines (``***``, ``* * *``, ``---``) become scene breaks.

    Single newlines left after this stage are soft breaks and join with a space.
    """
    text = _SCENE_LINE_RE.sub(f"\n\n{SCENE_BREAK}\n\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text).strip("\n")
    paragraphs = [p.replace("\n", " ").strip() for p in text.split("\n\n")]
    return "\n\n".join(p for p in paragraphs if p)


def normalize_punctuation(text: str) -> str:
    """Stage 4: typographic quotes and dashes, ellipses, spacing around punctuation."""
    # Straight double quotes pair up as angle quotes; a stray one is dropped.
    text = re.sub(r'"([^"\n]*)"', r"«\1»", text)
    text = text.replace('"', "")
    text = text.replace("″", "")
    # Plain apostrophes read as "feet"/"minutes" after numbers on some voices.
    text = re.sub("['`´‘′]", "’", text)

    text = re.sub(r"[ ]*(?:--+|[–—―])[ ]*", " — ", text)
    text = re.sub(r"(^|\n) — ", r"\1—", text)

    text = text.replace("…", "...")
    text = re.sub(r"\.(?:\s?\.){3,}", "...", text)
    text = re.sub(r"\.\s\.\s\.", "...", text)

    text = re.sub(r"([!?¡¿])\1+", r"\1", text)
    text = re.sub(r"([!?])[!?]+", r"\1", text)
    text = re.sub(r"([,;:])\1+", r"\1", text)

    text = re.sub(r" +([,;:!?]|\.(?!\.\.))", r"\1", text)
    text = re.sub(rf"([!?;»])(?=[{_UPPER}{_LOWER}¿¡«])", r"\1 ", text)
    text = re.sub(rf"([,:])(?=[{_UPPER}{_LOWER}¿¡«])", r"\1 ", text)
    text = re.sub(rf"(\.\.\.)(?=[{_UPPER}{_LOWER}¿¡«])", r"\1 ", text)
    text = re.sub(rf"(?<=[{_LOWER}])\.(?=[{_UPPER}¿¡«])", ". ", text)
    return _tidy_spaces(text)


def strip_unpronounceable(text: str) -> str:
    """Stage 5: remove emphasis markers, URLs, emails and hashtags."""
    text = _URL_RE.sub("", text)
    text = _EMAIL_RE.sub("", text)
    text = _HASHTAG_RE.sub("", text)
    text = _EMPHASIS_STAR_RE.sub(r"\2", text)
    text = _EMPHASIS_UNDERSCORE_RE.sub(r"\2", text)
    text = text.replace("*", "")
    text = re.sub(r"_{2,}", "", text)
    text = re.sub(r" +([,.;:!?])", r"\1", text)
    return _tidy_spaces(text)


_SECTION_RE = re.compile(
    r"\b(?P<word>(?i:" + "|".join(spanish.SECTION_WORDS) + r"))\s+(?P<num>[IVXLCDM]+)\b"
)
_HEADING_RE = re.compile(r"(?m)^(?P<num>[IVXLCDM]+)(?P<tail>[.:]?)$")


def expand_roman_numerals(text: str) -> str:
    """Stage 6a: Roman numerals after section words or alone on a heading line."""

    def section(match: re.Match) -> str:
        value = spanish.roman_to_int(match.group("num"))
        if value is None:
            return match.group(0)
        return f"{match.group('word')} {spanish.ordinal_words(value)}"

    def heading(match: re.Match) -> str:
        value = spanish.roman_to_int(match.group("num"))
        if value is None:
            return match.group(0)
        return spanish.ordinal_words(value).capitalize() + match.group("tail")

    text = _SECTION_RE.sub(section, text)
    # Paragraphs are separated by blank lines, so headings are whole paragraphs.
    return "\n\n".join(_HEADING_RE.sub(heading, p) for p in text.split("\n\n"))


def _alternation(keys) -> str:
    return "|".join(re.escape(k) for k in sorted(keys, key=len, reverse=True))


_ABBREVIATION_RE = re.compile(rf"(?<![\w.])(?P<abbr>{_alternation(spanish.ABBREVIATIONS)})(?!\w)")
_UNIT_RE = re.compile(rf"(?<=\d) ?(?P<abbr>{_alternation(spanish.UNIT_ABBREVIATIONS)})(?![\w/])")
_SENTENCE_START_RE = re.compile(rf"\s+[{_UPPER}¿¡«—]")


def _keep_final_period(match: re.Match, expansion: str) -> str:
    """An abbreviation's period doubles as the sentence end when a new sentence follows."""
    abbr = match.group("abbr")
    if abbr.endswith(".") and abbr not in spanish.TITLES and _SENTENCE_START_RE.match(match.string, match.end()):
        return expansion + "."
    return expansion


def expand_abbreviations(text: str) -> str:
    """Stage 6b: titles, common abbreviations, and units that follow a number."""
    text = _ABBREVIATION_RE.sub(
        lambda m: _keep_final_period(m, spanish.ABBREVIATIONS[m.group("abbr")]), text
    )
    return _UNIT_RE.sub(
        lambda m: " " + _keep_final_period(m, spanish.UNIT_ABBREVIATIONS[m.group("abbr")]), text
    )


_NUMBER_RE = re.compile(r"(?<![\w.,:/])(\d{1,4})(?![\w]|[.,:/]\d)")


def convert_numbers(text: str) -> str:
    """Stage 7: standalone integers up to four digits (years included) become words.

    Decimals, times, fractions and longer figures are left for the voice.
    """
    return _NUMBER_RE.sub(lambda m: spanish.number_to_words(int(m.group(1))), text)


_DIALOGUE_RE = re.compile(
    r"(?P<close>[»”’—,]) ?(?=(?:" + "|".join(spanish.DIALOGUE_VERBS) + r")\b)",
    re.IGNORECASE,
)


def mark_dialogue_pauses(text: str) -> str:
    """Stage 8: a short pause between a closing quote or dash and a speech verb."""
    return _DIALOGUE_RE.sub(lambda m: f"{m.group('close')} {DIALOGUE_PAUSE}", text)


def apply_pronunciations(text: str, lexicon: Mapping[str, str]) -> str:
    """Stage 9: wrap whole-word lexicon matches with phoneme markers."""
    for word, ipa in sorted(lexicon.items(), key=lambda item: len(item[0]), reverse=True):
        if not word or not ipa:
            continue
        pattern = re.compile(rf"(?<![\w\-{PHONEME_OPEN}{PHONEME_SEP}]){re.escape(word)}(?![\w\-])", re.IGNORECASE)
        text = pattern.sub(lambda m: f"{PHONEME_OPEN}{m.group(0)}{PHONEME_SEP}{ipa}{PHONEME_CLOSE}", text)
    return text


def normalize_text(text: Optional[str], options: Optional[NormalizerOptions] = None) -> str:
    """Run every normalization stage in order and return TTS-ready text."""
    options = options or NormalizerOptions()
    if not text:
        return ""

    text = clean_characters(text)
    text = normalize_line_breaks(text)
    text = mark_scene_breaks(text)
    text = normalize_punctuation(text)
    text = strip_unpronounceable(text)

    spanish_rules = options.language.lower().startswith("es")
    if not spanish_rules:
        logger.debug("No language rules for %r, skipping expansion stages", options.language)
    else:
        if options.expand_roman_numerals:
            text = expand_roman_numerals(text)
        if options.expand_abbreviations:
            text = expand_abbreviations(text)
        if options.convert_numbers:
            text = convert_numbers(text)
        if options.dialogue_pauses:
            text = mark_dialogue_pauses(text)

    if options.pronunciation:
        lexicon = DEFAULT_LEXICON if options.lexicon is None else options.lexicon
        text = apply_pronunciations(text, lexicon)
    return text
