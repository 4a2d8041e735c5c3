"""Text preparation: normalization, markup compilation and chunking."""

from audiobookforge.text.chunker import split_text, text_size
from audiobookforge.text.normalizer import NormalizerOptions, normalize_text
from audiobookforge.text.ssml import (
    compile_ssml,
    parse_speaking_rate,
    prepare_authored_markup,
    render_plain_text,
    strip_markup,
)

__all__ = [
    "NormalizerOptions",
    "compile_ssml",
    "normalize_text",
    "parse_speaking_rate",
    "prepare_authored_markup",
    "render_plain_text",
    "split_text",
    "strip_markup",
    "text_size",
]
