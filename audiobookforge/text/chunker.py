"""Split text into provider-sized pieces at natural boundaries.

Boundaries are tried in order: paragraph, sentence, whitespace, and only
then a hard cut. In markup mode a cut never lands inside a tag or an
entity, and every chunk is a balanced fragment: tags still open at the cut
are closed at the end of the chunk and re-opened at the start of the next.
"""

import re

TAG_RE = re.compile(r"<(/?)([A-Za-z][\w:.\-]*)([^<>]*?)(/?)>")

_PARAGRAPH_PLAIN_RE = re.compile(r"\n{2,}")
_PARAGRAPH_MARKUP_RE = re.compile(r"</p>(?:\s*<break\b[^<>]*/>)?\s*")
_SENTENCE_RE = re.compile(r"(?:\.\.\.|[.!?…])[»”’\"')\]]*(?:<break\b[^<>]*/>)?\s+")
_WHITESPACE_RE = re.compile(r"\s+")

_MAX_ENTITY_LEN = 10


def text_size(text: str, unit: str = "chars") -> int:
    """Size of ``text`` in the provider's unit (``chars`` or UTF-8 ``bytes``)."""
    if unit == "bytes":
        return len(text.encode("utf-8"))
    if unit == "chars":
        return len(text)
    raise ValueError(f"Unknown size unit: {unit!r}")


def _fit(text: str, pos: int, budget: int, unit: str) -> int:
    """Largest end index such that text[pos:end] fits in ``budget``."""
    if unit == "chars":
        return min(len(text), pos + budget)
    size = 0
    end = pos
    while end < len(text):
        width = len(text[end].encode("utf-8"))
        if size + width > budget:
            break
        size += width
        end += 1
    return end


def _inside_tag(text: str, pos: int, cut: int) -> int:
    """Start of the tag ``cut`` falls inside, or -1."""
    opening = text.rfind("<", pos, cut)
    if opening != -1 and text.rfind(">", opening, cut) == -1:
        return opening
    return -1


def _inside_entity(text: str, pos: int, cut: int) -> int:
    """Start of the ``&...;`` entity ``cut`` falls inside, or -1."""
    amp = text.rfind("&", max(pos, cut - _MAX_ENTITY_LEN), cut)
    if amp != -1 and text.find(";", amp, cut) == -1:
        semicolon = text.find(";", cut, amp + _MAX_ENTITY_LEN + 1)
        if semicolon != -1 and re.fullmatch(r"&#?\w+", text[amp:semicolon]):
            return amp
    return -1


def _safe(text: str, pos: int, cut: int, markup: bool) -> bool:
    if cut <= pos:
        return False
    if not markup:
        return True
    return _inside_tag(text, pos, cut) == -1 and _inside_entity(text, pos, cut) == -1


def _choose_cut(text: str, pos: int, end: int, budget: int, markup: bool) -> int:
    if end >= len(text):
        return end
    low = max(pos + 1, end - budget // 2)
    paragraph_re = _PARAGRAPH_MARKUP_RE if markup else _PARAGRAPH_PLAIN_RE
    for pattern in (paragraph_re, _SENTENCE_RE, _WHITESPACE_RE):
        candidates = [m.end() for m in pattern.finditer(text, pos, end) if m.end() >= low]
        for cut in reversed(candidates):
            if _safe(text, pos, cut, markup):
                return cut

    cut = end
    if markup:
        for start in (_inside_tag(text, pos, cut), _inside_entity(text, pos, cut)):
            if start != -1:
                cut = min(cut, start)
    if cut <= pos:
        raise ValueError("Chunk size limit is smaller than a single markup tag")
    return cut


def _open_tags(stack: list, fragment: str) -> list:
    """Return the open-tag stack after reading ``fragment``."""
    stack = list(stack)
    for match in TAG_RE.finditer(fragment):
        closing, name, _attrs, self_closing = match.groups()
        if self_closing:
            continue
        if not closing:
            stack.append((name, match.group(0)))
            continue
        for index in range(len(stack) - 1, -1, -1):
            if stack[index][0] == name:
                del stack[index]
                break
    return stack


def split_text(text: str, limit: int, unit: str = "chars", markup: bool = False) -> list[str]:
    """Split ``text`` into chunks no larger than ``limit`` in ``unit``.

    Text that already fits comes back as a single chunk, unchanged. For plain
    text the chunks concatenate back to the input exactly.
    """
    if limit <= 0:
        raise ValueError("limit must be positive")
    if text_size(text, unit) <= limit:
        return [text]

    chunks = []
    stack: list = []
    pos = 0
    while pos < len(text):
        prefix = "".join(tag for _, tag in stack)
        budget = limit - text_size(prefix, unit)
        if budget <= 0:
            raise ValueError("Chunk size limit is smaller than the open markup context")

        # The tail closes its own tags, so it only has to fit.
        if text_size(text, unit) - text_size(text[:pos], unit) <= budget:
            chunks.append(prefix + text[pos:])
            break

        room = budget
        while True:
            end = _fit(text, pos, room, unit)
            cut = _choose_cut(text, pos, end, room, markup)
            new_stack = _open_tags(stack, text[pos:cut]) if markup else stack
            closing = "".join(f"</{name}>" for name, _ in reversed(new_stack))
            if text_size(text[pos:cut], unit) + text_size(closing, unit) <= budget:
                break
            room = budget - text_size(closing, unit)
            if room <= 0 or _fit(text, pos, room, unit) >= end:
                room = text_size(text[pos:cut], unit) - 1
            if room <= 0:
                raise ValueError("Chunk size limit is too small for the markup nesting")

        chunks.append(prefix + text[pos:cut] + closing)
        stack = new_stack
        pos = cut
    return chunks
