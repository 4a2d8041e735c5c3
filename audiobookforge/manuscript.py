"""Manuscript loader - splits a text file (or a directory of files) into chapters."""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# "# Title", "Capítulo 3", "CAPÍTULO IV: La huida", "Chapter 1", "Prólogo", "Epílogo"
HEADING_RE = re.compile(
    r"^[ \t]*(?:#{1,3}[ \t]+(?P<md>\S.*?)"
    r"|(?P<word>(?:cap[ií]tulo|chapter)[ \t]+(?:\d+|[IVXLCDM]+)\b.{0,80}?"
    r"|(?:pr[oó]logo|ep[ií]logo|prologue|epilogue)[.:]?))[ \t]*$",
    re.IGNORECASE | re.MULTILINE,
)

TEXT_SUFFIXES = {".txt", ".md"}
MARKUP_SUFFIXES = {".ssml", ".xml"}


@dataclass
class ManuscriptChapter:
    """A chapter as read from disk, before it is stored."""
    title: str
    text: str
    markup: Optional[str] = None


def _heading_title(match: re.Match) -> str:
    return (match.group("md") or match.group("word")).strip()


def split_manuscript(text: str, default_title: str = "Capítulo 1") -> list[ManuscriptChapter]:
    """Split manuscript text at chapter headings.

    Text before the first heading becomes its own chapter only when it is not
    blank. A manuscript without headings is a single chapter.
    """
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    matches = list(HEADING_RE.finditer(text))
    if not matches:
        body = text.strip()
        return [ManuscriptChapter(title=default_title, text=body)] if body else []

    chapters = []
    preface = text[:matches[0].start()].strip()
    if preface:
        chapters.append(ManuscriptChapter(title=default_title, text=preface))

    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(text)
        body = text[match.end():end].strip()
        if not body:
            logger.warning("Skipping empty chapter '%s'", _heading_title(match))
            continue
        chapters.append(ManuscriptChapter(title=_heading_title(match), text=body))
    return chapters


def _chapter_from_file(path: Path) -> ManuscriptChapter:
    content = path.read_text(encoding="utf-8")
    if path.suffix.lower() in MARKUP_SUFFIXES:
        return ManuscriptChapter(title=path.stem, text="", markup=content)

    match = HEADING_RE.match(content.lstrip())
    if match:
        return ManuscriptChapter(title=_heading_title(match), text=content.lstrip()[match.end():].strip())
    return ManuscriptChapter(title=path.stem, text=content.strip())


def load_manuscript(path: Path) -> list[ManuscriptChapter]:
    """Load chapters from a manuscript file or a directory of chapter files.

    Directory entries are read in file-name order; ``.ssml``/``.xml`` files
    are taken as pre-authored markup.
    """
    path = Path(path)
    if path.is_dir():
        files = sorted(
            p for p in path.iterdir()
            if p.is_file() and p.suffix.lower() in TEXT_SUFFIXES | MARKUP_SUFFIXES
        )
        chapters = [_chapter_from_file(p) for p in files]
        chapters = [c for c in chapters if c.text or c.markup]
    else:
        chapters = split_manuscript(path.read_text(encoding="utf-8"), default_title=path.stem)

    if not chapters:
        raise ValueError(f"No chapters found in {path}")
    logger.info("Loaded %d chapter(s) from %s", len(chapters), path)
    return chapters
