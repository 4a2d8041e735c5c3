"""Tests for request chunking."""

import pytest

from audiobookforge.text.chunker import split_text, text_size
from audiobookforge.text.ssml import compile_ssml, strip_markup


class TestTextSize:
    def test_units(self):
        assert text_size("año", "chars") == 3
        assert text_size("año", "bytes") == 4

    def test_unknown_unit(self):
        with pytest.raises(ValueError):
            text_size("hola", "words")


class TestPlainText:
    def test_short_text_is_one_chunk(self):
        assert split_text("Hola mundo.", 100) == ["Hola mundo."]

    def test_prefers_paragraphs(self):
        text = "a" * 60 + "\n\n" + "b" * 60

        assert split_text(text, 100) == ["a" * 60 + "\n\n", "b" * 60]

    def test_then_sentences(self):
        text = "Primera frase aquí. Segunda frase larga aquí."

        assert split_text(text, 30) == ["Primera frase aquí. ", "Segunda frase larga aquí."]

    def test_hard_cut(self):
        chunks = split_text("x" * 250, 100)

        assert [len(c) for c in chunks] == [100, 100, 50]

    def test_long_chapter(self):
        text = "\n\n".join("La lluvia caía sin descanso sobre el pueblo. " * 12 for _ in range(20))

        chunks = split_text(text, 2800)

        assert "".join(chunks) == text
        assert all(len(c) <= 2800 for c in chunks)
        assert len(chunks) == 4

    def test_byte_limit(self):
        text = "ñ" * 100

        chunks = split_text(text, 50, unit="bytes")

        assert "".join(chunks) == text
        assert all(text_size(c, "bytes") <= 50 for c in chunks)
        assert len(chunks) == 4

    def test_rejects_non_positive_limit(self):
        with pytest.raises(ValueError):
            split_text("hola", 0)


class TestMarkup:
    def test_chunks_are_balanced(self):
        body = "<p>" + "Hola mundo. " * 30 + "</p>"
        text = f'<speak><prosody rate="90%">{body}</prosody></speak>'

        chunks = split_text(text, 200, markup=True)

        assert len(chunks) > 1
        for chunk in chunks:
            assert len(chunk) <= 200
            assert chunk.startswith('<speak><prosody rate="90%">')
            assert chunk.endswith("</prosody></speak>")
            assert chunk.count("<p>") == chunk.count("</p>")
            assert chunk.count("<") == chunk.count(">")

    def test_never_cuts_inside_a_tag(self):
        text = "<speak>" + '<break time="250ms"/>'.join(["palabra"] * 40) + "</speak>"

        for chunk in split_text(text, 120, markup=True):
            assert chunk.count("<") == chunk.count(">")
            assert chunk.startswith("<speak>") and chunk.endswith("</speak>")

    def test_never_cuts_inside_an_entity(self):
        text = "<speak>" + "Tom &amp; Jerry " * 30 + "</speak>"

        for chunk in split_text(text, 100, markup=True):
            assert chunk.count("&") == chunk.count("&amp;")

    def test_limit_smaller_than_a_tag(self):
        with pytest.raises(ValueError):
            split_text("<speak>" + "a" * 50 + "</speak>", 5, markup=True)

    def test_compiled_chapter_round_trips_through_chunks(self):
        paragraph = "La lluvia caía sin descanso sobre el pueblo, y nadie salía de casa. " * 10
        ssml = compile_ssml("\n\n".join(paragraph.strip() for _ in range(60)))

        chunks = split_text(ssml, 4500, unit="bytes", markup=True)

        assert len(chunks) > 1
        for chunk in chunks:
            assert text_size(chunk, "bytes") <= 4500
            assert chunk.startswith('<speak><prosody rate="100%">')
            assert chunk.endswith("</prosody></speak>")
            assert chunk.count("<p>") == chunk.count("</p>")
        spoken = " ".join(strip_markup(chunk) for chunk in chunks)
        assert spoken.split() == strip_markup(ssml).split()
