"""Tests for markup compilation and the speaking-rate parser."""

import pytest

from audiobookforge.text.normalizer import (
    DIALOGUE_PAUSE,
    PHONEME_CLOSE,
    PHONEME_OPEN,
    PHONEME_SEP,
    SCENE_BREAK,
)
from audiobookforge.text.ssml import (
    compile_ssml,
    parse_speaking_rate,
    prepare_authored_markup,
    prosody_rate,
    render_plain_text,
    strip_markup,
)


class TestSpeakingRate:
    @pytest.mark.parametrize("rate, expected", [
        ("85%", 0.85),
        ("slow", 0.75),
        ("x-fast", 1.5),
        (0.9, 0.9),
        ("1.1", 1.1),
        (None, 1.0),
        ("rápido", 1.0),
        (0, 1.0),
        ("500%", 2.0),
        ("10%", 0.5),
    ])
    def test_parse(self, rate, expected):
        assert parse_speaking_rate(rate) == pytest.approx(expected)

    def test_prosody_rate(self):
        assert prosody_rate("slow") == "75%"
        assert prosody_rate(1.1) == "110%"


class TestCompileSsml:
    def test_pauses_by_punctuation(self):
        result = compile_ssml("Hola, mundo. Adiós.")

        assert result == (
            '<speak><prosody rate="100%"><p>Hola,<break time="250ms"/> mundo.'
            '<break time="600ms"/> Adiós.</p></prosody></speak>'
        )

    def test_paragraphs(self):
        result = compile_ssml("Uno.\n\nDos.")

        assert '<p>Uno.</p>\n<break time="1000ms"/>\n<p>Dos.</p>' in result

    def test_scene_break(self):
        result = compile_ssml(f"{SCENE_BREAK}\n\nUno.\n\n{SCENE_BREAK}\n\nDos.")

        assert result.count('<break time="2000ms"/>') == 1
        assert '<p>Uno.</p>\n<break time="2000ms"/>\n<p>Dos.</p>' in result
        assert '<break time="1000ms"/>' not in result

    def test_emphatic_and_clause_pauses(self):
        result = compile_ssml("¡Corre! Vino; luego: nada.")

        assert '¡Corre!<break time="700ms"/>' in result
        assert 'Vino;<break time="400ms"/>' in result
        assert 'luego:<break time="400ms"/>' in result

    def test_closing_quote_stays_before_pause(self):
        assert '«Hola.»<break time="600ms"/>' in compile_ssml("«Hola.» Adiós.")

    def test_escaping(self):
        result = compile_ssml("Tom & Jerry, <amigos>.")

        assert "Tom &amp; Jerry," in result
        assert "&lt;amigos&gt;" in result
        assert "&amp;<break" not in result

    def test_rate(self):
        assert compile_ssml("Hola.", "85%").startswith('<speak><prosody rate="85%">')

    def test_dialogue_pause(self):
        result = compile_ssml(f"—No — {DIALOGUE_PAUSE}dijo ella.")

        assert '— <break time="300ms"/>dijo' in result

    def test_phoneme(self):
        result = compile_ssml(f"Uso {PHONEME_OPEN}software{PHONEME_SEP}ˈsoftweɾ{PHONEME_CLOSE} libre.")

        assert '<phoneme alphabet="ipa" ph="ˈsoftweɾ">software</phoneme>' in result


class TestPlainText:
    def test_markers_dropped(self):
        text = (
            f"Uno {PHONEME_OPEN}email{PHONEME_SEP}iˈmeil{PHONEME_CLOSE}.\n\n{SCENE_BREAK}\n\n"
            f"—No — {DIALOGUE_PAUSE}dijo."
        )

        assert render_plain_text(text) == "Uno email.\n\n—No — dijo."

    def test_strip_markup(self):
        markup = '<speak><prosody rate="90%"><p>Hola &amp; adiós</p><break time="1s"/><p>Fin</p></prosody></speak>'

        assert strip_markup(markup) == "Hola & adiós Fin"


class TestAuthoredMarkup:
    def test_outer_speak_is_rewrapped_with_rate(self):
        result = prepare_authored_markup("<speak>Hola <emphasis>mundo</emphasis></speak>", "90%")

        assert result == '<speak><prosody rate="90%">Hola <emphasis>mundo</emphasis></prosody></speak>'

    def test_foreign_tags_and_bare_ampersands_are_escaped(self):
        result = prepare_authored_markup("A & B <script>x</script> <break time=\"1s\"/> &amp;")

        assert "A &amp; B" in result
        assert "&lt;script>x&lt;/script>" in result
        assert '<break time="1s"/>' in result
        assert "&amp;amp;" not in result
