"""Spanish language tables: number words, ordinals, abbreviations, dialogue verbs."""

import re

_SMALL = [
    "cero", "uno", "dos", "tres", "cuatro", "cinco", "seis", "siete", "ocho", "nueve",
    "diez", "once", "doce", "trece", "catorce", "quince", "dieciséis", "diecisiete",
    "dieciocho", "diecinueve", "veinte", "veintiuno", "veintidós", "veintitrés",
    "veinticuatro", "veinticinco", "veintiséis", "veintisiete", "veintiocho", "veintinueve",
]
_TENS = ["", "", "", "treinta", "cuarenta", "cincuenta", "sesenta", "setenta", "ochenta", "noventa"]
_HUNDREDS = [
    "", "ciento", "doscientos", "trescientos", "cuatrocientos", "quinientos",
    "seiscientos", "setecientos", "ochocientos", "novecientos",
]

ORDINALS = {
    1: "primero", 2: "segundo", 3: "tercero", 4: "cuarto", 5: "quinto",
    6: "sexto", 7: "séptimo", 8: "octavo", 9: "noveno", 10: "décimo",
    11: "undécimo", 12: "duodécimo",
}

# Words that introduce a numbered section ("Capítulo IV", "Parte II").
SECTION_WORDS = ("Capítulo", "Capitulo", "Parte", "Libro", "Tomo", "Volumen", "Acto", "Chapter", "Part", "Book")

# Titles and general abbreviations expand wherever they stand alone.
ABBREVIATIONS = {
    "Sr.": "Señor",
    "Sra.": "Señora",
    "Srta.": "Señorita",
    "Dr.": "Doctor",
    "Dra.": "Doctora",
    "Lic.": "Licenciado",
    "Prof.": "Profesor",
    "Ud.": "Usted",
    "Uds.": "Ustedes",
    "etc.": "etcétera",
    "pág.": "página",
    "págs.": "páginas",
    "cap.": "capítulo",
    "vol.": "volumen",
    "núm.": "número",
    "tel.": "teléfono",
    "p.ej.": "por ejemplo",
    "ej.": "ejemplo",
    "vs.": "versus",
    "aprox.": "aproximadamente",
}

# Titles precede a name, so their period never ends a sentence.
TITLES = frozenset({"Sr.", "Sra.", "Srta.", "Dr.", "Dra.", "Lic.", "Prof."})

# Units only expand right after a number ("5m." but never "Liam.").
UNIT_ABBREVIATIONS = {
    "km/h": "kilómetros por hora",
    "min.": "minutos",
    "seg.": "segundos",
    "hrs.": "horas",
    "km.": "kilómetros",
    "km": "kilómetros",
    "cm.": "centímetros",
    "mm.": "milímetros",
    "kg.": "kilogramos",
    "kg": "kilogramos",
    "gr.": "gramos",
    "lt.": "litros",
    "ml.": "mililitros",
    "m.": "metros",
}

DIALOGUE_VERBS = (
    "dijo", "respondió", "preguntó", "exclamó", "murmuró", "susurró", "gritó",
    "añadió", "comentó", "contestó", "replicó", "musitó", "gruñó", "explicó",
    "insistió", "suspiró", "ordenó", "admitió",
)

ROMAN_RE = re.compile(r"^M{0,3}(?:CM|CD|D?C{0,3})(?:XC|XL|L?X{0,3})(?:IX|IV|V?I{0,3})$")
_ROMAN_VALUES = {"I": 1, "V": 5, "X": 10, "L": 50, "C": 100, "D": 500, "M": 1000}


def _below_hundred(n: int) -> str:
    if n < 30:
        return _SMALL[n]
    tens, units = divmod(n, 10)
    if units:
        return f"{_TENS[tens]} y {_SMALL[units]}"
    return _TENS[tens]


def _below_thousand(n: int) -> str:
    if n == 100:
        return "cien"
    hundreds, rest = divmod(n, 100)
    words = []
    if hundreds:
        words.append(_HUNDREDS[hundreds])
    if rest:
        words.append(_below_hundred(rest))
    return " ".join(words)


def _apocope(words: str) -> str:
    """'veintiuno mil' is spoken 'veintiún mil', 'uno mil' never occurs."""
    if words.endswith("veintiuno"):
        return words[:-len("veintiuno")] + "veintiún"
    if words.endswith("uno"):
        return words[:-1]
    return words


def number_to_words(num: int) -> str:
    """Spell out an integer in Spanish (cardinal form)."""
    if num < 0:
        return "menos " + number_to_words(-num)
    if num == 0:
        return "cero"

    parts = []
    millions, num = divmod(num, 1_000_000)
    if millions == 1:
        parts.append("un millón")
    elif millions:
        parts.append(_apocope(number_to_words(millions)) + " millones")

    thousands, rest = divmod(num, 1000)
    if thousands == 1:
        parts.append("mil")
    elif thousands:
        parts.append(_apocope(_below_thousand(thousands)) + " mil")

    if rest:
        parts.append(_below_thousand(rest))
    return " ".join(parts)


def roman_to_int(numeral: str) -> int | None:
    """Parse a Roman numeral; return None when it is not one."""
    if not numeral or not ROMAN_RE.match(numeral):
        return None
    total = 0
    previous = 0
    for char in reversed(numeral):
        value = _ROMAN_VALUES[char]
        if value < previous:
            total -= value
        else:
            total += value
            previous = value
    return total


def ordinal_words(num: int) -> str:
    """Ordinal for small chapter numbers, cardinal beyond twelve (usual Spanish reading)."""
    return ORDINALS.get(num) or number_to_words(num)
