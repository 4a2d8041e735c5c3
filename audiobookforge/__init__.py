"""audiobookforge - manuscript text to ACX-compliant mastered audiobook chapters."""

__version__ = "0.1.0"
