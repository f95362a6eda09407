# promptshield/engine/confusables.py
"""
Fixed-script homoglyph detection and decoding.

Three families of look-alike characters are recognised:
- Cyrillic letters drawn like Latin ones (U+0400..U+04FF subset)
- Greek letters (any, U+0391..U+03C9)
- Mathematical Alphanumeric Symbols (U+1D400..U+1D7FF), which NFKC would fold
  but which we want to see before folding

detect_homoglyphs() reports which families occur and where; decode_homoglyphs()
maps the look-alikes back to Latin so the rule catalogue can be rerun on the
decoded copy. Characters outside the fixed tables are decoded through the
Unicode confusables data (confusable_homoglyphs) when it names a Latin twin.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Dict, List, Tuple

from confusable_homoglyphs import confusables

FAMILY_CYRILLIC = "cyrillic"
FAMILY_GREEK = "greek"
FAMILY_MATH = "math"

# Cyrillic -> Latin look-alikes
CYRILLIC_LOOKALIKES: Dict[str, str] = {chr(cp): latin for cp, latin in {
    0x0430: 'a', 0x0435: 'e', 0x043E: 'o', 0x0440: 'p', 0x0441: 'c',
    0x0443: 'y', 0x0445: 'x', 0x0456: 'i', 0x0458: 'j', 0x0455: 's',
    0x04CF: 'l',
    0x0410: 'A', 0x0412: 'B', 0x0415: 'E', 0x0406: 'I', 0x041A: 'K',
    0x041C: 'M', 0x041D: 'H', 0x041E: 'O', 0x0420: 'P', 0x0421: 'C',
    0x0422: 'T', 0x0423: 'Y', 0x0425: 'X', 0x0405: 'S', 0x0408: 'J',
}.items()}

# Greek -> Latin, only where the shapes really coincide
GREEK_LOOKALIKES: Dict[str, str] = {chr(cp): latin for cp, latin in {
    0x03B1: 'a', 0x03B5: 'e', 0x03B9: 'i', 0x03BA: 'k', 0x03BD: 'v',
    0x03BF: 'o', 0x03C1: 'p', 0x03C4: 't', 0x03C5: 'u', 0x03C7: 'x',
    0x0391: 'A', 0x0392: 'B', 0x0395: 'E', 0x0396: 'Z', 0x0397: 'H',
    0x0399: 'I', 0x039A: 'K', 0x039C: 'M', 0x039D: 'N', 0x039F: 'O',
    0x03A1: 'P', 0x03A4: 'T', 0x03A5: 'Y', 0x03A7: 'X',
}.items()}

GREEK_RANGES = ((0x0391, 0x03A9), (0x03B1, 0x03C9))


def _build_math_alphanumeric_map() -> Dict[str, str]:
    """
    Mathematical Alphanumeric letter blocks mapped back to A-Z / a-z.

    Every style (bold, italic, script, fraktur, double-struck, sans-serif,
    monospace...) is a run of 26 capitals followed by 26 lowercase letters,
    starting at U+1D400 and repeating every 52 code points up to U+1D6A3.
    Unassigned holes (e.g. italic small h) simply never occur in input.
    """
    mapping = {}
    for block_start in range(0x1D400, 0x1D6A4, 52):
        for i in range(26):
            mapping[chr(block_start + i)] = chr(ord('A') + i)
            mapping[chr(block_start + 26 + i)] = chr(ord('a') + i)
    # Digit styles: bold, double-struck, sans-serif, sans-serif bold, monospace
    for block_start in range(0x1D7CE, 0x1D800, 10):
        for i in range(10):
            mapping[chr(block_start + i)] = chr(ord('0') + i)
    return mapping


MATH_ALPHANUMERIC_MAP = _build_math_alphanumeric_map()

FULL_LOOKALIKE_MAP: Dict[str, str] = {
    **CYRILLIC_LOOKALIKES,
    **GREEK_LOOKALIKES,
    **MATH_ALPHANUMERIC_MAP,
}


def _is_greek_letter(char: str) -> bool:
    cp = ord(char)
    return any(lo <= cp <= hi for lo, hi in GREEK_RANGES)


def homoglyph_family(char: str) -> str:
    """Family name for a single character, or '' if it is not a homoglyph."""
    if char in CYRILLIC_LOOKALIKES:
        return FAMILY_CYRILLIC
    if _is_greek_letter(char):
        return FAMILY_GREEK
    if char in MATH_ALPHANUMERIC_MAP:
        return FAMILY_MATH
    return ""


def detect_homoglyphs(text: str) -> Dict[str, List[Tuple[str, int]]]:
    """
    Find look-alike characters without modifying the text.

    Returns a mapping family -> [(char, position), ...] containing only the
    families that occur, in first-seen order.
    """
    found: Dict[str, List[Tuple[str, int]]] = {}
    for i, char in enumerate(text):
        if char.isascii():
            continue
        family = homoglyph_family(char)
        if family:
            found.setdefault(family, []).append((char, i))
    return found


@lru_cache(maxsize=4096)
def latin_lookalike(char: str) -> str:
    """
    Latin twin of one character from the Unicode confusables data, or the
    character itself when there is none.
    """
    found = confusables.is_confusable(char, preferred_aliases=["LATIN"])
    if not found:
        return char
    for glyph in found[0].get("homoglyphs", []):
        candidate = glyph.get("c", "")
        if candidate.isascii() and candidate.isalpha() and "LATIN" in glyph.get("n", "").upper():
            return candidate
    return char


def decode_homoglyphs(text: str) -> str:
    """Replace every known look-alike with its Latin counterpart."""
    decoded = []
    for char in text:
        if char.isascii():
            decoded.append(char)
        elif char in FULL_LOOKALIKE_MAP:
            decoded.append(FULL_LOOKALIKE_MAP[char])
        else:
            decoded.append(latin_lookalike(char))
    return "".join(decoded)
