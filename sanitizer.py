"""Helpers that clean raw user input before it reaches the order flow."""

import re
from typing import Optional

_ALNUM_RE = re.compile(r"^[a-zA-Z0-9.\-_ ()]+$")
_MERCHANT_REF_RE = re.compile(r"^[a-zA-Z0-9\-]+$")
_PUNCTUATION_RE = re.compile(r"[?!,;]")
_ALPHA_RE = re.compile(r"^[a-zA-Z]+$")

# Words that only show up in chatter, never in a player ID.
CONVERSATIONAL_WORDS = frozenset({
    "oke", "ok", "okei", "sip", "siap", "mantap", "sipp", "okehh",
    "sudah", "udah", "blom", "belum", "nanti", "besok", "saya", "aku",
    "kamu", "apa", "kenapa", "gimana", "mana", "siapa", "kapan",
    "bisa", "gak", "tidak", "ya", "iya", "yoi", "ready", "bentar",
    "tunggu", "sebentar", "dulu", "lagi", "ada", "adaa", "mau",
    "ingin", "order", "pesan", "topup", "bang", "kak", "sis", "gan",
    "min", "admin", "test", "tes", "cek", "recheck", "wow", "asik",
})


def clean_alphanumeric(text: Optional[str], max_length: int = 50) -> Optional[str]:
    """Return the trimmed text if it only holds ID-safe characters.

    Letters, digits, ``.``, ``-``, ``_``, spaces and parentheses are allowed.

    Returns:
        The trimmed text, or None if it is empty, too long or has other characters.
    """
    if not text or not isinstance(text, str):
        return None

    cleaned = text.strip()
    if not cleaned or len(cleaned) > max_length:
        return None
    if not _ALNUM_RE.match(cleaned):
        return None
    return cleaned


def clean_merchant_ref(ref: Optional[str], max_length: int = 64) -> Optional[str]:
    """Validate a merchant reference taken from callback data."""
    if not ref or not isinstance(ref, str):
        return None

    trimmed = ref.strip()
    if not trimmed or len(trimmed) > max_length:
        return None
    if not _MERCHANT_REF_RE.match(trimmed):
        return None
    return trimmed


def clean_provider_input(value: Optional[str]) -> str:
    """Strip everything a provider API should never receive."""
    if not value:
        return ""
    return re.sub(r"[^a-zA-Z0-9\-_ ]", "", str(value)).strip()


def is_conversational(text: Optional[str]) -> bool:
    """Tell whether the text reads like a sentence rather than an ID.

    A text is conversational when it has more than two words, uses a known
    chat word, contains sentence punctuation, or is a single alphabetic word
    longer than ten characters.
    """
    if not text:
        return False

    trimmed = text.strip()
    words = trimmed.lower().split()

    if len(words) > 2:
        return True
    if any(word in CONVERSATIONAL_WORDS for word in words):
        return True
    if _PUNCTUATION_RE.search(trimmed):
        return True
    if len(words) == 1 and len(trimmed) > 10 and _ALPHA_RE.match(trimmed):
        return True
    return False
