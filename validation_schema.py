"""Per-game player ID formats.

Each schema describes the literal shape of a player ID so that obviously
wrong input is rejected locally, before any call to the game provider.
"""

import re
from typing import Callable, Dict, Optional

from pydantic import BaseModel

DEFAULT_FORMAT_ERROR = "⚠️ Format salah. Untuk game ini, harap masukkan ID Angka Saja."

_DIGITS_ONLY = re.compile(r"\d+", re.ASCII)


def _split_words(text: str) -> list:
    return re.sub(r"[()]", " ", text).split()


def _clean_server_in_parens(text: str) -> str:
    return " ".join(_split_words(text))


_GENSHIN_SERVERS = {
    "asia": "os_asia",
    "america": "os_usa",
    "usa": "os_usa",
    "euro": "os_euro",
    "europe": "os_euro",
    "cht": "os_cht",
    "tw": "os_cht",
    "hk": "os_cht",
}


def _clean_genshin(text: str) -> str:
    words = _split_words(text)
    if not words:
        return ""
    uid = words[0]
    server = words[1] if len(words) > 1 else ""
    server = _GENSHIN_SERVERS.get(server.lower(), server)
    return f"{uid} {server}".strip()


class GameSchema(BaseModel):
    """Expected player ID shape for one game."""

    name: str
    pattern: str
    example: str
    clean: Optional[Callable[[str], str]] = None

    def normalize(self, text: str) -> str:
        if self.clean is not None:
            return self.clean(text)
        return text.strip()

    def matches(self, text: str) -> bool:
        return re.fullmatch(self.pattern, text, re.ASCII) is not None


class ValidationResult(BaseModel):
    is_valid: bool
    error: Optional[str] = None
    clean_text: Optional[str] = None


def _digits(name: str, low: int, high: int, example: str = "12345678") -> GameSchema:
    return GameSchema(name=name, pattern=rf"\d{{{low},{high}}}", example=example)


GAME_SCHEMAS: Dict[str, GameSchema] = {
    # MOBA
    "mobile-legends": GameSchema(
        name="Mobile Legends",
        pattern=r"\d{5,12}\s*\(?\d{3,6}\)?",
        example="12345678 (1234)",
        clean=_clean_server_in_parens,
    ),
    "arena-of-valor": _digits("AOV", 5, 18, "123456781234567"),
    "league-of-legends-wild-rift": GameSchema(name="Wild Rift", pattern=r".+#\w{2,6}", example="RiotUser#WR1"),
    "marvel-super-war": _digits("Marvel Super War", 5, 18),
    "honor-of-kings": _digits("Honor of Kings", 5, 20, "123456789"),
    # Battle royale / FPS
    "free-fire": _digits("Free Fire", 8, 14, "1234567890"),
    "free-fire-max": _digits("Free Fire Max", 8, 14, "1234567890"),
    "pubgm": _digits("PUBG Mobile", 5, 14, "5123456789"),
    "call-of-duty-mobile": _digits("CODM", 10, 25, "123456789012345678"),
    "valorant": GameSchema(name="Valorant", pattern=r".+#\w{2,6}", example="RiotUser#ID1"),
    "point-blank": GameSchema(name="Point Blank", pattern=r"[a-zA-Z0-9._-]{3,20}", example="PBUsername"),
    "bullet-angel": _digits("Bullet Angel", 5, 20),
    # RPG
    "genshin-impact": GameSchema(
        name="Genshin Impact",
        pattern=r"\d{9}\s*[a-zA-Z0-9_]*",
        example="812345678 (os_asia)",
        clean=_clean_genshin,
    ),
    "ragnarok-m-eternal-love-big-cat-coin": _digits("Ragnarok M", 5, 15),
    "laplace-m": _digits("Laplace M", 5, 15),
    "dragon-raja": _digits("Dragon Raja", 5, 15),
    # Casual
    "hago": _digits("Hago", 5, 15, "1234567"),
    "zepeto": GameSchema(name="Zepeto", pattern=r"[a-zA-Z0-9._]{3,20}", example="User.123"),
    "lords-mobile": _digits("Lords Mobile", 5, 15),
    "higgs-domino": _digits("Higgs Domino", 5, 15),
    "speed-drifters": _digits("Speed Drifters", 5, 15),
    "tom-and-jerry-chase": _digits("Tom & Jerry Chase", 5, 15),
    "8-ball-pool": _digits("8 Ball Pool", 5, 15),
    "auto-chess": _digits("Auto Chess", 5, 15),
    "cocofun": _digits("Cocofun", 5, 15),
    "indoplay": _digits("IndoPlay", 5, 15),
    "domino-gaple-qiuqiu-boyaa": _digits("Domino Gaple", 5, 15),
}


def get_schema(game_code: Optional[str]) -> Optional[GameSchema]:
    if not game_code:
        return None
    return GAME_SCHEMAS.get(game_code)


class FormatValidator:
    """Checks the literal shape of a player ID against the game's schema."""

    def __init__(self, schemas: Optional[Dict[str, GameSchema]] = None):
        self.schemas = GAME_SCHEMAS if schemas is None else schemas

    def validate(self, raw_text: str, game_code: Optional[str]) -> ValidationResult:
        """Validate a player ID for a game.

        Games without a schema accept digits only.

        Args:
            raw_text: The text exactly as the user sent it.
            game_code: Catalog code of the game being ordered.

        Returns:
            A :class:`ValidationResult` with a user-facing error when invalid.
        """
        text = (raw_text or "").strip()
        schema = self.schemas.get(game_code) if game_code else None

        if schema is None:
            if _DIGITS_ONLY.fullmatch(text):
                return ValidationResult(is_valid=True, clean_text=text)
            return ValidationResult(is_valid=False, error=DEFAULT_FORMAT_ERROR, clean_text=text)

        clean_text = schema.normalize(text)
        if schema.matches(clean_text):
            return ValidationResult(is_valid=True, clean_text=clean_text)
        return ValidationResult(
            is_valid=False,
            error=f"Format ID {schema.name} salah. Contoh: {schema.example}",
            clean_text=clean_text,
        )
