"""Turns raw chat text into an intent the order flow can act on."""

import logging
from typing import Dict, FrozenSet, Iterable, Literal, Optional

from pydantic import BaseModel

import sanitizer
from validation_schema import GAME_SCHEMAS, GameSchema

logger = logging.getLogger(__name__)

EXIT_KEYWORDS = ("batal", "cancel", "keluar", "exit", "menu", "stop", "clear", "restart", "ulang")
GREETINGS = ("halo", "hai", "hi", "hello", "hey", "pagi", "siang", "malam", "sore", "p", "assalamualaikum")
BLACKLIST = (
    "kontol", "memek", "jembut", "anjing", "babi", "monyet", "goblog",
    "goblok", "tolol", "bajingan", "bangsat", "tai", "pantek",
)

USER_ID_MAX_LENGTH = 30
ZONE_ID_MAX_LENGTH = 20


class InputIntent(BaseModel):
    """What a piece of user text means for the order flow.

    Attributes:
        type: ``command``, ``ignore`` or ``data``.
        action: For commands, ``cancel`` or ``general``.
        command: The slash token of a slash command.
        reason: For ignored input, why it was ignored.
        user_id: For data, the cleaned player ID (None if it had bad characters).
        zone_id: For data, the cleaned zone/server part, if any.
    """

    type: Literal["command", "ignore", "data"]
    action: Optional[Literal["cancel", "general"]] = None
    command: Optional[str] = None
    reason: Optional[str] = None
    user_id: Optional[str] = None
    zone_id: Optional[str] = None


class InputClassifier:
    """Priority cascade: commands, greetings, chatter, blacklist, then data."""

    def __init__(
        self,
        exit_keywords: Iterable[str] = EXIT_KEYWORDS,
        greetings: Iterable[str] = GREETINGS,
        blacklist: Iterable[str] = BLACKLIST,
        schemas: Optional[Dict[str, GameSchema]] = None,
    ):
        self.exit_keywords: FrozenSet[str] = frozenset(exit_keywords)
        self.greetings: FrozenSet[str] = frozenset(greetings)
        self.blacklist = tuple(blacklist)
        self.schemas = GAME_SCHEMAS if schemas is None else schemas

    def classify(self, text: Optional[str], game_code: Optional[str] = None) -> InputIntent:
        """Classify a chat message.

        Args:
            text: Raw message text.
            game_code: Game of the current order, used for game-specific cleaning.

        Returns:
            The detected :class:`InputIntent`.
        """
        if not text or not isinstance(text, str) or not text.strip():
            return InputIntent(type="ignore", reason="empty_input")

        cleaned = text.strip()
        lowered = cleaned.lower()

        if lowered in self.exit_keywords or cleaned.startswith("/"):
            is_cancel = lowered in self.exit_keywords or lowered == "/cancel"
            return InputIntent(
                type="command",
                action="cancel" if is_cancel else "general",
                command=cleaned.split()[0] if cleaned.startswith("/") else None,
            )

        if lowered in self.greetings:
            return InputIntent(type="ignore", reason="greeting")

        if sanitizer.is_conversational(cleaned):
            return InputIntent(type="ignore", reason="conversational")

        if any(word in lowered for word in self.blacklist):
            return InputIntent(type="ignore", reason="blacklist_word")

        schema = self.schemas.get(game_code) if game_code else None
        normalized = schema.clean(cleaned) if schema and schema.clean else cleaned

        words = normalized.split()
        user_raw = words[0] if words else ""
        zone_raw = " ".join(words[1:])

        return InputIntent(
            type="data",
            user_id=sanitizer.clean_alphanumeric(user_raw, USER_ID_MAX_LENGTH),
            zone_id=sanitizer.clean_alphanumeric(zone_raw, ZONE_ID_MAX_LENGTH) if zone_raw else None,
        )
