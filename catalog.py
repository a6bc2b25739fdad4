"""Game catalog backed by the local database.

Games and their products are read from sqlite. :meth:`CatalogService.sync_from_provider`
refreshes them from the provider's service list, using :data:`SYNC_RULES`
to decide which provider entries belong to which game.
"""

import logging
import re
from typing import Any, Dict, List, Optional, Pattern, Tuple

from pydantic import BaseModel, ConfigDict, Field

import db
from data_models import GameInfo, GameProduct

logger = logging.getLogger(__name__)


class GameRule(BaseModel):
    """Maps raw provider game names onto one catalog game."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    code: str
    name: str
    category: str = "Game"
    validation_code: Optional[str] = None
    keyword: str
    patterns: List[Pattern] = Field(default_factory=list)
    exclude: List[Pattern] = Field(default_factory=list)

    def accepts(self, provider_game: Optional[str]) -> bool:
        if not provider_game:
            return False
        if any(p.search(provider_game) for p in self.exclude):
            return False
        return any(p.search(provider_game) for p in self.patterns)


def _rule(code, name, category, keyword, patterns, exclude=(), validation_code=None) -> GameRule:
    return GameRule(
        code=code,
        name=name,
        category=category,
        validation_code=validation_code,
        keyword=keyword,
        patterns=[re.compile(p, re.IGNORECASE) for p in patterns],
        exclude=[re.compile(p, re.IGNORECASE) for p in exclude],
    )


SYNC_RULES: Tuple[GameRule, ...] = (
    _rule("mobile-legends", "Mobile Legends: Bang Bang", "MOBA", "Mobile Legends",
          [r"^Mobile Legends", r"^MLBB"], [r"Joki", r"Jasa", r"Membership", r"Vilog"],
          validation_code="mobile-legends"),
    _rule("arena-of-valor", "Arena of Valor", "MOBA", "Arena of Valor",
          [r"^Arena of Valor", r"^AOV"], validation_code="arena-of-valor"),
    _rule("league-of-legends-wild-rift", "League of Legends: Wild Rift", "MOBA", "Wild Rift",
          [r"^League of Legends:? Wild Rift", r"^Wild Rift"], validation_code="league-of-legends-wild-rift"),
    _rule("free-fire", "Free Fire", "Battle Royale", "Free Fire",
          [r"^Free Fire(?! Max)"], [r"Membership"], validation_code="free-fire"),
    _rule("free-fire-max", "Free Fire Max", "Battle Royale", "Free Fire Max",
          [r"^Free Fire Max"], validation_code="free-fire-max"),
    _rule("pubgm", "PUBG Mobile", "Battle Royale", "PUBG Mobile",
          [r"^PUBG Mobile", r"^PUBGM"], [r"Global"], validation_code="pubgm"),
    _rule("valorant", "Valorant", "FPS", "Valorant", [r"^Valorant"], validation_code="valorant"),
    _rule("call-of-duty-mobile", "Call of Duty Mobile", "FPS", "Call of Duty",
          [r"^Call of Duty", r"^CODM"], validation_code="call-of-duty-mobile"),
    _rule("genshin-impact", "Genshin Impact", "RPG", "Genshin Impact",
          [r"^Genshin Impact"], validation_code="genshin-impact"),
    _rule("honor-of-kings", "Honor of Kings", "MOBA", "Honor of Kings", [r"^Honor of Kings"]),
    _rule("higgs-domino", "Higgs Domino", "Casual", "Higgs Domino", [r"^Higgs Domino"]),
)


class CatalogService:
    def __init__(self, rules: Tuple[GameRule, ...] = SYNC_RULES):
        self.rules = rules

    def get_available_games(self) -> List[GameInfo]:
        """Active games, ordered by name."""
        return [GameInfo(**row) for row in db.list_games(active_only=True)]

    def get_game(self, code: str) -> Optional[GameInfo]:
        row = db.get_game(code)
        if row is None or not row.get("status", True):
            return None
        return GameInfo(**row)

    def get_game_services(self, game_code: str) -> List[GameProduct]:
        """Active products of a game, cheapest first."""
        products = [GameProduct(**row) for row in db.list_game_products(game_code, active_only=True)]
        return sorted(products, key=lambda p: p.price)

    def find_service_by_code(self, code: str) -> Optional[GameProduct]:
        row = db.get_game_product(code)
        if row is None or not row.get("status", True):
            return None
        return GameProduct(**row)

    def save_game(self, game: GameInfo) -> bool:
        return db.upsert_game(game.model_dump())

    def save_product(self, product: GameProduct) -> bool:
        return db.upsert_game_product(product.model_dump())

    def import_catalog(self, games: List[Dict[str, Any]]) -> int:
        """Load games and their products from plain dicts.

        Each game dict carries the :class:`GameInfo` fields plus a
        ``products`` list of :class:`GameProduct` fields without ``game_code``.

        Returns:
            The number of products written.
        """
        written = 0
        for raw in games:
            products = raw.get("products") or []
            game = GameInfo(**{k: v for k, v in raw.items() if k != "products"})
            self.save_game(game)
            for product in products:
                if self.save_product(GameProduct(game_code=game.code, **product)):
                    written += 1
        return written

    async def sync_from_provider(self, provider) -> Dict[str, Any]:
        """Refresh games and products from the provider's service list.

        Args:
            provider: Anything with an async ``get_services(game_code)``,
                normally :class:`providers.GameProviderService`.

        Returns:
            Counters of processed games, synced products and errors.
        """
        stats = {"games": 0, "products": 0, "errors": 0}

        for rule in self.rules:
            try:
                services = await provider.get_services(rule.keyword)
            except Exception:
                logger.exception(f"Catalog sync failed for {rule.name}")
                stats["errors"] += 1
                continue

            matched = [s for s in services if rule.accepts(s.get("game")) and s.get("code")]
            if not matched:
                logger.warning(f"No provider services matched {rule.name} (keyword {rule.keyword!r})")
                continue

            self.save_game(GameInfo(
                code=rule.code,
                name=rule.name,
                category=rule.category,
                validation_code=rule.validation_code,
            ))
            stats["games"] += 1

            for service in matched:
                product = GameProduct(
                    code=service["code"],
                    game_code=rule.code,
                    name=service.get("name") or service["code"],
                    price=service.get("price") or 0,
                    description=service.get("description"),
                    status=bool(service.get("status", True)),
                )
                if self.save_product(product):
                    stats["products"] += 1

            logger.info(f"Synced {len(matched)} products for {rule.name}")

        logger.info(f"Catalog sync finished: {stats}")
        return stats
