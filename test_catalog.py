"""Tests for the sqlite-backed game catalog and provider sync."""

import pytest

from catalog import SYNC_RULES, CatalogService
from conftest import SAMPLE_CATALOG
from providers import ProviderError


class KeywordProvider:
    """Returns only the services whose game name contains the keyword."""

    def __init__(self, services, failing=()):
        self.services = services
        self.failing = set(failing)
        self.keywords = []

    async def get_services(self, game_code=None):
        self.keywords.append(game_code)
        if game_code in self.failing:
            raise ProviderError(f"timeout fetching {game_code}")
        return [s for s in self.services if game_code.lower() in s["game"].lower()]


def test_import_catalog():
    service = CatalogService()
    assert service.import_catalog(SAMPLE_CATALOG) == 3

    assert [g.name for g in service.get_available_games()] == ["Higgs Domino", "Mobile Legends"]
    assert service.get_game("mobile-legends").is_verified
    assert not service.get_game("higgs-domino").is_verified


def test_products_are_cheapest_first(catalog):
    products = catalog.get_game_services("mobile-legends")
    assert [p.code for p in products] == ["ML86", "ML172"]
    assert catalog.find_service_by_code("ML172").price == 40000
    assert catalog.find_service_by_code("NOPE") is None


def test_inactive_entries_are_hidden(catalog):
    catalog.import_catalog([
        {"code": "old-game", "name": "Old Game", "status": False, "products": [{"code": "OG1", "name": "x", "price": 1}]},
        {"code": "mobile-legends", "name": "Mobile Legends", "validation_code": "mobile-legends", "products": [
            {"code": "ML172", "name": "172 Diamonds", "price": 40000, "status": False},
        ]},
    ])

    assert catalog.get_game("old-game") is None
    assert "old-game" not in [g.code for g in catalog.get_available_games()]
    assert catalog.find_service_by_code("ML172") is None
    assert [p.code for p in catalog.get_game_services("mobile-legends")] == ["ML86"]


def test_rules_respect_exclusions():
    rules = {rule.code: rule for rule in SYNC_RULES}

    assert rules["mobile-legends"].accepts("Mobile Legends")
    assert rules["mobile-legends"].accepts("MLBB Weekly Pass")
    assert not rules["mobile-legends"].accepts("Mobile Legends Joki Rank")
    assert rules["free-fire"].accepts("Free Fire")
    assert not rules["free-fire"].accepts("Free Fire Max")
    assert rules["free-fire-max"].accepts("free fire max")
    assert not rules["pubgm"].accepts("PUBG Mobile Global")
    assert not rules["valorant"].accepts(None)


@pytest.mark.asyncio
async def test_sync_from_provider():
    provider = KeywordProvider([
        {"game": "Mobile Legends", "code": "MLS5", "name": "5 Diamonds", "price": 1500, "status": True},
        {"game": "Mobile Legends Joki Rank", "code": "JOKI1", "name": "Joki Epic", "price": 50000},
        {"game": "Free Fire Max", "code": "FFM70", "name": "70 Diamonds", "price": 9500},
        {"game": "Valorant", "name": "missing code", "price": 1},
    ])
    service = CatalogService()

    stats = await service.sync_from_provider(provider)

    assert stats == {"games": 2, "products": 2, "errors": 0}
    assert len(provider.keywords) == len(SYNC_RULES)
    ml = service.get_game("mobile-legends")
    assert ml.name == "Mobile Legends: Bang Bang"
    assert ml.validation_code == "mobile-legends"
    assert [p.code for p in service.get_game_services("mobile-legends")] == ["MLS5"]
    assert service.find_service_by_code("FFM70").game_code == "free-fire-max"
    assert service.find_service_by_code("JOKI1") is None
    assert service.get_game("valorant") is None


@pytest.mark.asyncio
async def test_sync_counts_provider_errors():
    provider = KeywordProvider(
        [{"game": "Genshin Impact", "code": "GI60", "name": "60 Genesis", "price": 12000}],
        failing={"Mobile Legends", "Valorant"},
    )
    stats = await CatalogService().sync_from_provider(provider)
    assert stats == {"games": 1, "products": 1, "errors": 2}
