from typing import Optional

from .constants import from_cents
from .database import Database
from .models import Game, Package, Region

# Values the storefront front-end sends for "no region selected"
EMPTY_REGION_KEYS = ("", "null", "undefined")


class Catalog:
    """Read-only access to games, their regions and purchasable packages."""

    def __init__(self, database: Database):
        self.database = database

    def list_games(self) -> list[Game]:
        rows = self.database.fetch_all('SELECT * FROM games ORDER BY name')
        return [Game(**row) for row in rows]

    def list_regions(self, game_id: str) -> list[Region]:
        rows = self.database.fetch_all('SELECT * FROM regions WHERE game_id = ? ORDER BY id', (game_id,))
        return [Region(**row) for row in rows]

    def list_packages(self, game_id: str, region_key: Optional[str] = None) -> list[Package]:
        if region_key and region_key not in EMPTY_REGION_KEYS:
            rows = self.database.fetch_all(
                'SELECT * FROM packages WHERE game_id = ? AND region_key = ? ORDER BY price',
                (game_id, region_key),
            )
        else:
            rows = self.database.fetch_all(
                "SELECT * FROM packages WHERE game_id = ? AND (region_key IS NULL OR region_key = '') ORDER BY price",
                (game_id,),
            )
        return [Package(**{**row, "price": from_cents(row["price"])}) for row in rows]
