"""
Read-only lookups into the game catalog and currency metadata.

The catalog subsystem owns this data; the hub only asks two questions of it:
is a game launchable in a currency, and how many fractional digits a
currency allows. Both default implementations read from ``Settings``.
"""
from decimal import Decimal
from typing import Mapping, Optional

from igsp_hub.config import GameEntry, settings
from igsp_hub.errors import UnknownGame, UnsupportedCurrency, ValidationError
from igsp_hub.helpers import fractional_digits


class CurrencyCatalog:
    def __init__(self, precision: Optional[Mapping[str, int]] = None):
        self._precision = dict(precision if precision is not None else settings.currency_precision)

    def precision(self, currency: str) -> int:
        try:
            return self._precision[currency]
        except KeyError:
            raise UnsupportedCurrency(f"unknown currency {currency}") from None

    def validate_amount(self, amount: Decimal, currency: str, field: str = "amount") -> Decimal:
        if not amount.is_finite():
            raise ValidationError(f"{field} must be a finite number")
        if amount < 0:
            raise ValidationError(f"{field} must not be negative")
        allowed = self.precision(currency)
        if fractional_digits(amount) > allowed:
            raise ValidationError(f"{field} has more than {allowed} fractional digits for {currency}")
        return amount


class GameCatalog:
    def __init__(self, games: Optional[Mapping[str, GameEntry]] = None):
        self._games = dict(games if games is not None else settings.games)

    def require_launchable(self, game_id: str, currency: str) -> GameEntry:
        game = self._games.get(game_id)
        if game is None or not game.enabled:
            raise UnknownGame(f"game {game_id} is unknown or disabled")
        if currency not in game.currencies:
            raise UnsupportedCurrency(f"game {game_id} does not support {currency}")
        return game
