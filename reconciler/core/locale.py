"""Domestic/foreign classification of customers by country spelling."""
from typing import FrozenSet, Iterable

DEFAULT_DOMESTIC_ALIASES = frozenset({"NO", "NORWAY", "NORGE", "NOREG", "NOR"})


class LocaleClassifier:
    """
    Decides whether a customer belongs to the domestic market.

    The alias set is configuration; matching is case- and whitespace-insensitive.
    """

    def __init__(self, domestic_aliases: Iterable[str] = DEFAULT_DOMESTIC_ALIASES):
        self.domestic_aliases: FrozenSet[str] = frozenset(
            alias.strip().upper() for alias in domestic_aliases if alias.strip()
        )
        if not self.domestic_aliases:
            raise ValueError("At least one domestic country alias is required")

    def is_domestic(self, country: str) -> bool:
        return country.strip().upper() in self.domestic_aliases
