"""Per-turn credit check against a configured price table."""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from ..errors import InsufficientCredit, InvalidModel


@dataclass(frozen=True)
class CreditDecision:
    approved: bool
    cost: float
    remaining: float


class CreditGate:
    """Approve or deny a turn given the model price and the caller's balance."""

    def __init__(self, prices: Mapping[str, float]):
        self._prices = MappingProxyType(dict(prices))

    @property
    def prices(self) -> Mapping[str, float]:
        return self._prices

    def evaluate(self, model: str, balance: float) -> CreditDecision:
        """Return the decision for ``model``; unknown models raise ``InvalidModel``."""

        cost = self._prices.get(model)
        if cost is None:
            raise InvalidModel(f"The model '{model}' is invalid or not supported")
        if cost > balance:
            return CreditDecision(approved=False, cost=cost, remaining=balance)
        return CreditDecision(approved=True, cost=cost, remaining=balance - cost)

    def authorize(self, model: str, balance: float) -> CreditDecision:
        decision = self.evaluate(model, balance)
        if not decision.approved:
            raise InsufficientCredit(
                f"Insufficient credits: required {decision.cost:.2f}, available {balance:.2f}"
            )
        return decision


__all__ = ["CreditDecision", "CreditGate"]
