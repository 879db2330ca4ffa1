"""Spending engine — one path for every debit.

Purchases, paid messages and paid music requests all go through
``SpendingEngine.charge`` so balance checks, the atomic debit and the
ledger/redemption rows stay consistent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .database import EconomyDatabase


class SpendResult(Enum):
    SUCCESS = "success"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    UNKNOWN_USER = "unknown_user"


@dataclass(frozen=True)
class SpendOutcome:
    result: SpendResult
    amount_charged: int = 0
    balance: int = 0

    @property
    def ok(self) -> bool:
        return self.result is SpendResult.SUCCESS


class SpendingEngine:
    """Balance validation and atomic debits."""

    def __init__(
        self,
        database: EconomyDatabase,
        logger: logging.Logger | None = None,
    ) -> None:
        self._db = database
        self._logger = logger or logging.getLogger("economy.spending")

        # Metrics counter (exposed to the HTTP server)
        self.points_spent_total: int = 0

    # ══════════════════════════════════════════════════════════
    #  Validation
    # ══════════════════════════════════════════════════════════

    async def validate_spend(self, user_id: str, amount: int) -> SpendOutcome | None:
        """Pre-spend checks (tracked user, balance).

        Returns SpendOutcome on failure, None if all checks pass.
        """
        user = await self._db.get_user(user_id)
        if not user:
            return SpendOutcome(result=SpendResult.UNKNOWN_USER)
        if user["points"] < amount:
            return SpendOutcome(result=SpendResult.INSUFFICIENT_FUNDS, balance=user["points"])
        return None

    # ══════════════════════════════════════════════════════════
    #  Charging
    # ══════════════════════════════════════════════════════════

    async def charge(
        self,
        user_id: str,
        amount: int,
        reason: str,
        item_id: int | None = None,
    ) -> SpendOutcome:
        """Debit ``amount`` and record it; free actions (amount 0) touch nothing."""
        if amount <= 0:
            return SpendOutcome(result=SpendResult.SUCCESS)

        failure = await self.validate_spend(user_id, amount)
        if failure:
            return failure

        new_balance = await self._db.spend(user_id, amount, reason, item_id=item_id)
        if new_balance is None:
            # Balance moved between the check and the debit
            user = await self._db.get_user(user_id)
            return SpendOutcome(
                result=SpendResult.INSUFFICIENT_FUNDS,
                balance=user["points"] if user else 0,
            )

        self.points_spent_total += amount
        self._logger.info("Charged %s %d points: %s", user_id, amount, reason)
        return SpendOutcome(
            result=SpendResult.SUCCESS, amount_charged=amount, balance=new_balance,
        )
