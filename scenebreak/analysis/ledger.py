"""
Consumption ledger.

The orchestrator treats the ledger as a transactional counter: one charge per
completed scene, nothing for skipped or failed scenes. Persistence is someone
else's concern; InMemoryLedger is the reference implementation and the one
used by the CLI and tests.
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, runtime_checkable

from scenebreak.config import Settings, get_settings
from scenebreak.models import utcnow
from scenebreak.utils.errors import InsufficientBalanceError
from scenebreak.utils.logging import LogContext, get_logger

logger = get_logger(__name__)


@runtime_checkable
class ConsumptionLedger(Protocol):
    """Balance collaborator consumed by the orchestrator."""

    async def balance(self, caller_id: str) -> int:
        ...

    async def can_afford(self, caller_id: str, amount: int = 1) -> bool:
        ...

    async def charge(
        self,
        caller_id: str,
        amount: int = 1,
        reference: Optional[Dict[str, Any]] = None,
    ) -> int:
        ...

    async def credit(self, caller_id: str, amount: int, reason: str) -> int:
        ...


@dataclass
class UsageEntry:
    """One ledger movement. Charges are negative."""

    caller_id: str
    amount: int
    balance_after: int
    reason: str
    reference: Dict[str, Any] = field(default_factory=dict)
    unlimited: bool = False
    created_at: datetime = field(default_factory=utcnow)


class InMemoryLedger:
    """
    Process-local ledger.

    Each caller has its own asyncio.Lock, so concurrent charges for the same
    caller (different projects) are serialised while different callers never
    wait on each other. Unlimited callers are recorded in the history but
    never debited.
    """

    def __init__(
        self,
        balances: Optional[Dict[str, int]] = None,
        unlimited_callers: Optional[Iterable[str]] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        if unlimited_callers is None:
            unlimited_callers = (settings or get_settings()).unlimited_callers
        self._balances: Dict[str, int] = dict(balances or {})
        self._unlimited = frozenset(unlimited_callers)
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._history: List[UsageEntry] = []

    def is_unlimited(self, caller_id: str) -> bool:
        return caller_id in self._unlimited

    async def balance(self, caller_id: str) -> int:
        async with self._locks[caller_id]:
            return self._balances.get(caller_id, 0)

    async def can_afford(self, caller_id: str, amount: int = 1) -> bool:
        if self.is_unlimited(caller_id):
            return True
        return await self.balance(caller_id) >= amount

    async def charge(
        self,
        caller_id: str,
        amount: int = 1,
        reference: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Debit `amount` units and return the new balance.

        Raises:
            InsufficientBalanceError: If the balance is below `amount`
        """
        if amount < 1:
            raise ValueError("charge amount must be positive")

        async with self._locks[caller_id]:
            current = self._balances.get(caller_id, 0)
            unlimited = self.is_unlimited(caller_id)
            if unlimited:
                new_balance = current
            elif current < amount:
                raise InsufficientBalanceError(caller_id, current, amount)
            else:
                new_balance = current - amount
                self._balances[caller_id] = new_balance

            self._history.append(
                UsageEntry(
                    caller_id=caller_id,
                    amount=-amount,
                    balance_after=new_balance,
                    reason="scene_analysis",
                    reference=dict(reference or {}),
                    unlimited=unlimited,
                )
            )

        with LogContext(caller_id=caller_id):
            if unlimited:
                logger.info(f"Unlimited caller {caller_id} used {amount} unit(s), not debited")
            else:
                logger.info(f"Charged {caller_id} {amount} unit(s), balance {new_balance}")
        return new_balance

    async def credit(self, caller_id: str, amount: int, reason: str) -> int:
        """Top up a balance and return the new balance."""
        if amount < 1:
            raise ValueError("credit amount must be positive")

        async with self._locks[caller_id]:
            new_balance = self._balances.get(caller_id, 0) + amount
            self._balances[caller_id] = new_balance
            self._history.append(
                UsageEntry(
                    caller_id=caller_id,
                    amount=amount,
                    balance_after=new_balance,
                    reason=reason,
                )
            )

        logger.info(f"Credited {caller_id} {amount} unit(s) ({reason}), balance {new_balance}")
        return new_balance

    def history(self, caller_id: Optional[str] = None) -> List[UsageEntry]:
        """Usage entries, oldest first, optionally for one caller."""
        if caller_id is None:
            return list(self._history)
        return [entry for entry in self._history if entry.caller_id == caller_id]

    def charges(self, caller_id: Optional[str] = None) -> List[UsageEntry]:
        return [entry for entry in self.history(caller_id) if entry.amount < 0]
