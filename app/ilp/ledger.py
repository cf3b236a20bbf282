"""
In-memory balance ledger for payment tokens.

Balances are exact ``Decimal`` amounts keyed by payment token. Entries
appear on the first credit and disappear once debited exactly to zero.
Every mutation of a token runs under that token's lock, so concurrent
credits and debits on the same token never lose updates.

Optionally, balances expire after a period without activity
(ILP_BALANCE_TTL_SECONDS). Expired entries read as zero and are dropped
the next time they are touched or on ``purge_expired()``.
"""
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Dict, Optional, Tuple, Union

logger = logging.getLogger(__name__)

ZERO = Decimal(0)

Amount = Union[Decimal, int, str]


def to_amount(value: Amount) -> Decimal:
    """Convert an int/str/Decimal amount to a finite Decimal."""
    if isinstance(value, float):
        # floats would smuggle binary rounding error into the ledger
        value = str(value)
    amount = Decimal(value)
    if not amount.is_finite():
        raise ValueError(f"Amount must be finite, got {value!r}")
    return amount


@dataclass
class LedgerEntry:
    """A single token balance and the time it was last touched."""
    balance: Decimal
    updated_at: float


@dataclass
class _TokenLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class BalanceLedger:
    """
    Token balance ledger with per-token serialization.

    Only ``credit``, ``debit`` and ``peek`` touch balances; the underlying
    mapping is never handed out.
    """

    def __init__(
        self,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Args:
            ttl_seconds: Expire balances idle for this long. None disables expiry.
            clock: Monotonic time source (overridable for tests).
        """
        self._entries: Dict[str, LedgerEntry] = {}
        self._locks: Dict[str, _TokenLock] = {}
        self._ttl_seconds = ttl_seconds
        self._clock = clock

    @property
    def ttl_seconds(self) -> Optional[int]:
        return self._ttl_seconds

    @asynccontextmanager
    async def _locked(self, token: str):
        """Hold the lock for ``token``, discarding it once nobody needs it."""
        entry = self._locks.get(token)
        if entry is None:
            entry = self._locks[token] = _TokenLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[token]

    def _is_expired(self, entry: LedgerEntry, now: float) -> bool:
        if self._ttl_seconds is None:
            return False
        return now - entry.updated_at > self._ttl_seconds

    def _current(self, token: str, now: float) -> Decimal:
        entry = self._entries.get(token)
        if entry is None:
            return ZERO
        if self._is_expired(entry, now):
            logger.info(f"Balance for token {token} expired ({entry.balance} dropped)")
            del self._entries[token]
            return ZERO
        return entry.balance

    async def credit(self, token: str, amount: Amount) -> Decimal:
        """
        Add ``amount`` to the balance of ``token``.

        Returns:
            The new balance

        Raises:
            ValueError: If the amount is not a positive finite number
        """
        value = to_amount(amount)
        if value <= 0:
            raise ValueError(f"Credit amount must be positive, got {value}")

        async with self._locked(token):
            now = self._clock()
            balance = self._current(token, now) + value
            self._entries[token] = LedgerEntry(balance=balance, updated_at=now)

        logger.debug(f"Credited {value} to token {token}, new balance {balance}")
        return balance

    async def debit(self, token: str, amount: Amount) -> Tuple[Decimal, bool]:
        """
        Subtract ``amount`` from the balance of ``token`` if it is covered.

        Returns:
            Tuple of (balance, ok):
            - (new_balance, True) when the debit was applied
            - (unchanged_balance, False) when funds are insufficient
        """
        value = to_amount(amount)
        if value < 0:
            raise ValueError(f"Debit amount must not be negative, got {value}")

        async with self._locked(token):
            now = self._clock()
            balance = self._current(token, now)

            if value > balance:
                return (balance, False)

            balance = balance - value
            if balance == 0:
                self._entries.pop(token, None)
            else:
                self._entries[token] = LedgerEntry(balance=balance, updated_at=now)

        logger.debug(f"Debited {value} from token {token}, remaining {balance}")
        return (balance, True)

    def peek(self, token: str) -> Decimal:
        """Current balance of ``token`` (zero if absent or expired)."""
        entry = self._entries.get(token)
        if entry is None or self._is_expired(entry, self._clock()):
            return ZERO
        return entry.balance

    def purge_expired(self) -> int:
        """
        Drop all expired balances.

        Tokens that are currently locked are left alone; they are checked
        again when their holder touches them.

        Returns:
            Number of entries removed
        """
        if self._ttl_seconds is None:
            return 0

        now = self._clock()
        stale = [
            token for token, entry in self._entries.items()
            if self._is_expired(entry, now) and token not in self._locks
        ]
        for token in stale:
            del self._entries[token]

        if stale:
            logger.info(f"Purged {len(stale)} expired balances")
        return len(stale)

    def snapshot(self) -> Dict[str, str]:
        """Copy of all live balances as strings (for diagnostics)."""
        now = self._clock()
        return {
            token: str(entry.balance)
            for token, entry in self._entries.items()
            if not self._is_expired(entry, now)
        }

    def reset(self) -> None:
        """Forget all balances."""
        self._entries.clear()

    def __len__(self) -> int:
        return len(self.snapshot())

    def __contains__(self, token: str) -> bool:
        return self.peek(token) > 0
