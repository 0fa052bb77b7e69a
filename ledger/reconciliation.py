import logging
import threading
import time
from collections import defaultdict
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID

from .models import (
    ZERO,
    AccountDiscrepancy,
    AggregateStats,
    ReconciliationReport,
    TransactionKind,
    TransactionStatus,
)
from .store import LedgerStore, utcnow

logger = logging.getLogger(__name__)


class ReconciliationView:
    """Read-only oversight over the ledger.

    ``snapshot`` scans without taking any account lock and serves a cached
    copy for up to ``max_staleness`` seconds; it is for human monitoring,
    not for decisions that need the live balance.
    """

    def __init__(self, store: LedgerStore, max_staleness: float = 30.0,
                 clock: Callable[[], float] = time.monotonic):
        self.store = store
        self.max_staleness = max_staleness
        self._clock = clock
        self._cached: Optional[AggregateStats] = None
        self._cached_at = 0.0
        self._lock = threading.Lock()

    def snapshot(self, refresh: bool = False) -> AggregateStats:
        with self._lock:
            now = self._clock()
            if not refresh and self._cached is not None and now - self._cached_at < self.max_staleness:
                return self._cached
            self._cached = self._scan()
            self._cached_at = now
            return self._cached

    def _scan(self) -> AggregateStats:
        accounts = self.store.list_accounts()
        transactions = self.store.list_transactions()
        pending = defaultdict(int)
        for t in transactions:
            if t.status == TransactionStatus.PENDING:
                pending[t.kind] += 1
        return AggregateStats(
            total_accounts=len(accounts),
            total_transactions=len(transactions),
            total_balance=sum((a.balance for a in accounts), ZERO),
            pending_withdrawals=pending[TransactionKind.WITHDRAWAL],
            pending_deposits=pending[TransactionKind.DEPOSIT],
            generated_at=utcnow(),
        )

    def audit(self, tolerance: Decimal = Decimal("0.00")) -> ReconciliationReport:
        """Compare every stored balance with the sum of the rows that moved it.

        Anomalies are reported and logged, never corrected.
        """
        computed: dict[UUID, Decimal] = defaultdict(lambda: ZERO)
        for t in self.store.list_transactions():
            if t.affects_balance:
                computed[t.account_id] += t.signed_amount

        anomalies = []
        accounts = self.store.list_accounts()
        for account in accounts:
            issues = []
            expected = computed[account.id]
            if abs(expected - account.balance) > tolerance:
                issues.append("ledger_mismatch")
            if account.balance < 0:
                issues.append("negative_balance")
            if account.total_earned < 0:
                issues.append("negative_total_earned")
            if issues:
                anomalies.append(AccountDiscrepancy(
                    account_id=account.id,
                    stored_balance=account.balance,
                    computed_balance=expected,
                    issues=issues,
                ))
                logger.warning("Ledger anomaly on account %s: %s (stored %s, computed %s)",
                               account.id, ",".join(issues), account.balance, expected)

        return ReconciliationReport(checked=len(accounts), anomalies=anomalies, generated_at=utcnow())
