"""
Reconciliation Service

Brings a pool back in line with the transaction journal and with its own
invariants. Runs under the pool lock and walks

    consistent -> scanning -> repairing -> consistent

Every corrective mutation becomes a hash-chained audit entry. With
``dry_run`` the same repairs are computed on a working copy, reported as
``would_*`` actions and thrown away.
"""
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional
import time

from liquidity_engine.core import position_ledger as ledger
from liquidity_engine.core.audit import AuditTrail
from liquidity_engine.core.domain import (
    BackfilledEntry, Pool, PositionStatus, ReconciliationState, utcnow,
)
from liquidity_engine.core.errors import OrphanDetected
from liquidity_engine.core.events import EventType
from liquidity_engine.core.pool_engine import (
    PoolEngine, rebuild_liquidity, refresh_totals, release_on_discard, release_on_sale,
)
from liquidity_engine.execution.transaction_ledger import (
    Transaction, TransactionLedger, TransactionSummary, summarize,
)
from liquidity_engine.utils import metrics
from liquidity_engine.utils.constants import (
    MAX_PARTICIPATION_PCT, MONEY_TOLERANCE, ONE_HUNDRED, SHARES_TOLERANCE, ZERO,
)
from liquidity_engine.utils.money import (
    money_close, safe_divide, shares_close, to_decimal,
)
from liquidity_engine.utils.logging import get_logger
from config.settings import get_reconciliation_config

logger = get_logger(__name__)

ORPHAN = "orphan"
UNTRACKED = "untracked"
SHARE_MISMATCH = "share_mismatch"
ENTRY_MISMATCH = "entry_mismatch"


@dataclass
class Finding:
    """A disagreement between the pool and the transaction journal."""
    kind: str
    pool_id: str
    position_ref: str
    symbol: str
    detail: str
    journal_shares: Decimal = ZERO
    pool_shares: Decimal = ZERO

    def to_dict(self) -> dict:
        return {
            'kind': self.kind,
            'pool_id': self.pool_id,
            'position_ref': self.position_ref,
            'symbol': self.symbol,
            'detail': self.detail,
            'journal_shares': self.journal_shares,
            'pool_shares': self.pool_shares,
        }


@dataclass
class RepairAction:
    """One corrective mutation, applied or (dry run) only proposed."""
    action: str
    entity_type: str
    entity_id: str
    reason: str
    amount: Optional[Decimal] = None
    applied: bool = True
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None

    @property
    def name(self) -> str:
        return self.action if self.applied else f"would_{self.action}"

    def to_dict(self) -> dict:
        return {
            'action': self.name,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'reason': self.reason,
            'amount': self.amount,
        }


@dataclass
class ReconciliationReport:
    pool_id: str
    dry_run: bool
    findings: List[Finding] = field(default_factory=list)
    actions: List[RepairAction] = field(default_factory=list)
    states: List[str] = field(default_factory=list)
    totals_before: Dict[str, Any] = field(default_factory=dict)
    totals_after: Dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def is_consistent(self) -> bool:
        """True when the run found nothing to repair."""
        return not self.actions

    def findings_of(self, kind: str) -> List[Finding]:
        return [f for f in self.findings if f.kind == kind]

    def actions_of(self, action: str) -> List[RepairAction]:
        return [a for a in self.actions if a.action == action]

    def to_dict(self) -> dict:
        return {
            'pool_id': self.pool_id,
            'dry_run': self.dry_run,
            'is_consistent': self.is_consistent,
            'states': self.states,
            'findings': [f.to_dict() for f in self.findings],
            'actions': [a.to_dict() for a in self.actions],
            'totals_before': self.totals_before,
            'totals_after': self.totals_after,
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
        }


class ReconciliationService:
    """
    Detects and repairs drift between a pool and the operations journal.

    Each repair is available on its own (``backfill_from_ledger``,
    ``purge_orphans``...) and all of them run in order through
    ``reconcile``. Running ``reconcile`` twice leaves the second run with
    nothing to do.
    """

    def __init__(
        self,
        engine: PoolEngine,
        audit: Optional[AuditTrail] = None,
        config: Optional[dict] = None,
    ):
        self.engine = engine
        self.pool_id = engine.pool_id
        self.audit = audit if audit is not None else AuditTrail()
        self.config = config if config is not None else get_reconciliation_config()

        duplicates = self.config.get('duplicate_sales', {})
        self.duplicate_pct_tolerance = to_decimal(str(duplicates.get('percentage', '0.01')))
        self.duplicate_price_tolerance = to_decimal(str(duplicates.get('price', '0.01')))
        self.duplicate_window_seconds = float(duplicates.get('window_seconds', 300))
        self.repairs = self.config.get('repairs', {})

        tolerances = self.config.get('tolerances', {})
        self.money_tolerance = to_decimal(str(tolerances.get('money', MONEY_TOLERANCE)))
        self.shares_tolerance = to_decimal(str(tolerances.get('shares', SHARES_TOLERANCE)))

    # ========== PLUMBING ==========

    @contextmanager
    def _repairing(self, operation: str, dry_run: bool):
        """
        Run repairs on a working copy under the pool lock.

        Yields ``(pool, actions)``; audit entries are written only once the
        transaction has gone through.
        """
        actions: List[RepairAction] = []
        with self.engine.transaction(operation, commit=not dry_run) as (pool, events):
            yield pool, actions
        self._audit(actions, dry_run)

    def _audit(self, actions: List[RepairAction], dry_run: bool):
        for action in actions:
            self.audit.record(
                pool_id=self.pool_id,
                event_type=action.name,
                entity_type=action.entity_type,
                entity_id=action.entity_id,
                action=action.action,
                reason=action.reason,
                amount=action.amount,
                before_state=action.before_state,
                after_state=action.after_state,
                dry_run=dry_run,
            )
            if not dry_run:
                metrics.record_reconciliation_repair(self.pool_id, action.action)

    def _act(
        self,
        actions: List[RepairAction],
        action: str,
        entity_type: str,
        entity_id: str,
        reason: str,
        dry_run: bool,
        mutate: Callable[[], Optional[Decimal]],
        state: Callable[[], Optional[dict]],
    ) -> RepairAction:
        before = state()
        amount = mutate()
        repair = RepairAction(
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            reason=reason,
            amount=amount,
            applied=not dry_run,
            before_state=before,
            after_state=state(),
        )
        actions.append(repair)
        return repair

    def _transactions(self, source) -> List[Transaction]:
        if isinstance(source, TransactionLedger):
            return source.transactions_for_pool(self.pool_id)
        return list(source)

    # ========== SCAN ==========

    def _scan(self, pool: Pool, summaries: Dict[str, TransactionSummary]) -> List[Finding]:
        findings = []
        for position in pool.active_positions():
            summary = summaries.get(position.position_id)
            held = position.shares + position.reserved_shares
            if summary is None or not summary.buys:
                findings.append(Finding(
                    ORPHAN, pool.pool_id, position.position_id, position.symbol,
                    "active position with no journaled buy", ZERO, held,
                ))
                continue
            if not shares_close(summary.net_shares, held, self.shares_tolerance):
                findings.append(Finding(
                    SHARE_MISMATCH, pool.pool_id, position.position_id, position.symbol,
                    f"journal holds {summary.net_shares} shares, pool holds {held}",
                    summary.net_shares, held,
                ))
            if not money_close(summary.entry_price, position.entry_price, self.money_tolerance):
                findings.append(Finding(
                    ENTRY_MISMATCH, pool.pool_id, position.position_id, position.symbol,
                    f"journal entry {summary.entry_price}, pool entry {position.entry_price}",
                    summary.net_shares, held,
                ))

        for ref, summary in summaries.items():
            if ref in pool.positions or not summary.buys:
                continue
            if summary.net_shares <= self.shares_tolerance:
                continue
            findings.append(Finding(
                UNTRACKED, pool.pool_id, ref, summary.symbol,
                f"{summary.net_shares} journaled shares with no pool position",
                summary.net_shares, ZERO,
            ))
        return findings

    def _publish_findings(self, findings: List[Finding]):
        for finding in findings:
            if finding.kind not in (ORPHAN, UNTRACKED):
                continue
            self.engine.publish(self.engine.make_event(EventType.ORPHAN_DETECTED, **finding.to_dict()))

    def scan_for_orphans(self, transactions, strict: bool = False) -> List[Finding]:
        """
        Compare the last committed pool with the journal.

        ``transactions`` is a TransactionLedger or an iterable of
        Transaction. Read-only; orphans and untracked positions are
        published and queued for the operator. With ``strict`` the scan
        raises OrphanDetected when it finds any.
        """
        summaries = summarize(self._transactions(transactions))
        findings = self._scan(self.engine.snapshot(), summaries)
        self._publish_findings(findings)
        logger.info(
            "Orphan scan finished",
            pool_id=self.pool_id,
            findings=len(findings),
            orphans=sum(1 for f in findings if f.kind == ORPHAN),
            untracked=sum(1 for f in findings if f.kind == UNTRACKED),
        )
        orphaned = [f for f in findings if f.kind in (ORPHAN, UNTRACKED)]
        if strict and orphaned:
            raise OrphanDetected(self.pool_id, orphaned)
        return findings

    # ========== REPAIRS ==========

    def _backfill(self, pool: Pool, summaries: Dict[str, TransactionSummary],
                  actions: List[RepairAction], dry_run: bool):
        if pool.initial_liquidity <= ZERO:
            logger.warning(
                "Skipping backfill, pool has no initial liquidity",
                pool_id=pool.pool_id,
            )
            return

        for finding in self._scan(pool, summaries):
            if finding.kind != UNTRACKED:
                continue
            summary = summaries[finding.position_ref]
            amount = summary.bought_amount
            if amount <= ZERO:
                logger.warning("Skipping backfill, no bought amount", ref=finding.position_ref)
                continue
            existing = pool.active_position_for_symbol(summary.symbol)
            if existing is not None:
                logger.warning(
                    "Skipping backfill, symbol already held",
                    pool_id=pool.pool_id,
                    ref=finding.position_ref,
                    symbol=summary.symbol,
                    existing=existing.position_id,
                )
                continue

            weight = amount / pool.initial_liquidity * ONE_HUNDRED
            if weight > MAX_PARTICIPATION_PCT:
                logger.warning(
                    "Backfilled weight capped",
                    ref=finding.position_ref,
                    weight=str(weight),
                )
                weight = MAX_PARTICIPATION_PCT

            def mutate(summary=summary, amount=amount, weight=weight):
                position = ledger.open_position(
                    pool, summary.position_ref, summary.symbol, amount, summary.entry_price,
                    weight, metadata=BackfilledEntry(transaction_count=summary.transaction_count),
                    enforce_liquidity=False,
                )
                position.opened_at = summary.buys[0].timestamp
                pool.positions[position.position_id] = position
                pool.distributed_liquidity += position.allocated_amount
                pool.available_liquidity -= position.allocated_amount

                for sell in summary.sells:
                    if position.has_no_shares():
                        break
                    percentage = safe_divide(sell.quantity * ONE_HUNDRED, position.original_shares)
                    _, sale = ledger.execute_partial_sale(position, min(percentage, ONE_HUNDRED), sell.price)
                    sale.executed_at = sell.timestamp
                    release_on_sale(pool, sale)
                return position.original_allocated_amount

            self._act(
                actions, "backfill_position", "position", summary.position_ref,
                f"rebuilt from {summary.transaction_count} journaled transactions",
                dry_run, mutate,
                lambda ref=summary.position_ref: (
                    pool.positions[ref].to_dict() if ref in pool.positions else None
                ),
            )

    def _discard_at_cost(self, pool: Pool, position_id: str, reason: str) -> Decimal:
        position = pool.positions[position_id]
        _, released = ledger.discard_position(position, reason)
        pool.distributed_liquidity -= released
        pool.available_liquidity += released
        return released

    def _purge(self, pool: Pool, live_refs: Iterable[str], actions: List[RepairAction], dry_run: bool):
        live = set(live_refs)
        for position in pool.active_positions():
            if position.position_id in live:
                continue
            reason = "orphan: trading idea closed or missing"
            self._act(
                actions, "purge_orphan", "position", position.position_id, reason, dry_run,
                lambda pid=position.position_id: self._discard_at_cost(pool, pid, reason),
                lambda p=position: p.to_dict(),
            )

    def _collapse_positions(self, pool: Pool, actions: List[RepairAction], dry_run: bool):
        by_symbol: Dict[str, list] = {}
        for position in pool.active_positions():
            by_symbol.setdefault(position.symbol, []).append(position)

        for symbol, positions in sorted(by_symbol.items()):
            if len(positions) < 2:
                continue
            positions.sort(key=lambda p: (p.opened_at, p.position_id))
            keeper = positions[0]
            for duplicate in positions[1:]:
                reason = f"duplicate of {keeper.position_id} for {symbol}"
                self._act(
                    actions, "discard_duplicate_position", "position", duplicate.position_id,
                    reason, dry_run,
                    lambda pid=duplicate.position_id, r=reason: self._discard_at_cost(pool, pid, r),
                    lambda p=duplicate: p.to_dict(),
                )

    def _is_duplicate_sale(self, sale, kept) -> bool:
        if abs(sale.percentage_of_original - kept.percentage_of_original) > self.duplicate_pct_tolerance:
            return False
        if abs(sale.sell_price - kept.sell_price) > self.duplicate_price_tolerance:
            return False
        if sale.executed_at is None or kept.executed_at is None:
            return True
        return abs((sale.executed_at - kept.executed_at).total_seconds()) <= self.duplicate_window_seconds

    def _collapse_sales(self, pool: Pool, actions: List[RepairAction], dry_run: bool):
        for position in list(pool.positions.values()):
            if position.status == PositionStatus.DISCARDED:
                continue
            kept = []
            for sale in sorted(position.executed_sales(), key=lambda s: (s.executed_at or s.created_at)):
                original = next((k for k in kept if self._is_duplicate_sale(sale, k)), None)
                if original is None:
                    kept.append(sale)
                    continue

                reason = f"duplicate of sale {original.sale_id}"

                def mutate(position=position, sale_id=sale.sale_id, reason=reason):
                    cancelled = ledger.rollback_executed_sale(position, sale_id, reason)
                    release_on_discard(pool, cancelled)
                    return cancelled.liquidity_released

                self._act(
                    actions, "cancel_duplicate_sale", "partial_sale", sale.sale_id, reason,
                    dry_run, mutate, lambda s=sale: s.to_dict(),
                )

    def _recalculate_realized(self, pool: Pool, actions: List[RepairAction], dry_run: bool):
        for position in pool.positions.values():
            expected = sum((s.realized_profit for s in position.executed_sales()), ZERO)
            if money_close(expected, position.realized_pl, self.money_tolerance):
                continue

            def mutate(position=position, expected=expected):
                delta = expected - position.realized_pl
                position.realized_pl = expected
                pool.available_liquidity += delta
                if position.status == PositionStatus.CLOSED:
                    position.final_return_percentage = ledger.realized_return_percentage(position)
                return delta

            self._act(
                actions, "recalculate_realized_pl", "position", position.position_id,
                f"realized P&L rebuilt from executed sales ({expected})", dry_run,
                mutate, lambda p=position: {'realized_pl': p.realized_pl},
            )

    def _enforce_policy(self, pool: Pool, actions: List[RepairAction], dry_run: bool):
        policy = self.engine.policy
        for position in pool.active_positions():
            violation = policy.evaluate(position)
            if violation is None:
                continue
            self._act(
                actions, "correct_policy_violation", "position", position.position_id,
                f"{violation.rule}: weight {violation.participation_percentage}% while losing",
                dry_run,
                lambda p=position, v=violation: policy.correct(p, v).corrected_to,
                lambda p=position: {'participation_percentage': p.participation_percentage},
            )

    def _rebuild_totals(self, pool: Pool, actions: List[RepairAction], dry_run: bool):
        expected_distributed = pool.held_cost_basis
        expected_available = (
            pool.initial_liquidity + pool.cumulative_realized_pl - expected_distributed
        )
        if (money_close(expected_distributed, pool.distributed_liquidity, self.money_tolerance)
                and money_close(expected_available, pool.available_liquidity, self.money_tolerance)):
            return

        def mutate():
            drift = (pool.available_liquidity + pool.distributed_liquidity) - (
                expected_available + expected_distributed
            )
            rebuild_liquidity(pool)
            return drift

        self._act(
            actions, "rebuild_totals", "pool", pool.pool_id,
            "liquidity totals rebuilt from positions", dry_run, mutate,
            lambda: {
                'available_liquidity': pool.available_liquidity,
                'distributed_liquidity': pool.distributed_liquidity,
            },
        )

    # ========== PUBLIC REPAIRS ==========

    def backfill_from_ledger(self, transactions, dry_run: bool = False) -> List[RepairAction]:
        """Create positions for journaled buys the pool does not track."""
        summaries = summarize(self._transactions(transactions))
        with self._repairing("backfill_from_ledger", dry_run) as (pool, actions):
            self._backfill(pool, summaries, actions, dry_run)
        return actions

    def purge_orphans(self, live_refs: Iterable[str], dry_run: bool = False) -> List[RepairAction]:
        """Discard active positions whose trading idea is no longer live."""
        with self._repairing("purge_orphans", dry_run) as (pool, actions):
            self._purge(pool, live_refs, actions, dry_run)
        return actions

    def collapse_duplicate_positions(self, dry_run: bool = False) -> List[RepairAction]:
        """Keep the oldest active position per symbol, discard the rest at cost."""
        with self._repairing("collapse_duplicate_positions", dry_run) as (pool, actions):
            self._collapse_positions(pool, actions, dry_run)
        return actions

    def collapse_duplicate_sales(self, dry_run: bool = False) -> List[RepairAction]:
        with self._repairing("collapse_duplicate_sales", dry_run) as (pool, actions):
            self._collapse_sales(pool, actions, dry_run)
        return actions

    def recalculate_realized_pl(self, dry_run: bool = False) -> List[RepairAction]:
        with self._repairing("recalculate_realized_pl", dry_run) as (pool, actions):
            self._recalculate_realized(pool, actions, dry_run)
        return actions

    def enforce_policy(self, dry_run: bool = False) -> List[RepairAction]:
        with self._repairing("enforce_policy", dry_run) as (pool, actions):
            self._enforce_policy(pool, actions, dry_run)
        return actions

    # ========== FULL RUN ==========

    def _transition(self, pool: Pool, state: ReconciliationState, report: ReconciliationReport):
        pool.state = state
        report.states.append(state.value)
        logger.info("Reconciliation state", pool_id=pool.pool_id, state=state.value)

    def reconcile(
        self,
        transactions,
        live_refs: Optional[Iterable[str]] = None,
        dry_run: bool = False,
    ) -> ReconciliationReport:
        """
        Scan, repair and verify the pool in one locked run.

        ``live_refs`` lists the position refs whose trading idea is still
        open; orphans are only purged when it is given.
        """
        started = time.monotonic()
        summaries = summarize(self._transactions(transactions))
        report = ReconciliationReport(pool_id=self.pool_id, dry_run=dry_run)

        with self._repairing("reconcile", dry_run) as (pool, actions):
            report.totals_before = refresh_totals(pool).totals()
            self._transition(pool, ReconciliationState.SCANNING, report)
            report.findings = self._scan(pool, summaries)

            self._transition(pool, ReconciliationState.REPAIRING, report)
            if self.repairs.get('backfill_untracked', True):
                self._backfill(pool, summaries, actions, dry_run)
            if live_refs is not None and self.repairs.get('purge_orphans', True):
                self._purge(pool, live_refs, actions, dry_run)
            if self.repairs.get('collapse_duplicate_positions', True):
                self._collapse_positions(pool, actions, dry_run)
            if self.repairs.get('collapse_duplicate_sales', True):
                self._collapse_sales(pool, actions, dry_run)
            if self.repairs.get('recalculate_realized_pl', True):
                self._recalculate_realized(pool, actions, dry_run)
            if self.repairs.get('enforce_policy', True):
                self._enforce_policy(pool, actions, dry_run)
            self._rebuild_totals(pool, actions, dry_run)

            self._transition(pool, ReconciliationState.CONSISTENT, report)
            report.totals_after = refresh_totals(pool).totals()

        report.actions = actions
        report.finished_at = utcnow()
        self._publish_findings(report.findings)
        metrics.reconciliation_duration.observe(time.monotonic() - started)

        logger.info(
            "Reconciliation finished",
            pool_id=self.pool_id,
            dry_run=dry_run,
            findings=len(report.findings),
            actions=len(report.actions),
            consistent=report.is_consistent,
        )
        return report
