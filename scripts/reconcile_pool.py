"""
Reconcile one pool (or all pools) against the operations journal.

Dry run unless --apply is given:

    python -m scripts.reconcile_pool --pool TraderCall
    python -m scripts.reconcile_pool --pool TraderCall --apply --live-ref OP_1 --live-ref OP_2
    python -m scripts.reconcile_pool --check
"""
import argparse
import json
from liquidity_engine.core.errors import OrphanDetected
from liquidity_engine.core.pool_registry import get_pool_registry
from liquidity_engine.execution.transaction_ledger import SqlAlchemyTransactionLedger
from liquidity_engine.models.base import SessionLocal
from liquidity_engine.utils.hashing import decimal_default

def main():
    parser = argparse.ArgumentParser(description="Reconcile liquidity pools")
    parser.add_argument("--pool", action="append", help="Pool id (repeatable, default: all)")
    parser.add_argument("--apply", action="store_true", help="Apply repairs instead of a dry run")
    parser.add_argument("--check", action="store_true",
                        help="Only scan; exit non-zero when orphaned or untracked positions exist")
    parser.add_argument("--live-ref", action="append", dest="live_refs",
                        help="Position ref whose trading idea is still open; enables orphan purge")
    args = parser.parse_args()

    registry = get_pool_registry()
    ledger = SqlAlchemyTransactionLedger(SessionLocal)
    pool_ids = args.pool or registry.pool_ids()

    unknown = [pool_id for pool_id in pool_ids if not registry.has_pool(pool_id)]
    if unknown:
        raise SystemExit(f"Unknown pool(s): {', '.join(unknown)}")

    failed = []
    for pool_id in pool_ids:
        service = registry.reconciliation(pool_id)
        if args.check:
            try:
                findings = service.scan_for_orphans(ledger, strict=True)
            except OrphanDetected as e:
                failed.append(pool_id)
                findings = e.findings
            print(json.dumps([f.to_dict() for f in findings], indent=2, default=decimal_default))
            continue
        report = service.reconcile(ledger, live_refs=args.live_refs, dry_run=not args.apply)
        print(json.dumps(report.to_dict(), indent=2, default=decimal_default))

    if failed:
        raise SystemExit(f"Orphaned or untracked positions in: {', '.join(failed)}")
    if registry.audit.entries and not registry.audit.verify():
        raise SystemExit("Audit chain verification failed")

if __name__ == "__main__":
    main()
