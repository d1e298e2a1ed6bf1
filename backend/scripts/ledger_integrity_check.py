#!/usr/bin/env python3
"""
Shipment Ledger Integrity Checker

Read-only audit of the two ledger invariants:
- Stock conservation on every shipment item
- Supplier balance chain continuity across settled shipments

Usage:
  cd backend
  python scripts/ledger_integrity_check.py [--supplier-id N] [--json]

Exits 1 when any finding is reported, 0 otherwise.
"""
import argparse
import json
import os
import sys
from contextlib import closing

# Add project root to path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from shipment_ledger.logging_config import get_logger, setup_logging
from shipment_ledger.services.invariants import find_balance_chain_breaks, find_stock_inconsistencies

logger = get_logger(__name__)


class LedgerIntegrityChecker:
    """Runs the ledger audits against one session and reports what it finds"""

    def __init__(self, db, supplier_id=None, quiet=False):
        self.db = db
        self.supplier_id = supplier_id
        self.quiet = quiet
        self.stock_issues = []
        self.chain_breaks = []

    def _print(self, message):
        if not self.quiet:
            print(message)

    def run_full_check(self):
        self._print("🔍 Shipment Ledger Integrity Check")
        self._print("=" * 50)
        self.check_stock_conservation()
        self.check_balance_chain()
        self.print_summary()
        return self.findings

    def check_stock_conservation(self):
        self._print("\n📦 Checking stock conservation...")
        self.stock_issues = find_stock_inconsistencies(self.db)
        if self.stock_issues:
            self._print(f"   ⚠️  {len(self.stock_issues)} shipment items break conservation")
            for issue in self.stock_issues:
                self._print(f"      item {issue['shipment_item_id']}: {'; '.join(issue['violations'])}")
        else:
            self._print("   ✅ All shipment items conserve stock")

    def check_balance_chain(self):
        self._print("\n🔗 Checking supplier balance chains...")
        self.chain_breaks = find_balance_chain_breaks(self.db, supplier_id=self.supplier_id)
        if self.chain_breaks:
            self._print(f"   ⚠️  {len(self.chain_breaks)} balance chain breaks")
            for brk in self.chain_breaks:
                self._print(
                    f"      shipment {brk['shipment_id']}: {brk['issue']} "
                    f"(expected {brk['expected']}, found {brk['actual']})"
                )
        else:
            self._print("   ✅ Balance chains are continuous")

    @property
    def findings(self):
        return {"stock": self.stock_issues, "balance_chain": self.chain_breaks}

    def print_summary(self):
        total = len(self.stock_issues) + len(self.chain_breaks)
        self._print("\n" + "=" * 50)
        if total:
            self._print(f"❌ {total} finding(s)")
            logger.warning(
                f"Ledger integrity check found {total} issue(s)",
                extra={"stock_issues": len(self.stock_issues), "chain_breaks": len(self.chain_breaks)},
            )
        else:
            self._print("✅ Ledger is consistent")


def build_parser():
    parser = argparse.ArgumentParser(description="Audit shipment ledger invariants")
    parser.add_argument("--supplier-id", type=int, default=None, help="Only check this supplier's balance chain")
    parser.add_argument("--json", action="store_true", help="Print findings as JSON")
    return parser


def main(argv=None, session_factory=None):
    args = build_parser().parse_args(argv)
    if not args.json:
        setup_logging()

    if session_factory is None:
        from shipment_ledger.db.session import session_scope
        scope = session_scope()
    else:
        scope = closing(session_factory())

    with scope as db:
        checker = LedgerIntegrityChecker(db, supplier_id=args.supplier_id, quiet=args.json)
        findings = checker.run_full_check()

    if args.json:
        print(json.dumps(findings, default=str, indent=2))
    return 1 if findings["stock"] or findings["balance_chain"] else 0


if __name__ == "__main__":
    sys.exit(main())
