# rewards/audit.py
import logging
from decimal import Decimal
from typing import Dict, Any, List

from models import User, WalletTransaction, TransactionStatus
from utils import CENT

logger = logging.getLogger(__name__)


class LedgerAuditor:
    """Replays stored ledger rows and reports where they disagree with the user rows."""

    @staticmethod
    def audit_user(user: User) -> Dict[str, Any]:
        balance = Decimal("0.00")
        earnings = Decimal("0.00")
        problems: List[str] = []

        rows = (
            WalletTransaction.query.filter_by(user_id=user.id, status=TransactionStatus.COMPLETED)
            .order_by(WalletTransaction.id.asc())
            .all()
        )
        for tx in rows:
            amount = Decimal(str(tx.amount))
            if amount <= 0:
                problems.append(f"tx {tx.id}: non-positive amount {amount}")
            balance = (balance + tx.signed_amount).quantize(CENT)
            if not tx.type.is_debit:
                earnings += amount
            if balance < 0:
                problems.append(f"tx {tx.id}: balance went negative ({balance})")
            if Decimal(str(tx.balance_after)).quantize(CENT) != balance:
                problems.append(f"tx {tx.id}: balance_after {tx.balance_after} != replayed {balance}")

        wallet = Decimal(str(user.wallet_balance or 0)).quantize(CENT)
        total = Decimal(str(user.total_earnings or 0)).quantize(CENT)
        if wallet != balance:
            problems.append(f"wallet_balance {wallet} != replayed {balance}")
        if total != earnings.quantize(CENT):
            problems.append(f"total_earnings {total} != sum of credits {earnings}")

        return {
            "userId": user.id,
            "transactions": len(rows),
            "replayedBalance": float(balance),
            "walletBalance": float(wallet),
            "ok": not problems,
            "problems": problems,
        }

    @staticmethod
    def audit_all() -> Dict[str, Any]:
        reports = [LedgerAuditor.audit_user(user) for user in User.query.order_by(User.id).all()]
        failed = [r for r in reports if not r["ok"]]
        for report in failed:
            logger.error(f"Ledger mismatch for user {report['userId']}: {'; '.join(report['problems'])}")
        return {
            "usersChecked": len(reports),
            "usersFailed": len(failed),
            "failures": failed,
            "referralCycles": LedgerAuditor.detect_referral_cycles(),
        }

    @staticmethod
    def detect_referral_cycles() -> List[List[int]]:
        """Return every referred_by chain that loops back on itself."""
        parents = dict(User.query.with_entities(User.id, User.referred_by).all())
        cycles = []
        seen_in_cycle = set()
        for start in parents:
            path = []
            on_path = set()
            current = start
            while current is not None and current not in on_path:
                if current in seen_in_cycle:
                    break
                on_path.add(current)
                path.append(current)
                current = parents.get(current)
            if current is not None and current in on_path:
                cycle = path[path.index(current):]
                if not seen_in_cycle.intersection(cycle):
                    cycles.append(cycle)
                    seen_in_cycle.update(cycle)
        return cycles
