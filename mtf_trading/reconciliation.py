# mtf_trading/reconciliation.py
"""
Position Reconciliation

Keeps per-account user positions consistent with the algorithm positions
they follow. Detects:
- User positions not yet linked to their algorithm position
- User positions still ACTIVE after the algorithm position exited
- User trailing levels behind the algorithm's high-water mark

Reconciliation is idempotent: a second run over the same state finds
nothing left to fix.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from .models import AlgorithmPosition, OrderResult, UserPosition
from .utils import get_ist_now, log_audit_event

logger = logging.getLogger(__name__)


class PositionDiscrepancy:
    """A difference between a user position and its algorithm position."""

    UNLINKED = 'unlinked'                  # User position without algorithm_position_id
    ALGORITHM_EXITED = 'algorithm_exited'  # Algorithm exited, user position still ACTIVE
    TRAILING_BEHIND = 'trailing_behind'    # User trailing level below algorithm level

    def __init__(
        self,
        discrepancy_type: str,
        symbol: str,
        user_position_id: str,
        account_id: str,
        algorithm_position_id: Optional[str] = None,
        details: Optional[Dict] = None
    ):
        self.type = discrepancy_type
        self.symbol = symbol
        self.user_position_id = user_position_id
        self.account_id = account_id
        self.algorithm_position_id = algorithm_position_id
        self.details = details or {}
        self.detected_at = get_ist_now()
        self.resolved = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type,
            'symbol': self.symbol,
            'user_position_id': self.user_position_id,
            'account_id': self.account_id,
            'algorithm_position_id': self.algorithm_position_id,
            'details': self.details,
            'resolved': self.resolved,
            'detected_at': self.detected_at.isoformat()
        }

    def __str__(self) -> str:
        if self.type == self.UNLINKED:
            return f"{self.symbol}: user position {self.user_position_id} not linked to algorithm position"
        elif self.type == self.ALGORITHM_EXITED:
            return f"{self.symbol}: algorithm position exited but account {self.account_id} still ACTIVE"
        elif self.type == self.TRAILING_BEHIND:
            return (
                f"{self.symbol}: trailing level behind - "
                f"user {self.details.get('user_level')}, algorithm {self.details.get('algorithm_level')}"
            )
        else:
            return f"{self.symbol}: {self.type}"


class PositionReconciler:
    """
    Reconciles user positions against algorithm positions.

    Should be run:
    - After each monitoring pass
    - After real-account entries
    - At startup
    """

    def __init__(self, repository):
        self.repository = repository
        self.last_reconciliation = None
        self.discrepancies: List[PositionDiscrepancy] = []

    def _algorithm_positions(self) -> Tuple[Dict[str, AlgorithmPosition], Dict[str, AlgorithmPosition]]:
        """Algorithm positions by id (all) and by symbol (ACTIVE only)."""
        by_id: Dict[str, AlgorithmPosition] = {}
        active_by_symbol: Dict[str, AlgorithmPosition] = {}
        for position in self.repository.get_all_positions():
            by_id[position.id] = position
            if position.is_active:
                active_by_symbol[position.symbol] = position
        return by_id, active_by_symbol

    def find_discrepancies(self) -> List[PositionDiscrepancy]:
        """Compare every ACTIVE user position with its algorithm position."""
        by_id, active_by_symbol = self._algorithm_positions()
        found: List[PositionDiscrepancy] = []

        for user_pos in self.repository.get_active_user_positions():
            algo = by_id.get(user_pos.algorithm_position_id) if user_pos.algorithm_position_id else None

            if algo is None:
                candidate = active_by_symbol.get(user_pos.symbol)
                if candidate is not None:
                    found.append(PositionDiscrepancy(
                        PositionDiscrepancy.UNLINKED,
                        user_pos.symbol,
                        user_pos.id,
                        user_pos.account_id,
                        algorithm_position_id=candidate.id,
                        details={'suggested_action': 'LINK'}
                    ))
                    algo = candidate
                else:
                    continue

            if not algo.is_active:
                found.append(PositionDiscrepancy(
                    PositionDiscrepancy.ALGORITHM_EXITED,
                    user_pos.symbol,
                    user_pos.id,
                    user_pos.account_id,
                    algorithm_position_id=algo.id,
                    details={
                        'algorithm_exit_reason': algo.exit_reason,
                        'algorithm_exit_price': algo.exit_price,
                        'suggested_action': 'EXIT_USER_POSITION'
                    }
                ))
            elif (user_pos.trailing_level or 0) < (algo.trailing_level or 0):
                found.append(PositionDiscrepancy(
                    PositionDiscrepancy.TRAILING_BEHIND,
                    user_pos.symbol,
                    user_pos.id,
                    user_pos.account_id,
                    algorithm_position_id=algo.id,
                    details={
                        'user_level': user_pos.trailing_level,
                        'algorithm_level': algo.trailing_level,
                        'suggested_action': 'RAISE_TRAILING_LEVEL'
                    }
                ))

        return found

    def _resolve(
        self,
        discrepancy: PositionDiscrepancy,
        exit_handler: Optional[Callable[[UserPosition, str], OrderResult]]
    ) -> bool:
        user_pos = self.repository.get_user_position(discrepancy.user_position_id)
        if user_pos is None or not user_pos.is_active:
            return True

        if discrepancy.type == PositionDiscrepancy.UNLINKED:
            user_pos.algorithm_position_id = discrepancy.algorithm_position_id
            user_pos.updated_at = get_ist_now().isoformat()
            self.repository.upsert_user_position(user_pos)
            return True

        if discrepancy.type == PositionDiscrepancy.TRAILING_BEHIND:
            self.repository.update_user_trailing_level(user_pos.id, discrepancy.details['algorithm_level'])
            return True

        if discrepancy.type == PositionDiscrepancy.ALGORITHM_EXITED:
            if exit_handler is None:
                return False
            reason = discrepancy.details.get('algorithm_exit_reason') or 'ALGORITHM_EXIT'
            result = exit_handler(user_pos, reason)
            return bool(result.success)

        return False

    def reconcile(
        self,
        apply_fixes: bool = True,
        exit_handler: Optional[Callable[[UserPosition, str], OrderResult]] = None
    ) -> Tuple[bool, List[PositionDiscrepancy]]:
        """
        Find and optionally fix discrepancies.

        Args:
            apply_fixes: Link, raise trailing levels and (with exit_handler) exit
            exit_handler: Callable(user_position, reason) -> OrderResult used to
                sell positions whose algorithm position already exited

        Returns:
            Tuple of (is_synced, list_of_discrepancies)
        """
        logger.info("Starting position reconciliation...")
        self.discrepancies = self.find_discrepancies()
        self.last_reconciliation = get_ist_now()

        if not self.discrepancies:
            logger.info("✅ Reconciliation PASSED: user positions match algorithm positions")
            return True, []

        for d in self.discrepancies:
            logger.warning(f"⚠️ {d}")
            if not apply_fixes:
                continue
            try:
                d.resolved = self._resolve(d, exit_handler)
            except Exception as e:
                logger.error(f"❌ Could not resolve {d.type} for {d.symbol}: {e}")
                d.details['error'] = str(e)

        unresolved = [d for d in self.discrepancies if not d.resolved]
        outcome = 'SUCCESS' if not unresolved else 'FAILURE'
        log_audit_event('RECONCILIATION', {
            'discrepancy_count': len(self.discrepancies),
            'unresolved': len(unresolved),
            'discrepancies': [d.to_dict() for d in self.discrepancies]
        }, outcome=outcome)

        if unresolved:
            logger.critical(f"🚨 RECONCILIATION: {len(unresolved)} unresolved discrepancies")
            for d in unresolved:
                logger.critical(f"  - {d}")

        return not unresolved, self.discrepancies


def create_reconciler(repository) -> PositionReconciler:
    """Create and return a PositionReconciler instance."""
    return PositionReconciler(repository)
