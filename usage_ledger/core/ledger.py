"""
Quota and bonus ledger.

Admin actions on a user's monthly cost quota, plus period rollover for
users whose stored period has ended.
"""

from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional

from usage_ledger.core.logging import get_logger
from usage_ledger.core.periods import format_period, period_of, utc_now
from usage_ledger.storage import quotas
from usage_ledger.storage.db import DEFAULT_DB_PATH, get_connection, write_transaction
from usage_ledger.storage.models import BonusRecord, QuotaHistory, UserQuota
from usage_ledger.storage.quotas import QuotaRepository

logger = get_logger(__name__)


class UserNotFoundError(LookupError):
    """Raised when an admin action targets a user with no quota row."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}")


class QuotaLedger:
    """Quota configuration, bonus grants and period rollover."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH,
                 clock: Callable[[], datetime] = utc_now):
        self.db_path = db_path
        self.clock = clock
        self.repository = QuotaRepository(db_path)

    def get_quota(self, user_id: str) -> Optional[UserQuota]:
        return self.repository.get(user_id)

    def list_history(self, user_id: str) -> List[QuotaHistory]:
        return self.repository.list_history(user_id)

    def list_bonus_records(self, user_id: str, year: Optional[int] = None,
                           month: Optional[int] = None) -> List[BonusRecord]:
        return self.repository.list_bonus_records(user_id, year, month)

    def list_top_users(self, limit: int = 10) -> List[UserQuota]:
        return self.repository.list_top_users(limit)

    def list_exceeded(self) -> List[UserQuota]:
        return self.repository.list_exceeded()

    def list_recent_active(self, limit: int = 10) -> List[UserQuota]:
        return self.repository.list_recent_active(limit)

    def grant_bonus(self, user_id: str, amount: Decimal, reason: Optional[str],
                    granted_by: str) -> UserQuota:
        """Grant extra allowance on top of the user's cost limit.

        The grant applies to the current period: an expired period is rolled
        over first. The audit record, the balance increment and the status
        recompute commit together.

        Args:
            user_id: User receiving the bonus
            amount: Bonus in USD, must be > 0
            reason: Free-text justification kept on the audit record
            granted_by: Admin identity

        Returns:
            The updated quota

        Raises:
            ValueError: If amount is not positive or granted_by is empty
            UserNotFoundError: If the user has no quota row
        """
        amount = Decimal(str(amount))
        if amount <= 0:
            raise ValueError("bonus amount must be > 0")
        if not granted_by:
            raise ValueError("granted_by cannot be empty")

        now = self.clock()
        year, month = period_of(now)
        record = BonusRecord.create(user_id, year, month, amount, reason, granted_by, now=now)
        with write_transaction(self.db_path) as conn:
            self._log_rollover(quotas.roll_over(conn, user_id, now))
            if not quotas.add_bonus(conn, record):
                raise UserNotFoundError(user_id)

        quota = self.repository.get(user_id)
        logger.info(
            "Granted ${} bonus to {} by {} ({}); usage now {:.2f}%",
            amount, user_id, granted_by, reason or "no reason", quota.cost_usage_percent,
        )
        return quota

    def update_quota_config(self, user_id: str, enabled: bool, cost_limit: Decimal) -> UserQuota:
        """Set the quota flag and monthly cost limit.

        Raises:
            ValueError: If cost_limit is negative
            UserNotFoundError: If the user has no quota row
        """
        cost_limit = Decimal(str(cost_limit))
        if cost_limit < 0:
            raise ValueError("cost limit cannot be negative")

        with write_transaction(self.db_path) as conn:
            if not quotas.set_quota_config(conn, user_id, enabled, cost_limit, self.clock()):
                raise UserNotFoundError(user_id)

        logger.info("Quota config for {}: enabled={} limit=${}", user_id, enabled, cost_limit)
        return self.repository.get(user_id)

    def rollover_if_expired(self, user_id: str) -> Optional[QuotaHistory]:
        """Archive and reset the user's period if the month has turned."""
        with write_transaction(self.db_path) as conn:
            history = quotas.roll_over(conn, user_id, self.clock())
        self._log_rollover(history)
        return history

    def roll_over_expired(self) -> int:
        """Roll over every user whose period ended, one transaction each.

        Returns:
            Number of periods archived
        """
        conn = get_connection(self.db_path)
        try:
            expired = quotas.find_expired_users(conn, self.clock())
        finally:
            conn.close()

        archived = 0
        for user_id in expired:
            if self.rollover_if_expired(user_id) is not None:
                archived += 1
        return archived

    @staticmethod
    def _log_rollover(history: Optional[QuotaHistory]) -> None:
        if history is None:
            return
        logger.info(
            "Rolled over {} period {}: ${} spent, {:.2f}% of limit{}",
            history.user_id,
            format_period(history.period_year, history.period_month),
            history.total_cost_usd,
            history.final_usage_percent,
            " (exceeded)" if history.was_exceeded else "",
        )
