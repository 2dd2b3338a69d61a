"""
Storage contract for the ledger.

Reads are point lookups. All writes go through ``commit``, which applies a
``WriteBatch`` all-or-nothing. Guarded entries carry the version or usage
count the caller read; a mismatch fails the whole batch with
``ConcurrencyConflict`` so the caller can re-read and try again.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from ..audit.events import AuditEvent
from ..domain.models import Account, AppSyncRecord, Coupon


@dataclass
class WriteBatch:
    """Changes committed together in one atomic step."""
    new_accounts: List[Account] = field(default_factory=list)
    account_updates: List[Account] = field(default_factory=list)
    account_deletes: List[Account] = field(default_factory=list)
    new_coupons: List[Coupon] = field(default_factory=list)
    coupon_claims: List[Tuple[str, int]] = field(default_factory=list)
    coupon_toggles: List[Tuple[str, bool]] = field(default_factory=list)
    sync_upserts: List[AppSyncRecord] = field(default_factory=list)
    events: List[AuditEvent] = field(default_factory=list)

    def insert_account(self, account: Account) -> "WriteBatch":
        """New row; fails with AlreadyExistsError on a taken email."""
        self.new_accounts.append(account)
        return self

    def update_account(self, account: Account) -> "WriteBatch":
        """Replace a row; ``account.version`` must be the version that was read."""
        self.account_updates.append(account)
        return self

    def delete_account(self, account: Account) -> "WriteBatch":
        """Remove a row and its sync records, guarded by ``account.version``."""
        self.account_deletes.append(account)
        return self

    def insert_coupon(self, coupon: Coupon) -> "WriteBatch":
        """New coupon; fails with AlreadyExistsError if the code is taken."""
        self.new_coupons.append(coupon)
        return self

    def claim_coupon(self, code: str, expected_usage_count: int) -> "WriteBatch":
        """Increment usage by one if nobody else did since it was read."""
        self.coupon_claims.append((code, expected_usage_count))
        return self

    def set_coupon_active(self, code: str, active: bool) -> "WriteBatch":
        self.coupon_toggles.append((code, active))
        return self

    def upsert_sync(self, record: AppSyncRecord) -> "WriteBatch":
        self.sync_upserts.append(record)
        return self

    def append_event(self, event: AuditEvent) -> "WriteBatch":
        """Audit entry; a repeated provider event id fails with DuplicateEventError."""
        self.events.append(event)
        return self


class LedgerStore(ABC):
    """Persistence backend for accounts, coupons, sync records and audit events."""

    async def start(self):
        """Open connections and create schema."""

    async def stop(self):
        """Release connections."""

    async def health_check(self) -> bool:
        return True

    @abstractmethod
    async def get_account(self, account_id: str) -> Optional[Account]:
        ...

    @abstractmethod
    async def get_account_by_email(self, email: str) -> Optional[Account]:
        ...

    @abstractmethod
    async def list_accounts(self) -> List[Account]:
        ...

    @abstractmethod
    async def get_coupon(self, code: str) -> Optional[Coupon]:
        ...

    @abstractmethod
    async def get_event_by_provider_id(self, event_id: str) -> Optional[AuditEvent]:
        ...

    @abstractmethod
    async def events_for_account(self, account_id: str) -> List[AuditEvent]:
        ...

    @abstractmethod
    async def events_for_email(self, email: str) -> List[AuditEvent]:
        ...

    @abstractmethod
    async def sync_records(self, account_id: str) -> List[AppSyncRecord]:
        ...

    @abstractmethod
    async def commit(self, batch: WriteBatch) -> None:
        """Apply every change in ``batch`` or none of them."""
