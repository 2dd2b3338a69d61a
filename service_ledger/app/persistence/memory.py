"""
In-process ledger store.

A single lock orders commits; each commit validates every guard before it
touches any row, which gives the same all-or-nothing outcome as a database
transaction. Reads return copies so callers can mutate them freely.
"""

import asyncio
import copy
from typing import Dict, List, Optional, Tuple

from shared.errors import AlreadyExistsError, ConcurrencyConflict, DuplicateEventError, NotFoundError
from shared.logging import get_logger
from .base import LedgerStore, WriteBatch
from ..audit.events import AuditEvent
from ..domain.models import Account, AppSyncRecord, Coupon


class MemoryLedgerStore(LedgerStore):
    """Dictionary-backed store for local runs and tests."""

    def __init__(self):
        self.logger = get_logger("ledger.persistence.memory")
        self._lock = asyncio.Lock()
        self._accounts: Dict[str, Account] = {}
        self._email_index: Dict[str, str] = {}
        self._coupons: Dict[str, Coupon] = {}
        self._events: List[AuditEvent] = []
        self._provider_index: Dict[str, AuditEvent] = {}
        self._sync: Dict[Tuple[str, str], AppSyncRecord] = {}

    async def get_account(self, account_id: str) -> Optional[Account]:
        return copy.deepcopy(self._accounts.get(account_id))

    async def get_account_by_email(self, email: str) -> Optional[Account]:
        account_id = self._email_index.get(email)
        if account_id is None:
            return None
        return copy.deepcopy(self._accounts[account_id])

    async def list_accounts(self) -> List[Account]:
        return [copy.deepcopy(a) for a in sorted(self._accounts.values(), key=lambda a: a.created_at)]

    async def get_coupon(self, code: str) -> Optional[Coupon]:
        return copy.deepcopy(self._coupons.get(code))

    async def get_event_by_provider_id(self, event_id: str) -> Optional[AuditEvent]:
        return self._provider_index.get(event_id)

    async def events_for_account(self, account_id: str) -> List[AuditEvent]:
        return [e for e in self._events if e.account_id == account_id]

    async def events_for_email(self, email: str) -> List[AuditEvent]:
        return [e for e in self._events if e.email == email]

    async def sync_records(self, account_id: str) -> List[AppSyncRecord]:
        return [copy.deepcopy(r) for (owner, _), r in sorted(self._sync.items()) if owner == account_id]

    async def commit(self, batch: WriteBatch) -> None:
        async with self._lock:
            self._check(batch)
            self._apply(batch)

    def _check(self, batch: WriteBatch):
        emails = set()
        for account in batch.new_accounts:
            if account.email in self._email_index or account.email in emails:
                raise AlreadyExistsError("Account already exists", {"email": account.email})
            emails.add(account.email)

        for account in batch.account_updates + batch.account_deletes:
            stored = self._accounts.get(account.id)
            if stored is None:
                raise NotFoundError("Account not found", {"account_id": account.id})
            if stored.version != account.version:
                raise ConcurrencyConflict("Account changed since it was read",
                                          {"account_id": account.id,
                                           "expected_version": account.version,
                                           "actual_version": stored.version})

        codes = set()
        for coupon in batch.new_coupons:
            if coupon.code in self._coupons or coupon.code in codes:
                raise AlreadyExistsError("Coupon already exists", {"code": coupon.code})
            codes.add(coupon.code)

        for code, expected in batch.coupon_claims:
            stored = self._coupons.get(code)
            if stored is None:
                raise NotFoundError("Coupon not found", {"code": code})
            if stored.usage_count != expected:
                raise ConcurrencyConflict("Coupon usage changed since it was read",
                                          {"code": code, "expected_usage_count": expected,
                                           "actual_usage_count": stored.usage_count})

        for code, _ in batch.coupon_toggles:
            if code not in self._coupons:
                raise NotFoundError("Coupon not found", {"code": code})

        seen = set()
        for event in batch.events:
            if event.provider_event_id is None:
                continue
            if event.provider_event_id in self._provider_index or event.provider_event_id in seen:
                raise DuplicateEventError(event.provider_event_id)
            seen.add(event.provider_event_id)

    def _apply(self, batch: WriteBatch):
        for account in batch.new_accounts:
            stored = copy.deepcopy(account)
            stored.version = 1
            self._accounts[stored.id] = stored
            self._email_index[stored.email] = stored.id

        for account in batch.account_updates:
            previous = self._accounts[account.id]
            stored = copy.deepcopy(account)
            stored.version = previous.version + 1
            if previous.email != stored.email:
                del self._email_index[previous.email]
                self._email_index[stored.email] = stored.id
            self._accounts[stored.id] = stored

        for coupon in batch.new_coupons:
            self._coupons[coupon.code] = copy.deepcopy(coupon)

        for code, _ in batch.coupon_claims:
            self._coupons[code].usage_count += 1

        for code, active in batch.coupon_toggles:
            self._coupons[code].active = active

        for record in batch.sync_upserts:
            self._sync[(record.account_id, record.app)] = copy.deepcopy(record)

        for event in batch.events:
            self._events.append(event)
            if event.provider_event_id is not None:
                self._provider_index[event.provider_event_id] = event

        for account in batch.account_deletes:
            stored = self._accounts.pop(account.id)
            self._email_index.pop(stored.email, None)
            for key in [k for k in self._sync if k[0] == account.id]:
                del self._sync[key]

        self.logger.debug("Batch committed",
                          accounts=len(batch.new_accounts) + len(batch.account_updates),
                          deletes=len(batch.account_deletes),
                          events=len(batch.events))
