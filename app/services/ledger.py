"""Credit ledger: one debit entry per submitted job."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from supabase import Client

from app.config import settings
from app.db.supabase_client import get_supabase, run_query
from app.jobs.models import utcnow

logger = logging.getLogger(__name__)


@dataclass
class LedgerEntry:
    user_id: str
    activity: str
    amount: int
    created_at: datetime = field(default_factory=utcnow)


class Ledger(ABC):
    @abstractmethod
    async def debit(self, user_id: str, cost: int, activity: str) -> LedgerEntry:
        ...


class InMemoryLedger(Ledger):
    def __init__(self):
        self.entries: List[LedgerEntry] = []

    async def debit(self, user_id, cost, activity):
        entry = LedgerEntry(user_id=user_id, activity=activity, amount=-abs(cost))
        self.entries.append(entry)
        return entry


class SupabaseLedger(Ledger):
    def __init__(self, client: Optional[Client] = None, table: Optional[str] = None):
        self._client = client
        self._table = table or settings.credit_table

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = get_supabase()
        return self._client

    async def debit(self, user_id, cost, activity):
        entry = LedgerEntry(user_id=user_id, activity=activity, amount=-abs(cost))
        await run_query(
            self.client.table(self._table)
            .insert({
                "user_id": entry.user_id,
                "activity": entry.activity,
                "amount": entry.amount,
                "created_at": entry.created_at.isoformat(),
            })
            .execute
        )
        logger.debug("Debited %d credit(s) from %s", cost, user_id)
        return entry
