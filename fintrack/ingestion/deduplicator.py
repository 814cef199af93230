"""
Import Deduplication

Each draft gets a content fingerprint (import hash). A draft is a
duplicate when the fingerprint already exists for the user, when it was
already accepted earlier in the same batch, or, for feed records, when
the external transaction id is already stored.

Re-importing the same file therefore yields zero new transactions.
"""

import hashlib
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional
from uuid import UUID

from fintrack.models.ledger import DraftTransaction
from fintrack.services.storage import LedgerStorageInterface


def compute_import_hash(draft: DraftTransaction) -> str:
    """MD5 of the lower-cased "{date}|{amount}|{description}" key."""
    amount = draft.amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    key = f"{draft.date.isoformat()}|{amount}|{draft.description}".lower()
    return hashlib.md5(key.encode("utf-8")).hexdigest()


class Deduplicator:
    """
    Batch-scoped duplicate checker.

    Create one per import or feed sync; it remembers the hashes and
    external ids accepted so far in that batch.
    """

    def __init__(self, storage: LedgerStorageInterface):
        self._storage = storage
        self._seen_hashes: set[str] = set()
        self._seen_external_ids: set[str] = set()

    async def check(
        self,
        user_id: UUID,
        draft: DraftTransaction,
    ) -> tuple[bool, str]:
        """
        Decide whether `draft` is new.

        Returns:
            (is_duplicate, import_hash). A non-duplicate is remembered as
            accepted for the rest of the batch.
        """
        import_hash = compute_import_hash(draft)

        if import_hash in self._seen_hashes:
            return True, import_hash
        if draft.external_id and draft.external_id in self._seen_external_ids:
            return True, import_hash

        if await self._storage.import_hash_exists(user_id, import_hash):
            return True, import_hash
        if draft.external_id and await self._storage.external_id_exists(
            user_id, draft.external_id
        ):
            return True, import_hash

        self._remember(import_hash, draft.external_id)
        return False, import_hash

    def _remember(self, import_hash: str, external_id: Optional[str]) -> None:
        self._seen_hashes.add(import_hash)
        if external_id:
            self._seen_external_ids.add(external_id)
