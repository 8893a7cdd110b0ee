# url_finder/services/deal_label_service.py
"""
Deal label cache.

Deal proposals are immutable once published, so labels are cached in
``deal_labels`` with insert-if-absent semantics: the first write for a deal
wins and there is no update path. Missing labels are fetched from Lotus
(``StateMarketStorageDeal``) and written back.

A label is treated as a payload CID when, after trimming, it starts with a
known CID prefix (``bafy``, ``bafk``, ``Qm``).

Usage:
    from url_finder.services.deal_label_service import deal_label_service

    labels = await deal_label_service.fetch_labels(session, [123, 456])
    labels[123].payload_cid
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from ..clients.lotus_client import LotusClient, lotus_client
from ..database.models import DealLabel
from ..exceptions import LotusRpcError

logger = logging.getLogger("url_finder.services.deal_labels")

PAYLOAD_CID_PREFIXES = ("bafy", "bafk", "Qm")


def parse_payload_cid(label: Optional[str]) -> Optional[str]:
    """Return the trimmed label when it looks like a CID, else None."""
    if not label:
        return None
    label = label.strip()
    if label.startswith(PAYLOAD_CID_PREFIXES):
        return label
    return None


class DealLabelService:
    """Write-once cache of deal labels with RPC fallback."""

    def __init__(self, lotus: Optional[LotusClient] = None):
        self.lotus = lotus or lotus_client

    async def get(self, session: AsyncSession, deal_id: int) -> Optional[DealLabel]:
        result = await session.execute(select(DealLabel).where(DealLabel.deal_id == deal_id))
        return result.scalar_one_or_none()

    async def get_many(self, session: AsyncSession, deal_ids: Iterable[int]) -> Dict[int, DealLabel]:
        ids = sorted(set(deal_ids))
        if not ids:
            return {}
        result = await session.execute(select(DealLabel).where(DealLabel.deal_id.in_(ids)))
        return {label.deal_id: label for label in result.scalars().all()}

    async def insert_if_absent(
        self,
        session: AsyncSession,
        deal_id: int,
        piece_cid: str,
        label_raw: Optional[str],
    ) -> bool:
        """
        Insert a label unless one is already cached for ``deal_id``.

        Returns:
            True if a row was written, False if the deal was already cached.
        """
        values = {
            "deal_id": deal_id,
            "piece_cid": piece_cid,
            "label_raw": label_raw,
            "payload_cid": parse_payload_cid(label_raw),
            "fetched_at": datetime.utcnow(),
        }

        insert = sqlite.insert if session.get_bind().dialect.name == "sqlite" else postgresql.insert
        stmt = insert(DealLabel).values(**values).on_conflict_do_nothing(index_elements=["deal_id"])

        result = await session.execute(stmt)
        inserted = (result.rowcount or 0) > 0
        if inserted:
            logger.debug(f"Cached label for deal_id={deal_id}")
        return inserted

    async def fetch_labels(self, session: AsyncSession, deal_ids: Iterable[int]) -> Dict[int, DealLabel]:
        """
        Return labels for ``deal_ids``, fetching and caching missing ones.

        Deals whose label cannot be fetched are left out of the result; a
        lookup failure for one deal never fails the batch.
        """
        ids = [deal_id for deal_id in set(deal_ids) if deal_id is not None]
        labels = await self.get_many(session, ids)

        missing: List[int] = sorted(deal_id for deal_id in ids if deal_id not in labels)
        for deal_id in missing:
            try:
                label_raw, piece_cid = await self.lotus.get_deal_label(deal_id)
            except LotusRpcError as e:
                logger.debug(f"Failed to fetch label for deal {deal_id}: {e}")
                continue

            await self.insert_if_absent(session, deal_id, piece_cid, label_raw)
            labels[deal_id] = DealLabel(
                deal_id=deal_id,
                piece_cid=piece_cid,
                label_raw=label_raw,
                payload_cid=parse_payload_cid(label_raw),
            )

        if missing:
            logger.debug(f"Fetched {len(missing)} deal label(s) over RPC")
        return labels


deal_label_service = DealLabelService()
