"""Idempotent upsert of fetched contacts into the candidates table."""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crmsync.models import Candidate
from crmsync.schemas.contact import ContactRecord

logger = logging.getLogger(__name__)

CANDIDATE_SOURCE = "Vtiger CRM"


@dataclass
class UpsertResult:
    created: int = 0
    updated: int = 0
    errors: int = 0

    @property
    def processed(self) -> int:
        return self.created + self.updated


class PersistenceSink:
    """
    Upserts contact batches, matching candidates by external id.

    Each record is committed on its own: a record that violates a constraint
    is rolled back and counted without losing the rest of the batch.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def upsert_batch(self, records: list[ContactRecord]) -> UpsertResult:
        """
        Upsert a batch of contacts.

        Returns:
            Counts of created, updated and failed records
        """
        result = UpsertResult()
        if not records:
            return result

        async with self.session_maker() as session:
            for record in records:
                try:
                    created = await self._upsert_one(session, record)
                    await session.commit()
                except Exception as e:
                    await session.rollback()
                    result.errors += 1
                    logger.error(f"Failed to save contact {record.external_id}: {e!r}")
                    continue

                if created:
                    result.created += 1
                else:
                    result.updated += 1

        logger.info(
            f"Saved {len(records)} contacts: {result.created} created, "
            f"{result.updated} updated, {result.errors} failed"
        )
        return result

    async def _upsert_one(self, session: AsyncSession, record: ContactRecord) -> bool:
        """Returns True when a new candidate was created."""
        now = datetime.now(UTC)
        existing = await session.execute(
            select(Candidate).where(Candidate.external_id == record.external_id)
        )
        candidate = existing.scalar_one_or_none()

        if candidate is not None:
            for key, value in record.candidate_fields().items():
                setattr(candidate, key, value)
            candidate.last_synced_at = now
            candidate.updated_at = now
            await session.flush()
            return False

        session.add(
            Candidate(
                external_id=record.external_id,
                status="not_contacted",
                source=CANDIDATE_SOURCE,
                last_synced_at=now,
                **record.candidate_fields(),
            )
        )
        await session.flush()
        return True

    async def count_records(self) -> int:
        async with self.session_maker() as session:
            result = await session.execute(select(func.count(Candidate.id)))
            return result.scalar() or 0
