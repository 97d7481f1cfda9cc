"""
Capacity Ledger: per-resource seat counters.

Reads go through the account repository; the only writes are conditional
increments and decrements, so ``used_seats`` can never pass the seat limit
even if two writers slip past the lock layer.
"""
import random
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from seat_redemption.core.exceptions import CapacityExhaustedError, ConflictError, NotFoundError, ValidationError
from seat_redemption.core.records import TargetResource
from seat_redemption.database.repositories import AccountRepository

logger = structlog.get_logger(__name__)


class CapacityLedger:
    """Seat accounting for target resources."""

    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng or random.Random()

    async def get(self, session: AsyncSession, resource_id: int) -> Optional[TargetResource]:
        return await AccountRepository(session).get(resource_id)

    async def select_least_loaded(
        self, session: AsyncSession, require_demoted: Optional[bool] = None
    ) -> Optional[TargetResource]:
        """
        Pick the eligible resource with the fewest used seats.

        Ties are broken at random so load spreads across resources instead of
        filling one before touching the next.

        Args:
            session: Open database session
            require_demoted: True/False to restrict the tier, None for either

        Returns:
            Optional[TargetResource]: The chosen resource, or None if nothing has room
        """
        candidates = await AccountRepository(session).list_with_free_seats(require_demoted)
        if not candidates:
            return None
        fewest = min(candidate.used_seats for candidate in candidates)
        tied = [candidate for candidate in candidates if candidate.used_seats == fewest]
        return self._rng.choice(tied)

    async def claim_seat(self, session: AsyncSession, resource: TargetResource) -> None:
        """
        Take one seat on ``resource`` inside the caller's transaction.

        Raises:
            CapacityExhaustedError: If the resource is banned or already full
        """
        claimed = await AccountRepository(session).claim_seat(resource.id)
        if not claimed:
            logger.warning(
                "seat_claim_rejected",
                resource_id=resource.id,
                used_seats=resource.used_seats,
                seat_limit=resource.seat_limit,
            )
            raise CapacityExhaustedError(
                "Target resource has no free seat",
                payload={"resource_id": resource.id},
            )
        logger.info("seat_claimed", resource_id=resource.id, used_seats=resource.used_seats + 1)

    async def release_seat(self, session: AsyncSession, resource_id: int) -> bool:
        released = await AccountRepository(session).release_seat(resource_id)
        logger.info("seat_released", resource_id=resource_id, released=released)
        return released

    async def sync_usage(self, session: AsyncSession, resource_id: int, used_seats: int) -> TargetResource:
        """
        Overwrite the seat counter with an externally observed value.

        Raises:
            NotFoundError: If the resource does not exist
            ValidationError: If the value is outside ``0..seat_limit``
            ConflictError: If a seat was claimed or released since the read
        """
        repository = AccountRepository(session)
        resource = await repository.get(resource_id)
        if resource is None:
            raise NotFoundError("Target resource not found", payload={"resource_id": resource_id})
        if used_seats < 0 or used_seats > resource.seat_limit:
            raise ValidationError(
                f"used_seats must be between 0 and {resource.seat_limit}",
                payload={"resource_id": resource_id},
            )
        if not await repository.set_used_seats(resource_id, used_seats, expected=resource.used_seats):
            logger.warning("seat_usage_sync_conflict", resource_id=resource_id, expected=resource.used_seats)
            raise ConflictError(
                "Seat usage changed while syncing, retry with a fresh value",
                status_code=409,
                payload={"resource_id": resource_id},
            )
        logger.info(
            "seat_usage_synced",
            resource_id=resource_id,
            previous=resource.used_seats,
            used_seats=used_seats,
        )
        return await repository.get(resource_id)
