"""Seat manager: named occupants of capacity-bound features.

A seat is one active ``seat_assignments`` row for (customer, feature, user).
The number of active seats never exceeds a numeric entitlement's value;
unlimited entitlements skip the capacity check.

Capacity is a hard invariant.  Count-then-insert (assignment) and
delete-then-insert (transfer) run while holding a capacity lock keyed on
``(workspace_id, customer_id, feature_key)`` that lasts until the caller's
transaction ends:

* PostgreSQL: ``pg_advisory_xact_lock``, released by the server at
  commit or rollback.
* SQLite: an in-process :class:`asyncio.Lock`, released by a session
  listener when the root transaction ends.

Both are re-entrant within one transaction, so bulk operations on the same
feature acquire the lock once.  The lock is taken before the operation's
first read so the counts it sees include every seat committed by the
previous holder.
"""

from __future__ import annotations

import asyncio
import logging
import math
import weakref
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from entitlement_core.errors import (
    EntitlementError,
    NoEntitlementForSeatError,
    NoSeatsAvailableError,
    SeatAlreadyAssignedError,
    SeatNotFoundError,
)
from entitlement_core.models import (
    BulkAssignResult,
    BulkUnassignResult,
    NumberValue,
    SeatAssignment,
    SeatError,
    SeatUsageSummary,
    SeatUser,
    format_quantity,
    is_unlimited,
)
from entitlement_core.state.database import dialect_name
from entitlement_core.state.repository import SeatRepository
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncSession

from api.middleware.prometheus import SEAT_OPERATIONS_TOTAL
from api.services.entitlement_service import EntitlementService

logger = logging.getLogger(__name__)

_LockKey = tuple[str, str, str]

# In-process capacity locks for SQLite.  Held locks are referenced from the
# owning session's ``info`` until its transaction ends.
_local_locks: weakref.WeakValueDictionary[_LockKey, asyncio.Lock] = weakref.WeakValueDictionary()

_HELD_LOCKS_INFO_KEY = "entitlements.seat_locks"
_LISTENER_INFO_KEY = "entitlements.seat_lock_listener"


def _release_held_locks(session: Any, transaction: Any) -> None:
    if transaction.parent is not None:
        return
    held: dict[_LockKey, asyncio.Lock] = session.info.pop(_HELD_LOCKS_INFO_KEY, {})
    for lock in held.values():
        if lock.locked():
            lock.release()


class SeatService:
    """Seat assignment, transfer and capacity accounting.

    Parameters
    ----------
    session:
        Active database session.  Capacity locks live as long as its
        current transaction.
    entitlements:
        Resolver used to learn each feature's capacity.
    """

    def __init__(self, session: AsyncSession, entitlements: EntitlementService) -> None:
        self._session = session
        self._entitlements = entitlements

    # ------------------------------------------------------------------
    # Capacity lock
    # ------------------------------------------------------------------

    async def _acquire_capacity_lock(self, workspace_id: str, customer_id: str, feature_key: str) -> None:
        """Serialise capacity changes of one feature until the transaction ends."""
        lock_key = f"seats:{workspace_id}:{customer_id}:{feature_key}"
        if "postgresql" in dialect_name(self._session):
            await self._session.execute(
                text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
                {"key": lock_key},
            )
            return

        info = self._session.info
        held: dict[_LockKey, asyncio.Lock] = info.setdefault(_HELD_LOCKS_INFO_KEY, {})
        key = (workspace_id, customer_id, feature_key)
        if key in held:
            return

        if not info.get(_LISTENER_INFO_KEY):
            event.listen(self._session.sync_session, "after_transaction_end", _release_held_locks)
            info[_LISTENER_INFO_KEY] = True

        lock = _local_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            _local_locks[key] = lock
        await lock.acquire()
        # ``info`` may have been reset by a transaction ending while waiting.
        self._session.info.setdefault(_HELD_LOCKS_INFO_KEY, {})[key] = lock

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    async def assign_seat(
        self,
        workspace_id: str,
        customer_id: str,
        feature_key: str,
        user_id: str,
        *,
        user_email: str | None = None,
        user_name: str | None = None,
        expires_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SeatAssignment:
        """Give *user_id* a seat, or return the seat they already hold.

        Raises
        ------
        NoEntitlementForSeatError
            The customer has no active entitlement for *feature_key*.
        NoSeatsAvailableError
            A numeric entitlement is at capacity.
        """
        # Lock before the first read: a SQLite snapshot taken earlier would
        # miss seats committed while this call waited.
        await self._acquire_capacity_lock(workspace_id, customer_id, feature_key)

        repo = SeatRepository(self._session, workspace_id)
        existing = await repo.find_active(customer_id, feature_key, user_id)
        if existing is not None:
            return SeatAssignment.from_row(existing)

        check = await self._entitlements.check_entitlement(workspace_id, customer_id, feature_key)
        if not check.has_access:
            SEAT_OPERATIONS_TOTAL.labels(operation="assign", outcome="no_entitlement").inc()
            raise NoEntitlementForSeatError(f"Customer does not have entitlement for {feature_key}")

        value = check.value
        if isinstance(value, NumberValue) and not is_unlimited(value):
            used = await repo.count_active(customer_id, feature_key)
            # NaN capacity fails this comparison, so it never admits a seat.
            if not used < value.limit:
                SEAT_OPERATIONS_TOTAL.labels(operation="assign", outcome="at_capacity").inc()
                logger.warning(
                    "No available seats: workspace=%s customer=%s feature=%s used=%d limit=%s",
                    workspace_id,
                    customer_id,
                    feature_key,
                    used,
                    format_quantity(value.limit),
                )
                raise NoSeatsAvailableError(
                    f"No available seats for {feature_key}. {used}/{format_quantity(value.limit)} seats used."
                )

        row = await repo.create(
            customer_id=customer_id,
            feature_key=feature_key,
            user_id=user_id,
            user_email=user_email,
            user_name=user_name,
            expires_at=expires_at,
            metadata=metadata,
        )
        SEAT_OPERATIONS_TOTAL.labels(operation="assign", outcome="ok").inc()
        logger.info(
            "Seat assigned: workspace=%s customer=%s feature=%s user=%s",
            workspace_id,
            customer_id,
            feature_key,
            user_id,
        )
        return SeatAssignment.from_row(row)

    async def unassign_seat(self, workspace_id: str, customer_id: str, feature_key: str, user_id: str) -> None:
        repo = SeatRepository(self._session, workspace_id)
        removed = await repo.delete_for_user(customer_id, feature_key, user_id)
        if removed == 0:
            SEAT_OPERATIONS_TOTAL.labels(operation="unassign", outcome="not_found").inc()
            raise SeatNotFoundError(f"No seat assignment found for user {user_id} on {feature_key}")
        SEAT_OPERATIONS_TOTAL.labels(operation="unassign", outcome="ok").inc()
        logger.info(
            "Seat unassigned: workspace=%s customer=%s feature=%s user=%s",
            workspace_id,
            customer_id,
            feature_key,
            user_id,
        )

    async def unassign_seat_by_id(self, workspace_id: str, assignment_id: str) -> None:
        repo = SeatRepository(self._session, workspace_id)
        if await repo.delete_by_id(assignment_id) == 0:
            SEAT_OPERATIONS_TOTAL.labels(operation="unassign", outcome="not_found").inc()
            raise SeatNotFoundError(f"Seat assignment {assignment_id} not found")
        SEAT_OPERATIONS_TOTAL.labels(operation="unassign", outcome="ok").inc()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def has_seat(self, workspace_id: str, customer_id: str, feature_key: str, user_id: str) -> bool:
        repo = SeatRepository(self._session, workspace_id)
        return await repo.find_active(customer_id, feature_key, user_id) is not None

    async def get_assignments(self, workspace_id: str, customer_id: str, feature_key: str) -> list[SeatAssignment]:
        """Active assignments, oldest first."""
        rows = await SeatRepository(self._session, workspace_id).list_active(customer_id, feature_key)
        return [SeatAssignment.from_row(row) for row in rows]

    async def get_seat_usage(self, workspace_id: str, customer_id: str, feature_key: str) -> SeatUsageSummary:
        """Capacity accounting for one feature.

        A customer without access reports zero capacity rather than failing.
        """
        check = await self._entitlements.check_entitlement(workspace_id, customer_id, feature_key)
        assignments = await self.get_assignments(workspace_id, customer_id, feature_key)
        used = len(assignments)

        if not check.has_access:
            return SeatUsageSummary(
                feature_key=feature_key,
                total_seats=0,
                used_seats=used,
                available_seats=0,
                is_unlimited=False,
                assignments=assignments,
            )

        if is_unlimited(check.value):
            return SeatUsageSummary(
                feature_key=feature_key,
                total_seats=None,
                used_seats=used,
                available_seats=None,
                is_unlimited=True,
                assignments=assignments,
            )

        total: int | None = None
        available: int | None = None
        if isinstance(check.value, NumberValue) and math.isfinite(check.value.limit):
            total = int(check.value.limit)
            available = max(0, total - used)

        return SeatUsageSummary(
            feature_key=feature_key,
            total_seats=total,
            used_seats=used,
            available_seats=available,
            is_unlimited=False,
            assignments=assignments,
        )

    async def get_all_seat_usage(self, workspace_id: str, customer_id: str) -> list[SeatUsageSummary]:
        """Seat usage of every ``number``/``unlimited`` feature of the customer."""
        customer = await self._entitlements.get_customer_entitlements(workspace_id, customer_id)
        summaries: list[SeatUsageSummary] = []
        seen: set[str] = set()
        for check in customer.entitlements:
            if check.feature_key in seen:
                continue
            if isinstance(check.value, NumberValue) or is_unlimited(check.value):
                seen.add(check.feature_key)
                summaries.append(await self.get_seat_usage(workspace_id, customer_id, check.feature_key))
        return summaries

    # ------------------------------------------------------------------
    # Bulk operations
    # ------------------------------------------------------------------

    async def bulk_assign_seats(
        self,
        workspace_id: str,
        customer_id: str,
        feature_key: str,
        users: Sequence[SeatUser],
    ) -> BulkAssignResult:
        """Seat each user independently, collecting per-user engine errors.

        Store failures are not collected; they abort the batch.
        """
        result = BulkAssignResult()
        for user in users:
            try:
                assignment = await self.assign_seat(
                    workspace_id,
                    customer_id,
                    feature_key,
                    user.user_id,
                    user_email=user.user_email,
                    user_name=user.user_name,
                )
            except EntitlementError as exc:
                result.errors.append(SeatError(user_id=user.user_id, error=exc.message))
            else:
                result.assigned.append(assignment)
        return result

    async def bulk_unassign_seats(
        self,
        workspace_id: str,
        customer_id: str,
        feature_key: str,
        user_ids: Sequence[str],
    ) -> BulkUnassignResult:
        result = BulkUnassignResult()
        for user_id in user_ids:
            try:
                await self.unassign_seat(workspace_id, customer_id, feature_key, user_id)
            except EntitlementError as exc:
                result.errors.append(SeatError(user_id=user_id, error=exc.message))
            else:
                result.unassigned += 1
        return result

    # ------------------------------------------------------------------
    # Transfer / revoke
    # ------------------------------------------------------------------

    async def transfer_seat(
        self,
        workspace_id: str,
        customer_id: str,
        feature_key: str,
        from_user_id: str,
        to_user_id: str,
        *,
        user_email: str | None = None,
        user_name: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SeatAssignment:
        """Move one seat from *from_user_id* to *to_user_id*, keeping its ``expires_at``.

        The delete and the insert run in one SAVEPOINT: either both apply or
        neither does.

        Raises
        ------
        SeatNotFoundError
            The source user holds no active seat.
        SeatAlreadyAssignedError
            The target user already holds a seat.
        """
        await self._acquire_capacity_lock(workspace_id, customer_id, feature_key)
        repo = SeatRepository(self._session, workspace_id)

        original = await repo.find_active(customer_id, feature_key, from_user_id)
        if original is None:
            SEAT_OPERATIONS_TOTAL.labels(operation="transfer", outcome="not_found").inc()
            raise SeatNotFoundError(f"No seat assignment found for user {from_user_id}")

        if await repo.find_active(customer_id, feature_key, to_user_id) is not None:
            SEAT_OPERATIONS_TOTAL.labels(operation="transfer", outcome="target_seated").inc()
            raise SeatAlreadyAssignedError(f"User {to_user_id} already has a seat for {feature_key}")

        expires_at = original.expires_at
        async with self._session.begin_nested():
            await repo.delete_row(original)
            row = await repo.create(
                customer_id=customer_id,
                feature_key=feature_key,
                user_id=to_user_id,
                user_email=user_email,
                user_name=user_name,
                expires_at=expires_at,
                metadata=metadata,
            )

        SEAT_OPERATIONS_TOTAL.labels(operation="transfer", outcome="ok").inc()
        logger.info(
            "Seat transferred: workspace=%s customer=%s feature=%s from=%s to=%s",
            workspace_id,
            customer_id,
            feature_key,
            from_user_id,
            to_user_id,
        )
        return SeatAssignment.from_row(row)

    async def revoke_all_seats(self, workspace_id: str, customer_id: str, feature_key: str | None = None) -> int:
        """Delete every seat of the customer (optionally one feature).  Returns count removed."""
        removed = await SeatRepository(self._session, workspace_id).delete_all(customer_id, feature_key)
        SEAT_OPERATIONS_TOTAL.labels(operation="revoke_all", outcome="ok").inc()
        logger.info(
            "Revoked seats: workspace=%s customer=%s feature=%s removed=%d",
            workspace_id,
            customer_id,
            feature_key or "*",
            removed,
        )
        return removed
