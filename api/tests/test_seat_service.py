"""Tests for the seat manager (api.services.seat_service).

Covers:
- Capacity enforcement and idempotent assignment
- Unlimited and missing entitlements
- Unassign by user and by id
- Bulk operations with per-user errors
- Transfers (expiry carried over, target already seated)
- The capacity lock (SQLite in-process lock, PostgreSQL advisory lock)
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio
from entitlement_core.errors import (
    NoEntitlementForSeatError,
    NoSeatsAvailableError,
    SeatAlreadyAssignedError,
    SeatNotFoundError,
)
from entitlement_core.models import SeatUser
from entitlement_core.state.sqlite_adapter import create_local_tables, get_local_engine
from entitlement_core.state.tables import CustomerTable, SubscriptionTable
from sqlalchemy.ext.asyncio import async_sessionmaker

from api.services import seat_service as seat_module
from api.services.entitlement_service import EntitlementService
from api.services.seat_service import SeatService

WORKSPACE_ID = "ws-test"


@pytest_asyncio.fixture
async def seats(seed_customer, grant):
    """Customer ``cus_1`` with three ``seats``."""
    await seed_customer()
    await grant("seats", "3", "number")


class TestAssign:
    @pytest.mark.asyncio
    async def test_capacity_is_enforced(self, seats, seat_service):
        for user in ("u1", "u2", "u3"):
            await seat_service.assign_seat(WORKSPACE_ID, "cus_1", "seats", user)

        with pytest.raises(NoSeatsAvailableError) as exc_info:
            await seat_service.assign_seat(WORKSPACE_ID, "cus_1", "seats", "u4")

        assert exc_info.value.message == "No available seats for seats. 3/3 seats used."
        assert exc_info.value.status_code == 400
        assert not await seat_service.has_seat(WORKSPACE_ID, "cus_1", "seats", "u4")

    @pytest.mark.asyncio
    async def test_assign_is_idempotent(self, seats, seat_service):
        first = await seat_service.assign_seat(
            WORKSPACE_ID, "cus_1", "seats", "u1", user_email="u1@example.com", metadata={"role": "admin"}
        )
        second = await seat_service.assign_seat(WORKSPACE_ID, "cus_1", "seats", "u1")

        assert second.id == first.id
        assert second.metadata == {"role": "admin"}
        usage = await seat_service.get_seat_usage(WORKSPACE_ID, "cus_1", "seats")
        assert usage.used_seats == 1

    @pytest.mark.asyncio
    async def test_already_seated_user_allowed_at_capacity(self, seats, seat_service):
        for user in ("u1", "u2", "u3"):
            await seat_service.assign_seat(WORKSPACE_ID, "cus_1", "seats", user)
        again = await seat_service.assign_seat(WORKSPACE_ID, "cus_1", "seats", "u2")
        assert again.user_id == "u2"

    @pytest.mark.asyncio
    async def test_no_entitlement(self, seed_customer, seat_service):
        await seed_customer()
        with pytest.raises(NoEntitlementForSeatError, match="Customer does not have entitlement for seats"):
            await seat_service.assign_seat(WORKSPACE_ID, "cus_1", "seats", "u1")

    @pytest.mark.asyncio
    async def test_unlimited_skips_capacity(self, seed_customer, grant, seat_service):
        await seed_customer()
        await grant("seats", "", "unlimited")
        for i in range(10):
            await seat_service.assign_seat(WORKSPACE_ID, "cus_1", "seats", f"u{i}")

        usage = await seat_service.get_seat_usage(WORKSPACE_ID, "cus_1", "seats")

        assert usage.is_unlimited is True
        assert usage.used_seats == 10
        assert usage.total_seats is None
        assert usage.available_seats is None

    @pytest.mark.asyncio
    async def test_expired_assignment_frees_capacity(self, seats, seat_service):
        past = datetime.now(UTC) - timedelta(days=1)
        await seat_service.assign_seat(WORKSPACE_ID, "cus_1", "seats", "old", expires_at=past)
        for user in ("u1", "u2", "u3"):
            await seat_service.assign_seat(WORKSPACE_ID, "cus_1", "seats", user)

        assert not await seat_service.has_seat(WORKSPACE_ID, "cus_1", "seats", "old")


class TestUnassign:
    @pytest.mark.asyncio
    async def test_unassign_frees_a_seat(self, seats, seat_service):
        for user in ("u1", "u2", "u3"):
            await seat_service.assign_seat(WORKSPACE_ID, "cus_1", "seats", user)

        await seat_service.unassign_seat(WORKSPACE_ID, "cus_1", "seats", "u2")
        await seat_service.assign_seat(WORKSPACE_ID, "cus_1", "seats", "u4")

        assignments = await seat_service.get_assignments(WORKSPACE_ID, "cus_1", "seats")
        assert [a.user_id for a in assignments] == ["u1", "u3", "u4"]

    @pytest.mark.asyncio
    async def test_unassign_unknown_user(self, seats, seat_service):
        with pytest.raises(SeatNotFoundError, match="No seat assignment found for user ghost on seats"):
            await seat_service.unassign_seat(WORKSPACE_ID, "cus_1", "seats", "ghost")

    @pytest.mark.asyncio
    async def test_unassign_by_id(self, seats, seat_service):
        assignment = await seat_service.assign_seat(WORKSPACE_ID, "cus_1", "seats", "u1")

        await seat_service.unassign_seat_by_id(WORKSPACE_ID, assignment.id)

        assert not await seat_service.has_seat(WORKSPACE_ID, "cus_1", "seats", "u1")
        with pytest.raises(SeatNotFoundError, match=f"Seat assignment {assignment.id} not found"):
            await seat_service.unassign_seat_by_id(WORKSPACE_ID, assignment.id)


class TestUsage:
    @pytest.mark.asyncio
    async def test_seat_usage_counts(self, seats, seat_service):
        await seat_service.assign_seat(WORKSPACE_ID, "cus_1", "seats", "u1")

        usage = await seat_service.get_seat_usage(WORKSPACE_ID, "cus_1", "seats")

        assert usage.total_seats == 3
        assert usage.used_seats == 1
        assert usage.available_seats == 2
        assert [a.user_id for a in usage.assignments] == ["u1"]

    @pytest.mark.asyncio
    async def test_no_access_reports_zero_capacity(self, seed_customer, seat_service):
        await seed_customer()
        usage = await seat_service.get_seat_usage(WORKSPACE_ID, "cus_1", "editors")
        assert (usage.total_seats, usage.used_seats, usage.available_seats) == (0, 0, 0)
        assert usage.is_unlimited is False

    @pytest.mark.asyncio
    async def test_all_seat_usage_skips_boolean_features(self, seats, grant, seat_service):
        await grant("sso", "true", "boolean")
        await grant("viewers", "", "unlimited")

        summaries = await seat_service.get_all_seat_usage(WORKSPACE_ID, "cus_1")

        assert sorted(s.feature_key for s in summaries) == ["seats", "viewers"]


class TestBulk:
    @pytest.mark.asyncio
    async def test_bulk_assign_collects_errors(self, seats, seat_service):
        users = [SeatUser(user_id=f"u{i}", user_email=f"u{i}@example.com") for i in range(1, 6)]

        result = await seat_service.bulk_assign_seats(WORKSPACE_ID, "cus_1", "seats", users)

        assert [a.user_id for a in result.assigned] == ["u1", "u2", "u3"]
        assert [e.user_id for e in result.errors] == ["u4", "u5"]
        assert result.errors[0].error == "No available seats for seats. 3/3 seats used."

    @pytest.mark.asyncio
    async def test_bulk_unassign(self, seats, seat_service):
        await seat_service.assign_seat(WORKSPACE_ID, "cus_1", "seats", "u1")
        await seat_service.assign_seat(WORKSPACE_ID, "cus_1", "seats", "u2")

        result = await seat_service.bulk_unassign_seats(WORKSPACE_ID, "cus_1", "seats", ["u1", "ghost", "u2"])

        assert result.unassigned == 2
        assert [e.user_id for e in result.errors] == ["ghost"]


class TestTransferAndRevoke:
    @pytest.mark.asyncio
    async def test_transfer_keeps_expiry_and_capacity(self, seats, seat_service):
        expires = datetime.now(UTC) + timedelta(days=30)
        for user in ("u1", "u2"):
            await seat_service.assign_seat(WORKSPACE_ID, "cus_1", "seats", user)
        await seat_service.assign_seat(WORKSPACE_ID, "cus_1", "seats", "u3", expires_at=expires)

        moved = await seat_service.transfer_seat(
            WORKSPACE_ID, "cus_1", "seats", "u3", "u9", user_name="New Hire"
        )

        assert moved.user_id == "u9"
        assert moved.user_name == "New Hire"
        assert moved.expires_at == expires
        assert not await seat_service.has_seat(WORKSPACE_ID, "cus_1", "seats", "u3")
        usage = await seat_service.get_seat_usage(WORKSPACE_ID, "cus_1", "seats")
        assert usage.used_seats == 3

    @pytest.mark.asyncio
    async def test_transfer_from_unseated_user(self, seats, seat_service):
        with pytest.raises(SeatNotFoundError, match="No seat assignment found for user ghost"):
            await seat_service.transfer_seat(WORKSPACE_ID, "cus_1", "seats", "ghost", "u9")

    @pytest.mark.asyncio
    async def test_transfer_to_seated_user_changes_nothing(self, seats, seat_service):
        await seat_service.assign_seat(WORKSPACE_ID, "cus_1", "seats", "u1")
        await seat_service.assign_seat(WORKSPACE_ID, "cus_1", "seats", "u2")

        with pytest.raises(SeatAlreadyAssignedError, match="User u2 already has a seat for seats"):
            await seat_service.transfer_seat(WORKSPACE_ID, "cus_1", "seats", "u1", "u2")

        assert await seat_service.has_seat(WORKSPACE_ID, "cus_1", "seats", "u1")
        assert await seat_service.has_seat(WORKSPACE_ID, "cus_1", "seats", "u2")

    @pytest.mark.asyncio
    async def test_revoke_all_seats(self, seats, grant, seat_service):
        await grant("editors", "5", "number")
        await seat_service.assign_seat(WORKSPACE_ID, "cus_1", "seats", "u1")
        await seat_service.assign_seat(WORKSPACE_ID, "cus_1", "editors", "u1")
        await seat_service.assign_seat(WORKSPACE_ID, "cus_1", "editors", "u2")

        assert await seat_service.revoke_all_seats(WORKSPACE_ID, "cus_1", "editors") == 2
        assert await seat_service.revoke_all_seats(WORKSPACE_ID, "cus_1") == 1


class TestCapacityLock:
    @pytest.mark.asyncio
    async def test_sqlite_lock_is_held_until_transaction_ends(self, seats, seat_service, async_session):
        await seat_service.assign_seat(WORKSPACE_ID, "cus_1", "seats", "u1")

        lock = seat_module._local_locks[(WORKSPACE_ID, "cus_1", "seats")]
        assert lock.locked()

        # Re-entrant within the same transaction.
        await seat_service.assign_seat(WORKSPACE_ID, "cus_1", "seats", "u2")

        await async_session.commit()
        assert not lock.locked()

    @pytest.mark.asyncio
    async def test_postgres_uses_advisory_xact_lock(self):
        session = MagicMock()
        session.execute = AsyncMock()
        service = SeatService(session, entitlements=MagicMock())

        with patch.object(seat_module, "dialect_name", return_value="postgresql"):
            await service._acquire_capacity_lock(WORKSPACE_ID, "cus_1", "seats")

        statement, params = session.execute.call_args.args
        assert "pg_advisory_xact_lock(hashtext(:key))" in str(statement)
        assert params == {"key": f"seats:{WORKSPACE_ID}:cus_1:seats"}


@pytest_asyncio.fixture
async def file_store(tmp_path):
    """File-backed store shared by independent sessions; ``cus_1`` has one ``seats`` seat."""
    engine = get_local_engine(tmp_path / "seats.db")
    await create_local_tables(engine)
    factory = async_sessionmaker(engine, expire_on_commit=False)

    now = datetime.now(UTC)
    async with factory() as session:
        session.add(CustomerTable(id="cus_1", workspace_id=WORKSPACE_ID, email="cus_1@example.com"))
        session.add(
            SubscriptionTable(
                id="sub_1",
                workspace_id=WORKSPACE_ID,
                customer_id="cus_1",
                status="active",
                current_period_start=now - timedelta(days=10),
                current_period_end=now + timedelta(days=20),
                created_at=now,
            )
        )
        await session.flush()
        await EntitlementService(session).grant_entitlement(WORKSPACE_ID, "cus_1", "sub_1", "seats", "1", "number")
        await session.commit()

    yield factory
    await engine.dispose()


async def _assign_in_own_session(factory, user_id: str) -> object:
    """Assign in a fresh session and commit; return the assignment or the seat error."""
    async with factory() as session:
        service = SeatService(session, EntitlementService(session))
        try:
            assignment = await service.assign_seat(WORKSPACE_ID, "cus_1", "seats", user_id)
        except NoSeatsAvailableError as exc:
            await session.rollback()
            return exc
        await session.commit()
        return assignment


class TestConcurrentAssignment:
    @pytest.mark.asyncio
    async def test_race_for_last_seat_has_one_winner(self, file_store):
        results = await asyncio.gather(
            _assign_in_own_session(file_store, "u1"),
            _assign_in_own_session(file_store, "u2"),
        )

        errors = [r for r in results if isinstance(r, NoSeatsAvailableError)]
        winners = [r for r in results if not isinstance(r, NoSeatsAvailableError)]
        assert len(winners) == 1
        assert len(errors) == 1
        assert errors[0].message == "No available seats for seats. 1/1 seats used."

        async with file_store() as session:
            usage = await SeatService(session, EntitlementService(session)).get_seat_usage(
                WORKSPACE_ID, "cus_1", "seats"
            )
        assert usage.used_seats == 1
        assert [a.user_id for a in usage.assignments] == [winners[0].user_id]

    @pytest.mark.asyncio
    async def test_same_user_racing_gets_one_seat(self, file_store):
        first, second = await asyncio.gather(
            _assign_in_own_session(file_store, "u1"),
            _assign_in_own_session(file_store, "u1"),
        )

        assert first.id == second.id
