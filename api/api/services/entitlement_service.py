"""Entitlement resolution with a read-through cache.

Answers "what access does this customer have to this feature" from the
entitlement store, with an :class:`~entitlement_core.cache.EntitlementCache`
in front of it.  Absence of an active grant is an ordinary, cacheable
``has_access=False`` result.

Every mutation (grant, revoke, expiry refresh) drops all cache entries of
each affected customer before returning, and again when the session's
transaction commits or rolls back.  The second pass removes entries a
concurrent reader cached from the pre-commit store.  The cache TTL bounds
staleness for changes made outside this service.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from entitlement_core.cache import EntitlementCache, customer_cache_prefix, entitlement_cache_key
from entitlement_core.errors import CustomerNotFoundError
from entitlement_core.models import (
    CustomerEntitlements,
    EntitlementCheck,
    EntitlementValueType,
    parse_entitlement_value,
)
from entitlement_core.state.repository import (
    CustomerRepository,
    EntitlementRepository,
    SubscriptionRepository,
)
from entitlement_core.state.tables import EntitlementTable
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession

from api.middleware.prometheus import CACHE_REQUESTS_TOTAL

logger = logging.getLogger(__name__)

_PENDING_INVALIDATIONS_KEY = "entitlements.pending_cache_invalidations"
_LISTENER_INFO_KEY = "entitlements.cache_invalidation_listener"


def _drop_pending_invalidations(session: Any) -> None:
    pending: dict[str, EntitlementCache] = session.info.pop(_PENDING_INVALIDATIONS_KEY, {})
    for prefix, cache in pending.items():
        cache.invalidate_prefix(prefix)


def _to_check(row: EntitlementTable) -> EntitlementCheck:
    return EntitlementCheck(
        feature_key=row.feature_key,
        has_access=True,
        value=parse_entitlement_value(row.value, row.value_type),
    )


class EntitlementService:
    """Resolve and mutate entitlement grants.

    Parameters
    ----------
    session:
        Active database session; mutations flush but do not commit.
    cache:
        Shared entitlement cache.  ``None`` disables caching.
    """

    def __init__(self, session: AsyncSession, cache: EntitlementCache | None = None) -> None:
        self._session = session
        self._cache = cache

    # ------------------------------------------------------------------
    # Cache helpers
    # ------------------------------------------------------------------

    def _cache_get(self, key: str) -> object | None:
        if self._cache is None:
            return None
        value = self._cache.get(key)
        CACHE_REQUESTS_TOTAL.labels(result="hit" if value is not None else "miss").inc()
        return value

    def _cache_set(self, key: str, value: object) -> None:
        if self._cache is not None:
            self._cache.set(key, value)

    def invalidate_customer_cache(self, workspace_id: str, customer_id: str) -> int:
        """Drop every cached entry of one customer.  Returns count removed."""
        if self._cache is None:
            return 0
        return self._cache.invalidate_prefix(customer_cache_prefix(workspace_id, customer_id))

    def _invalidate_customers(self, workspace_id: str, customer_ids: Sequence[str]) -> None:
        """Invalidate now and once more when the current transaction ends."""
        if self._cache is None:
            return
        info = self._session.info
        if not info.get(_LISTENER_INFO_KEY):
            sync_session = self._session.sync_session
            event.listen(sync_session, "after_commit", _drop_pending_invalidations)
            event.listen(sync_session, "after_rollback", _drop_pending_invalidations)
            info[_LISTENER_INFO_KEY] = True

        pending: dict[str, EntitlementCache] = info.setdefault(_PENDING_INVALIDATIONS_KEY, {})
        for customer_id in customer_ids:
            self.invalidate_customer_cache(workspace_id, customer_id)
            pending[customer_cache_prefix(workspace_id, customer_id)] = self._cache

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def check_entitlement(self, workspace_id: str, customer_id: str, feature_key: str) -> EntitlementCheck:
        """Resolve one feature for a customer, cache-first."""
        key = entitlement_cache_key(workspace_id, customer_id, feature_key)
        cached = self._cache_get(key)
        if isinstance(cached, EntitlementCheck):
            logger.debug("Entitlement cache hit: %s", key)
            return cached

        repo = EntitlementRepository(self._session, workspace_id)
        row = await repo.find_active(customer_id, feature_key)
        check = _to_check(row) if row is not None else EntitlementCheck.denied(feature_key)
        self._cache_set(key, check)
        return check

    async def check_multiple_entitlements(
        self,
        workspace_id: str,
        customer_id: str,
        feature_keys: Sequence[str],
    ) -> list[EntitlementCheck]:
        """Resolve several features with one store query.

        Results follow the order of *feature_keys*.  The per-feature cache is
        neither read nor written.
        """
        repo = EntitlementRepository(self._session, workspace_id)
        rows = await repo.find_active_many(customer_id, feature_keys)
        # Rows come back oldest-updated first, so the latest grant of a key wins.
        by_key = {row.feature_key: row for row in rows}
        return [
            _to_check(by_key[key]) if key in by_key else EntitlementCheck.denied(key)
            for key in feature_keys
        ]

    async def get_customer_entitlements(self, workspace_id: str, customer_id: str) -> CustomerEntitlements:
        """Every active entitlement of a customer plus the subscriptions granting access.

        Raises
        ------
        CustomerNotFoundError
            If the customer does not exist in the workspace.
        """
        key = entitlement_cache_key(workspace_id, customer_id)
        cached = self._cache_get(key)
        if isinstance(cached, CustomerEntitlements):
            return cached

        if not await CustomerRepository(self._session, workspace_id).exists(customer_id):
            raise CustomerNotFoundError(f"Customer {customer_id} not found")

        rows = await EntitlementRepository(self._session, workspace_id).list_active_for_customer(customer_id)
        subscription_ids = await SubscriptionRepository(self._session, workspace_id).list_active_ids(customer_id)

        result = CustomerEntitlements(
            customer_id=customer_id,
            entitlements=[_to_check(row) for row in rows],
            active_subscription_ids=subscription_ids,
        )
        self._cache_set(key, result)
        return result

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def grant_entitlement(
        self,
        workspace_id: str,
        customer_id: str,
        subscription_id: str,
        feature_key: str,
        value: str,
        value_type: EntitlementValueType | str,
        expires_at: datetime | None = None,
    ) -> EntitlementTable:
        """Create or update the grant of *feature_key* by *subscription_id*."""
        value_type = EntitlementValueType(value_type)
        repo = EntitlementRepository(self._session, workspace_id)
        row = await repo.upsert(
            customer_id=customer_id,
            subscription_id=subscription_id,
            feature_key=feature_key,
            value=value,
            value_type=value_type.value,
            expires_at=expires_at,
        )
        self._invalidate_customers(workspace_id, [customer_id])
        logger.info(
            "Granted entitlement: workspace=%s customer=%s feature=%s value=%s type=%s",
            workspace_id,
            customer_id,
            feature_key,
            value,
            value_type.value,
        )
        return row

    async def revoke_entitlement(self, workspace_id: str, subscription_id: str, feature_key: str) -> int:
        """Remove one feature grant of a subscription.  Returns rows removed."""
        repo = EntitlementRepository(self._session, workspace_id)
        customer_ids = await repo.customer_ids_for_subscription(subscription_id, feature_key)
        removed = await repo.delete(subscription_id, feature_key)
        self._invalidate_customers(workspace_id, customer_ids)
        logger.info(
            "Revoked entitlement: workspace=%s subscription=%s feature=%s removed=%d",
            workspace_id,
            subscription_id,
            feature_key,
            removed,
        )
        return removed

    async def revoke_all_for_subscription(self, workspace_id: str, subscription_id: str) -> int:
        """Remove every grant of a subscription.  Returns rows removed."""
        repo = EntitlementRepository(self._session, workspace_id)
        customer_ids = await repo.customer_ids_for_subscription(subscription_id)
        removed = await repo.delete(subscription_id)
        self._invalidate_customers(workspace_id, customer_ids)
        logger.info(
            "Revoked all entitlements: workspace=%s subscription=%s removed=%d",
            workspace_id,
            subscription_id,
            removed,
        )
        return removed

    async def refresh_expiration_for_subscription(
        self,
        workspace_id: str,
        subscription_id: str,
        new_expires_at: datetime | None,
    ) -> int:
        """Move ``expires_at`` of every grant of a subscription.  Returns rows updated."""
        repo = EntitlementRepository(self._session, workspace_id)
        customer_ids = await repo.customer_ids_for_subscription(subscription_id)
        updated = await repo.update_expires_at(subscription_id, new_expires_at)
        self._invalidate_customers(workspace_id, customer_ids)
        logger.info(
            "Refreshed entitlement expiry: workspace=%s subscription=%s expires_at=%s updated=%d",
            workspace_id,
            subscription_id,
            new_expires_at.isoformat() if new_expires_at else None,
            updated,
        )
        return updated
