"""Enforcement evaluator: allow/deny decisions over resolved entitlements.

Per value type:

* no active entitlement -> denied (:class:`NoEntitlementError`)
* ``boolean``           -> allowed iff enabled; the ledger is not consulted
  (:class:`FeatureDisabledError` when off)
* ``unlimited`` / +inf  -> always allowed; ``limit`` and ``remaining`` are +inf
* ``number``            -> allowed iff ``current_usage + increment <= limit``
  (:class:`LimitExceededError` otherwise)
* ``string``            -> allowed; the value is informational

Numeric limits are soft: two concurrent calls may both observe usage below
the limit and both pass, overshooting once both usages are recorded.  This
is accepted admission-control behaviour.  Seat capacity, which must never
overshoot, is enforced by :class:`~api.services.seat_service.SeatService`.

Current usage is read over the accounting window of the customer's most
recent ``active``/``trialing`` subscription, falling back to the UTC
calendar month containing "now".
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from datetime import UTC, datetime

from entitlement_core.errors import (
    AccessDeniedError,
    FeatureDisabledError,
    LimitExceededError,
    NoEntitlementError,
)
from entitlement_core.metering import UsageEventInput
from entitlement_core.models import (
    BooleanValue,
    EnforcementResult,
    FeatureUsage,
    NumberValue,
    format_quantity,
    is_unlimited,
)
from entitlement_core.state.repository import SubscriptionRepository
from sqlalchemy.ext.asyncio import AsyncSession

from api.middleware.prometheus import ENFORCEMENT_DECISIONS_TOTAL
from api.services.entitlement_service import EntitlementService
from api.services.usage_service import UsageLedger

logger = logging.getLogger(__name__)


def calendar_month_window(now: datetime) -> tuple[datetime, datetime]:
    """Return ``[first of month, first of next month)`` in UTC for *now*."""
    now = now.astimezone(UTC)
    start = datetime(now.year, now.month, 1, tzinfo=UTC)
    if now.month == 12:
        end = datetime(now.year + 1, 1, 1, tzinfo=UTC)
    else:
        end = datetime(now.year, now.month + 1, 1, tzinfo=UTC)
    return start, end


def _percent_used(current_usage: float, limit: float) -> int | None:
    if not limit > 0 or not math.isfinite(limit):
        return None
    # Half-up rounding.
    return int(math.floor(current_usage * 100 / limit + 0.5))


class EnforcementService:
    """Evaluate and record metered or gated actions for one customer at a time.

    Parameters
    ----------
    session:
        Active database session shared with the resolver and the ledger.
    entitlements:
        The resolver consulted for every decision.
    ledger:
        Usage ledger for current consumption and recording.
    """

    def __init__(
        self,
        session: AsyncSession,
        entitlements: EntitlementService,
        ledger: UsageLedger,
    ) -> None:
        self._session = session
        self._entitlements = entitlements
        self._ledger = ledger

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    async def enforce(
        self,
        workspace_id: str,
        customer_id: str,
        feature_key: str,
        *,
        throw_on_exceeded: bool = True,
        increment_by: float = 1,
        error_message: str | None = None,
    ) -> EnforcementResult:
        """Decide whether the customer may consume *increment_by* units of *feature_key*.

        Parameters
        ----------
        throw_on_exceeded:
            When ``True`` a denial raises an :class:`AccessDeniedError`
            subclass carrying the result; otherwise the result is returned
            with ``allowed=False`` and the same message.
        increment_by:
            Units the pending action would consume (numeric features only).
        error_message:
            Replaces the default denial message.

        Returns
        -------
        EnforcementResult
            The decision, with usage numbers for numeric features.
        """
        check = await self._entitlements.check_entitlement(workspace_id, customer_id, feature_key)
        value = check.value
        error_cls: type[AccessDeniedError] | None = None

        if not check.has_access:
            result = EnforcementResult(
                allowed=False,
                feature_key=feature_key,
                entitlement=check,
                message=error_message or f"Access denied: no entitlement for {feature_key}",
            )
            error_cls = NoEntitlementError

        elif isinstance(value, BooleanValue):
            result = EnforcementResult(allowed=value.enabled, feature_key=feature_key, entitlement=check)
            if not value.enabled:
                result.message = error_message or f"Feature {feature_key} is disabled"
                error_cls = FeatureDisabledError

        elif is_unlimited(value):
            result = EnforcementResult(
                allowed=True,
                feature_key=feature_key,
                entitlement=check,
                limit=math.inf,
                remaining=math.inf,
            )

        elif isinstance(value, NumberValue):
            limit = value.limit
            current_usage = await self.get_current_usage(workspace_id, customer_id, feature_key)
            allowed = current_usage + increment_by <= limit
            result = EnforcementResult(
                allowed=allowed,
                feature_key=feature_key,
                entitlement=check,
                current_usage=current_usage,
                limit=limit,
                remaining=max(0.0, limit - current_usage),
            )
            if not allowed:
                result.message = error_message or (
                    f"Limit exceeded for {feature_key}: "
                    f"{format_quantity(current_usage)}/{format_quantity(limit)} used"
                )
                error_cls = LimitExceededError

        else:
            result = EnforcementResult(allowed=True, feature_key=feature_key, entitlement=check)

        value_type = check.value_type.value if check.value_type is not None else "none"
        ENFORCEMENT_DECISIONS_TOTAL.labels(
            outcome="allowed" if result.allowed else "denied",
            value_type=value_type,
        ).inc()

        if not result.allowed:
            logger.warning(
                "Enforcement denied: workspace=%s customer=%s feature=%s type=%s usage=%s limit=%s",
                workspace_id,
                customer_id,
                feature_key,
                value_type,
                result.current_usage,
                result.limit,
                extra={"workspace_id": workspace_id, "customer_id": customer_id, "feature_key": feature_key},
            )
            if throw_on_exceeded and error_cls is not None:
                raise error_cls(result.message or "", result=result)

        return result

    async def enforce_multiple(
        self,
        workspace_id: str,
        customer_id: str,
        feature_keys: Sequence[str],
        *,
        increment_by: float = 1,
        error_message: str | None = None,
    ) -> list[EnforcementResult]:
        """Evaluate each feature independently in soft mode.  Never raises on denial."""
        # Sequential: the features share one AsyncSession.
        return [
            await self.enforce(
                workspace_id,
                customer_id,
                feature_key,
                throw_on_exceeded=False,
                increment_by=increment_by,
                error_message=error_message,
            )
            for feature_key in feature_keys
        ]

    @staticmethod
    def any_exceeded(results: Sequence[EnforcementResult]) -> bool:
        return any(not r.allowed for r in results)

    @staticmethod
    def get_exceeded(results: Sequence[EnforcementResult]) -> list[EnforcementResult]:
        return [r for r in results if not r.allowed]

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def record_usage(
        self,
        workspace_id: str,
        customer_id: str,
        feature_key: str,
        quantity: float = 1,
        subscription_id: str | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> str:
        """Append one usage event for *feature_key*.  Returns the event id.

        Without an explicit *idempotency_key* one is derived from the
        customer, the feature and the event timestamp.
        """
        timestamp = datetime.now(UTC)
        if idempotency_key is None:
            micros = int(timestamp.timestamp() * 1_000_000)
            idempotency_key = f"{customer_id}:{feature_key}:{micros}"

        result = await self._ledger.ingest_event(
            workspace_id,
            UsageEventInput(
                customer_id=customer_id,
                subscription_id=subscription_id,
                metric_key=feature_key,
                quantity=quantity,
                idempotency_key=idempotency_key,
                timestamp=timestamp,
            ),
        )
        return result.id

    async def enforce_and_record(
        self,
        workspace_id: str,
        customer_id: str,
        feature_key: str,
        quantity: float = 1,
        subscription_id: str | None = None,
        *,
        throw_on_exceeded: bool = True,
        error_message: str | None = None,
        idempotency_key: str | None = None,
    ) -> EnforcementResult:
        """Enforce with ``increment_by=quantity`` and record the usage only when allowed."""
        result = await self.enforce(
            workspace_id,
            customer_id,
            feature_key,
            throw_on_exceeded=throw_on_exceeded,
            increment_by=quantity,
            error_message=error_message,
        )
        if result.allowed:
            await self.record_usage(
                workspace_id,
                customer_id,
                feature_key,
                quantity,
                subscription_id,
                idempotency_key=idempotency_key,
            )
        return result

    # ------------------------------------------------------------------
    # Usage reads
    # ------------------------------------------------------------------

    async def get_current_period(self, workspace_id: str, customer_id: str) -> tuple[datetime, datetime]:
        """Accounting window: latest active subscription's period, else the current UTC month."""
        subscription = await SubscriptionRepository(self._session, workspace_id).get_latest_active(customer_id)
        if subscription is None:
            return calendar_month_window(datetime.now(UTC))
        return subscription.current_period_start, subscription.current_period_end

    async def get_current_usage(self, workspace_id: str, customer_id: str, metric_key: str) -> float:
        period_start, period_end = await self.get_current_period(workspace_id, customer_id)
        summary = await self._ledger.get_usage_summary(
            workspace_id,
            customer_id,
            metric_key,
            period_start,
            period_end,
        )
        return summary.total_quantity

    async def get_usage_summary(self, workspace_id: str, customer_id: str) -> list[FeatureUsage]:
        """Current-period usage of every ``number``/``unlimited`` feature of the customer.

        Raises :class:`~entitlement_core.errors.CustomerNotFoundError` for an
        unknown customer.
        """
        customer = await self._entitlements.get_customer_entitlements(workspace_id, customer_id)
        summaries: list[FeatureUsage] = []
        for check in customer.entitlements:
            value = check.value
            if not isinstance(value, NumberValue) and not is_unlimited(value):
                continue

            current_usage = await self.get_current_usage(workspace_id, customer_id, check.feature_key)
            if is_unlimited(value):
                summaries.append(
                    FeatureUsage(
                        feature_key=check.feature_key,
                        current_usage=current_usage,
                        limit=None,
                        remaining=None,
                        percent_used=None,
                    )
                )
                continue

            limit = value.limit
            summaries.append(
                FeatureUsage(
                    feature_key=check.feature_key,
                    current_usage=current_usage,
                    limit=limit,
                    remaining=max(0.0, limit - current_usage),
                    percent_used=_percent_used(current_usage, limit),
                )
            )
        return summaries
