"""Entitlement value model and resolver/evaluator result records.

Entitlement values are stored as text alongside a ``value_type`` tag.  The
text is parsed exactly once, where a row leaves the store, into one of four
closed variants.  Downstream code branches on the variant type and never
re-parses strings.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum


class EntitlementValueType(str, Enum):
    """How the stored text value of an entitlement is interpreted."""

    BOOLEAN = "boolean"
    NUMBER = "number"
    STRING = "string"
    UNLIMITED = "unlimited"


# ---------------------------------------------------------------------------
# Value variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class BooleanValue:
    """An on/off feature gate."""

    enabled: bool

    @property
    def value_type(self) -> EntitlementValueType:
        return EntitlementValueType.BOOLEAN

    @property
    def raw(self) -> bool:
        return self.enabled


@dataclass(frozen=True, slots=True)
class NumberValue:
    """A numeric quota (usage limit or seat capacity)."""

    limit: float

    @property
    def value_type(self) -> EntitlementValueType:
        return EntitlementValueType.NUMBER

    @property
    def raw(self) -> float:
        return self.limit


@dataclass(frozen=True, slots=True)
class UnlimitedValue:
    """No limit at all."""

    @property
    def value_type(self) -> EntitlementValueType:
        return EntitlementValueType.UNLIMITED

    @property
    def raw(self) -> float:
        return math.inf


@dataclass(frozen=True, slots=True)
class StringValue:
    """Informational value such as a tier name."""

    text: str

    @property
    def value_type(self) -> EntitlementValueType:
        return EntitlementValueType.STRING

    @property
    def raw(self) -> str:
        return self.text


EntitlementValue = BooleanValue | NumberValue | UnlimitedValue | StringValue


def parse_entitlement_value(raw: str, value_type: EntitlementValueType | str) -> EntitlementValue:
    """Parse the stored text of an entitlement according to its type tag.

    * ``boolean``   -> ``raw == "true"`` (literal comparison, case-sensitive)
    * ``number``    -> ``float(raw)``; unparsable text becomes NaN, which
      fails every ``<=`` comparison and therefore never allows usage
    * ``unlimited`` -> :class:`UnlimitedValue` regardless of the text
    * ``string``    -> the text verbatim
    """
    value_type = EntitlementValueType(value_type)
    if value_type is EntitlementValueType.BOOLEAN:
        return BooleanValue(enabled=raw == "true")
    if value_type is EntitlementValueType.NUMBER:
        try:
            limit = float(raw)
        except (TypeError, ValueError):
            limit = math.nan
        return NumberValue(limit=limit)
    if value_type is EntitlementValueType.UNLIMITED:
        return UnlimitedValue()
    return StringValue(text=raw)


def is_unlimited(value: EntitlementValue | None) -> bool:
    """True for :class:`UnlimitedValue` and for a number stored as positive infinity."""
    if isinstance(value, UnlimitedValue):
        return True
    return isinstance(value, NumberValue) and value.limit == math.inf


# ---------------------------------------------------------------------------
# Resolver results
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class EntitlementCheck:
    """Answer to "what access does this customer have to this feature".

    ``has_access=False`` is a normal, cacheable result and carries no value.
    """

    feature_key: str
    has_access: bool
    value: EntitlementValue | None = None

    @property
    def value_type(self) -> EntitlementValueType | None:
        return self.value.value_type if self.value is not None else None

    @classmethod
    def denied(cls, feature_key: str) -> EntitlementCheck:
        return cls(feature_key=feature_key, has_access=False)


@dataclass(frozen=True, slots=True)
class CustomerEntitlements:
    """Every active entitlement of a customer plus the subscriptions granting them."""

    customer_id: str
    entitlements: list[EntitlementCheck] = field(default_factory=list)
    active_subscription_ids: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Evaluator results
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class EnforcementResult:
    """Outcome of a single enforcement decision.

    ``current_usage``, ``limit`` and ``remaining`` are populated for numeric
    entitlements; ``limit`` and ``remaining`` are ``math.inf`` for unlimited
    ones.  ``message`` is set whenever ``allowed`` is ``False``.
    """

    allowed: bool
    feature_key: str
    entitlement: EntitlementCheck
    current_usage: float | None = None
    limit: float | None = None
    remaining: float | None = None
    message: str | None = None


@dataclass(frozen=True, slots=True)
class FeatureUsage:
    """Usage of one metered feature in the current accounting period.

    ``limit``, ``remaining`` and ``percent_used`` are ``None`` for unlimited
    features.
    """

    feature_key: str
    current_usage: float
    limit: float | None
    remaining: float | None
    percent_used: int | None


def format_quantity(value: float) -> str:
    """Render a quantity for messages: ``995.0`` -> ``"995"``, ``2.5`` -> ``"2.5"``."""
    if math.isfinite(value) and value == int(value):
        return str(int(value))
    return str(value)
