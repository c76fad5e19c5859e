"""Usage ledger event types.

Usage events record metered consumption per customer and metric.  The
enforcement evaluator reads period totals from them and appends one event
per allowed, recorded action.
"""

from entitlement_core.metering.events import IngestResult, UsageEventInput, UsageSummary

__all__ = ["IngestResult", "UsageEventInput", "UsageSummary"]
