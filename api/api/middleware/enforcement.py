"""Declarative entitlement policies for FastAPI routes.

A route states which features it consumes with an explicit
:class:`EnforcementPolicy` value, attached through the
:func:`require_entitlement` dependency factory::

    @router.post("/reports")
    async def create_report(
        decision: Annotated[PolicyDecision, Depends(require_entitlement("reports", increment_from_body="items"))],
    ):
        ...

The policy is evaluated against a plain request context mapping with the
keys ``params``, ``body``, ``query`` and ``state``, so
:func:`evaluate_policy` can also be called from a CLI check or a batch job.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from entitlement_core.errors import AccessDeniedError, EntitlementError
from entitlement_core.models import EnforcementResult
from fastapi import Request

from api.dependencies import EnforcementServiceDep
from api.services.enforcement_service import EnforcementService

logger = logging.getLogger(__name__)

RequestContext = Mapping[str, Any]

_LENGTH = "length"


@dataclass(frozen=True, slots=True)
class EnforcementPolicy:
    """Which features a request consumes and how to enforce them.

    ``block=False`` lets the request proceed on denial; the decision is still
    attached to ``request.state.enforcement_result``.  A fixed
    ``increment_by`` wins over ``increment_from_body``.  ``customer_id_path``
    is a dotted path into the request context, e.g. ``"body.account.id"``.
    """

    features: tuple[str, ...]
    block: bool = True
    increment_by: float | None = None
    increment_from_body: str | None = None
    error_message: str | None = None
    customer_id_path: str | None = None

    def __post_init__(self) -> None:
        features = (self.features,) if isinstance(self.features, str) else tuple(self.features)
        if not features:
            raise ValueError("EnforcementPolicy requires at least one feature")
        object.__setattr__(self, "features", features)


@dataclass(slots=True)
class PolicyDecision:
    """Outcome of :func:`evaluate_policy`.

    ``allowed`` says whether the request may proceed; with ``block=False`` it
    is always ``True``.  ``error`` is the exception to raise when it may not.
    """

    allowed: bool
    results: list[EnforcementResult] = field(default_factory=list)
    message: str | None = None
    error: AccessDeniedError | None = None

    @property
    def attachment(self) -> EnforcementResult | list[EnforcementResult] | None:
        """The single result for one-feature policies, else the list."""
        if len(self.results) == 1:
            return self.results[0]
        return self.results or None


# ---------------------------------------------------------------------------
# Request context resolution
# ---------------------------------------------------------------------------


def resolve_path(obj: Any, path: str | None) -> Any:
    """Walk a dotted *path* through nested mappings and lists.

    * mapping segment -> key lookup
    * list segment ``length`` -> the list's length
    * list segment of digits -> index
    Anything else, or a missing step, yields ``None``.
    """
    if not path:
        return None
    current = obj
    for part in path.split("."):
        if current is None:
            return None
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, (list, tuple)):
            if part == _LENGTH:
                current = len(current)
            elif part.isdigit() and int(part) < len(current):
                current = current[int(part)]
            else:
                return None
        else:
            return None
    return current


def resolve_increment(policy: EnforcementPolicy, body: Any) -> float:
    """Units the request consumes: fixed, else taken from the body, else 1.

    A list in the body counts its items; a number is used as-is.
    """
    if policy.increment_by is not None:
        return policy.increment_by
    if policy.increment_from_body:
        value = resolve_path(body, policy.increment_from_body)
        if isinstance(value, (list, tuple)):
            return len(value)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return value
    return 1


def _non_empty_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def resolve_workspace_id(context: RequestContext) -> str | None:
    """Workspace from request state (set by an auth layer), else the path parameter."""
    state = context.get("state") or {}
    params = context.get("params") or {}
    return _non_empty_str(state.get("workspace_id")) or _non_empty_str(params.get("workspace_id"))


def resolve_customer_id(context: RequestContext, policy: EnforcementPolicy) -> str | None:
    if policy.customer_id_path:
        return _non_empty_str(resolve_path(context, policy.customer_id_path))

    for section in ("params", "body", "query"):
        source = context.get(section)
        if isinstance(source, Mapping):
            customer_id = _non_empty_str(source.get("customer_id"))
            if customer_id:
                return customer_id
    return None


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


async def evaluate_policy(
    policy: EnforcementPolicy,
    context: RequestContext,
    service: EnforcementService,
) -> PolicyDecision:
    """Evaluate *policy* for the request described by *context*.

    Engine denials are returned as a decision carrying the error, never
    raised.  Store failures propagate.
    """
    workspace_id = resolve_workspace_id(context)
    if workspace_id is None:
        message = "Workspace context required for enforcement"
        return PolicyDecision(allowed=False, message=message, error=AccessDeniedError(message))

    customer_id = resolve_customer_id(context, policy)
    if customer_id is None:
        message = "Customer ID required for enforcement"
        return PolicyDecision(allowed=False, message=message, error=AccessDeniedError(message))

    increment = resolve_increment(policy, context.get("body"))

    if len(policy.features) == 1:
        try:
            result = await service.enforce(
                workspace_id,
                customer_id,
                policy.features[0],
                throw_on_exceeded=policy.block,
                increment_by=increment,
                error_message=policy.error_message,
            )
        except AccessDeniedError as exc:
            return PolicyDecision(allowed=False, results=[exc.result], message=exc.message, error=exc)
        return PolicyDecision(allowed=True, results=[result], message=result.message)

    results = await service.enforce_multiple(workspace_id, customer_id, policy.features, increment_by=increment)
    if policy.block and service.any_exceeded(results):
        exceeded = service.get_exceeded(results)
        message = policy.error_message or "Limit exceeded for: " + ", ".join(r.feature_key for r in exceeded)
        return PolicyDecision(
            allowed=False,
            results=results,
            message=message,
            error=AccessDeniedError(message, result=results),
        )
    return PolicyDecision(allowed=True, results=results)


# ---------------------------------------------------------------------------
# FastAPI binding
# ---------------------------------------------------------------------------


async def _json_body(request: Request) -> Any:
    if request.method in ("GET", "HEAD", "DELETE", "OPTIONS"):
        return None
    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None


async def build_request_context(request: Request) -> dict[str, Any]:
    """Collect path params, JSON body, query params and state into a context mapping."""
    state = {"workspace_id": getattr(request.state, "workspace_id", None)}
    return {
        "params": dict(request.path_params),
        "body": await _json_body(request),
        "query": dict(request.query_params),
        "state": state,
    }


def require_entitlement(
    features: str | Sequence[str],
    *,
    block: bool = True,
    increment_by: float | None = None,
    increment_from_body: str | None = None,
    error_message: str | None = None,
    customer_id_path: str | None = None,
) -> Any:
    """Return a FastAPI dependency that enforces an :class:`EnforcementPolicy`.

    The decision's result (one feature) or results (several) are attached to
    ``request.state.enforcement_result``, also when access is allowed.  A
    blocking denial, or a request without workspace or customer context,
    raises an :class:`AccessDeniedError` rendered as HTTP 403.

    Usage::

        @router.post("/exports")
        async def export(_decision: Annotated[PolicyDecision, Depends(require_entitlement("exports"))]):
            ...
    """
    policy = EnforcementPolicy(
        features=(features,) if isinstance(features, str) else tuple(features),
        block=block,
        increment_by=increment_by,
        increment_from_body=increment_from_body,
        error_message=error_message,
        customer_id_path=customer_id_path,
    )

    async def _enforce(request: Request, service: EnforcementServiceDep) -> PolicyDecision:
        context = await build_request_context(request)
        decision = await evaluate_policy(policy, context, service)
        request.state.enforcement_result = decision.attachment
        if not decision.allowed:
            error: EntitlementError = decision.error or AccessDeniedError(decision.message or "Access denied")
            raise error
        return decision

    _enforce.policy = policy  # type: ignore[attr-defined]
    return _enforce
