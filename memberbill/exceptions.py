"""Errors raised by memberbill.

Each error keeps its message separate from a flat ``context`` dict so the
details can be handed to structlog as fields:

    try:
        decision = router.route_payment(candidate, positions)
    except ThresholdExceededError as e:
        logger.error("routing_failed", error=e.message, **e.context)

Subclasses declare the keyword details they accept in ``detail_keys``;
``None`` details are left out of the context and ``Decimal`` amounts are
stored as strings so they serialise exactly.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, ClassVar


class MemberBillError(Exception):
    """Root of the hierarchy.

    Attributes:
        message: Human-readable description
        context: Structured details for logs and the CLI
        original_error: Third-party exception this one wraps, if any
    """

    detail_keys: ClassVar[tuple[str, ...]] = ()
    context_aliases: ClassVar[dict[str, str]] = {}

    def __init__(
        self,
        message: str,
        *,
        context: dict[str, Any] | None = None,
        original_error: Exception | None = None,
        **details: Any,
    ) -> None:
        unexpected = sorted(set(details) - set(self.detail_keys))
        if unexpected:
            raise TypeError(f"{type(self).__name__} got unexpected details: {unexpected}")

        super().__init__(message)
        self.message = message
        self.original_error = original_error
        self.context = dict(context or {})
        for key in self.detail_keys:
            value = details.get(key)
            if value is not None:
                self.context[self.context_aliases.get(key, key)] = self._render(key, value)

    def _render(self, key: str, value: Any) -> Any:
        return str(value) if isinstance(value, Decimal) else value

    def __str__(self) -> str:
        text = self.message
        if self.context:
            text += " (" + ", ".join(f"{k}={v}" for k, v in self.context.items()) + ")"
        if self.original_error is not None:
            text += f" [caused by: {type(self.original_error).__name__}]"
        return text

    def __repr__(self) -> str:
        return f"{type(self).__name__}(message={self.message!r}, context={self.context!r})"


# Input and setup


class ValidationError(MemberBillError):
    """Malformed input: reversed pause intervals, negative prices, bad amounts.

    These are caller bugs and are expected to fail loudly.
    """

    detail_keys = ("field", "value", "constraint")

    def _render(self, key: str, value: Any) -> Any:
        return str(value)[:100] if key == "value" else super()._render(key, value)


class ConfigurationError(MemberBillError):
    """Invalid settings or entity setup.

    An entity with a non-positive VAT threshold is logged with this error and
    left out of routing; it never aborts a batch.
    """

    detail_keys = ("setting", "expected", "entity_id")


# Persistence


class DatabaseError(MemberBillError):
    pass


class RecordNotFoundError(DatabaseError):
    detail_keys = ("entity_type", "entity_id")

    def _render(self, key: str, value: Any) -> Any:
        return str(value) if key == "entity_id" else super()._render(key, value)


class StaleStateError(DatabaseError):
    """A guarded update matched no row because another writer got there first."""


# Business rules


class BusinessLogicError(MemberBillError):
    pass


class ThresholdExceededError(BusinessLogicError):
    """No entity can take the payment and keep its safety buffer.

    Routing stops here and a person has to decide.

    Attributes:
        entity_id: Entity that came closest to qualifying
        shortfall: How much headroom that entity was missing
        amount: The payment being routed
    """

    detail_keys = ("entity_id", "shortfall", "amount")
    context_aliases = {"entity_id": "closest_entity_id"}

    def __init__(
        self,
        message: str,
        *,
        entity_id: int | None = None,
        shortfall: Decimal | None = None,
        amount: Decimal | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            message, entity_id=entity_id, shortfall=shortfall, amount=amount, **kwargs
        )
        self.entity_id = entity_id
        self.shortfall = shortfall
        self.amount = amount


class PauseWindowStateError(BusinessLogicError):
    """A pause window action that its current status does not allow."""

    detail_keys = ("window_id", "current_state", "attempted_action")


class AlreadyAppliedError(PauseWindowStateError):
    """The window's credit has already been settled."""


# Billing processor


class IntegrationError(MemberBillError):
    pass


class ExternalServiceError(IntegrationError):
    """The billing processor rejected or failed a call.

    In the daily batch this fails only the window being processed; the next
    run retries it.
    """

    detail_keys = ("operation", "reference")


class TimeoutError(ExternalServiceError):
    """A billing call did not answer within the configured timeout."""


def wrap_exception(
    error: Exception,
    message: str,
    *,
    exception_class: type[MemberBillError] = MemberBillError,
    **context: Any,
) -> MemberBillError:
    """Translate a third-party exception into a memberbill one.

    Example:
        try:
            stripe.Subscription.modify(ref, pause_collection="")
        except stripe.StripeError as e:
            raise wrap_exception(
                e, "Failed to resume collection", exception_class=ExternalServiceError,
                reference=ref,
            ) from e
    """
    return exception_class(message, context=context, original_error=error)


__all__ = [
    "MemberBillError",
    "ValidationError",
    "ConfigurationError",
    "DatabaseError",
    "RecordNotFoundError",
    "StaleStateError",
    "BusinessLogicError",
    "ThresholdExceededError",
    "PauseWindowStateError",
    "AlreadyAppliedError",
    "IntegrationError",
    "ExternalServiceError",
    "TimeoutError",
    "wrap_exception",
]
