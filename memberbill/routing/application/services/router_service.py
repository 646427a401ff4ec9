"""Entity router.

Selects the single business entity a new payment or subscription is
attributed to. Selection is a pure, deterministic function of the revenue
positions and the candidate; persisting the result is the caller's job
(see ``RoutingAssignmentService``).
"""

from collections.abc import Sequence
from datetime import datetime
from decimal import Decimal

from memberbill.exceptions import ConfigurationError, RecordNotFoundError, ThresholdExceededError
from memberbill.routing.application.services.position_service import RevenuePositionService
from memberbill.routing.domain.enums import (
    RiskLevel,
    RoutingConfidence,
    RoutingMethod,
    RoutingReason,
)
from memberbill.routing.domain.value_objects import (
    RevenuePosition,
    RoutingCandidate,
    RoutingDecision,
)
from memberbill.routing.infrastructure.repository import BusinessEntityRepository
from memberbill.utils.config import Settings, get_settings
from memberbill.utils.logging import get_logger

logger = get_logger(__name__)


class EntityRouterService:
    """Routes candidates to entities without ever breaching a threshold.

    An entity qualifies for a candidate only when
    ``headroom - amount >= safety_buffer``. When nothing qualifies the
    router raises ``ThresholdExceededError``; there is no fallback.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        position_service: RevenuePositionService | None = None,
        entity_repository: BusinessEntityRepository | None = None,
    ):
        """Initialize the router.

        Args:
            settings: Safety buffer, plan preferences and confidence bands
            position_service: Used when positions are not passed in
            entity_repository: Source of ACTIVE entities for the above
        """
        self.settings = settings or get_settings()
        self.position_service = position_service
        self.entity_repository = entity_repository

    def current_positions(self, as_of: datetime | None = None) -> list[RevenuePosition]:
        """Fresh positions for all ACTIVE entities, without writing snapshots."""
        if self.position_service is None or self.entity_repository is None:
            raise ConfigurationError(
                "current_positions requires a position service and an entity repository",
                setting="position_service",
            )
        return self.position_service.calculate_positions(
            self.entity_repository.find_active(), as_of=as_of, persist=False
        )

    def safety_buffer(self, position: RevenuePosition) -> Decimal:
        return self.settings.safety_buffer_for(position.vat_threshold)

    def route_payment(
        self,
        candidate: RoutingCandidate,
        positions: Sequence[RevenuePosition] | None = None,
        *,
        override_entity_id: int | None = None,
        override_reason: str | None = None,
        as_of: datetime | None = None,
    ) -> RoutingDecision:
        """Pick exactly one entity for ``candidate``.

        Args:
            candidate: Amount and plan key to route
            positions: Precomputed positions (computed fresh when None)
            override_entity_id: Admin-forced entity, bypassing selection
            override_reason: Free text stored with an override
            as_of: Evaluation time when positions are computed here

        Returns:
            The routing decision

        Raises:
            ThresholdExceededError: No entity can take the amount
            RecordNotFoundError: The override entity has no position
        """
        if positions is None:
            positions = self.current_positions(as_of)

        if override_entity_id is not None:
            return self._route_override(candidate, positions, override_entity_id, override_reason)

        qualifying = [
            p for p in positions if p.qualifies(candidate.amount, self.safety_buffer(p))
        ]
        qualifying_ids = tuple(sorted(p.entity_id for p in qualifying))

        if not qualifying:
            raise self._threshold_error(candidate, positions)

        preferred = self._first_qualifying_preferred(candidate, qualifying)
        if preferred is not None:
            decision = RoutingDecision(
                selected_entity_id=preferred.entity_id,
                entity_code=preferred.entity_code,
                reason=RoutingReason.PREFERRED_ENTITY,
                method=RoutingMethod.SERVICE_PREFERENCE,
                confidence=RoutingConfidence.HIGH,
                headroom_after=preferred.margin_after(candidate.amount),
                available_entity_ids=qualifying_ids,
            )
        else:
            selected = min(qualifying, key=lambda p: (-p.headroom, p.entity_id))
            decision = RoutingDecision(
                selected_entity_id=selected.entity_id,
                entity_code=selected.entity_code,
                reason=RoutingReason.MAX_HEADROOM,
                method=RoutingMethod.HEADROOM_OPTIMIZED,
                confidence=self._confidence(selected, len(qualifying)),
                headroom_after=selected.margin_after(candidate.amount),
                available_entity_ids=qualifying_ids,
            )

        logger.info(
            "entity_routed",
            entity_id=decision.selected_entity_id,
            entity_code=decision.entity_code,
            amount=str(candidate.amount),
            plan_key=candidate.plan_key,
            reason=decision.reason.value,
            confidence=decision.confidence.value,
            qualifying=len(qualifying),
        )
        return decision

    def _first_qualifying_preferred(
        self, candidate: RoutingCandidate, qualifying: Sequence[RevenuePosition]
    ) -> RevenuePosition | None:
        by_code = {p.entity_code: p for p in qualifying}
        for code in self.settings.preferred_entities_for(candidate.plan_key):
            if code in by_code:
                return by_code[code]
        return None

    def _confidence(self, selected: RevenuePosition, qualifying_count: int) -> RoutingConfidence:
        if qualifying_count == 1:
            return RoutingConfidence.FORCED

        headroom = selected.headroom
        risk = selected.risk_level
        if headroom > self.settings.confidence_high_headroom and risk == RiskLevel.LOW:
            return RoutingConfidence.HIGH
        if headroom > self.settings.confidence_medium_headroom and risk in (
            RiskLevel.LOW,
            RiskLevel.MEDIUM,
        ):
            return RoutingConfidence.MEDIUM
        if headroom > self.settings.confidence_low_headroom and risk != RiskLevel.CRITICAL:
            return RoutingConfidence.MEDIUM
        return RoutingConfidence.LOW

    def _threshold_error(
        self, candidate: RoutingCandidate, positions: Sequence[RevenuePosition]
    ) -> ThresholdExceededError:
        if not positions:
            logger.error("routing_failed_no_entities", amount=str(candidate.amount))
            return ThresholdExceededError(
                "No active, correctly configured entity is available for routing",
                amount=candidate.amount,
            )

        closest = min(
            positions,
            key=lambda p: (p.shortfall(candidate.amount, self.safety_buffer(p)), p.entity_id),
        )
        shortfall = closest.shortfall(candidate.amount, self.safety_buffer(closest))
        logger.error(
            "routing_failed_threshold_exceeded",
            amount=str(candidate.amount),
            plan_key=candidate.plan_key,
            closest_entity_id=closest.entity_id,
            shortfall=str(shortfall),
        )
        return ThresholdExceededError(
            f"No entity can absorb {candidate.amount} without breaching its safety buffer; "
            f"closest is {closest.entity_code} (short by {shortfall})",
            entity_id=closest.entity_id,
            shortfall=shortfall,
            amount=candidate.amount,
        )

    def _route_override(
        self,
        candidate: RoutingCandidate,
        positions: Sequence[RevenuePosition],
        entity_id: int,
        reason: str | None,
    ) -> RoutingDecision:
        position = next((p for p in positions if p.entity_id == entity_id), None)
        if position is None:
            raise RecordNotFoundError(
                "Override entity is not active or not correctly configured",
                entity_type="BusinessEntity",
                entity_id=entity_id,
            )

        # An override may eat into the safety buffer but never past the threshold
        if position.margin_after(candidate.amount) < 0:
            shortfall = -position.margin_after(candidate.amount)
            raise ThresholdExceededError(
                f"Override to {position.entity_code} would exceed its VAT threshold",
                entity_id=entity_id,
                shortfall=shortfall,
                amount=candidate.amount,
            )

        logger.warning(
            "entity_routed_by_override",
            entity_id=entity_id,
            amount=str(candidate.amount),
            override_reason=reason,
        )
        return RoutingDecision(
            selected_entity_id=position.entity_id,
            entity_code=position.entity_code,
            reason=RoutingReason.ADMIN_OVERRIDE,
            method=RoutingMethod.MANUAL_OVERRIDE,
            confidence=RoutingConfidence.FORCED,
            headroom_after=position.margin_after(candidate.amount),
            available_entity_ids=(position.entity_id,),
            override_reason=reason,
        )
