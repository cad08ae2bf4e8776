"""
Plan Service - Single source of truth for subscription feature gating
"""

from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any
from types import MappingProxyType
import logging

from reviewflow.core.errors import PlanRestrictedError

logger = logging.getLogger(__name__)

UNLIMITED = -1

# Unknown plan ids resolve here; must stay the most restrictive plan
DEFAULT_PLAN_ID = "basic"


@dataclass(frozen=True)
class PlanFeatures:
    review_sync: bool
    ai_replies: bool
    auto_approval: bool
    custom_voice: bool
    advanced_insights: bool
    bulk_operations: bool
    auto_sync: bool


@dataclass(frozen=True)
class PlanLimits:
    max_reviews_per_sync: int
    max_businesses: int
    max_replies_per_month: int
    sync_frequency: str  # never, manual, daily
    max_bulk_actions: int


@dataclass(frozen=True)
class PlanCapabilities:
    """Feature and limit matrix for one plan"""
    plan_id: str
    features: PlanFeatures
    limits: PlanLimits
    # True when the requested plan id was not recognised
    is_fallback: bool = False

    def has_feature(self, feature: str) -> bool:
        return bool(getattr(self.features, feature, False))

    def limit(self, name: str) -> int:
        value = getattr(self.limits, name, 0)
        return value if isinstance(value, int) else 0

    def is_unlimited(self, name: str) -> bool:
        return self.limit(name) == UNLIMITED

    def within_limit(self, name: str, used: int, requested: int = 1) -> bool:
        """Check whether `requested` more units fit under the limit"""
        if self.is_unlimited(name):
            return True
        return used + requested <= self.limit(name)

    def require_feature(self, feature: str) -> None:
        if not self.has_feature(feature):
            raise PlanRestrictedError(
                f"Feature '{feature}' is not available on the {self.plan_id} plan",
                plan_id=self.plan_id,
                feature=feature,
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan": self.plan_id,
            "features": asdict(self.features),
            "limits": asdict(self.limits),
        }


PLAN_CONFIGS = MappingProxyType({
    "basic": PlanCapabilities(
        plan_id="basic",
        features=PlanFeatures(
            review_sync=False,
            ai_replies=False,
            auto_approval=False,
            custom_voice=False,
            advanced_insights=False,
            bulk_operations=False,
            auto_sync=False,
        ),
        limits=PlanLimits(
            max_reviews_per_sync=UNLIMITED,
            max_businesses=1,
            max_replies_per_month=0,
            sync_frequency="never",
            max_bulk_actions=0,
        ),
    ),
    "starter": PlanCapabilities(
        plan_id="starter",
        features=PlanFeatures(
            review_sync=True,
            ai_replies=True,
            auto_approval=False,  # Manual approval only
            custom_voice=False,
            advanced_insights=False,
            bulk_operations=True,
            auto_sync=False,
        ),
        limits=PlanLimits(
            max_reviews_per_sync=UNLIMITED,
            max_businesses=1,
            max_replies_per_month=200,
            sync_frequency="manual",
            max_bulk_actions=10,
        ),
    ),
    "pro": PlanCapabilities(
        plan_id="pro",
        features=PlanFeatures(
            review_sync=True,
            ai_replies=True,
            auto_approval=True,
            custom_voice=True,
            advanced_insights=True,
            bulk_operations=True,
            auto_sync=True,
        ),
        limits=PlanLimits(
            max_reviews_per_sync=UNLIMITED,
            max_businesses=1,
            max_replies_per_month=UNLIMITED,
            sync_frequency="daily",
            max_bulk_actions=UNLIMITED,
        ),
    ),
    "pro-plus": PlanCapabilities(
        plan_id="pro-plus",
        features=PlanFeatures(
            review_sync=True,
            ai_replies=True,
            auto_approval=True,
            custom_voice=True,
            advanced_insights=True,
            bulk_operations=True,
            auto_sync=True,
        ),
        limits=PlanLimits(
            max_reviews_per_sync=UNLIMITED,
            max_businesses=UNLIMITED,
            max_replies_per_month=UNLIMITED,
            sync_frequency="daily",
            max_bulk_actions=UNLIMITED,
        ),
    ),
})


def capabilities_for(plan_id: Optional[str]) -> PlanCapabilities:
    """
    Look up the feature/limit matrix for a plan

    Unknown or missing plan ids fail closed to the most restrictive plan.
    """
    normalized = plan_id.strip().lower() if isinstance(plan_id, str) else None
    capabilities = PLAN_CONFIGS.get(normalized) if normalized else None
    if capabilities is not None:
        return capabilities

    logger.warning(f"Unknown plan '{plan_id}', falling back to '{DEFAULT_PLAN_ID}'")
    default = PLAN_CONFIGS[DEFAULT_PLAN_ID]
    return PlanCapabilities(
        plan_id=DEFAULT_PLAN_ID,
        features=default.features,
        limits=default.limits,
        is_fallback=True,
    )


def get_plan_comparison() -> Dict[str, Dict[str, Any]]:
    """All plans as plain dictionaries, for pricing and settings screens"""
    return {plan_id: capabilities.to_dict() for plan_id, capabilities in PLAN_CONFIGS.items()}
