"""
Cost Estimator - prepaid point estimates, affordable-runtime limits and
post-run reconciliation.

Cost pipeline (defaults path):
    hours = hours_per_step * steps
    hours *= per_item_multiplier ** (dataset_size - baseline)   (if above baseline)
    hours = max(hours, min_hours)
    usd   = hours * gpu_rate * (1 + platform_fee)
    usd  *= buffer
    points = ceil(usd * points_per_usd)
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from app.config import settings


@dataclass(frozen=True)
class ModelFamilyProfile:
    hours_per_step: float
    per_item_multiplier: float
    baseline_items: int
    min_hours: float


# Baseline timings per model family, refined by history as jobs complete
MODEL_FAMILY_PROFILES: Dict[str, ModelFamilyProfile] = {
    "FLUX": ModelFamilyProfile(0.0012, 1.02, 20, 0.25),
    "SDXL": ModelFamilyProfile(0.0008, 1.015, 20, 0.15),
    "SD1.5": ModelFamilyProfile(0.0004, 1.01, 20, 0.1),
}
DEFAULT_FAMILY = "FLUX"

MIN_HISTORY_JOBS = 5
MIN_HISTORY_SAMPLES = 3
# Samples above this are treated as outliers (a stuck run, not a slow GPU)
MAX_HOURS_PER_STEP = 0.01
HISTORY_DATASET_FACTOR_BOUNDS = (0.8, 1.5)


def to_points(usd: float, points_per_usd: int) -> int:
    # round first so 15120.000000000002 does not become 15121
    return int(math.ceil(round(usd * points_per_usd, 6)))


@dataclass
class CostEstimate:
    estimated_points: int
    estimated_hours: float
    buffered_hours: float
    gpu_rate: float
    gpu_cost_usd: float
    platform_fee_usd: float
    total_cost_usd: float
    buffered_cost_usd: float
    source: str = "default"
    sample_count: int = 0


@dataclass
class ActualCost:
    actual_points: int
    duration_hours: float
    gpu_rate: float
    gpu_cost_usd: float
    platform_fee_usd: float
    total_cost_usd: float


@dataclass
class Reconciliation:
    action: str  # "refund" | "overage" | "none"
    amount: int
    estimated_points: int
    actual_points: int
    details: Dict[str, float] = field(default_factory=dict)


class CostEstimator:
    """Estimates training cost in points. All knobs come from Settings."""

    def __init__(self, job_store=None, config=None):
        self.job_store = job_store
        self.config = config or settings
        self.logger = logging.getLogger("CostEstimator")

    @property
    def fee_multiplier(self) -> float:
        return 1 + self.config.platform_fee_percent / 100

    def gpu_rate_for(self, gpu_class: Optional[str]) -> float:
        rates = self.config.gpu_class_rates
        return rates.get(gpu_class or self.config.default_gpu_class) or rates.get(
            self.config.default_gpu_class, self.config.default_hourly_rate
        )

    # ==================== Estimation ====================

    async def estimate(
        self,
        base_model: str,
        steps: int,
        dataset_size: int = 0,
        gpu_class: Optional[str] = None,
    ) -> CostEstimate:
        """Estimate the prepaid charge, preferring historical timings."""
        if self.job_store is not None:
            try:
                historical = await self._estimate_from_history(base_model, steps, dataset_size, gpu_class)
                if historical:
                    self.logger.info(f"📊 Using historical estimate for {base_model}")
                    return historical
            except Exception as e:
                self.logger.warning(f"⚠️ Historical estimation failed: {e}")

        return self.estimate_from_defaults(base_model, steps, dataset_size, gpu_class)

    def estimate_from_defaults(
        self,
        base_model: str,
        steps: int,
        dataset_size: int = 0,
        gpu_class: Optional[str] = None,
    ) -> CostEstimate:
        profile = MODEL_FAMILY_PROFILES.get(base_model) or MODEL_FAMILY_PROFILES[DEFAULT_FAMILY]

        hours = profile.hours_per_step * steps
        extra_items = (dataset_size or 0) - profile.baseline_items
        if extra_items > 0:
            hours *= profile.per_item_multiplier ** extra_items
        hours = max(profile.min_hours, hours)

        estimate = self._price(hours, self.gpu_rate_for(gpu_class), source="default")
        self.logger.info(
            f"💰 Default estimate: {base_model}, {steps} steps, {dataset_size} items -> "
            f"{hours:.2f}h, {estimate.estimated_points} points (buffered)"
        )
        return estimate

    async def _estimate_from_history(
        self, base_model: str, steps: int, dataset_size: int, gpu_class: Optional[str]
    ) -> Optional[CostEstimate]:
        jobs = await self.job_store.completed_jobs_for_estimation(base_model, limit=20)
        if len(jobs) < MIN_HISTORY_JOBS:
            return None

        samples: List[float] = []
        for job in jobs:
            if not (job.training_started_at and job.completed_at and job.steps):
                continue
            hours = (job.completed_at - job.training_started_at).total_seconds() / 3600
            per_step = hours / job.steps
            if 0 < per_step < MAX_HOURS_PER_STEP:
                samples.append(per_step)

        if len(samples) < MIN_HISTORY_SAMPLES:
            return None

        hours = sum(samples) / len(samples) * steps
        profile = MODEL_FAMILY_PROFILES.get(base_model) or MODEL_FAMILY_PROFILES[DEFAULT_FAMILY]
        baseline = profile.baseline_items
        factor = 1 + ((dataset_size or 0) - baseline) / baseline * 0.1
        low, high = HISTORY_DATASET_FACTOR_BOUNDS
        hours *= max(low, min(high, factor))

        return self._price(hours, self.gpu_rate_for(gpu_class), source="historical", sample_count=len(samples))

    def _price(self, hours: float, gpu_rate: float, source: str, sample_count: int = 0) -> CostEstimate:
        gpu_cost = hours * gpu_rate
        fee = gpu_cost * self.config.platform_fee_percent / 100
        total = gpu_cost + fee
        buffered = total * self.config.cost_buffer_multiplier
        return CostEstimate(
            estimated_points=to_points(buffered, self.config.points_per_usd),
            estimated_hours=hours,
            buffered_hours=hours * self.config.cost_buffer_multiplier,
            gpu_rate=gpu_rate,
            gpu_cost_usd=gpu_cost,
            platform_fee_usd=fee,
            total_cost_usd=total,
            buffered_cost_usd=buffered,
            source=source,
            sample_count=sample_count,
        )

    # ==================== Limits & reconciliation ====================

    def calculate_max_affordable_hours(self, prepaid_points: int, hourly_rate: float) -> float:
        """Invert the pricing formula (without buffer) at the real GPU rate."""
        if hourly_rate <= 0:
            raise ValueError(f"hourly_rate must be positive, got {hourly_rate}")
        return prepaid_points / (hourly_rate * self.fee_multiplier * self.config.points_per_usd)

    def calculate_actual_cost(self, duration_hours: float, hourly_rate: float) -> ActualCost:
        gpu_cost = max(0.0, duration_hours) * hourly_rate
        fee = gpu_cost * self.config.platform_fee_percent / 100
        total = gpu_cost + fee
        return ActualCost(
            actual_points=to_points(total, self.config.points_per_usd),
            duration_hours=duration_hours,
            gpu_rate=hourly_rate,
            gpu_cost_usd=gpu_cost,
            platform_fee_usd=fee,
            total_cost_usd=total,
        )

    @staticmethod
    def reconcile(estimated_points: int, actual_points: int) -> Reconciliation:
        difference = estimated_points - actual_points
        if difference > 0:
            action = "refund"
        elif difference < 0:
            action = "overage"
        else:
            action = "none"
        return Reconciliation(
            action=action,
            amount=abs(difference),
            estimated_points=estimated_points,
            actual_points=actual_points,
        )
