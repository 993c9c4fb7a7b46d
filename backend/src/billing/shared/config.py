"""
Billing Configuration

Immutable billing policy snapshot plus the provider that builds it from
process settings overlaid with platform overrides stored in the
`platform_billing_settings` table.

The provider is injected into the orchestrator, reconciler, escalation
service and scheduler. A batch run takes one snapshot up front and uses
it for every org, so a run is deterministic given its inputs.

Usage:
    provider = BillingConfigProvider(store, clock)
    config = await provider.get()       # cached until max_age elapses
    config = await provider.refresh()   # forced reload
    print(config.grace_period_days)     # 14
"""

import logging
from dataclasses import dataclass, fields, replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Dict, Optional

from backend.core.conf import settings
from backend.src.billing.shared.clock import Clock, SystemClock

if TYPE_CHECKING:
    from backend.src.billing.store.repository import BillingRecordStore

logger = logging.getLogger(__name__)


# =============================================================================
# POLICY SNAPSHOT
# =============================================================================
@dataclass(frozen=True)
class BillingConfig:
    """
    Billing policy in effect for one run.

    Attributes:
        price_id: Processor price billed per active student
        price_per_student: Display-only rate in minor units
        currency: ISO currency of the display rate
        trial_months: Trial length from org creation
        retry_interval_days: Days between payment retries of a past_due org
        final_warning_after_failures: Failure count that sends the final warning
        pause_after_failures: Failure count that pauses the org
        grace_period_days: Days past due before automatic deactivation
        auto_deactivate_enabled: Whether grace-period expiry deactivates
        batch_concurrency: Orgs processed in parallel by the scheduler
        run_lease_seconds: TTL of the per-org run lease
    """
    price_id: str = ''
    price_per_student: int = 100
    currency: str = 'gbp'
    trial_months: int = 1
    retry_interval_days: int = 3
    final_warning_after_failures: int = 3
    pause_after_failures: int = 2
    grace_period_days: int = 14
    auto_deactivate_enabled: bool = True
    batch_concurrency: int = 5
    run_lease_seconds: int = 300

    @classmethod
    def from_settings(cls) -> 'BillingConfig':
        return cls(
            price_id=settings.STRIPE_PRICE_ID,
            price_per_student=settings.BILLING_PRICE_PER_STUDENT,
            currency=settings.BILLING_CURRENCY,
            trial_months=settings.BILLING_TRIAL_MONTHS,
            retry_interval_days=settings.BILLING_RETRY_INTERVAL_DAYS,
            final_warning_after_failures=settings.BILLING_FINAL_WARNING_AFTER_FAILURES,
            pause_after_failures=settings.BILLING_PAUSE_AFTER_FAILURES,
            grace_period_days=settings.BILLING_GRACE_PERIOD_DAYS,
            auto_deactivate_enabled=settings.BILLING_AUTO_DEACTIVATE_ENABLED,
            batch_concurrency=settings.BILLING_BATCH_CONCURRENCY,
            run_lease_seconds=settings.BILLING_RUN_LEASE_SECONDS,
        )

    def with_overrides(self, overrides: Dict[str, str]) -> 'BillingConfig':
        """
        Apply string overrides (as stored in the database) by field name.

        Unknown keys and unparseable values are logged and ignored.
        """
        known = {f.name: f.type for f in fields(self)}
        parsed = {}
        for key, raw in overrides.items():
            if key not in known:
                logger.warning(f"[BILLING CONFIG] Ignoring unknown override '{key}'")
                continue
            current = getattr(self, key)
            try:
                if isinstance(current, bool):
                    parsed[key] = raw.strip().lower() in ('1', 'true', 'yes', 'on')
                elif isinstance(current, int):
                    parsed[key] = int(raw)
                else:
                    parsed[key] = raw
            except ValueError:
                logger.warning(f"[BILLING CONFIG] Ignoring invalid override {key}={raw!r}")
        return replace(self, **parsed)


# =============================================================================
# PROVIDER
# =============================================================================
class BillingConfigProvider:
    """
    Loads and caches BillingConfig with an explicit refresh policy.

    Args:
        store: Billing store used to read platform overrides (optional)
        clock: Time source for cache age
        max_age_seconds: Snapshot lifetime; 0 reloads on every get()
        base: Starting config (defaults to process settings)
    """

    def __init__(
        self,
        store: Optional['BillingRecordStore'] = None,
        clock: Optional[Clock] = None,
        max_age_seconds: int = None,
        base: Optional[BillingConfig] = None,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.max_age = timedelta(
            seconds=settings.BILLING_CONFIG_REFRESH_SECONDS if max_age_seconds is None else max_age_seconds
        )
        self.base = base or BillingConfig.from_settings()
        self._snapshot: Optional[BillingConfig] = None
        self._loaded_at: Optional[datetime] = None

    async def get(self) -> BillingConfig:
        if self._snapshot is None or self.clock.now() - self._loaded_at >= self.max_age:
            return await self.refresh()
        return self._snapshot

    async def refresh(self) -> BillingConfig:
        overrides = await self.store.load_overrides() if self.store else {}
        self._snapshot = self.base.with_overrides(overrides)
        self._loaded_at = self.clock.now()
        if overrides:
            logger.debug(f"[BILLING CONFIG] Loaded {len(overrides)} platform override(s)")
        return self._snapshot

    @classmethod
    def static(cls, config: BillingConfig) -> 'BillingConfigProvider':
        """Provider that always returns `config` (CLI one-offs and tests)."""
        provider = cls(store=None, max_age_seconds=0, base=config)
        return provider
