"""Conversion of raw resource usage into credits.

1 credit = 1 cent. Rates are credits per unit:

    function calls      300 per million
    action compute      45 per GB-hour (128 MB assumed memory)
    database bandwidth  30 per GB
    database storage    30 per GB-month
    file bandwidth      45 per GB
    file storage        4.5 per GB-month
    vector bandwidth    15 per GB
    vector storage      75 per GB-month
"""
import math
from decimal import Decimal

from creditledger.schemas.usage import CreditBreakdown, ResourceCost, UsageMetrics

BYTES_PER_GB = Decimal(1024**3)
BYTES_PER_MB = Decimal(1024**2)
MS_PER_HOUR = Decimal(3_600_000)
ASSUMED_MEMORY_MB = Decimal(128)
MB_PER_GB = Decimal(1024)


class MeterEventName:
    """Provider meter event names, one per resource."""

    FUNCTION_CALLS = "function_calls"
    ACTION_COMPUTE = "action_compute"
    DATABASE_BANDWIDTH = "database_bandwidth"
    DATABASE_STORAGE = "database_storage"
    FILE_BANDWIDTH = "file_bandwidth"
    FILE_STORAGE = "file_storage"
    VECTOR_BANDWIDTH = "vector_bandwidth"
    VECTOR_STORAGE = "vector_storage"

    ALL = (
        FUNCTION_CALLS,
        ACTION_COMPUTE,
        DATABASE_BANDWIDTH,
        DATABASE_STORAGE,
        FILE_BANDWIDTH,
        FILE_STORAGE,
        VECTOR_BANDWIDTH,
        VECTOR_STORAGE,
    )


# Credits per unit (see module docstring)
RATES = {
    MeterEventName.FUNCTION_CALLS: Decimal("300"),  # per million calls
    MeterEventName.ACTION_COMPUTE: Decimal("45"),  # per GB-hour
    MeterEventName.DATABASE_BANDWIDTH: Decimal("30"),
    MeterEventName.DATABASE_STORAGE: Decimal("30"),
    MeterEventName.FILE_BANDWIDTH: Decimal("45"),
    MeterEventName.FILE_STORAGE: Decimal("4.5"),
    MeterEventName.VECTOR_BANDWIDTH: Decimal("15"),
    MeterEventName.VECTOR_STORAGE: Decimal("75"),
}


def gb_hours(action_compute_ms: int) -> Decimal:
    """Normalize action execution time to GB-hours at the assumed memory size."""
    return (ASSUMED_MEMORY_MB / MB_PER_GB) * (Decimal(action_compute_ms) / MS_PER_HOUR)


class UsageAggregator:
    """Stateless converter from UsageMetrics to credits and meter units."""

    def __init__(self, rates: dict[str, Decimal] | None = None):
        self.rates = dict(RATES)
        if rates:
            self.rates.update(rates)

    def _display_usage(self, metrics: UsageMetrics) -> dict[str, tuple[Decimal, str]]:
        """Usage per resource in the unit its rate is quoted in."""
        return {
            MeterEventName.FUNCTION_CALLS: (Decimal(metrics.function_calls), "calls"),
            MeterEventName.ACTION_COMPUTE: (gb_hours(metrics.action_compute_ms), "GB-hours"),
            MeterEventName.DATABASE_BANDWIDTH: (Decimal(metrics.database_bandwidth_bytes) / BYTES_PER_GB, "GB"),
            MeterEventName.DATABASE_STORAGE: (Decimal(metrics.database_storage_bytes) / BYTES_PER_GB, "GB-month"),
            MeterEventName.FILE_BANDWIDTH: (Decimal(metrics.file_bandwidth_bytes) / BYTES_PER_GB, "GB"),
            MeterEventName.FILE_STORAGE: (Decimal(metrics.file_storage_bytes) / BYTES_PER_GB, "GB-month"),
            MeterEventName.VECTOR_BANDWIDTH: (Decimal(metrics.vector_bandwidth_bytes) / BYTES_PER_GB, "GB"),
            MeterEventName.VECTOR_STORAGE: (Decimal(metrics.vector_storage_bytes) / BYTES_PER_GB, "GB-month"),
        }

    def resource_credits(self, metrics: UsageMetrics) -> dict[str, Decimal]:
        """Unrounded credit contribution of each resource."""
        credits = {}
        for name, (usage, _unit) in self._display_usage(metrics).items():
            if name == MeterEventName.FUNCTION_CALLS:
                usage = usage / Decimal(1_000_000)
            credits[name] = usage * self.rates[name]
        return credits

    def raw_credits(self, metrics: UsageMetrics) -> Decimal:
        """
        Total credits without rounding.

        Used for continuous accumulation; rounding happens only when the
        value is reported.
        """
        return sum(self.resource_credits(metrics).values(), Decimal("0"))

    def billable_credits(self, metrics: UsageMetrics) -> int:
        """Whole credits to bill: rounded up, and any nonzero usage bills at least 1."""
        return self.billable_from_raw(self.raw_credits(metrics))

    @staticmethod
    def billable_from_raw(raw: Decimal) -> int:
        if raw <= 0:
            return 0
        if raw < 1:
            return 1
        return math.ceil(raw)

    def breakdown(self, metrics: UsageMetrics) -> CreditBreakdown:
        """Per-resource usage and credits, for display."""
        usage = self._display_usage(metrics)
        credits = self.resource_credits(metrics)
        raw_total = sum(credits.values(), Decimal("0"))

        return CreditBreakdown(
            **{
                name: ResourceCost(usage=usage[name][0], unit=usage[name][1], credits=credits[name])
                for name in MeterEventName.ALL
            },
            raw_total=raw_total,
            total=self.billable_from_raw(raw_total),
        )

    def meter_units(self, metrics: UsageMetrics) -> dict[str, int]:
        """
        Whole units for the per-resource provider meters.

        Function calls per 1,000; action compute in GB-hours x 1000;
        bandwidth and storage in MB. Each value is rounded up.
        """
        return {
            MeterEventName.FUNCTION_CALLS: math.ceil(Decimal(metrics.function_calls) / Decimal(1000)),
            MeterEventName.ACTION_COMPUTE: math.ceil(gb_hours(metrics.action_compute_ms) * 1000),
            MeterEventName.DATABASE_BANDWIDTH: math.ceil(Decimal(metrics.database_bandwidth_bytes) / BYTES_PER_MB),
            MeterEventName.DATABASE_STORAGE: math.ceil(Decimal(metrics.database_storage_bytes) / BYTES_PER_MB),
            MeterEventName.FILE_BANDWIDTH: math.ceil(Decimal(metrics.file_bandwidth_bytes) / BYTES_PER_MB),
            MeterEventName.FILE_STORAGE: math.ceil(Decimal(metrics.file_storage_bytes) / BYTES_PER_MB),
            MeterEventName.VECTOR_BANDWIDTH: math.ceil(Decimal(metrics.vector_bandwidth_bytes) / BYTES_PER_MB),
            MeterEventName.VECTOR_STORAGE: math.ceil(Decimal(metrics.vector_storage_bytes) / BYTES_PER_MB),
        }
