"""
Reading Validator

Per-reading checks run before a reading may be persisted. A failed
reading is recorded with the rule it broke and excluded from its batch;
it never aborts the cycle.
"""

import math
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from edgesync.common.logging_setup import get_service_logger
from edgesync.common.models import PendingReading
from edgesync.common.timestamp import parse_timestamp, utc_now

logger = get_service_logger("collection.validator")

RULE_METER_ID = "meter_id_missing"
RULE_ELEMENT_ID = "element_id_invalid"
RULE_TIMESTAMP_INVALID = "timestamp_invalid"
RULE_TIMESTAMP_FUTURE = "timestamp_in_future"
RULE_TIMESTAMP_TOO_OLD = "timestamp_too_old"
RULE_VALUE_NOT_FINITE = "value_not_finite"
RULE_FIELD_NAME = "field_name_missing"
RULE_UNIT_INVALID = "unit_invalid"

_INT64_MAX = 2**63 - 1


def _is_db_int(value) -> bool:
    """Integer that fits a signed 64-bit column."""
    return isinstance(value, int) and not isinstance(value, bool) and abs(value) <= _INT64_MAX


@dataclass
class ValidationFailure:
    """A reading that failed validation and the rule it broke"""
    reading: PendingReading
    rule: str
    detail: str = ""


@dataclass
class ValidationReport:
    valid: list[PendingReading] = field(default_factory=list)
    invalid: list[ValidationFailure] = field(default_factory=list)

    @property
    def counts_by_rule(self) -> dict[str, int]:
        return dict(Counter(f.rule for f in self.invalid))


class ReadingValidator:
    """
    Validates mapped readings.

    Rules:
    - meter_id must be present and an integer
    - element_id must be an integer
    - timestamp must parse and not lie in the future
    - timestamp must not be older than max_age (when configured)
    - value must be a finite number
    - field_name must be a non-empty string
    - unit, when present, must be a string
    """

    def __init__(
        self,
        max_age: timedelta | None = timedelta(days=365),
        future_tolerance: timedelta = timedelta(0),
        clock=utc_now,
    ):
        self.max_age = max_age
        self.future_tolerance = future_tolerance
        self._clock = clock

    def check(self, reading: PendingReading, now: datetime | None = None) -> ValidationFailure | None:
        """Return the first failed rule for a reading, or None if valid."""
        now = now or self._clock()

        if reading.meter_id is None:
            return ValidationFailure(reading, RULE_METER_ID)
        if not _is_db_int(reading.meter_id):
            return ValidationFailure(reading, RULE_METER_ID, repr(reading.meter_id))

        element_id = reading.element_id
        if not _is_db_int(element_id):
            return ValidationFailure(reading, RULE_ELEMENT_ID, repr(element_id))

        ts = parse_timestamp(reading.timestamp)
        if ts is None:
            return ValidationFailure(reading, RULE_TIMESTAMP_INVALID, repr(reading.timestamp))
        if ts > now + self.future_tolerance:
            return ValidationFailure(reading, RULE_TIMESTAMP_FUTURE, ts.isoformat())
        if self.max_age is not None and ts < now - self.max_age:
            return ValidationFailure(reading, RULE_TIMESTAMP_TOO_OLD, ts.isoformat())

        value = reading.value
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return ValidationFailure(reading, RULE_VALUE_NOT_FINITE, repr(value))
        try:
            finite = math.isfinite(value)
        except OverflowError:
            return ValidationFailure(reading, RULE_VALUE_NOT_FINITE, "out of float range")
        if not finite:
            return ValidationFailure(reading, RULE_VALUE_NOT_FINITE, repr(value))

        if not isinstance(reading.field_name, str) or not reading.field_name.strip():
            return ValidationFailure(reading, RULE_FIELD_NAME)
        if reading.unit is not None and not isinstance(reading.unit, str):
            return ValidationFailure(reading, RULE_UNIT_INVALID, repr(reading.unit))

        return None

    def validate(self, readings: list[PendingReading]) -> ValidationReport:
        """Split readings into valid and invalid."""
        report = ValidationReport()
        now = self._clock()

        for reading in readings:
            failure = self.check(reading, now)
            if failure:
                report.invalid.append(failure)
            else:
                report.valid.append(reading)

        if report.invalid:
            logger.warning(
                f"{len(report.invalid)} of {len(readings)} readings failed validation",
                extra={"failures_by_rule": report.counts_by_rule},
            )

        return report
