# File: src/lotsync/domain/strategies.py
"""
Billing Strategies

Implements the Strategy Pattern for role-dependent charges. Every charge in
the system, whether a live estimate shown before checkout or the final
settlement, goes through compute_charge, so the two can never round
differently.

Strategies:
- StudentFlatRateStrategy: fixed daily rate regardless of duration
- GuestHourlyStrategy: free grace period, then whole hours rounded up

All arithmetic is exact: durations are measured in integer microseconds and
amounts are Decimal.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Dict, Union
import logging

from .exceptions import InvalidArgumentError
from .models import UserRole


# Default rate schedule (KSH)
STUDENT_DAILY_RATE = Decimal('200')
GUEST_HOURLY_RATE = Decimal('50')
GUEST_FREE_MINUTES = 30

_MICROSECONDS_PER_HOUR = 3600 * 1_000_000

Amount = Union[Decimal, int, str]


class BillingType(str, Enum):
    """How a booking is billed"""
    STUDENT_FIXED = "student_fixed"
    GUEST_HOURLY = "guest_hourly"


def to_amount(value: Amount) -> Decimal:
    """Coerce a rate to a non-negative Decimal"""
    if isinstance(value, float):
        value = repr(value)
    try:
        amount = Decimal(value)
    except (ArithmeticError, ValueError, TypeError):
        raise InvalidArgumentError(f"Rate must be a number, got {value!r}")
    if not amount.is_finite() or amount < 0:
        raise InvalidArgumentError(f"Rate must be a non-negative number, got {value!r}")
    return amount


# ============================================================================
# STRATEGY INTERFACE
# ============================================================================

class BillingStrategy(ABC):
    """
    Abstract base class for billing strategies
    Defines the interface for charge calculation
    """
    billing_type: BillingType

    @abstractmethod
    def calculate(self, start_time: datetime, now: datetime, rate: Decimal) -> Decimal:
        """
        Calculate the amount due for a stay from ``start_time`` to ``now``
        Returns: charge as Decimal
        """
        pass


class StudentFlatRateStrategy(BillingStrategy):
    """Flat daily charge"""
    billing_type = BillingType.STUDENT_FIXED

    def calculate(self, start_time: datetime, now: datetime, rate: Decimal) -> Decimal:
        return rate


class GuestHourlyStrategy(BillingStrategy):
    """
    Hourly charge after a free grace period.

    A stay of at most ``free_minutes`` is free (inclusive). Beyond that the
    grace period is subtracted and the remainder is billed in whole hours,
    rounded up.
    """
    billing_type = BillingType.GUEST_HOURLY

    def __init__(self, free_minutes: int = GUEST_FREE_MINUTES):
        if free_minutes < 0:
            raise InvalidArgumentError(f"Grace period cannot be negative: {free_minutes}")
        self.free_minutes = free_minutes
        self.logger = logging.getLogger(self.__class__.__name__)

    def billable_hours(self, elapsed: timedelta) -> int:
        elapsed_us = elapsed // timedelta(microseconds=1)
        grace_us = self.free_minutes * 60 * 1_000_000
        if elapsed_us <= grace_us:
            return 0
        # Integer ceiling division
        return -(-(elapsed_us - grace_us) // _MICROSECONDS_PER_HOUR)

    def calculate(self, start_time: datetime, now: datetime, rate: Decimal) -> Decimal:
        hours = self.billable_hours(now - start_time)
        self.logger.debug(f"Guest stay of {now - start_time} billed as {hours}h at {rate}")
        return hours * rate


def strategy_for_role(role: Union[UserRole, str], free_minutes: int = GUEST_FREE_MINUTES) -> BillingStrategy:
    """Students pay the flat rate, every other role is billed hourly"""
    if UserRole.coerce(role) is UserRole.STUDENT:
        return StudentFlatRateStrategy()
    return GuestHourlyStrategy(free_minutes)


def compute_charge(
    role: Union[UserRole, str],
    start_time: datetime,
    now: datetime,
    rate: Amount,
    free_minutes: int = GUEST_FREE_MINUTES,
) -> Decimal:
    """
    Amount due for a stay.

    Raises InvalidArgumentError when ``now`` precedes ``start_time``
    instead of producing a negative charge.
    """
    if now < start_time:
        raise InvalidArgumentError(f"End time {now.isoformat()} precedes start time {start_time.isoformat()}")
    return strategy_for_role(role, free_minutes).calculate(start_time, now, to_amount(rate))


# ============================================================================
# BOOKINGS
# ============================================================================

@dataclass(frozen=True)
class BillingRates:
    """Rate schedule in force"""
    student_daily_rate: Decimal = STUDENT_DAILY_RATE
    guest_hourly_rate: Decimal = GUEST_HOURLY_RATE
    guest_free_minutes: int = GUEST_FREE_MINUTES

    def __post_init__(self):
        object.__setattr__(self, 'student_daily_rate', to_amount(self.student_daily_rate))
        object.__setattr__(self, 'guest_hourly_rate', to_amount(self.guest_hourly_rate))
        if self.guest_free_minutes < 0:
            raise InvalidArgumentError(f"Grace period cannot be negative: {self.guest_free_minutes}")

    def rate_for(self, role: Union[UserRole, str]) -> Decimal:
        if UserRole.coerce(role) is UserRole.STUDENT:
            return self.student_daily_rate
        return self.guest_hourly_rate


@dataclass(frozen=True)
class Booking:
    """Input contract of the billing calculator; persistence lives elsewhere"""
    user_role: UserRole
    start_time: datetime
    billing_type: BillingType
    billing_rate: Decimal

    def settle(self, now: datetime, free_minutes: int = GUEST_FREE_MINUTES) -> Decimal:
        return compute_charge(self.user_role, self.start_time, now, self.billing_rate, free_minutes)

    def to_dict(self) -> Dict[str, str]:
        return {
            'user_role': self.user_role.value,
            'start_time': self.start_time.isoformat(),
            'billing_type': self.billing_type.value,
            'billing_rate': str(self.billing_rate),
        }


def quote_booking(role: Union[UserRole, str], start_time: datetime,
                  rates: BillingRates = BillingRates()) -> Booking:
    """Billing terms for a booking that starts now"""
    role = UserRole.coerce(role)
    strategy = strategy_for_role(role, rates.guest_free_minutes)
    return Booking(
        user_role=role,
        start_time=start_time,
        billing_type=strategy.billing_type,
        billing_rate=rates.rate_for(role),
    )
