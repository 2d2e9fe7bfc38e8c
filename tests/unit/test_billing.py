#!/usr/bin/env python3
"""
Unit tests for the billing calculator and strategies
"""

import unittest
from datetime import timedelta
from decimal import Decimal

from lotsync.domain.exceptions import ErrorKind, InvalidArgumentError
from lotsync.domain.models import UserRole
from lotsync.domain.strategies import (
    BillingRates, BillingType, Booking, GuestHourlyStrategy, StudentFlatRateStrategy,
    compute_charge, quote_booking, strategy_for_role,
    GUEST_FREE_MINUTES, GUEST_HOURLY_RATE, STUDENT_DAILY_RATE
)
from tests.support import T0


class TestGuestCharges(unittest.TestCase):
    """Hourly billing with a free grace period"""

    def charge(self, **elapsed):
        return compute_charge(UserRole.GUEST, T0, T0 + timedelta(**elapsed), 50)

    def test_grace_period_is_inclusive(self):
        self.assertEqual(self.charge(minutes=30), Decimal('0'))

    def test_first_minute_after_grace_bills_one_hour(self):
        self.assertEqual(self.charge(minutes=31), Decimal('50'))

    def test_one_microsecond_past_grace_is_billed(self):
        self.assertEqual(self.charge(minutes=30, microseconds=1), Decimal('50'))

    def test_zero_duration_is_free(self):
        self.assertEqual(self.charge(), Decimal('0'))

    def test_hours_are_rounded_up_after_grace(self):
        self.assertEqual(self.charge(minutes=90), Decimal('50'))
        self.assertEqual(self.charge(minutes=91), Decimal('100'))
        self.assertEqual(self.charge(hours=5), Decimal('250'))

    def test_staff_roles_are_billed_like_guests(self):
        for role in (UserRole.ADMIN, UserRole.WORKER, "guest"):
            with self.subTest(role=role):
                self.assertEqual(compute_charge(role, T0, T0 + timedelta(hours=2), 50), Decimal('100'))

    def test_custom_grace_period(self):
        strategy = GuestHourlyStrategy(free_minutes=0)
        self.assertEqual(strategy.billable_hours(timedelta(minutes=1)), 1)
        self.assertEqual(
            compute_charge(UserRole.GUEST, T0, T0 + timedelta(minutes=1), 50, free_minutes=0),
            Decimal('50'),
        )


class TestStudentCharges(unittest.TestCase):
    """Flat daily rate"""

    def test_flat_rate_regardless_of_duration(self):
        long_stay = compute_charge(UserRole.STUDENT, T0, T0 + timedelta(hours=10), 200)
        short_stay = compute_charge(UserRole.STUDENT, T0, T0 + timedelta(minutes=10), 200)
        self.assertEqual(long_stay, short_stay)
        self.assertEqual(long_stay, Decimal('200'))

    def test_student_strategy_selected(self):
        self.assertIsInstance(strategy_for_role("student"), StudentFlatRateStrategy)
        self.assertIsInstance(strategy_for_role(UserRole.GUEST), GuestHourlyStrategy)


class TestInvalidInput(unittest.TestCase):

    def test_end_before_start_is_rejected(self):
        with self.assertRaises(InvalidArgumentError) as ctx:
            compute_charge(UserRole.GUEST, T0, T0 - timedelta(seconds=1), 50)
        self.assertEqual(ctx.exception.kind, ErrorKind.INVALID_ARGUMENT)
        self.assertFalse(ctx.exception.retryable)

    def test_end_before_start_is_rejected_for_students_too(self):
        with self.assertRaises(InvalidArgumentError):
            compute_charge(UserRole.STUDENT, T0, T0 - timedelta(minutes=5), 200)

    def test_negative_rate_is_rejected(self):
        with self.assertRaises(InvalidArgumentError):
            compute_charge(UserRole.GUEST, T0, T0 + timedelta(hours=2), -50)

    def test_non_numeric_rate_is_rejected(self):
        with self.assertRaises(InvalidArgumentError):
            compute_charge(UserRole.GUEST, T0, T0 + timedelta(hours=2), "fifty")

    def test_unknown_role_is_rejected(self):
        with self.assertRaises(InvalidArgumentError):
            compute_charge("visitor", T0, T0 + timedelta(hours=2), 50)

    def test_invalid_input_is_a_value_error(self):
        with self.assertRaises(ValueError):
            compute_charge(UserRole.GUEST, T0, T0 - timedelta(hours=1), 50)


class TestBookings(unittest.TestCase):

    def test_default_schedule(self):
        self.assertEqual(STUDENT_DAILY_RATE, Decimal('200'))
        self.assertEqual(GUEST_HOURLY_RATE, Decimal('50'))
        self.assertEqual(GUEST_FREE_MINUTES, 30)

    def test_quote_for_student(self):
        booking = quote_booking(UserRole.STUDENT, T0)
        self.assertEqual(booking.billing_type, BillingType.STUDENT_FIXED)
        self.assertEqual(booking.billing_rate, Decimal('200'))

    def test_quote_for_guest_uses_custom_rates(self):
        booking = quote_booking("guest", T0, BillingRates(guest_hourly_rate=Decimal('80')))
        self.assertEqual(booking.billing_type, BillingType.GUEST_HOURLY)
        self.assertEqual(booking.billing_rate, Decimal('80'))

    def test_settlement_matches_calculator(self):
        booking = Booking(UserRole.GUEST, T0, BillingType.GUEST_HOURLY, Decimal('50'))
        end = T0 + timedelta(minutes=150)
        self.assertEqual(booking.settle(end), compute_charge(UserRole.GUEST, T0, end, 50))
        self.assertEqual(booking.settle(end), Decimal('100'))

    def test_rates_reject_negative_grace(self):
        with self.assertRaises(InvalidArgumentError):
            BillingRates(guest_free_minutes=-1)

    def test_booking_serialises_amounts_as_strings(self):
        booking = quote_booking(UserRole.STUDENT, T0)
        self.assertEqual(booking.to_dict()['billing_rate'], '200')
        self.assertEqual(booking.to_dict()['billing_type'], 'student_fixed')


if __name__ == '__main__':
    unittest.main()
