"""
Tests for the kernel domain: amount parsing and tolerance comparisons,
mutation validation, derived receivable status and the clock.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from ledger_kernel.domain.amounts import (
    clamp_zero,
    covers,
    display_amount,
    exceeds,
    is_material,
    same_amount,
    to_amount,
    total,
)
from ledger_kernel.domain.clock import DeterministicClock
from ledger_kernel.domain.dtos import ReceivableStatus, RecordType, derive_status
from ledger_kernel.domain.mutations import Mutation, MutationType
from ledger_kernel.exceptions import InvalidAmountError, InvalidMutationError


class TestToAmount:
    @pytest.mark.parametrize("raw, expected", [
        ("100", Decimal("100")),
        (" 12.50 ", Decimal("12.50")),
        (7, Decimal("7")),
        (0.1, Decimal("0.1")),
        (Decimal("3.333"), Decimal("3.333")),
        ("0", Decimal("0")),
    ])
    def test_accepted(self, raw, expected):
        assert to_amount(raw) == expected

    def test_float_goes_through_str(self):
        assert to_amount(0.1) + to_amount(0.2) == Decimal("0.3")

    @pytest.mark.parametrize("raw", [None, True, "abc", "NaN", "Infinity", "-0.01", -5])
    def test_rejected(self, raw):
        with pytest.raises(InvalidAmountError) as exc_info:
            to_amount(raw, "new_amount")
        assert exc_info.value.field == "new_amount"


class TestTolerance:
    def test_exceeds_absorbs_tolerance(self):
        assert not exceeds(Decimal("100.01"), Decimal("100"))
        assert exceeds(Decimal("100.02"), Decimal("100"))

    def test_covers_absorbs_tolerance(self):
        assert covers(Decimal("99.99"), Decimal("100"))
        assert not covers(Decimal("99.98"), Decimal("100"))

    def test_materiality(self):
        assert not is_material(Decimal("0.01"))
        assert is_material(Decimal("0.02"))

    def test_same_amount(self):
        assert same_amount(Decimal("5.00"), Decimal("5.01"))
        assert not same_amount(Decimal("5.00"), Decimal("5.02"))

    def test_helpers(self):
        assert total([]) == Decimal("0")
        assert total([Decimal("1.5"), Decimal("2.5")]) == Decimal("4")
        assert clamp_zero(Decimal("-0.004")) == Decimal("0")
        assert display_amount(Decimal("2.345")) == Decimal("2.35")


class TestDerivedStatus:
    @pytest.mark.parametrize("amount, paid, status", [
        ("1000", "0", ReceivableStatus.UNPAID),
        ("1000", "0.01", ReceivableStatus.UNPAID),
        ("1000", "400", ReceivableStatus.PARTIALLY_PAID),
        ("1000", "999.99", ReceivableStatus.PAID),
        ("1000", "1000", ReceivableStatus.PAID),
        ("0", "0", ReceivableStatus.PAID),
    ])
    def test_status(self, amount, paid, status):
        assert derive_status(Decimal(amount), Decimal(paid)) == status


class TestMutation:
    def test_amount_coerced(self):
        mutation = Mutation(MutationType.CREDIT_AMOUNT, uuid4(), "250.5")
        assert mutation.proposed_amount == Decimal("250.5")
        assert mutation.target_type == RecordType.CREDIT

    def test_type_from_string(self):
        target = uuid4()
        mutation = Mutation("payment_delete", target)
        assert mutation.mutation_type == MutationType.PAYMENT_DELETE
        assert mutation.target_ref == f"payment:{target}"

    def test_deletion_takes_no_amount(self):
        with pytest.raises(InvalidMutationError):
            Mutation(MutationType.RECEIVABLE_DELETE, uuid4(), Decimal("1"))

    def test_amount_required(self):
        with pytest.raises(InvalidMutationError):
            Mutation(MutationType.ALLOCATION_AMOUNT, uuid4())

    def test_prepaid_field_name_in_error(self):
        with pytest.raises(InvalidAmountError) as exc_info:
            Mutation(MutationType.TASK_PREPAID, uuid4(), "-1")
        assert exc_info.value.field == "new_prepaid"

    def test_task_mutations(self):
        task_types = {t for t in MutationType if t.is_task_change}
        assert task_types == {
            MutationType.TASK_AMOUNT, MutationType.TASK_PREPAID, MutationType.TASK_EXPENSE,
        }


class TestDeterministicClock:
    def test_fixed_until_advanced(self):
        clock = DeterministicClock(datetime(2024, 3, 1, 23, 0, tzinfo=timezone.utc))
        assert clock.now() == clock.now()
        assert clock.today() == date(2024, 3, 1)
        clock.advance(3600)
        assert clock.today() == date(2024, 3, 2)

    def test_advance_days(self):
        clock = DeterministicClock()
        clock.advance_days(31)
        assert clock.today() == date(2024, 2, 1)
