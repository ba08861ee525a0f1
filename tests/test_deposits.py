"""
Test suite for the fixed deposit module

Tests constitution with a funding account, schedule generation, the
principal ledger, interest payout and capitalization, early cancellation
and renewal. The service clock is driven by the test.
"""

import pytest
from decimal import Decimal
from datetime import date

from treasury_ledger.storage import InMemoryStorage
from treasury_ledger.audit import AuditTrail, AuditAction
from treasury_ledger.categories import FundCategory
from treasury_ledger.errors import (
    ValidationError, NotFoundError, InvalidStateError, InsufficientFundsError
)
from treasury_ledger.funds import FundAccountService, AccountKind
from treasury_ledger.interest import InterestMethod, PaymentFrequency
from treasury_ledger.deposits import (
    FixedDepositService, DepositState, InterestDisposition, DepositMovementType, ScheduleEntryState
)


class DepositTestCase:
    """Shared fixtures"""

    def setup_method(self):
        """Set up test fixtures"""
        self.today = date(2024, 1, 1)
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.funds = FundAccountService(self.storage, self.audit)
        self.deposits = FixedDepositService(self.storage, self.funds, self.audit, today=lambda: self.today)

        self.funding = self.funds.create_account(
            "Investor funding", AccountKind.INVESTMENT_FUND, "ARS",
            opening_balance=Decimal('500000'), investor_id="INV-1"
        )
        self.payout = self.funds.create_account(
            "Investor payout", AccountKind.BANK, "ARS", investor_id="INV-1"
        )

    def make_deposit(self, principal=Decimal('100000'), term_days=90,
                     frequency=PaymentFrequency.MONTHLY,
                     disposition=InterestDisposition.PAY_OUT, **kwargs):
        kwargs.setdefault('payout_account_id', self.payout.id)
        return self.deposits.create_deposit(
            investor_id="INV-1",
            principal=principal,
            currency="ARS",
            annual_rate=Decimal('36'),
            method=InterestMethod.SIMPLE,
            term_days=term_days,
            start_date=date(2024, 1, 1),
            frequency=frequency,
            disposition=disposition,
            **kwargs
        )

    def account_balance(self, account):
        return self.funds.require_account(account.id).current_balance

    def principal(self, deposit):
        return self.deposits.require_deposit(deposit.id).current_principal


class TestCreateDeposit(DepositTestCase):
    """Test constitution"""

    def test_create_with_funding_account(self):
        deposit = self.make_deposit(funding_account_id=self.funding.id)

        assert deposit.state == DepositState.ACTIVE
        assert deposit.initial_principal == deposit.current_principal == Decimal('100000')
        assert deposit.maturity_date == date(2024, 3, 31)
        assert deposit.funding_movement_id is not None
        assert self.account_balance(self.funding) == Decimal('400000')

        debit = self.funds.require_movement(deposit.funding_movement_id)
        assert debit.category == FundCategory.DEPOSIT_CONSTITUTION
        assert debit.investor_id == "INV-1"

    def test_schedule_is_generated_once(self):
        deposit = self.make_deposit()
        schedule = self.deposits.list_schedule(deposit.id)

        assert [e.scheduled_date for e in schedule] == [date(2024, 2, 1), date(2024, 3, 1), date(2024, 3, 31)]
        assert all(e.state == ScheduleEntryState.PENDING for e in schedule)
        assert schedule[0].estimated_interest == Decimal('3057.53')

    def test_funding_account_must_cover_principal(self):
        with pytest.raises(InsufficientFundsError):
            self.make_deposit(principal=Decimal('600000'), funding_account_id=self.funding.id)

        assert self.deposits.list_deposits() == []
        assert self.account_balance(self.funding) == Decimal('500000')

    def test_funding_account_currency_must_match(self):
        dollars = self.funds.create_account("USD", AccountKind.BANK, "USD", opening_balance=Decimal('1000000'))
        with pytest.raises(ValidationError, match="does not match"):
            self.make_deposit(funding_account_id=dollars.id)

    def test_input_validation(self):
        with pytest.raises(ValidationError):
            self.make_deposit(principal=0)
        with pytest.raises(ValidationError, match="Term"):
            self.make_deposit(term_days=0)
        with pytest.raises(ValidationError, match="rate"):
            self.deposits.create_deposit("INV-1", 1000, "ARS", -1, InterestMethod.SIMPLE, 30,
                                         "2024-01-01", PaymentFrequency.AT_MATURITY,
                                         InterestDisposition.PAY_OUT)
        with pytest.raises(ValidationError, match="Investor"):
            self.deposits.create_deposit("", 1000, "ARS", 10, InterestMethod.SIMPLE, 30,
                                         "2024-01-01", PaymentFrequency.AT_MATURITY,
                                         InterestDisposition.PAY_OUT)
        with pytest.raises(NotFoundError):
            self.make_deposit(funding_account_id="missing")

    def test_unknown_terms_are_validation_errors(self):
        with pytest.raises(ValidationError, match="Unknown interest method: continuous"):
            self.deposits.create_deposit("INV-1", 1000, "ARS", 10, "continuous", 30, "2024-01-01",
                                         PaymentFrequency.MONTHLY, InterestDisposition.PAY_OUT,
                                         funding_account_id=self.funding.id)
        with pytest.raises(ValidationError, match="Unknown payment frequency: weekly"):
            self.make_deposit(frequency="weekly", funding_account_id=self.funding.id)
        with pytest.raises(ValidationError, match="Unknown interest disposition"):
            self.make_deposit(disposition="donate", funding_account_id=self.funding.id)
        with pytest.raises(ValidationError, match="whole number of days"):
            self.make_deposit(term_days="ninety", funding_account_id=self.funding.id)

        assert self.deposits.list_deposits() == []
        assert self.funds.list_movements() == []
        assert self.account_balance(self.funding) == Decimal('500000')

    def test_raw_term_values_are_accepted(self):
        deposit = self.make_deposit(term_days="30", frequency="at_maturity", disposition="capitalize")

        assert deposit.term_days == 30
        assert deposit.frequency == PaymentFrequency.AT_MATURITY
        assert deposit.disposition == InterestDisposition.CAPITALIZE

    def test_creation_is_audited(self):
        deposit = self.make_deposit(actor_id="admin")
        events = self.audit.get_events_for_entity("fixed_deposit", deposit.id)

        assert [e.action for e in events] == [AuditAction.DEPOSIT_CREATED]
        assert events[0].module == "fixed_deposit"
        assert events[0].actor_id == "admin"

    def test_expected_interest(self):
        deposit = self.make_deposit(frequency=PaymentFrequency.AT_MATURITY)
        expected = self.deposits.expected_interest(deposit.id)

        assert expected > Decimal('8876')
        assert expected < Decimal('8877')

    def test_update_deposit(self):
        deposit = self.make_deposit()
        updated = self.deposits.update_deposit(deposit.id, observation="VIP", auto_renew=True)

        assert updated.observation == "VIP"
        assert updated.auto_renew is True
        with pytest.raises(ValidationError, match="cannot be updated"):
            self.deposits.update_deposit(deposit.id, annual_rate=Decimal('50'))


class TestDepositStates(DepositTestCase):
    """Test the derived matured state"""

    def test_matured_is_derived_from_clock(self):
        deposit = self.make_deposit()
        assert self.deposits.effective_state(deposit) == DepositState.ACTIVE

        self.today = date(2024, 3, 31)
        assert self.deposits.is_matured(deposit)
        assert self.deposits.effective_state(deposit) == DepositState.MATURED
        assert self.deposits.require_deposit(deposit.id).state == DepositState.ACTIVE

    def test_list_by_effective_state(self):
        short = self.make_deposit(term_days=30)
        long = self.make_deposit(term_days=365)
        self.today = date(2024, 2, 15)

        assert [d.id for d in self.deposits.list_deposits(state=DepositState.MATURED)] == [short.id]
        assert [d.id for d in self.deposits.list_deposits(state=DepositState.ACTIVE)] == [long.id]
        assert len(self.deposits.list_deposits(investor_id="INV-1")) == 2
        assert self.deposits.list_deposits(investor_id="INV-2") == []

    def test_mark_overdue_entries(self):
        deposit = self.make_deposit()
        self.today = date(2024, 3, 15)

        changed = self.deposits.mark_overdue_entries(deposit.id)

        assert [e.scheduled_date for e in changed] == [date(2024, 2, 1), date(2024, 3, 1)]
        states = [e.state for e in self.deposits.list_schedule(deposit.id)]
        assert states == [ScheduleEntryState.OVERDUE, ScheduleEntryState.OVERDUE, ScheduleEntryState.PENDING]


class TestPrincipalMovements(DepositTestCase):
    """Test top-ups and withdrawals"""

    def test_top_up(self):
        deposit = self.make_deposit()
        movement = self.deposits.register_top_up(deposit.id, Decimal('5000'), "2024-01-15")

        assert movement.movement_type == DepositMovementType.TOP_UP
        assert movement.principal_before == Decimal('100000')
        assert movement.principal_after == Decimal('105000')
        assert self.principal(deposit) == Decimal('105000')

    def test_withdrawal_before_maturity_fails(self):
        deposit = self.make_deposit()
        with pytest.raises(InvalidStateError, match="not matured"):
            self.deposits.register_withdrawal(deposit.id, Decimal('1000'), "2024-02-01")

    def test_withdrawal_after_maturity(self):
        deposit = self.make_deposit()
        self.today = date(2024, 4, 1)

        self.deposits.register_withdrawal(deposit.id, Decimal('40000'), "2024-04-01")
        assert self.principal(deposit) == Decimal('60000')
        assert self.deposits.require_deposit(deposit.id).state == DepositState.ACTIVE

        self.deposits.register_withdrawal(deposit.id, Decimal('60000'), "2024-04-02")
        closed = self.deposits.require_deposit(deposit.id)
        assert closed.current_principal == Decimal('0')
        assert closed.state == DepositState.CLOSED

        with pytest.raises(InvalidStateError, match="already closed"):
            self.deposits.register_withdrawal(deposit.id, Decimal('1'), "2024-04-03")
        with pytest.raises(InvalidStateError):
            self.deposits.register_top_up(deposit.id, Decimal('1'), "2024-04-03")

    def test_withdrawal_exceeding_principal(self):
        deposit = self.make_deposit()
        self.today = date(2024, 4, 1)

        with pytest.raises(InsufficientFundsError, match="available principal"):
            self.deposits.register_withdrawal(deposit.id, Decimal('100000.01'), "2024-04-01")
        assert self.deposits.list_movements(deposit.id) == []

    def test_ledger_chains_principal(self):
        deposit = self.make_deposit()
        self.deposits.register_top_up(deposit.id, 1000, "2024-01-10")
        self.deposits.register_top_up(deposit.id, 2000, "2024-01-20")
        self.today = date(2024, 4, 1)
        self.deposits.register_withdrawal(deposit.id, 500, "2024-04-01")

        ledger = list(reversed(self.deposits.list_movements(deposit.id)))
        for earlier, later in zip(ledger, ledger[1:]):
            assert later.principal_before == earlier.principal_after
        assert ledger[-1].principal_after == self.principal(deposit) == Decimal('102500')


class TestInterest(DepositTestCase):
    """Test interest payout and capitalization"""

    def test_pay_interest_credits_payout_account(self):
        deposit = self.make_deposit()
        entry = self.deposits.list_schedule(deposit.id)[0]

        movement = self.deposits.pay_interest(deposit.id, entry.id, entry.estimated_interest, "2024-02-01",
                                              reference="TRX-1")

        assert movement.movement_type == DepositMovementType.INTEREST_PAYOUT
        assert movement.principal_before == movement.principal_after == Decimal('100000')
        assert self.account_balance(self.payout) == entry.estimated_interest

        credit = self.funds.require_movement(movement.fund_movement_id)
        assert credit.category == FundCategory.DEPOSIT_INTEREST
        assert credit.destination_account_id == self.payout.id

        paid = self.deposits.get_schedule_entry(entry.id)
        assert paid.state == ScheduleEntryState.PAID
        assert paid.actual_interest == entry.estimated_interest
        assert paid.settlement_date == date(2024, 2, 1)
        assert paid.movement_id == movement.id

    def test_entry_cannot_be_paid_twice(self):
        deposit = self.make_deposit()
        entry = self.deposits.list_schedule(deposit.id)[0]
        self.deposits.pay_interest(deposit.id, entry.id, 100, "2024-02-01")

        with pytest.raises(InvalidStateError, match="already processed"):
            self.deposits.pay_interest(deposit.id, entry.id, 100, "2024-02-01")

    def test_overdue_entry_is_payable(self):
        deposit = self.make_deposit()
        entry = self.deposits.list_schedule(deposit.id)[0]
        self.today = date(2024, 2, 10)
        self.deposits.mark_overdue_entries(deposit.id)

        self.deposits.pay_interest(deposit.id, entry.id, 100, "2024-02-10")
        assert self.deposits.get_schedule_entry(entry.id).state == ScheduleEntryState.PAID

    def test_pay_interest_requires_payout(self):
        capitalizing = self.make_deposit(disposition=InterestDisposition.CAPITALIZE)
        entry = self.deposits.list_schedule(capitalizing.id)[0]
        with pytest.raises(InvalidStateError, match="capitalizes"):
            self.deposits.pay_interest(capitalizing.id, entry.id, 100, "2024-02-01")

        no_account = self.make_deposit(payout_account_id=None)
        entry = self.deposits.list_schedule(no_account.id)[0]
        with pytest.raises(InvalidStateError, match="payout account"):
            self.deposits.pay_interest(no_account.id, entry.id, 100, "2024-02-01")

    def test_entry_of_another_deposit(self):
        first = self.make_deposit()
        second = self.make_deposit()
        entry = self.deposits.list_schedule(second.id)[0]

        with pytest.raises(NotFoundError):
            self.deposits.pay_interest(first.id, entry.id, 100, "2024-02-01")

    def test_capitalize_interest(self):
        deposit = self.make_deposit(disposition=InterestDisposition.CAPITALIZE)
        entry = self.deposits.list_schedule(deposit.id)[0]

        movement = self.deposits.capitalize_interest(deposit.id, entry.id, entry.estimated_interest, "2024-02-01")

        assert movement.movement_type == DepositMovementType.INTEREST_CAPITALIZATION
        assert movement.principal_after == Decimal('100000') + entry.estimated_interest
        assert self.principal(deposit) == movement.principal_after
        assert self.deposits.get_schedule_entry(entry.id).state == ScheduleEntryState.CAPITALIZED
        assert self.account_balance(self.payout) == Decimal('0')

    def test_capitalize_on_closed_deposit_fails(self):
        deposit = self.make_deposit(disposition=InterestDisposition.CAPITALIZE)
        entry = self.deposits.list_schedule(deposit.id)[0]
        self.deposits.cancel_deposit(deposit.id, "2024-01-10")

        with pytest.raises(InvalidStateError):
            self.deposits.capitalize_interest(deposit.id, entry.id, 100, "2024-02-01")


class TestCancelAndRenew(DepositTestCase):
    """Test early termination and renewal"""

    def test_cancel_returns_principal(self):
        """Cancelling 50,000 with a payout account credits 50,000 and skips pending entries"""
        deposit = self.make_deposit(principal=Decimal('50000'))
        first = self.deposits.list_schedule(deposit.id)[0]
        self.deposits.pay_interest(deposit.id, first.id, first.estimated_interest, "2024-02-01")
        balance_before = self.account_balance(self.payout)

        cancelled = self.deposits.cancel_deposit(deposit.id, "2024-02-15", note="Investor request")

        assert cancelled.state == DepositState.CANCELLED
        assert cancelled.current_principal == Decimal('0')
        assert self.account_balance(self.payout) == balance_before + Decimal('50000')

        states = [e.state for e in self.deposits.list_schedule(deposit.id)]
        assert states == [ScheduleEntryState.PAID, ScheduleEntryState.SKIPPED, ScheduleEntryState.SKIPPED]

        withdrawal = [m for m in self.deposits.list_movements(deposit.id)
                      if m.movement_type == DepositMovementType.CAPITAL_WITHDRAWAL]
        assert len(withdrawal) == 1
        assert withdrawal[0].amount == Decimal('50000')
        assert withdrawal[0].principal_after == Decimal('0')
        assert self.funds.require_movement(withdrawal[0].fund_movement_id).category == \
            FundCategory.INVESTOR_WITHDRAWAL

    def test_cancel_without_payout_account(self):
        deposit = self.make_deposit(payout_account_id=None)
        cancelled = self.deposits.cancel_deposit(deposit.id, "2024-01-10")

        assert cancelled.state == DepositState.CANCELLED
        assert self.funds.list_movements() == []

    def test_cancel_with_no_principal_closes_and_is_audited(self):
        deposit = self.make_deposit()
        self.storage.update("deposits", deposit.id, {'current_principal': Decimal('0')})

        closed = self.deposits.cancel_deposit(deposit.id, "2024-01-10", actor_id="admin")

        assert closed.state == DepositState.CLOSED
        assert self.funds.list_movements() == []
        assert self.deposits.list_movements(deposit.id) == []

        events = self.audit.get_events_for_entity("fixed_deposit", deposit.id)
        assert [e.action for e in events] == [AuditAction.DEPOSIT_CREATED, AuditAction.DEPOSIT_CANCELLED]
        assert events[-1].actor_id == "admin"
        assert events[-1].metadata["state"] == "closed"
        assert self.audit.verify_integrity()['valid'] is True

    def test_cancel_twice_fails(self):
        deposit = self.make_deposit()
        self.deposits.cancel_deposit(deposit.id, "2024-01-10")
        with pytest.raises(InvalidStateError, match="already cancelled"):
            self.deposits.cancel_deposit(deposit.id, "2024-01-11")

    def test_renew_matured_deposit(self):
        deposit = self.make_deposit()
        self.today = date(2024, 3, 31)

        renewed = self.deposits.renew_deposit(deposit.id, "2024-03-31", annual_rate=Decimal('40'))

        old = self.deposits.require_deposit(deposit.id)
        assert old.state == DepositState.RENEWED
        assert old.current_principal == Decimal('0')
        assert renewed.origin_deposit_id == deposit.id
        assert renewed.initial_principal == Decimal('100000')
        assert renewed.annual_rate == Decimal('40')
        assert renewed.term_days == 90
        assert renewed.start_date == date(2024, 3, 31)
        assert all(e.state == ScheduleEntryState.SKIPPED for e in self.deposits.list_schedule(deposit.id))
        assert len(self.deposits.list_schedule(renewed.id)) == 3

    def test_renew_before_maturity_fails(self):
        deposit = self.make_deposit()
        with pytest.raises(InvalidStateError, match="cannot be renewed yet"):
            self.deposits.renew_deposit(deposit.id, "2024-02-01")
        assert self.deposits.require_deposit(deposit.id).state == DepositState.ACTIVE
