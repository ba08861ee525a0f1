"""
Fixed Deposit Module

Fixed-term interest instruments held for investors. A deposit may be funded
from a fund account at constitution, carries a payment schedule generated
once at creation, and keeps an append-only ledger of principal movements.

State: active -> matured (derived from the clock, never stored) -> closed
when principal reaches zero, or active/matured -> cancelled on early
termination. A matured deposit can also be renewed into a new deposit.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import Callable, List, Optional, Union
from enum import Enum

from .currency import Currency, ZERO, format_amount
from .storage import StorageInterface, StorageRecord, new_id, utc_now
from .audit import AuditTrail, AuditAction
from .categories import FundCategory
from .errors import ValidationError, NotFoundError, InvalidStateError, InsufficientFundsError
from .funds import FundAccountService, _decimal, _positive_amount, _currency, _choice
from .interest import (
    DAYS_PER_YEAR, InterestMethod, PaymentFrequency, parse_date, add_days,
    calculate_interest, generate_payment_schedule
)
from .unit_of_work import UnitOfWork
from .logging_config import get_logger, log_action

logger = get_logger("treasury.deposits")

MODULE = "fixed_deposit"


class DepositState(Enum):
    ACTIVE = "active"
    MATURED = "matured"
    CLOSED = "closed"
    CANCELLED = "cancelled"
    RENEWED = "renewed"


class InterestDisposition(Enum):
    """What happens to interest when it falls due"""
    PAY_OUT = "pay_out"
    CAPITALIZE = "capitalize"


class DepositMovementType(Enum):
    TOP_UP = "top_up"
    CAPITAL_WITHDRAWAL = "capital_withdrawal"
    INTEREST_PAYOUT = "interest_payout"
    INTEREST_CAPITALIZATION = "interest_capitalization"


class ScheduleEntryState(Enum):
    PENDING = "pending"
    PAID = "paid"
    CAPITALIZED = "capitalized"
    OVERDUE = "overdue"
    SKIPPED = "skipped"

    @property
    def is_settleable(self) -> bool:
        return self in (ScheduleEntryState.PENDING, ScheduleEntryState.OVERDUE)


FINAL_STATES = (DepositState.CLOSED, DepositState.CANCELLED, DepositState.RENEWED)


@dataclass
class Deposit(StorageRecord):
    """Fixed-term deposit of one investor"""
    investor_id: str
    initial_principal: Decimal
    current_principal: Decimal
    currency: Currency
    annual_rate: Decimal
    method: InterestMethod
    term_days: int
    start_date: date
    maturity_date: date
    frequency: PaymentFrequency
    disposition: InterestDisposition
    auto_renew: bool = False
    state: DepositState = DepositState.ACTIVE
    observation: Optional[str] = None
    payout_account_id: Optional[str] = None
    funding_account_id: Optional[str] = None
    funding_movement_id: Optional[str] = None
    origin_deposit_id: Optional[str] = None
    created_by: Optional[str] = None


@dataclass
class DepositMovement(StorageRecord):
    """Append-only principal ledger row"""
    deposit_id: str
    movement_type: DepositMovementType
    movement_date: date
    amount: Decimal
    currency: Currency
    principal_before: Decimal
    principal_after: Decimal
    observation: Optional[str] = None
    reference: Optional[str] = None
    scheduled_date: Optional[date] = None
    fund_account_id: Optional[str] = None
    fund_movement_id: Optional[str] = None
    created_by: Optional[str] = None


@dataclass
class PaymentScheduleEntry(StorageRecord):
    """One scheduled interest settlement, fixed at creation"""
    deposit_id: str
    scheduled_date: date
    estimated_interest: Decimal
    state: ScheduleEntryState = ScheduleEntryState.PENDING
    actual_interest: Optional[Decimal] = None
    settlement_date: Optional[date] = None
    movement_id: Optional[str] = None
    fund_account_id: Optional[str] = None


def _term_days(value: Union[int, str]) -> int:
    try:
        days = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Term is not a whole number of days: {value!r}")
    if days <= 0:
        raise ValidationError("Term must be at least one day")
    return days


class FixedDepositService:
    """
    Manages fixed deposits, their schedules and their principal ledger
    """

    UPDATABLE_FIELDS = {'observation', 'auto_renew', 'payout_account_id'}

    def __init__(
        self,
        storage: StorageInterface,
        funds: FundAccountService,
        audit_trail: AuditTrail,
        today: Optional[Callable[[], date]] = None,
        day_count_basis: int = DAYS_PER_YEAR
    ):
        self.storage = storage
        self.funds = funds
        self.audit_trail = audit_trail
        self.today = today or date.today
        self.day_count_basis = day_count_basis
        self.deposits_table = "deposits"
        self.movements_table = "deposit_movements"
        self.schedule_table = "deposit_schedule"

    # --- Deposits ---

    def create_deposit(
        self,
        investor_id: str,
        principal: Union[Decimal, int, str],
        currency: Union[str, Currency],
        annual_rate: Union[Decimal, int, str],
        method: InterestMethod,
        term_days: int,
        start_date: Union[date, str],
        frequency: PaymentFrequency,
        disposition: InterestDisposition,
        auto_renew: bool = False,
        payout_account_id: Optional[str] = None,
        funding_account_id: Optional[str] = None,
        observation: Optional[str] = None,
        origin_deposit_id: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> Deposit:
        """
        Constitute a fixed deposit

        With a funding account, the account must hold the principal in the
        deposit currency; it is debited before the deposit is written. The
        full payment schedule is generated here and never regenerated. If a
        later write fails, the debit is reversed and no partial deposit or
        schedule rows remain.

        Args:
            investor_id: Owning investor
            principal: Initial capital
            currency: Deposit currency
            annual_rate: Annual rate in percent
            method: Simple or compound interest
            term_days: Term length in days
            start_date: Constitution date
            frequency: Interest payment frequency
            disposition: Pay interest out or capitalize it
            auto_renew: Renew automatically at maturity
            payout_account_id: Account credited with interest and returned capital
            funding_account_id: Account debited with the principal
            observation: Free-text note
            origin_deposit_id: Deposit this one renews

        Returns:
            Created Deposit
        """
        if not investor_id:
            raise ValidationError("Investor is required")
        principal = _positive_amount(principal, "Principal")
        currency = _currency(currency)
        annual_rate = _decimal(annual_rate, "Annual rate")
        if annual_rate < ZERO:
            raise ValidationError("Annual rate cannot be negative")
        term_days = _term_days(term_days)
        method = _choice(InterestMethod, method, "interest method")
        frequency = _choice(PaymentFrequency, frequency, "payment frequency")
        disposition = _choice(InterestDisposition, disposition, "interest disposition")
        start_date = parse_date(start_date)
        maturity_date = add_days(start_date, term_days)

        funding_account = None
        if funding_account_id:
            funding_account = self.funds.require_account(funding_account_id)
            if funding_account.currency != currency:
                raise ValidationError(
                    f"Account currency ({funding_account.currency.code}) does not match "
                    f"the deposit currency ({currency.code})"
                )
            self.funds.ensure_sufficient_balance(funding_account, principal)
        if payout_account_id:
            self._check_payout_account(payout_account_id, currency)

        schedule = generate_payment_schedule(
            start_date, maturity_date, frequency, principal, annual_rate, method,
            capitalize=disposition == InterestDisposition.CAPITALIZE,
            day_count_basis=self.day_count_basis
        )

        now = utc_now()
        deposit = Deposit(
            id=new_id(),
            created_at=now,
            updated_at=now,
            investor_id=investor_id,
            initial_principal=principal,
            current_principal=principal,
            currency=currency,
            annual_rate=annual_rate,
            method=method,
            term_days=term_days,
            start_date=start_date,
            maturity_date=maturity_date,
            frequency=frequency,
            disposition=disposition,
            auto_renew=auto_renew,
            observation=observation,
            payout_account_id=payout_account_id or None,
            funding_account_id=funding_account_id or None,
            origin_deposit_id=origin_deposit_id,
            created_by=actor_id
        )

        with UnitOfWork("create_deposit", logger, self.audit_trail, MODULE) as uow:
            if funding_account:
                debit = self.funds.post_movement(
                    amount=principal,
                    currency=currency,
                    movement_date=start_date,
                    category=FundCategory.DEPOSIT_CONSTITUTION,
                    source_account_id=funding_account.id,
                    description="Fixed deposit constitution",
                    investor_id=investor_id,
                    actor_id=actor_id
                )
                uow.on_rollback("reverse funding debit", self.funds.reverse_movement, debit.id, actor_id)
                deposit.funding_movement_id = debit.id

            self.storage.save(self.deposits_table, deposit.id, deposit.to_dict())
            uow.on_rollback("delete deposit record", self.storage.delete, self.deposits_table, deposit.id)

            for row in schedule:
                entry = PaymentScheduleEntry(
                    id=new_id(),
                    created_at=now,
                    updated_at=now,
                    deposit_id=deposit.id,
                    scheduled_date=row.scheduled_date,
                    estimated_interest=row.estimated_interest
                )
                self.storage.save(self.schedule_table, entry.id, entry.to_dict())
                uow.on_rollback("delete schedule entry", self.storage.delete, self.schedule_table, entry.id)

        log_action(
            logger, "info", f"Deposit constituted: {format_amount(principal, currency)} until {maturity_date}",
            user_id=actor_id, action="create_deposit", resource=deposit.id,
            module=MODULE, entity_type="fixed_deposit", amount=principal, currency=currency
        )
        self.audit_trail.record(
            AuditAction.DEPOSIT_CREATED, MODULE,
            f"Fixed deposit constituted: {format_amount(principal, currency)} - {start_date} to {maturity_date}",
            deposit.id, "fixed_deposit", actor_id,
            {"initial_principal": principal, "investor_id": investor_id, "currency": currency.code,
             "schedule_entries": len(schedule)}
        )
        return deposit

    def _check_payout_account(self, account_id: str, currency: Currency) -> None:
        account = self.funds.require_account(account_id)
        if account.currency != currency:
            raise ValidationError(
                f"Payout account {account.name} is in {account.currency.code}, deposit is in {currency.code}"
            )

    def get_deposit(self, deposit_id: str) -> Optional[Deposit]:
        data = self.storage.load(self.deposits_table, deposit_id)
        return Deposit.from_dict(data) if data else None

    def require_deposit(self, deposit_id: str) -> Deposit:
        deposit = self.get_deposit(deposit_id)
        if not deposit:
            raise NotFoundError(f"Fixed deposit {deposit_id} not found")
        return deposit

    def list_deposits(self, investor_id: Optional[str] = None,
                      state: Optional[DepositState] = None) -> List[Deposit]:
        """
        List deposits, newest start date first. The state filter matches
        the effective state, so MATURED finds active deposits past maturity.
        """
        filters = {'investor_id': investor_id} if investor_id else {}
        rows = self.storage.find(self.deposits_table, filters, order_by='start_date', descending=True)
        deposits = [Deposit.from_dict(row) for row in rows]
        if state is not None:
            state = _choice(DepositState, state, "deposit state")
            deposits = [d for d in deposits if self.effective_state(d) == state]
        return deposits

    def is_matured(self, deposit: Deposit) -> bool:
        """True once the maturity date is reached; capital may then be withdrawn"""
        return deposit.maturity_date <= self.today() or deposit.state == DepositState.MATURED

    def effective_state(self, deposit: Deposit) -> DepositState:
        if deposit.state == DepositState.ACTIVE and self.is_matured(deposit):
            return DepositState.MATURED
        return deposit.state

    def update_deposit(self, deposit_id: str, actor_id: Optional[str] = None, **changes) -> Deposit:
        """Update descriptive deposit fields; economics are fixed at creation"""
        unknown = set(changes) - self.UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        deposit = self.require_deposit(deposit_id)
        if changes.get('payout_account_id'):
            self._check_payout_account(changes['payout_account_id'], deposit.currency)

        changes['updated_at'] = utc_now()
        updated = Deposit.from_dict(self.storage.update(self.deposits_table, deposit_id, changes))
        self.audit_trail.record(
            AuditAction.UPDATE, MODULE, f"Fixed deposit updated: {deposit_id}",
            deposit_id, "fixed_deposit", actor_id,
            {"fields": sorted(k for k in changes if k != 'updated_at')}
        )
        return updated

    # --- Principal movements ---

    def _new_movement(
        self,
        deposit: Deposit,
        movement_type: DepositMovementType,
        movement_date: date,
        amount: Decimal,
        principal_after: Decimal,
        actor_id: Optional[str],
        **extra
    ) -> DepositMovement:
        now = utc_now()
        return DepositMovement(
            id=new_id(),
            created_at=now,
            updated_at=now,
            deposit_id=deposit.id,
            movement_type=movement_type,
            movement_date=movement_date,
            amount=amount,
            currency=deposit.currency,
            principal_before=deposit.current_principal,
            principal_after=principal_after,
            created_by=actor_id,
            **extra
        )

    def _adjust_principal(self, deposit_id: str, delta: Decimal) -> Decimal:
        try:
            return self.storage.adjust_decimal(self.deposits_table, deposit_id, 'current_principal', delta)
        except KeyError:
            raise NotFoundError(f"Fixed deposit {deposit_id} not found")

    def register_top_up(
        self,
        deposit_id: str,
        amount: Union[Decimal, int, str],
        movement_date: Union[date, str],
        observation: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> DepositMovement:
        """Add capital to an active deposit"""
        amount = _positive_amount(amount)
        deposit = self.require_deposit(deposit_id)
        if deposit.state != DepositState.ACTIVE:
            raise InvalidStateError("Top-ups are only allowed on active deposits")

        movement = self._new_movement(
            deposit, DepositMovementType.TOP_UP, parse_date(movement_date), amount,
            deposit.current_principal + amount, actor_id, observation=observation
        )
        with UnitOfWork("register_top_up", logger, self.audit_trail, MODULE) as uow:
            self.storage.save(self.movements_table, movement.id, movement.to_dict())
            uow.on_rollback("delete deposit movement", self.storage.delete, self.movements_table, movement.id)
            self._adjust_principal(deposit.id, amount)

        self.audit_trail.record(
            AuditAction.DEPOSIT_TOP_UP, MODULE,
            f"Top-up on fixed deposit {deposit.id}: {format_amount(amount, deposit.currency)}",
            deposit.id, "fixed_deposit", actor_id,
            {"amount": amount, "principal_before": movement.principal_before,
             "principal_after": movement.principal_after}
        )
        return movement

    def register_withdrawal(
        self,
        deposit_id: str,
        amount: Union[Decimal, int, str],
        movement_date: Union[date, str],
        observation: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> DepositMovement:
        """
        Withdraw capital from a matured deposit. The deposit closes when
        its principal reaches zero.
        """
        amount = _positive_amount(amount)
        deposit = self.require_deposit(deposit_id)
        if not self.is_matured(deposit):
            raise InvalidStateError(
                f"The deposit has not matured; capital can be withdrawn from {deposit.maturity_date}"
            )
        if deposit.state in FINAL_STATES:
            raise InvalidStateError(f"The deposit is already {deposit.state.value}")
        if amount > deposit.current_principal:
            raise InsufficientFundsError(
                f"Amount exceeds the available principal "
                f"({format_amount(deposit.current_principal, deposit.currency)})"
            )

        principal_after = deposit.current_principal - amount
        movement = self._new_movement(
            deposit, DepositMovementType.CAPITAL_WITHDRAWAL, parse_date(movement_date), amount,
            principal_after, actor_id, observation=observation
        )
        with UnitOfWork("register_withdrawal", logger, self.audit_trail, MODULE) as uow:
            self.storage.save(self.movements_table, movement.id, movement.to_dict())
            uow.on_rollback("delete deposit movement", self.storage.delete, self.movements_table, movement.id)
            self._adjust_principal(deposit.id, -amount)
            uow.on_rollback("restore principal", self._adjust_principal, deposit.id, amount)
            if principal_after == ZERO:
                self.storage.update(self.deposits_table, deposit.id, {
                    'state': DepositState.CLOSED, 'updated_at': utc_now()
                })

        self.audit_trail.record(
            AuditAction.DEPOSIT_WITHDRAWAL, MODULE,
            f"Capital withdrawal from fixed deposit {deposit.id}: {format_amount(amount, deposit.currency)}",
            deposit.id, "fixed_deposit", actor_id,
            {"amount": amount, "principal_before": movement.principal_before,
             "principal_after": principal_after}
        )
        return movement

    # --- Interest ---

    def get_schedule_entry(self, entry_id: str) -> Optional[PaymentScheduleEntry]:
        data = self.storage.load(self.schedule_table, entry_id)
        return PaymentScheduleEntry.from_dict(data) if data else None

    def _require_settleable_entry(self, deposit: Deposit, entry_id: str) -> PaymentScheduleEntry:
        entry = self.get_schedule_entry(entry_id)
        if not entry or entry.deposit_id != deposit.id:
            raise NotFoundError(f"Schedule entry {entry_id} not found")
        if not entry.state.is_settleable:
            raise InvalidStateError(f"Schedule entry {entry_id} was already processed")
        return entry

    def pay_interest(
        self,
        deposit_id: str,
        entry_id: str,
        amount: Union[Decimal, int, str],
        payment_date: Union[date, str],
        reference: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> DepositMovement:
        """
        Pay a scheduled interest installment into the payout account

        Only for deposits whose interest is paid out. Principal is unchanged.

        Args:
            deposit_id: Deposit paying the interest
            entry_id: Schedule entry being settled (pending or overdue)
            amount: Interest actually paid
            payment_date: Settlement date
            reference: Payment reference

        Returns:
            The interest payout DepositMovement
        """
        amount = _positive_amount(amount)
        payment_date = parse_date(payment_date)
        deposit = self.require_deposit(deposit_id)
        if deposit.disposition != InterestDisposition.PAY_OUT:
            raise InvalidStateError("This deposit capitalizes its interest; interest cannot be paid out")
        if not deposit.payout_account_id:
            raise InvalidStateError("No payout account configured to credit the interest")
        if deposit.state in (DepositState.CANCELLED, DepositState.RENEWED):
            raise InvalidStateError(f"The deposit is {deposit.state.value}")
        entry = self._require_settleable_entry(deposit, entry_id)
        self._check_payout_account(deposit.payout_account_id, deposit.currency)

        movement = self._new_movement(
            deposit, DepositMovementType.INTEREST_PAYOUT, payment_date, amount,
            deposit.current_principal, actor_id,
            reference=reference,
            scheduled_date=entry.scheduled_date,
            fund_account_id=deposit.payout_account_id
        )

        with UnitOfWork("pay_interest", logger, self.audit_trail, MODULE) as uow:
            credit = self.funds.post_movement(
                amount=amount,
                currency=deposit.currency,
                movement_date=payment_date,
                category=FundCategory.DEPOSIT_INTEREST,
                destination_account_id=deposit.payout_account_id,
                description=f"Deposit interest {deposit.id[:8]} - {entry.scheduled_date}",
                reference=reference,
                investor_id=deposit.investor_id,
                actor_id=actor_id
            )
            uow.on_rollback("reverse interest credit", self.funds.reverse_movement, credit.id, actor_id)
            movement.fund_movement_id = credit.id

            self.storage.save(self.movements_table, movement.id, movement.to_dict())
            uow.on_rollback("delete deposit movement", self.storage.delete, self.movements_table, movement.id)

            self.storage.update(self.schedule_table, entry.id, {
                'state': ScheduleEntryState.PAID,
                'actual_interest': amount,
                'settlement_date': payment_date,
                'movement_id': movement.id,
                'fund_account_id': deposit.payout_account_id,
                'updated_at': utc_now()
            })

        self.audit_trail.record(
            AuditAction.INTEREST_PAID, MODULE,
            f"Interest paid on fixed deposit {deposit.id}: {format_amount(amount, deposit.currency)} "
            f"(scheduled {entry.scheduled_date})",
            deposit.id, "fixed_deposit", actor_id,
            {"amount": amount, "scheduled_date": entry.scheduled_date, "account_id": deposit.payout_account_id}
        )
        return movement

    def capitalize_interest(
        self,
        deposit_id: str,
        entry_id: str,
        amount: Union[Decimal, int, str],
        capitalization_date: Union[date, str],
        actor_id: Optional[str] = None
    ) -> DepositMovement:
        """Add a scheduled interest installment to the principal"""
        amount = _positive_amount(amount)
        capitalization_date = parse_date(capitalization_date)
        deposit = self.require_deposit(deposit_id)
        if deposit.state != DepositState.ACTIVE:
            raise InvalidStateError("Interest can only be capitalized on active deposits")
        entry = self._require_settleable_entry(deposit, entry_id)

        movement = self._new_movement(
            deposit, DepositMovementType.INTEREST_CAPITALIZATION, capitalization_date, amount,
            deposit.current_principal + amount, actor_id,
            scheduled_date=entry.scheduled_date
        )

        with UnitOfWork("capitalize_interest", logger, self.audit_trail, MODULE) as uow:
            self.storage.save(self.movements_table, movement.id, movement.to_dict())
            uow.on_rollback("delete deposit movement", self.storage.delete, self.movements_table, movement.id)
            self._adjust_principal(deposit.id, amount)
            uow.on_rollback("restore principal", self._adjust_principal, deposit.id, -amount)
            self.storage.update(self.schedule_table, entry.id, {
                'state': ScheduleEntryState.CAPITALIZED,
                'actual_interest': amount,
                'settlement_date': capitalization_date,
                'movement_id': movement.id,
                'updated_at': utc_now()
            })

        self.audit_trail.record(
            AuditAction.INTEREST_CAPITALIZED, MODULE,
            f"Interest capitalized on fixed deposit {deposit.id}: {format_amount(amount, deposit.currency)} "
            f"(scheduled {entry.scheduled_date})",
            deposit.id, "fixed_deposit", actor_id,
            {"amount": amount, "principal_before": movement.principal_before,
             "principal_after": movement.principal_after}
        )
        return movement

    # --- Termination ---

    def _skip_open_entries(self, deposit_id: str, uow: UnitOfWork) -> int:
        skipped = 0
        for entry in self.list_schedule(deposit_id):
            if entry.state.is_settleable:
                self.storage.update(self.schedule_table, entry.id, {
                    'state': ScheduleEntryState.SKIPPED, 'updated_at': utc_now()
                })
                uow.on_rollback("restore schedule entry", self.storage.update, self.schedule_table,
                                entry.id, {'state': entry.state})
                skipped += 1
        return skipped

    def cancel_deposit(
        self,
        deposit_id: str,
        cancel_date: Union[date, str],
        note: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> Deposit:
        """
        Terminate a deposit early (or at maturity)

        The full current principal is credited to the payout account when
        one is linked, a withdrawal drives the principal to zero, every open
        schedule entry is skipped and the deposit is marked cancelled. A
        deposit with no principal left is simply marked closed.
        """
        cancel_date = parse_date(cancel_date)
        deposit = self.require_deposit(deposit_id)
        if deposit.state in FINAL_STATES:
            raise InvalidStateError(f"The deposit is already {deposit.state.value}")

        principal = deposit.current_principal
        if principal <= ZERO:
            closed = Deposit.from_dict(self.storage.update(self.deposits_table, deposit.id, {
                'state': DepositState.CLOSED, 'updated_at': utc_now()
            }))
            log_action(
                logger, "info", "Deposit closed on cancellation with no principal left",
                user_id=actor_id, action="cancel_deposit", resource=deposit.id,
                module=MODULE, entity_type="fixed_deposit"
            )
            self.audit_trail.record(
                AuditAction.DEPOSIT_CANCELLED, MODULE,
                f"Fixed deposit closed {deposit.id}: no principal left to return",
                deposit.id, "fixed_deposit", actor_id,
                {"principal_before": principal, "state": DepositState.CLOSED, "date": cancel_date}
            )
            return closed

        movement = self._new_movement(
            deposit, DepositMovementType.CAPITAL_WITHDRAWAL, cancel_date, principal, ZERO, actor_id,
            observation=note or "Early cancellation",
            fund_account_id=deposit.payout_account_id
        )

        with UnitOfWork("cancel_deposit", logger, self.audit_trail, MODULE) as uow:
            if deposit.payout_account_id:
                credit = self.funds.post_movement(
                    amount=principal,
                    currency=deposit.currency,
                    movement_date=cancel_date,
                    category=FundCategory.INVESTOR_WITHDRAWAL,
                    destination_account_id=deposit.payout_account_id,
                    description=f"Early cancellation of deposit {deposit.id[:8]}: {note or 'cancelled by admin'}",
                    investor_id=deposit.investor_id,
                    actor_id=actor_id
                )
                uow.on_rollback("reverse capital credit", self.funds.reverse_movement, credit.id, actor_id)
                movement.fund_movement_id = credit.id

            self.storage.save(self.movements_table, movement.id, movement.to_dict())
            uow.on_rollback("delete deposit movement", self.storage.delete, self.movements_table, movement.id)

            self._skip_open_entries(deposit.id, uow)

            cancelled = Deposit.from_dict(self.storage.update(self.deposits_table, deposit.id, {
                'state': DepositState.CANCELLED,
                'current_principal': ZERO,
                'updated_at': utc_now()
            }))

        self.audit_trail.record(
            AuditAction.DEPOSIT_CANCELLED, MODULE,
            f"Fixed deposit cancelled {deposit.id}: {format_amount(principal, deposit.currency)} returned"
            + (" to the investor account" if deposit.payout_account_id else ""),
            deposit.id, "fixed_deposit", actor_id,
            {"principal_before": principal, "account_id": deposit.payout_account_id, "date": cancel_date}
        )
        return cancelled

    def renew_deposit(
        self,
        deposit_id: str,
        renewal_date: Union[date, str],
        term_days: Optional[int] = None,
        annual_rate: Optional[Union[Decimal, int, str]] = None,
        actor_id: Optional[str] = None
    ) -> Deposit:
        """
        Roll a matured deposit's principal into a new deposit

        The old deposit gets a withdrawal to zero, its open entries are
        skipped and it is marked renewed. The new deposit keeps the old
        terms unless a new term or rate is given, and links back through
        origin_deposit_id.

        Returns:
            The new Deposit
        """
        renewal_date = parse_date(renewal_date)
        deposit = self.require_deposit(deposit_id)
        if deposit.state in FINAL_STATES:
            raise InvalidStateError(f"The deposit is already {deposit.state.value}")
        if not self.is_matured(deposit):
            raise InvalidStateError(f"The deposit matures on {deposit.maturity_date} and cannot be renewed yet")
        principal = deposit.current_principal
        if principal <= ZERO:
            raise InvalidStateError("The deposit has no principal to renew")

        movement = self._new_movement(
            deposit, DepositMovementType.CAPITAL_WITHDRAWAL, renewal_date, principal, ZERO, actor_id,
            observation="Renewal"
        )

        with UnitOfWork("renew_deposit", logger, self.audit_trail, MODULE) as uow:
            self.storage.save(self.movements_table, movement.id, movement.to_dict())
            uow.on_rollback("delete deposit movement", self.storage.delete, self.movements_table, movement.id)

            self._skip_open_entries(deposit.id, uow)

            self.storage.update(self.deposits_table, deposit.id, {
                'state': DepositState.RENEWED, 'current_principal': ZERO, 'updated_at': utc_now()
            })
            uow.on_rollback("restore deposit", self.storage.update, self.deposits_table, deposit.id, {
                'state': deposit.state, 'current_principal': principal
            })

            renewed = self.create_deposit(
                investor_id=deposit.investor_id,
                principal=principal,
                currency=deposit.currency,
                annual_rate=annual_rate if annual_rate is not None else deposit.annual_rate,
                method=deposit.method,
                term_days=term_days or deposit.term_days,
                start_date=renewal_date,
                frequency=deposit.frequency,
                disposition=deposit.disposition,
                auto_renew=deposit.auto_renew,
                payout_account_id=deposit.payout_account_id,
                observation=deposit.observation,
                origin_deposit_id=deposit.id,
                actor_id=actor_id
            )

        self.audit_trail.record(
            AuditAction.DEPOSIT_RENEWED, MODULE,
            f"Fixed deposit {deposit.id} renewed as {renewed.id}: {format_amount(principal, deposit.currency)}",
            deposit.id, "fixed_deposit", actor_id,
            {"new_deposit_id": renewed.id, "principal": principal}
        )
        return renewed

    # --- Queries ---

    def list_movements(self, deposit_id: str) -> List[DepositMovement]:
        """Principal ledger of a deposit, newest date first"""
        rows = self.storage.find(self.movements_table, {'deposit_id': deposit_id},
                                 order_by='movement_date', descending=True)
        return [DepositMovement.from_dict(row) for row in rows]

    def list_schedule(self, deposit_id: str) -> List[PaymentScheduleEntry]:
        """Schedule of a deposit in date order"""
        rows = self.storage.find(self.schedule_table, {'deposit_id': deposit_id}, order_by='scheduled_date')
        return [PaymentScheduleEntry.from_dict(row) for row in rows]

    def mark_overdue_entries(self, deposit_id: str) -> List[PaymentScheduleEntry]:
        """
        Flag pending entries whose date has passed as overdue. Overdue
        entries stay payable and capitalizable.

        Returns:
            Entries that changed state
        """
        today = self.today()
        changed = []
        for entry in self.list_schedule(deposit_id):
            if entry.state == ScheduleEntryState.PENDING and entry.scheduled_date < today:
                changed.append(PaymentScheduleEntry.from_dict(self.storage.update(
                    self.schedule_table, entry.id,
                    {'state': ScheduleEntryState.OVERDUE, 'updated_at': utc_now()}
                )))
        return changed

    def expected_interest(self, deposit_id: str) -> Decimal:
        """Interest over the whole term on the initial principal, unrounded"""
        deposit = self.require_deposit(deposit_id)
        return calculate_interest(
            deposit.initial_principal, deposit.annual_rate, deposit.term_days,
            deposit.method, self.day_count_basis
        )
