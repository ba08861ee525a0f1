"""
Fund Account Module

Owns fund account balances and the fund movements posted between them.
Every other ledger component posts money through this module.

A movement has an optional source and an optional destination account (at
least one): both set is a transfer, destination only is an inflow, source
only is an outflow. Posting is split into a validated command
(``post_movement``) and an unchecked primitive (``_apply_movement``) that
writes the record and both balance deltas as one compensating unit of work.
Balance sufficiency is NOT enforced here; callers that need it check with
``ensure_sufficient_balance`` before posting.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Type, TypeVar, Union, Any
from enum import Enum

from .currency import Currency, ZERO, to_decimal, format_amount
from .storage import StorageInterface, StorageRecord, new_id, utc_now
from .audit import AuditTrail, AuditAction
from .categories import FundCategory
from .errors import ValidationError, NotFoundError, InvalidStateError, InsufficientFundsError
from .interest import parse_date
from .unit_of_work import UnitOfWork
from .logging_config import get_logger, log_action

logger = get_logger("treasury.funds")

MODULE = "funds"

E = TypeVar("E", bound=Enum)


class AccountKind(Enum):
    """Kinds of fund accounts"""
    BANK = "bank"
    CASH = "cash"
    INVESTMENT_FUND = "investment_fund"


class OpeningBalanceKind(Enum):
    """Whether the opening balance is pre-existing money or fresh capital"""
    HISTORICAL = "historical"
    NEW = "new"


class MovementDirection(Enum):
    TRANSFER = "transfer"
    INFLOW = "inflow"
    OUTFLOW = "outflow"


class ExchangeKind(Enum):
    """Currency exchange direction, seen from the foreign currency"""
    PURCHASE = "purchase"  # local currency out, foreign currency in
    SALE = "sale"          # foreign currency out, local currency in


@dataclass
class Account(StorageRecord):
    """
    A named balance in one currency. Without an investor it is a house
    (general) account.
    """
    name: str
    kind: AccountKind
    currency: Currency
    opening_balance: Decimal = ZERO
    current_balance: Decimal = ZERO
    active: bool = True
    investor_id: Optional[str] = None
    central_box_id: Optional[str] = None
    opening_balance_kind: Optional[OpeningBalanceKind] = None

    @property
    def is_general(self) -> bool:
        return self.investor_id is None


@dataclass
class FundMovement(StorageRecord):
    """Immutable posting between fund accounts"""
    amount: Decimal
    currency: Currency
    movement_date: date
    category: FundCategory
    source_account_id: Optional[str] = None
    destination_account_id: Optional[str] = None
    description: Optional[str] = None
    reference: Optional[str] = None
    investor_id: Optional[str] = None
    cash_box_id: Optional[str] = None
    exchange_operation_id: Optional[str] = None
    created_by: Optional[str] = None

    def __post_init__(self):
        if not self.source_account_id and not self.destination_account_id:
            raise ValidationError("A movement needs a source or a destination account")
        if self.amount <= ZERO:
            raise ValidationError("Movement amount must be positive")

    @property
    def direction(self) -> MovementDirection:
        if self.source_account_id and self.destination_account_id:
            return MovementDirection.TRANSFER
        if self.destination_account_id:
            return MovementDirection.INFLOW
        return MovementDirection.OUTFLOW


def _decimal(value: Union[Decimal, int, str], what: str = "Amount") -> Decimal:
    try:
        return to_decimal(value)
    except ValueError:
        raise ValidationError(f"{what} is not a valid number: {value!r}")


def _positive_amount(value: Union[Decimal, int, str], what: str = "Amount") -> Decimal:
    amount = _decimal(value, what)
    if amount <= ZERO:
        raise ValidationError(f"{what} must be positive")
    return amount


def _currency(value: Union[str, Currency]) -> Currency:
    try:
        return Currency.from_code(value)
    except ValueError as e:
        raise ValidationError(str(e))


def _choice(enum_cls: Type[E], value: Any, what: str) -> E:
    """Coerce a raw value into a member of a closed enum"""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"Unknown {what}: {value}")


def _fund_category(value: Union[str, FundCategory]) -> FundCategory:
    return _choice(FundCategory, value, "fund category")


class FundAccountService:
    """
    Manages fund accounts and the movements that change their balances
    """

    UPDATABLE_FIELDS = {'name', 'kind', 'active', 'investor_id', 'central_box_id', 'opening_balance_kind'}

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        block_delete_with_movements: bool = True,
        max_movement_amount: Optional[Decimal] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.block_delete_with_movements = block_delete_with_movements
        self.max_movement_amount = max_movement_amount
        self.accounts_table = "fund_accounts"
        self.movements_table = "fund_movements"

    # --- Accounts ---

    def create_account(
        self,
        name: str,
        kind: AccountKind,
        currency: Union[str, Currency],
        opening_balance: Union[Decimal, int, str] = ZERO,
        current_balance: Optional[Union[Decimal, int, str]] = None,
        investor_id: Optional[str] = None,
        central_box_id: Optional[str] = None,
        active: bool = True,
        opening_balance_kind: Optional[OpeningBalanceKind] = None,
        actor_id: Optional[str] = None
    ) -> Account:
        """
        Create a fund account

        Args:
            name: Display name
            kind: Bank, cash or investment fund
            currency: Account currency
            opening_balance: Balance the account starts with
            current_balance: Explicit starting balance override (defaults to opening balance)
            investor_id: Owning investor; None for a general account
            central_box_id: Central cash box this account funds
            active: Whether the account accepts new movements in the UI
            opening_balance_kind: Historical balance or new capital
            actor_id: User performing the action

        Returns:
            Created Account
        """
        if not name or not name.strip():
            raise ValidationError("Account name is required")

        opening = _decimal(opening_balance, "Opening balance")
        current = _decimal(current_balance, "Current balance") if current_balance is not None else opening
        now = utc_now()

        account = Account(
            id=new_id(),
            created_at=now,
            updated_at=now,
            name=name.strip(),
            kind=_choice(AccountKind, kind, "account kind"),
            currency=_currency(currency),
            opening_balance=opening,
            current_balance=current,
            active=active,
            investor_id=investor_id or None,
            central_box_id=central_box_id or None,
            opening_balance_kind=(_choice(OpeningBalanceKind, opening_balance_kind, "opening balance kind")
                                  if opening_balance_kind is not None else None)
        )
        self.storage.save(self.accounts_table, account.id, account.to_dict())

        self.audit_trail.record(
            AuditAction.CREATE, MODULE,
            f"Fund account created: {account.name} ({format_amount(current, account.currency)})",
            account.id, "fund_account", actor_id,
            {"name": account.name, "currency": account.currency.code, "kind": account.kind.value}
        )
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        """Get account by ID"""
        data = self.storage.load(self.accounts_table, account_id)
        return Account.from_dict(data) if data else None

    def require_account(self, account_id: str) -> Account:
        account = self.get_account(account_id)
        if not account:
            raise NotFoundError(f"Account {account_id} not found")
        return account

    def list_accounts(self, active_only: bool = False, investor_id: Optional[str] = None) -> List[Account]:
        """List accounts, newest first"""
        filters: Dict[str, Any] = {}
        if active_only:
            filters['active'] = True
        if investor_id:
            filters['investor_id'] = investor_id
        rows = self.storage.find(self.accounts_table, filters, order_by='created_at', descending=True)
        return [Account.from_dict(row) for row in rows]

    def update_account(self, account_id: str, actor_id: Optional[str] = None, **changes) -> Account:
        """
        Update descriptive account fields. Balances change only through movements.
        """
        unknown = set(changes) - self.UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        self.require_account(account_id)
        if 'kind' in changes:
            changes['kind'] = _choice(AccountKind, changes['kind'], "account kind")
        if changes.get('opening_balance_kind') is not None:
            changes['opening_balance_kind'] = _choice(
                OpeningBalanceKind, changes['opening_balance_kind'], "opening balance kind"
            )

        changes['updated_at'] = utc_now()
        updated = Account.from_dict(self.storage.update(self.accounts_table, account_id, changes))

        self.audit_trail.record(
            AuditAction.UPDATE, MODULE, f"Fund account updated: {account_id}",
            account_id, "fund_account", actor_id,
            {"fields": sorted(k for k in changes if k != 'updated_at')}
        )
        return updated

    def deactivate_account(self, account_id: str, actor_id: Optional[str] = None) -> Account:
        """Soft-disable an account"""
        return self.update_account(account_id, actor_id=actor_id, active=False)

    def account_has_movements(self, account_id: str) -> bool:
        return bool(
            self.storage.find(self.movements_table, {'source_account_id': account_id})
            or self.storage.find(self.movements_table, {'destination_account_id': account_id})
        )

    def delete_account(self, account_id: str, actor_id: Optional[str] = None) -> None:
        """
        Delete an account. Refused while movements reference it (unless the
        guard is disabled); deactivate the account instead.
        """
        account = self.require_account(account_id)
        if self.block_delete_with_movements and self.account_has_movements(account_id):
            raise InvalidStateError(
                f"Account {account.name} has movements and cannot be deleted; deactivate it instead"
            )
        self.storage.delete(self.accounts_table, account_id)
        self.audit_trail.record(
            AuditAction.DELETE, MODULE, f"Fund account deleted: {account.name} (ID: {account_id})",
            account_id, "fund_account", actor_id
        )

    @staticmethod
    def ensure_sufficient_balance(account: Account, amount: Decimal) -> None:
        """Caller-side check used before posting an outflow"""
        if account.current_balance < amount:
            raise InsufficientFundsError(
                f"Insufficient balance in account {account.name}. "
                f"Available: {format_amount(account.current_balance, account.currency)}"
            )

    # --- Movements ---

    def post_movement(
        self,
        amount: Union[Decimal, int, str],
        currency: Union[str, Currency],
        movement_date: Union[date, str],
        category: Union[FundCategory, str],
        source_account_id: Optional[str] = None,
        destination_account_id: Optional[str] = None,
        description: Optional[str] = None,
        reference: Optional[str] = None,
        investor_id: Optional[str] = None,
        cash_box_id: Optional[str] = None,
        exchange_operation_id: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> FundMovement:
        """
        Validate and post a movement

        The source balance is decremented and the destination balance
        incremented by the amount. Validation covers the input only (amount,
        endpoints, currencies, category flow on house accounts); balance
        sufficiency is the caller's concern.

        Returns:
            Posted FundMovement

        Raises:
            ValidationError: Bad amount, missing endpoints, currency mismatch,
                category flowing the wrong way for a house account
            NotFoundError: Unknown endpoint account
        """
        amount = _positive_amount(amount)
        currency = _currency(currency)
        category = _fund_category(category)

        if not source_account_id and not destination_account_id:
            raise ValidationError("A movement needs a source or a destination account")
        if source_account_id and source_account_id == destination_account_id:
            raise ValidationError("Source and destination accounts must differ")
        if self.max_movement_amount is not None and amount > self.max_movement_amount:
            raise ValidationError(
                f"Amount exceeds the maximum allowed per movement ({self.max_movement_amount})"
            )

        accounts = {}
        for account_id in (source_account_id, destination_account_id):
            if account_id:
                account = self.require_account(account_id)
                if account.currency != currency:
                    raise ValidationError(
                        f"Account {account.name} is in {account.currency.code}, movement is in {currency.code}"
                    )
                accounts[account_id] = account

        # House inflows take income categories and house outflows take the rest.
        # Investor-attributed movements follow the investor's side instead.
        if not (source_account_id and destination_account_id) and not investor_id:
            account = accounts[source_account_id or destination_account_id]
            inflow = bool(destination_account_id)
            if account.is_general and category.is_ingress != inflow:
                raise ValidationError(
                    f"Category {category.value} cannot be used for an "
                    f"{'inflow to' if inflow else 'outflow from'} account {account.name}"
                )

        now = utc_now()
        movement = FundMovement(
            id=new_id(),
            created_at=now,
            updated_at=now,
            amount=amount,
            currency=currency,
            movement_date=parse_date(movement_date),
            category=category,
            source_account_id=source_account_id or None,
            destination_account_id=destination_account_id or None,
            description=description,
            reference=reference,
            investor_id=investor_id,
            cash_box_id=cash_box_id,
            exchange_operation_id=exchange_operation_id,
            created_by=actor_id
        )
        self._apply_movement(movement)

        log_action(
            logger, "info", f"Posted {movement.direction.value} {format_amount(amount, currency)}",
            user_id=actor_id, action="post_movement", resource=movement.id,
            module=MODULE, entity_type="fund_movement", amount=amount, currency=currency
        )
        self.audit_trail.record(
            AuditAction.MOVEMENT_CREATED, MODULE,
            f"Fund movement: {category.value} - {format_amount(amount, currency)} ({movement.movement_date})",
            movement.id, "fund_movement", actor_id,
            {
                "amount": amount,
                "category": category.value,
                "date": movement.movement_date,
                "source_account_id": movement.source_account_id,
                "destination_account_id": movement.destination_account_id
            }
        )
        return movement

    def _apply_movement(self, movement: FundMovement) -> None:
        """
        Unchecked posting primitive: write the record and both balance
        deltas; if any write fails, undo the ones already applied.
        """
        with UnitOfWork("apply_movement", logger, self.audit_trail, MODULE) as uow:
            self.storage.save(self.movements_table, movement.id, movement.to_dict())
            uow.on_rollback("delete movement record", self.storage.delete, self.movements_table, movement.id)

            if movement.source_account_id:
                self._adjust_balance(movement.source_account_id, -movement.amount)
                uow.on_rollback("restore source balance", self._adjust_balance,
                                movement.source_account_id, movement.amount)

            if movement.destination_account_id:
                self._adjust_balance(movement.destination_account_id, movement.amount)

    def _adjust_balance(self, account_id: str, delta: Decimal) -> Decimal:
        try:
            return self.storage.adjust_decimal(self.accounts_table, account_id, 'current_balance', delta)
        except KeyError:
            raise NotFoundError(f"Account {account_id} not found")

    def get_movement(self, movement_id: str) -> Optional[FundMovement]:
        data = self.storage.load(self.movements_table, movement_id)
        return FundMovement.from_dict(data) if data else None

    def require_movement(self, movement_id: str) -> FundMovement:
        movement = self.get_movement(movement_id)
        if not movement:
            raise NotFoundError(f"Fund movement {movement_id} not found")
        return movement

    def reverse_movement(self, movement_id: str, actor_id: Optional[str] = None) -> FundMovement:
        """
        Undo a movement: apply the inverse balance deltas and delete the record.

        Used for direct deletion and as the compensation of a posting whose
        enclosing operation failed.

        Returns:
            The movement that was removed
        """
        movement = self.require_movement(movement_id)

        with UnitOfWork("reverse_movement", logger, self.audit_trail, MODULE) as uow:
            if movement.source_account_id:
                self._adjust_balance(movement.source_account_id, movement.amount)
                uow.on_rollback("re-debit source", self._adjust_balance,
                                movement.source_account_id, -movement.amount)
            if movement.destination_account_id:
                self._adjust_balance(movement.destination_account_id, -movement.amount)
                uow.on_rollback("re-credit destination", self._adjust_balance,
                                movement.destination_account_id, movement.amount)
            self.storage.delete(self.movements_table, movement.id)

        self.audit_trail.record(
            AuditAction.MOVEMENT_DELETED, MODULE,
            f"Fund movement removed {movement.id}: {movement.category.value} - "
            f"{format_amount(movement.amount, movement.currency)}",
            movement.id, "fund_movement", actor_id,
            {"amount": movement.amount, "category": movement.category.value, "date": movement.movement_date}
        )
        return movement

    def delete_movement(self, movement_id: str, actor_id: Optional[str] = None) -> List[str]:
        """
        Delete a movement, and its sibling leg when it belongs to a currency
        exchange pair.

        Returns:
            IDs of the deleted movements
        """
        movement = self.require_movement(movement_id)
        legs = [movement]
        if movement.exchange_operation_id:
            siblings = [
                FundMovement.from_dict(row)
                for row in self.storage.find(
                    self.movements_table, {'exchange_operation_id': movement.exchange_operation_id}
                )
                if row['id'] != movement.id
            ]
            legs = siblings + [movement]

        with UnitOfWork("delete_movement", logger, self.audit_trail, MODULE) as uow:
            for leg in legs:
                self.reverse_movement(leg.id, actor_id=actor_id)
                uow.on_rollback(f"restore movement {leg.id}", self._apply_movement, leg)

        return [leg.id for leg in legs]

    def post_exchange_pair(
        self,
        kind: ExchangeKind,
        source_account_id: str,
        destination_account_id: str,
        source_amount: Union[Decimal, int, str],
        destination_amount: Union[Decimal, int, str],
        movement_date: Union[date, str],
        description: Optional[str] = None,
        reference: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> Tuple[FundMovement, FundMovement]:
        """
        Post a currency exchange as two linked movements, each in its own
        account's currency. If the ingress leg fails, the egress leg is
        reversed before the error propagates.

        Returns:
            (egress, ingress) movements sharing one exchange id
        """
        kind = _choice(ExchangeKind, kind, "exchange kind")
        source_amount = _positive_amount(source_amount, "Source amount")
        destination_amount = _positive_amount(destination_amount, "Destination amount")
        source = self.require_account(source_account_id)
        destination = self.require_account(destination_account_id)
        if source.currency == destination.currency:
            raise ValidationError("An exchange needs accounts in different currencies")

        if kind == ExchangeKind.PURCHASE:
            egress_category, ingress_category = FundCategory.CURRENCY_PURCHASE, FundCategory.CURRENCY_PURCHASE_INCOME
        else:
            egress_category, ingress_category = FundCategory.CURRENCY_SALE, FundCategory.CURRENCY_SALE_INCOME

        exchange_id = f"fx_{new_id()}"
        with UnitOfWork("post_exchange_pair", logger, self.audit_trail, MODULE) as uow:
            egress = self.post_movement(
                amount=source_amount,
                currency=source.currency,
                movement_date=movement_date,
                category=egress_category,
                source_account_id=source.id,
                description=description or f"Exchange {kind.value}: {format_amount(source_amount, source.currency)}",
                reference=reference,
                exchange_operation_id=exchange_id,
                actor_id=actor_id
            )
            uow.on_rollback("reverse egress leg", self.reverse_movement, egress.id, actor_id)

            ingress = self.post_movement(
                amount=destination_amount,
                currency=destination.currency,
                movement_date=movement_date,
                category=ingress_category,
                destination_account_id=destination.id,
                description=description or f"Exchange {kind.value}: {format_amount(destination_amount, destination.currency)}",
                reference=reference,
                exchange_operation_id=exchange_id,
                actor_id=actor_id
            )

        self.audit_trail.record(
            AuditAction.EXCHANGE_CREATED, MODULE,
            f"Currency {kind.value}: {format_amount(source_amount, source.currency)} -> "
            f"{format_amount(destination_amount, destination.currency)}",
            exchange_id, "exchange_operation", actor_id,
            {"egress_id": egress.id, "ingress_id": ingress.id}
        )
        return egress, ingress

    def list_movements(
        self,
        source_account_id: Optional[str] = None,
        destination_account_id: Optional[str] = None,
        investor_id: Optional[str] = None,
        account_id: Optional[str] = None,
        date_from: Optional[Union[date, str]] = None,
        date_to: Optional[Union[date, str]] = None
    ) -> List[FundMovement]:
        """
        List movements, newest date first

        Args:
            source_account_id: Only movements leaving this account
            destination_account_id: Only movements entering this account
            investor_id: Only movements linked to this investor
            account_id: Movements touching this account on either side
            date_from: Inclusive lower date bound
            date_to: Inclusive upper date bound
        """
        filters: Dict[str, Any] = {}
        if source_account_id:
            filters['source_account_id'] = source_account_id
        if destination_account_id:
            filters['destination_account_id'] = destination_account_id
        if investor_id:
            filters['investor_id'] = investor_id

        range_kwargs = {}
        if date_from or date_to:
            range_kwargs = {
                'range_field': 'movement_date',
                'range_from': parse_date(date_from) if date_from else None,
                'range_to': parse_date(date_to) if date_to else None,
            }

        rows = self.storage.find(self.movements_table, filters, order_by='movement_date',
                                 descending=True, **range_kwargs)
        if account_id:
            rows = [
                r for r in rows
                if account_id in (r.get('source_account_id'), r.get('destination_account_id'))
            ]
        return [FundMovement.from_dict(row) for row in rows]

    def recompute_balance(self, account_id: str) -> Decimal:
        """Opening balance plus the signed sum of all movements touching the account"""
        account = self.require_account(account_id)
        balance = account.opening_balance
        for movement in self.list_movements(account_id=account_id):
            if movement.destination_account_id == account_id:
                balance += movement.amount
            if movement.source_account_id == account_id:
                balance -= movement.amount
        return balance
