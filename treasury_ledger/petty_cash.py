"""
Petty Cash Module

Two-level imprest hierarchy: central boxes are funded from a fund account,
sub-boxes are funded by transfers from their parent central box and capped
by a ceiling. Expenses are justified in reimbursements; approving one posts
the expense rows and a replenishment that restores the box toward its
ceiling. Closings are append-only balance snapshots.
"""

from decimal import Decimal
from datetime import date, datetime
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union, Any
from enum import Enum

from .currency import Currency, ZERO, round2, format_amount
from .storage import StorageInterface, StorageRecord, new_id, utc_now
from .audit import AuditTrail, AuditAction
from .categories import CashCategory, CashMovementType, IngressSubtype, FundCategory, EXPENSE_CATEGORIES
from .errors import ValidationError, NotFoundError, InvalidStateError, InsufficientFundsError
from .funds import FundAccountService, _decimal, _positive_amount, _currency, _choice
from .interest import parse_date
from .unit_of_work import UnitOfWork
from .logging_config import get_logger, log_action

logger = get_logger("treasury.petty_cash")

MODULE = "petty_cash"


class BoxLevel(Enum):
    CENTRAL = "central"
    SUB = "sub"


class BoxStatus(Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class ReimbursementStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ClosingPeriod(Enum):
    DAILY = "daily"
    MONTHLY = "monthly"


@dataclass
class CashBox(StorageRecord):
    """A node in the imprest hierarchy"""
    name: str
    level: BoxLevel
    currency: Currency
    ceiling: Decimal = ZERO
    opening_balance: Decimal = ZERO
    current_balance: Decimal = ZERO
    status: BoxStatus = BoxStatus.ACTIVE
    parent_id: Optional[str] = None           # sub only
    funding_account_id: Optional[str] = None  # central only
    responsible_name: Optional[str] = None
    responsible_id: Optional[str] = None
    assigned_user_id: Optional[str] = None

    @property
    def is_central(self) -> bool:
        return self.level == BoxLevel.CENTRAL

    @property
    def available_room(self) -> Optional[Decimal]:
        """Amount a sub-box can still receive before hitting its ceiling (None = uncapped)"""
        if self.ceiling <= ZERO:
            return None
        return self.ceiling - self.current_balance


@dataclass
class CashMovement(StorageRecord):
    """Ingress or egress against one cash box"""
    box_id: str
    movement_type: CashMovementType
    amount: Decimal
    currency: Currency
    movement_date: date
    category: CashCategory
    description: Optional[str] = None
    ingress_subtype: Optional[IngressSubtype] = None
    reconciled: bool = False
    receipt_reference: Optional[str] = None
    reimbursement_id: Optional[str] = None
    fund_movement_id: Optional[str] = None
    exchange_operation_id: Optional[str] = None
    exchange_rate_used: Optional[Decimal] = None
    created_by: Optional[str] = None

    @property
    def signed_amount(self) -> Decimal:
        return self.amount * self.movement_type.sign


@dataclass
class ReimbursementItem:
    """One receipt inside a reimbursement"""
    amount: Decimal
    category: CashCategory
    description: Optional[str] = None
    receipt_reference: Optional[str] = None


@dataclass
class Reimbursement(StorageRecord):
    box_id: str
    reimbursement_date: date
    total_spent: Decimal
    replenishment_amount: Decimal
    status: ReimbursementStatus = ReimbursementStatus.PENDING
    items: List[ReimbursementItem] = field(default_factory=list)
    responsible_name: Optional[str] = None
    created_by: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejection_reason: Optional[str] = None


@dataclass
class CashClosing(StorageRecord):
    """Point-in-time snapshot of a box balance; never mutates the box"""
    box_id: str
    closing_date: date
    period: ClosingPeriod
    recorded_balance: Decimal
    notes: Optional[str] = None
    created_by: Optional[str] = None


@dataclass
class ControlMatrixRow:
    box_id: str
    location: str
    responsible: str
    level: BoxLevel
    opening_balance: Decimal
    deliveries_and_replenishments: Decimal
    expenses: Decimal
    current_balance: Decimal
    currency: Currency


def _cash_category(value: Union[str, CashCategory]) -> CashCategory:
    return _choice(CashCategory, value, "cash category")


def _reimbursement_item(item: Union[ReimbursementItem, Dict[str, Any]]) -> ReimbursementItem:
    if isinstance(item, dict):
        item = ReimbursementItem(
            amount=item.get('amount'),
            category=item.get('category', CashCategory.OTHER),
            description=item.get('description'),
            receipt_reference=item.get('receipt_reference')
        )
    category = _cash_category(item.category)
    if category not in EXPENSE_CATEGORIES:
        raise ValidationError(f"{category.value} is not an expense category")
    return ReimbursementItem(
        amount=_positive_amount(item.amount, "Item amount"),
        category=category,
        description=item.description,
        receipt_reference=item.receipt_reference
    )


class PettyCashService:
    """
    Manages cash boxes, their movements, reimbursements and closings
    """

    UPDATABLE_FIELDS = {
        'name', 'ceiling', 'responsible_name', 'responsible_id',
        'assigned_user_id', 'funding_account_id', 'status'
    }

    def __init__(
        self,
        storage: StorageInterface,
        funds: FundAccountService,
        audit_trail: AuditTrail,
        block_delete_with_movements: bool = True
    ):
        self.storage = storage
        self.funds = funds
        self.audit_trail = audit_trail
        self.block_delete_with_movements = block_delete_with_movements
        self.boxes_table = "cash_boxes"
        self.movements_table = "cash_movements"
        self.reimbursements_table = "reimbursements"
        self.closings_table = "cash_closings"

    # --- Boxes ---

    def create_box(
        self,
        name: str,
        level: BoxLevel,
        currency: Union[str, Currency],
        ceiling: Union[Decimal, int, str] = ZERO,
        opening_balance: Union[Decimal, int, str] = ZERO,
        parent_id: Optional[str] = None,
        funding_account_id: Optional[str] = None,
        responsible_name: Optional[str] = None,
        responsible_id: Optional[str] = None,
        assigned_user_id: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> CashBox:
        """
        Create a cash box

        Sub-boxes always start at zero, need a central parent and never keep
        a funding account. Central boxes keep their opening balance and an
        optional funding account in the same currency.

        Returns:
            Created CashBox
        """
        if not name or not name.strip():
            raise ValidationError("Box name is required")
        level = _choice(BoxLevel, level, "box level")
        currency = _currency(currency)
        ceiling = _decimal(ceiling, "Ceiling")
        if ceiling < ZERO:
            raise ValidationError("Ceiling cannot be negative")

        if level == BoxLevel.SUB:
            if not parent_id:
                raise ValidationError("A sub-box needs a parent central box")
            parent = self.require_box(parent_id)
            if not parent.is_central:
                raise ValidationError(f"Parent box {parent.name} is not a central box")
            opening = ZERO
            funding_account_id = None
        else:
            parent_id = None
            opening = _decimal(opening_balance, "Opening balance")
            if funding_account_id:
                account = self.funds.require_account(funding_account_id)
                if account.currency != currency:
                    raise ValidationError(
                        f"Funding account {account.name} is in {account.currency.code}, box is in {currency.code}"
                    )

        now = utc_now()
        box = CashBox(
            id=new_id(),
            created_at=now,
            updated_at=now,
            name=name.strip(),
            level=level,
            currency=currency,
            ceiling=ceiling,
            opening_balance=opening,
            current_balance=opening,
            parent_id=parent_id,
            funding_account_id=funding_account_id or None,
            responsible_name=responsible_name,
            responsible_id=responsible_id,
            assigned_user_id=assigned_user_id
        )
        self.storage.save(self.boxes_table, box.id, box.to_dict())

        self.audit_trail.record(
            AuditAction.CREATE, MODULE, f"Cash box created: {box.name}",
            box.id, "cash_box", actor_id,
            {"level": level.value, "currency": currency.code, "parent_id": parent_id}
        )
        return box

    def get_box(self, box_id: str) -> Optional[CashBox]:
        data = self.storage.load(self.boxes_table, box_id)
        return CashBox.from_dict(data) if data else None

    def require_box(self, box_id: str) -> CashBox:
        box = self.get_box(box_id)
        if not box:
            raise NotFoundError(f"Cash box {box_id} not found")
        return box

    def list_boxes(self) -> List[CashBox]:
        """All boxes, newest first"""
        rows = self.storage.find(self.boxes_table, order_by='created_at', descending=True)
        return [CashBox.from_dict(row) for row in rows]

    def list_central_boxes(self) -> List[CashBox]:
        return [box for box in self.list_boxes() if box.is_central]

    def list_sub_boxes(self, parent_id: str) -> List[CashBox]:
        return [box for box in self.list_boxes() if box.parent_id == parent_id]

    def boxes_for_user(self, user_id: str) -> List[CashBox]:
        """Boxes an assigned viewer may see and operate"""
        return [box for box in self.list_boxes() if box.assigned_user_id == user_id]

    def update_box(self, box_id: str, actor_id: Optional[str] = None, **changes) -> CashBox:
        """
        Update descriptive box fields. Level, currency, parent and balances
        are immutable here.
        """
        unknown = set(changes) - self.UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        box = self.require_box(box_id)

        if 'ceiling' in changes:
            changes['ceiling'] = _decimal(changes['ceiling'], "Ceiling")
            if changes['ceiling'] < ZERO:
                raise ValidationError("Ceiling cannot be negative")
        if 'status' in changes:
            changes['status'] = _choice(BoxStatus, changes['status'], "box status")
        if changes.get('funding_account_id'):
            if not box.is_central:
                raise ValidationError("Only central boxes can have a funding account")
            account = self.funds.require_account(changes['funding_account_id'])
            if account.currency != box.currency:
                raise ValidationError(
                    f"Funding account {account.name} is in {account.currency.code}, box is in {box.currency.code}"
                )

        changes['updated_at'] = utc_now()
        updated = CashBox.from_dict(self.storage.update(self.boxes_table, box_id, changes))

        self.audit_trail.record(
            AuditAction.UPDATE, MODULE, f"Cash box updated: {box_id}",
            box_id, "cash_box", actor_id,
            {"fields": sorted(k for k in changes if k != 'updated_at')}
        )
        return updated

    def close_box(self, box_id: str, actor_id: Optional[str] = None) -> CashBox:
        """Mark a box closed; closed boxes accept no movements"""
        return self.update_box(box_id, actor_id=actor_id, status=BoxStatus.CLOSED)

    def reopen_box(self, box_id: str, actor_id: Optional[str] = None) -> CashBox:
        return self.update_box(box_id, actor_id=actor_id, status=BoxStatus.ACTIVE)

    def delete_box(self, box_id: str, actor_id: Optional[str] = None) -> None:
        """Delete a box; refused while movements or sub-boxes reference it"""
        box = self.require_box(box_id)
        if self.block_delete_with_movements:
            if self.storage.find(self.movements_table, {'box_id': box_id}):
                raise InvalidStateError(f"Cash box {box.name} has movements and cannot be deleted; close it instead")
            if self.list_sub_boxes(box_id):
                raise InvalidStateError(f"Cash box {box.name} has sub-boxes and cannot be deleted")

        self.storage.delete(self.boxes_table, box_id)
        self.audit_trail.record(
            AuditAction.DELETE, MODULE, f"Cash box deleted: {box.name} (ID: {box_id})",
            box_id, "cash_box", actor_id
        )

    # --- Movements ---

    def post_cash_movement(
        self,
        box_id: str,
        movement_type: CashMovementType,
        amount: Union[Decimal, int, str],
        movement_date: Union[date, str],
        category: Union[CashCategory, str],
        currency: Optional[Union[str, Currency]] = None,
        description: Optional[str] = None,
        ingress_subtype: Optional[IngressSubtype] = None,
        reconciled: bool = False,
        receipt_reference: Optional[str] = None,
        reimbursement_id: Optional[str] = None,
        exchange_operation_id: Optional[str] = None,
        exchange_rate_used: Optional[Decimal] = None,
        actor_id: Optional[str] = None,
        fund_from_account: bool = True
    ) -> CashMovement:
        """
        Post a movement on a cash box

        An ingress on a central box with a funding account first debits that
        account through a linked fund movement; the account must cover the
        amount. Pass fund_from_account=False when the cash comes from
        somewhere else (the other leg of a currency purchase). The movement record and the box balance are then written. A
        failure after the debit credits the account back before the error
        propagates.

        Returns:
            Posted CashMovement

        Raises:
            ValidationError: Bad amount, currency or subtype
            NotFoundError: Unknown box or funding account
            InvalidStateError: Box is closed
            InsufficientFundsError: Funding account cannot cover the ingress
        """
        movement_type = _choice(CashMovementType, movement_type, "cash movement type")
        amount = _positive_amount(amount)
        category = _cash_category(category)
        box = self.require_box(box_id)

        if box.status == BoxStatus.CLOSED:
            raise InvalidStateError(f"Cash box {box.name} is closed")
        currency = _currency(currency) if currency else box.currency
        if currency != box.currency:
            raise ValidationError(f"Cash box {box.name} is in {box.currency.code}, movement is in {currency.code}")
        if ingress_subtype is not None:
            if movement_type != CashMovementType.INGRESS:
                raise ValidationError("Only ingress movements carry an ingress subtype")
            ingress_subtype = _choice(IngressSubtype, ingress_subtype, "ingress subtype")

        movement_date = parse_date(movement_date)
        funding_account = None
        if (fund_from_account and box.is_central and movement_type == CashMovementType.INGRESS
                and box.funding_account_id):
            funding_account = self.funds.require_account(box.funding_account_id)
            self.funds.ensure_sufficient_balance(funding_account, amount)

        now = utc_now()
        movement = CashMovement(
            id=new_id(),
            created_at=now,
            updated_at=now,
            box_id=box.id,
            movement_type=movement_type,
            amount=amount,
            currency=currency,
            movement_date=movement_date,
            category=category,
            description=description,
            ingress_subtype=ingress_subtype,
            reconciled=reconciled,
            receipt_reference=receipt_reference,
            reimbursement_id=reimbursement_id,
            exchange_operation_id=exchange_operation_id,
            exchange_rate_used=_decimal(exchange_rate_used, "Exchange rate") if exchange_rate_used is not None else None,
            created_by=actor_id
        )

        with UnitOfWork("post_cash_movement", logger, self.audit_trail, MODULE) as uow:
            if funding_account:
                fund_movement = self.funds.post_movement(
                    amount=amount,
                    currency=funding_account.currency,
                    movement_date=movement_date,
                    category=FundCategory.FUND_TO_SUB_BOX,
                    source_account_id=funding_account.id,
                    description=f"Funding of cash box {box.name}",
                    cash_box_id=box.id,
                    actor_id=actor_id
                )
                uow.on_rollback("credit funding account back", self.funds.reverse_movement,
                                fund_movement.id, actor_id)
                movement.fund_movement_id = fund_movement.id

            self.storage.save(self.movements_table, movement.id, movement.to_dict())
            uow.on_rollback("delete cash movement record", self.storage.delete, self.movements_table, movement.id)
            self._adjust_balance(box.id, movement.signed_amount)

        log_action(
            logger, "info", f"Cash {movement_type.value} {format_amount(amount, currency)} on {box.name}",
            user_id=actor_id, action="post_cash_movement", resource=movement.id,
            module=MODULE, entity_type="cash_movement", amount=amount, currency=currency
        )
        self.audit_trail.record(
            AuditAction.MOVEMENT_CREATED, MODULE,
            f"Cash {movement_type.value} on box {box.name}: {format_amount(amount, currency)} - "
            f"{description or category.value}",
            movement.id, "cash_movement", actor_id,
            {"box_id": box.id, "amount": amount, "type": movement_type.value, "category": category.value}
        )
        return movement

    def _adjust_balance(self, box_id: str, delta: Decimal) -> Decimal:
        try:
            return self.storage.adjust_decimal(self.boxes_table, box_id, 'current_balance', delta)
        except KeyError:
            raise NotFoundError(f"Cash box {box_id} not found")

    def get_movement(self, movement_id: str) -> Optional[CashMovement]:
        data = self.storage.load(self.movements_table, movement_id)
        return CashMovement.from_dict(data) if data else None

    def require_movement(self, movement_id: str) -> CashMovement:
        movement = self.get_movement(movement_id)
        if not movement:
            raise NotFoundError(f"Cash movement {movement_id} not found")
        return movement

    def _remove_movement(self, movement: CashMovement, actor_id: Optional[str]) -> Optional[str]:
        """
        Reverse one movement's balance effect, credit back a linked funding
        account and delete the record.

        Returns:
            ID of the compensating fund movement, if one was posted
        """
        compensating_id = None
        with UnitOfWork("remove_cash_movement", logger, self.audit_trail, MODULE) as uow:
            self._adjust_balance(movement.box_id, -movement.signed_amount)
            uow.on_rollback("restore box balance", self._adjust_balance, movement.box_id, movement.signed_amount)

            if movement.fund_movement_id:
                linked = self.funds.get_movement(movement.fund_movement_id)
                if linked and linked.source_account_id:
                    inflow = self.funds.post_movement(
                        amount=linked.amount,
                        currency=linked.currency,
                        movement_date=movement.movement_date,
                        category=FundCategory.OTHER_INCOME,
                        destination_account_id=linked.source_account_id,
                        description=f"Reversal of cash box funding {movement.id}",
                        cash_box_id=movement.box_id,
                        actor_id=actor_id
                    )
                    compensating_id = inflow.id
                    uow.on_rollback("reverse compensating inflow", self.funds.reverse_movement, inflow.id, actor_id)

            self.storage.delete(self.movements_table, movement.id)
        return compensating_id

    def _restore_movement(self, movement: CashMovement, compensating_id: Optional[str],
                          actor_id: Optional[str]) -> None:
        if compensating_id:
            self.funds.reverse_movement(compensating_id, actor_id)
        self.storage.save(self.movements_table, movement.id, movement.to_dict())
        self._adjust_balance(movement.box_id, movement.signed_amount)

    def delete_cash_movement(self, movement_id: str, box_id: Optional[str] = None,
                             actor_id: Optional[str] = None) -> List[str]:
        """
        Delete a cash movement. A currency exchange leg takes its sibling
        with it, sibling first.

        Returns:
            IDs of the deleted movements
        """
        movement = self.require_movement(movement_id)
        if box_id and movement.box_id != box_id:
            raise ValidationError(f"Cash movement {movement_id} does not belong to box {box_id}")

        legs = [movement]
        if movement.exchange_operation_id:
            siblings = [
                CashMovement.from_dict(row)
                for row in self.storage.find(
                    self.movements_table, {'exchange_operation_id': movement.exchange_operation_id}
                )
                if row['id'] != movement.id
            ]
            legs = siblings + [movement]

        with UnitOfWork("delete_cash_movement", logger, self.audit_trail, MODULE) as uow:
            for leg in legs:
                compensating_id = self._remove_movement(leg, actor_id)
                uow.on_rollback(f"restore cash movement {leg.id}", self._restore_movement,
                                leg, compensating_id, actor_id)

        for leg in legs:
            self.audit_trail.record(
                AuditAction.MOVEMENT_DELETED, MODULE,
                f"Cash movement deleted {leg.id}: {leg.movement_type.value} "
                f"{format_amount(leg.amount, leg.currency)} - {leg.category.value}",
                leg.id, "cash_movement", actor_id,
                {"box_id": leg.box_id, "amount": leg.amount, "type": leg.movement_type.value}
            )
        return [leg.id for leg in legs]

    def list_movements(self, box_id: str) -> List[CashMovement]:
        """Movements of one box, newest date first"""
        rows = self.storage.find(self.movements_table, {'box_id': box_id},
                                 order_by='movement_date', descending=True)
        return [CashMovement.from_dict(row) for row in rows]

    def list_movements_for_period(self, boxes: List[CashBox], date_from: Union[date, str],
                                  date_to: Union[date, str]) -> List[CashMovement]:
        """Movements of several boxes within an inclusive date range, newest first"""
        date_from, date_to = parse_date(date_from), parse_date(date_to)
        movements = [
            m for box in boxes for m in self.list_movements(box.id)
            if date_from <= m.movement_date <= date_to
        ]
        return sorted(movements, key=lambda m: m.movement_date, reverse=True)

    def recompute_balance(self, box_id: str) -> Decimal:
        """Opening balance plus the signed sum of the box's own movements"""
        box = self.require_box(box_id)
        return box.opening_balance + sum((m.signed_amount for m in self.list_movements(box_id)), ZERO)

    # --- Hierarchy flows ---

    def transfer_central_to_sub(
        self,
        central_id: str,
        sub_id: str,
        amount: Union[Decimal, int, str],
        movement_date: Union[date, str],
        actor_id: Optional[str] = None
    ) -> Tuple[CashMovement, CashMovement]:
        """
        Move cash from a central box to one of its sub-boxes

        All checks run before any write: levels, parent link, currency,
        central balance and the sub-box ceiling.

        Returns:
            (egress on central, ingress on sub)
        """
        amount = _positive_amount(amount)
        central = self.require_box(central_id)
        sub = self.require_box(sub_id)

        if not central.is_central:
            raise ValidationError("The origin must be a central box")
        if sub.level != BoxLevel.SUB:
            raise ValidationError("The destination must be a sub-box")
        if sub.parent_id != central.id:
            raise ValidationError(f"Sub-box {sub.name} is not funded by {central.name}")
        if sub.currency != central.currency:
            raise ValidationError("Central box and sub-box currencies differ")
        for box in (central, sub):
            if box.status == BoxStatus.CLOSED:
                raise InvalidStateError(f"Cash box {box.name} is closed")
        if central.current_balance < amount:
            raise InsufficientFundsError(
                f"Insufficient balance in central box {central.name}. "
                f"Available: {format_amount(central.current_balance, central.currency)}"
            )
        if sub.ceiling > ZERO and sub.current_balance + amount > sub.ceiling:
            raise InsufficientFundsError(
                f"Transfer would exceed the ceiling of {sub.name}. "
                f"Room left: {format_amount(sub.available_room, sub.currency)}"
            )

        with UnitOfWork("transfer_central_to_sub", logger, self.audit_trail, MODULE) as uow:
            egress = self.post_cash_movement(
                box_id=central.id,
                movement_type=CashMovementType.EGRESS,
                amount=amount,
                movement_date=movement_date,
                category=CashCategory.TRANSFER_TO_SUB,
                description=f"Fund to {sub.name}",
                actor_id=actor_id
            )
            uow.on_rollback("delete central egress", self.delete_cash_movement, egress.id, None, actor_id)

            ingress = self.post_cash_movement(
                box_id=sub.id,
                movement_type=CashMovementType.INGRESS,
                amount=amount,
                movement_date=movement_date,
                category=CashCategory.FUND_RECEIVED,
                ingress_subtype=IngressSubtype.FUND,
                description=f"From {central.name}",
                actor_id=actor_id
            )

        self.audit_trail.record(
            AuditAction.TRANSFER_TO_SUB, MODULE,
            f"Transfer {format_amount(amount, central.currency)} from {central.name} to {sub.name}",
            ingress.id, "cash_movement", actor_id,
            {"central_id": central.id, "sub_id": sub.id, "egress_id": egress.id, "amount": amount}
        )
        return egress, ingress

    def buy_foreign_currency(
        self,
        origin_box_id: str,
        destination_box_id: str,
        origin_amount: Union[Decimal, int, str],
        rate: Union[Decimal, int, str],
        movement_date: Union[date, str],
        actor_id: Optional[str] = None
    ) -> Tuple[CashMovement, CashMovement]:
        """
        Buy dollars with pesos held in cash

        The dollar amount is origin_amount / rate rounded to cents. Both legs
        share one exchange id and record the rate used; if the ingress leg
        fails, the egress leg is removed before the error propagates.

        Args:
            origin_box_id: ARS box paying
            destination_box_id: USD box receiving
            origin_amount: Pesos paid
            rate: Pesos per dollar
            movement_date: Date of the exchange

        Returns:
            (egress on origin, ingress on destination)
        """
        origin_amount = _positive_amount(origin_amount)
        rate = _positive_amount(rate, "Exchange rate")
        origin = self.require_box(origin_box_id)
        destination = self.require_box(destination_box_id)

        if origin.currency != Currency.ARS:
            raise ValidationError(f"Origin box {origin.name} must hold ARS")
        if destination.currency != Currency.USD:
            raise ValidationError(f"Destination box {destination.name} must hold USD")
        fx_amount = round2(origin_amount / rate)
        if fx_amount <= ZERO:
            raise ValidationError("The purchased amount rounds to zero")
        if origin.current_balance < origin_amount:
            raise InsufficientFundsError(
                f"Insufficient balance in box {origin.name}. "
                f"Available: {format_amount(origin.current_balance, origin.currency)}"
            )

        exchange_id = f"fx_{new_id()}"
        with UnitOfWork("buy_foreign_currency", logger, self.audit_trail, MODULE) as uow:
            egress = self.post_cash_movement(
                box_id=origin.id,
                movement_type=CashMovementType.EGRESS,
                amount=origin_amount,
                movement_date=movement_date,
                category=CashCategory.CURRENCY_PURCHASE,
                description=f"USD purchase for {format_amount(origin_amount, origin.currency)}",
                exchange_operation_id=exchange_id,
                exchange_rate_used=rate,
                actor_id=actor_id,
                fund_from_account=False
            )
            uow.on_rollback("remove ARS egress", self._remove_movement, egress, actor_id)

            ingress = self.post_cash_movement(
                box_id=destination.id,
                movement_type=CashMovementType.INGRESS,
                amount=fx_amount,
                movement_date=movement_date,
                category=CashCategory.CURRENCY_PURCHASE_INCOME,
                ingress_subtype=IngressSubtype.OTHER,
                description=f"USD purchase: {format_amount(fx_amount, destination.currency)}",
                exchange_operation_id=exchange_id,
                exchange_rate_used=rate,
                actor_id=actor_id,
                fund_from_account=False
            )

        self.audit_trail.record(
            AuditAction.EXCHANGE_CREATED, MODULE,
            f"USD purchase: {format_amount(origin_amount, origin.currency)} -> "
            f"{format_amount(fx_amount, destination.currency)} at {rate}",
            exchange_id, "exchange_operation", actor_id,
            {"egress_id": egress.id, "ingress_id": ingress.id, "rate": rate}
        )
        return egress, ingress

    # --- Reimbursements ---

    def create_reimbursement(
        self,
        box_id: str,
        items: List[Union[ReimbursementItem, Dict[str, Any]]],
        reimbursement_date: Union[date, str],
        responsible_name: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> Reimbursement:
        """
        Record a batch of justified expenses as pending. The total is not
        checked against the box balance.
        """
        if not items:
            raise ValidationError("A reimbursement needs at least one item")
        box = self.require_box(box_id)
        parsed = [_reimbursement_item(item) for item in items]
        total = sum((item.amount for item in parsed), ZERO)

        now = utc_now()
        reimbursement = Reimbursement(
            id=new_id(),
            created_at=now,
            updated_at=now,
            box_id=box.id,
            reimbursement_date=parse_date(reimbursement_date),
            total_spent=total,
            replenishment_amount=total,
            items=parsed,
            responsible_name=responsible_name or box.responsible_name,
            created_by=actor_id
        )
        self.storage.save(self.reimbursements_table, reimbursement.id, reimbursement.to_dict())

        self.audit_trail.record(
            AuditAction.REIMBURSEMENT_CREATED, MODULE,
            f"Pending reimbursement for {reimbursement.responsible_name or 'N/A'}: "
            f"{format_amount(total, box.currency)}",
            reimbursement.id, "reimbursement", actor_id,
            {"box_id": box.id, "total_spent": total}
        )
        return reimbursement

    def get_reimbursement(self, reimbursement_id: str) -> Optional[Reimbursement]:
        data = self.storage.load(self.reimbursements_table, reimbursement_id)
        return Reimbursement.from_dict(data) if data else None

    def require_reimbursement(self, reimbursement_id: str) -> Reimbursement:
        reimbursement = self.get_reimbursement(reimbursement_id)
        if not reimbursement:
            raise NotFoundError(f"Reimbursement {reimbursement_id} not found")
        return reimbursement

    def list_reimbursements(self, box_id: Optional[str] = None) -> List[Reimbursement]:
        """Reimbursements, newest first"""
        filters = {'box_id': box_id} if box_id else {}
        rows = self.storage.find(self.reimbursements_table, filters, order_by='created_at', descending=True)
        return [Reimbursement.from_dict(row) for row in rows]

    def approve_reimbursement(self, reimbursement_id: str, actor_id: Optional[str] = None) -> Reimbursement:
        """
        Approve a pending reimbursement

        Posts one reconciled egress per item and one replenishment ingress
        equal to the item total, then marks the reimbursement approved. The
        replenishment is not checked against the ceiling. Any failure removes
        the rows already posted.
        """
        reimbursement = self.require_reimbursement(reimbursement_id)
        if reimbursement.status != ReimbursementStatus.PENDING:
            raise InvalidStateError(f"Reimbursement {reimbursement_id} was already processed")
        box = self.require_box(reimbursement.box_id)

        with UnitOfWork("approve_reimbursement", logger, self.audit_trail, MODULE) as uow:
            for item in reimbursement.items:
                expense = self.post_cash_movement(
                    box_id=box.id,
                    movement_type=CashMovementType.EGRESS,
                    amount=item.amount,
                    movement_date=reimbursement.reimbursement_date,
                    category=item.category,
                    description=item.description,
                    reconciled=True,
                    receipt_reference=item.receipt_reference,
                    reimbursement_id=reimbursement.id,
                    actor_id=actor_id
                )
                uow.on_rollback(f"remove expense {expense.id}", self._remove_movement, expense, actor_id)

            replenishment = self.post_cash_movement(
                box_id=box.id,
                movement_type=CashMovementType.INGRESS,
                amount=reimbursement.replenishment_amount,
                movement_date=reimbursement.reimbursement_date,
                category=CashCategory.REPLENISHMENT,
                ingress_subtype=IngressSubtype.REPLENISHMENT,
                description=f"Replenishment for reimbursement {reimbursement.id[:8]}",
                reconciled=True,
                reimbursement_id=reimbursement.id,
                actor_id=actor_id
            )
            uow.on_rollback("remove replenishment", self._remove_movement, replenishment, actor_id)

            now = utc_now()
            approved = Reimbursement.from_dict(self.storage.update(self.reimbursements_table, reimbursement.id, {
                'status': ReimbursementStatus.APPROVED.value,
                'approved_by': actor_id,
                'approved_at': now.isoformat(),
                'updated_at': now.isoformat(),
            }))

        self.audit_trail.record(
            AuditAction.REIMBURSEMENT_APPROVED, MODULE,
            f"Reimbursement approved and replenished: "
            f"{format_amount(reimbursement.replenishment_amount, box.currency)} in {box.name}",
            reimbursement.id, "reimbursement", actor_id,
            {"total_spent": reimbursement.total_spent, "items": len(reimbursement.items)}
        )
        return approved

    def reject_reimbursement(self, reimbursement_id: str, reason: Optional[str] = None,
                             actor_id: Optional[str] = None) -> Reimbursement:
        """Reject a pending reimbursement; nothing is posted"""
        reimbursement = self.require_reimbursement(reimbursement_id)
        if reimbursement.status != ReimbursementStatus.PENDING:
            raise InvalidStateError(f"Reimbursement {reimbursement_id} was already processed")

        rejected = Reimbursement.from_dict(self.storage.update(self.reimbursements_table, reimbursement.id, {
            'status': ReimbursementStatus.REJECTED.value,
            'rejected_by': actor_id,
            'rejection_reason': reason,
            'updated_at': utc_now().isoformat(),
        }))
        self.audit_trail.record(
            AuditAction.REIMBURSEMENT_REJECTED, MODULE,
            f"Reimbursement rejected: {reason or 'no reason given'}",
            reimbursement.id, "reimbursement", actor_id
        )
        return rejected

    # --- Closings and reports ---

    def record_closing(
        self,
        box_id: str,
        closing_date: Union[date, str],
        period: ClosingPeriod = ClosingPeriod.DAILY,
        notes: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> CashClosing:
        """Snapshot the box's current balance for a period"""
        box = self.require_box(box_id)
        now = utc_now()
        closing = CashClosing(
            id=new_id(),
            created_at=now,
            updated_at=now,
            box_id=box.id,
            closing_date=parse_date(closing_date),
            period=_choice(ClosingPeriod, period, "closing period"),
            recorded_balance=box.current_balance,
            notes=notes,
            created_by=actor_id
        )
        self.storage.save(self.closings_table, closing.id, closing.to_dict())

        self.audit_trail.record(
            AuditAction.CLOSING_RECORDED, MODULE,
            f"{closing.period.value.capitalize()} closing of {box.name}: "
            f"{format_amount(closing.recorded_balance, box.currency)}",
            closing.id, "cash_closing", actor_id,
            {"box_id": box.id, "date": closing.closing_date}
        )
        return closing

    def list_closings(self, box_id: str) -> List[CashClosing]:
        """Closings of a box, newest date first"""
        rows = self.storage.find(self.closings_table, {'box_id': box_id},
                                 order_by='closing_date', descending=True)
        return [CashClosing.from_dict(row) for row in rows]

    def get_control_matrix(self, boxes: Optional[List[CashBox]] = None) -> List[ControlMatrixRow]:
        """
        Balance control report, one row per box: opening balance, funds
        delivered (fund and replenishment ingress), all expenses, current
        balance. Boxes passed in are re-read so the balance is the stored one.
        """
        rows = []
        for box in (boxes if boxes is not None else self.list_boxes()):
            box = self.require_box(box.id)
            movements = self.list_movements(box.id)
            delivered = sum(
                (m.amount for m in movements
                 if m.movement_type == CashMovementType.INGRESS
                 and m.ingress_subtype is not None
                 and m.ingress_subtype.counts_as_funding),
                ZERO
            )
            expenses = sum(
                (m.amount for m in movements if m.movement_type == CashMovementType.EGRESS),
                ZERO
            )
            rows.append(ControlMatrixRow(
                box_id=box.id,
                location=box.name,
                responsible=box.responsible_name or ("Manager" if box.is_central else "-"),
                level=box.level,
                opening_balance=box.opening_balance,
                deliveries_and_replenishments=delivered,
                expenses=expenses,
                current_balance=box.current_balance,
                currency=box.currency
            ))
        return rows
