"""
Movement Categories

Closed taxonomies for fund and cash movements. Downstream behavior (flow
direction for reporting, which ingress counts as funding in the control
matrix) is derived from these enums rather than from free-text labels.
"""

from enum import Enum


class Flow(Enum):
    """Direction of money relative to the business"""
    INGRESS = "ingress"
    EGRESS = "egress"


class CategoryGroup(Enum):
    """Reporting group of a fund category"""
    INCOME = "income"
    OPERATING = "operating"
    SUB_BOX = "sub_box"
    FINANCIAL = "financial"


class FundCategory(Enum):
    """Fund movement categories"""
    # Income
    CUSTOMER_COLLECTIONS = "customer_collections"
    INVESTOR_CONTRIBUTION = "investor_contribution"
    DEPOSIT_INTEREST = "deposit_interest"
    CURRENCY_PURCHASE_INCOME = "currency_purchase_income"
    CURRENCY_SALE_INCOME = "currency_sale_income"
    OTHER_INCOME = "other_income"

    # Operating expenses
    SUPPLIERS = "suppliers"
    PAYROLL_AND_RENT = "payroll_and_rent"
    TAXES_AND_SERVICES = "taxes_and_services"
    OTHER_OPERATING = "other_operating"

    # Sub-box settlements
    SUB_BOX_SETTLEMENT_SALES = "sub_box_settlement_sales"
    SUB_BOX_SETTLEMENT_LOGISTICS = "sub_box_settlement_logistics"
    SUB_BOX_SETTLEMENT_OTHER = "sub_box_settlement_other"
    FUND_TO_SUB_BOX = "fund_to_sub_box"

    # Financial
    INTEREST_PAID_TO_INVESTORS = "interest_paid_to_investors"
    INVESTOR_WITHDRAWAL = "investor_withdrawal"
    CAPITAL_REPAYMENT = "capital_repayment"
    BUSINESS_UNIT_PLACEMENT = "business_unit_placement"
    DEPOSIT_CONSTITUTION = "deposit_constitution"
    CURRENCY_PURCHASE = "currency_purchase"
    CURRENCY_SALE = "currency_sale"
    INTER_ACCOUNT_TRANSFER = "inter_account_transfer"
    OTHER = "other"

    @property
    def group(self) -> CategoryGroup:
        return _FUND_GROUPS[self]

    @property
    def flow(self) -> Flow:
        return Flow.INGRESS if self.group is CategoryGroup.INCOME else Flow.EGRESS

    @property
    def is_ingress(self) -> bool:
        return self.flow is Flow.INGRESS


_FUND_GROUPS = {
    FundCategory.CUSTOMER_COLLECTIONS: CategoryGroup.INCOME,
    FundCategory.INVESTOR_CONTRIBUTION: CategoryGroup.INCOME,
    FundCategory.DEPOSIT_INTEREST: CategoryGroup.INCOME,
    FundCategory.CURRENCY_PURCHASE_INCOME: CategoryGroup.INCOME,
    FundCategory.CURRENCY_SALE_INCOME: CategoryGroup.INCOME,
    FundCategory.OTHER_INCOME: CategoryGroup.INCOME,
    FundCategory.SUPPLIERS: CategoryGroup.OPERATING,
    FundCategory.PAYROLL_AND_RENT: CategoryGroup.OPERATING,
    FundCategory.TAXES_AND_SERVICES: CategoryGroup.OPERATING,
    FundCategory.OTHER_OPERATING: CategoryGroup.OPERATING,
    FundCategory.SUB_BOX_SETTLEMENT_SALES: CategoryGroup.SUB_BOX,
    FundCategory.SUB_BOX_SETTLEMENT_LOGISTICS: CategoryGroup.SUB_BOX,
    FundCategory.SUB_BOX_SETTLEMENT_OTHER: CategoryGroup.SUB_BOX,
    FundCategory.FUND_TO_SUB_BOX: CategoryGroup.SUB_BOX,
    FundCategory.INTEREST_PAID_TO_INVESTORS: CategoryGroup.FINANCIAL,
    FundCategory.INVESTOR_WITHDRAWAL: CategoryGroup.FINANCIAL,
    FundCategory.CAPITAL_REPAYMENT: CategoryGroup.FINANCIAL,
    FundCategory.BUSINESS_UNIT_PLACEMENT: CategoryGroup.FINANCIAL,
    FundCategory.DEPOSIT_CONSTITUTION: CategoryGroup.FINANCIAL,
    FundCategory.CURRENCY_PURCHASE: CategoryGroup.FINANCIAL,
    FundCategory.CURRENCY_SALE: CategoryGroup.FINANCIAL,
    FundCategory.INTER_ACCOUNT_TRANSFER: CategoryGroup.FINANCIAL,
    FundCategory.OTHER: CategoryGroup.FINANCIAL,
}


class CashMovementType(Enum):
    """Direction of a cash-box movement"""
    INGRESS = "ingress"
    EGRESS = "egress"

    @property
    def sign(self) -> int:
        return 1 if self is CashMovementType.INGRESS else -1


class IngressSubtype(Enum):
    """Origin of a cash-box ingress"""
    FUND = "fund"                    # Delivery from the parent central box
    REPLENISHMENT = "replenishment"  # Imprest top-back after an approved reimbursement
    TRANSFER = "transfer"
    OTHER = "other"

    @property
    def counts_as_funding(self) -> bool:
        """Whether the control matrix reports this ingress as delivered funds"""
        return self in (IngressSubtype.FUND, IngressSubtype.REPLENISHMENT)


class CashCategory(Enum):
    """Cash-box movement categories"""
    # Hierarchy flows
    TRANSFER_TO_SUB = "transfer_to_sub"
    FUND_RECEIVED = "fund_received"
    REPLENISHMENT = "replenishment"
    ACCOUNT_FUNDING = "account_funding"

    # Currency exchange legs
    CURRENCY_PURCHASE = "currency_purchase"
    CURRENCY_PURCHASE_INCOME = "currency_purchase_income"

    # Expenses justified in reimbursements
    TRAVEL = "travel"
    SUPPLIES = "supplies"
    OFFICE = "office"
    FUEL = "fuel"
    OTHER = "other"


EXPENSE_CATEGORIES = [
    CashCategory.TRAVEL,
    CashCategory.SUPPLIES,
    CashCategory.OFFICE,
    CashCategory.FUEL,
    CashCategory.OTHER,
]
