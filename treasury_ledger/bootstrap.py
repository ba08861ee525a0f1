"""
Ledger Wiring

Builds the storage backend, audit trail and the three services from a
LedgerConfig.
"""

from datetime import date
from decimal import Decimal
from typing import Callable, Optional

from .config import LedgerConfig, get_config
from .storage import StorageInterface, InMemoryStorage, SQLiteStorage
from .audit import AuditTrail
from .funds import FundAccountService
from .petty_cash import PettyCashService
from .deposits import FixedDepositService
from .logging_config import setup_logging


def create_storage(config: LedgerConfig) -> StorageInterface:
    backend = config.storage_backend.lower()
    if backend == "memory":
        return InMemoryStorage()
    if backend == "sqlite":
        return SQLiteStorage(config.database_path)
    raise ValueError(f"Unknown storage backend: {config.storage_backend}")


class TreasuryLedger:
    """Treasury ledger with all components initialized"""

    def __init__(
        self,
        config: LedgerConfig,
        storage: StorageInterface,
        today: Optional[Callable[[], date]] = None
    ):
        self.config = config
        self.storage = storage

        max_amount = Decimal(config.max_movement_amount) if config.max_movement_amount else None

        self.audit_trail = AuditTrail(
            self.storage, table_name=config.audit_table, enabled=config.enable_audit_logging
        )
        self.funds = FundAccountService(
            self.storage, self.audit_trail,
            block_delete_with_movements=config.block_delete_with_movements,
            max_movement_amount=max_amount
        )
        self.petty_cash = PettyCashService(
            self.storage, self.funds, self.audit_trail,
            block_delete_with_movements=config.block_delete_with_movements
        )
        self.deposits = FixedDepositService(
            self.storage, self.funds, self.audit_trail,
            today=today, day_count_basis=config.day_count_basis
        )

    def close(self) -> None:
        self.storage.close()


def build_ledger(
    config: Optional[LedgerConfig] = None,
    storage: Optional[StorageInterface] = None,
    today: Optional[Callable[[], date]] = None,
    configure_logging: bool = False
) -> TreasuryLedger:
    """
    Build a ready-to-use ledger

    Args:
        config: Settings (defaults to the global configuration)
        storage: Storage to use instead of the configured backend
        today: Clock for deposit maturity (defaults to date.today)
        configure_logging: Install the configured log handler

    Returns:
        TreasuryLedger
    """
    config = config or get_config()
    if configure_logging:
        setup_logging(config.log_level, fmt=config.log_format)
    return TreasuryLedger(config, storage or create_storage(config), today=today)
