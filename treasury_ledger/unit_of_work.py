"""
Compensating Unit of Work

The document store offers no multi-document transactions, so composite
ledger operations write in a fixed order and register the inverse of each
completed write. If a later step fails, the registered inverses run newest
first and the original error is re-raised.

This is best-effort: a crash between a write and its inverse leaves an
inconsistency that has to be reconciled out-of-band.

Usage::

    with UnitOfWork("post_movement", logger, audit_trail, "funds") as uow:
        storage.save(...)
        uow.on_rollback("delete movement", storage.delete, table, movement_id)
        storage.adjust_decimal(...)
        uow.on_rollback("restore balance", storage.adjust_decimal, table, account_id, field, delta)
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from .audit import AuditTrail, AuditAction
from .errors import CompensationError

logger = logging.getLogger("treasury.unit_of_work")


@dataclass
class _Compensation:
    description: str
    fn: Callable[..., Any]
    args: Tuple[Any, ...] = ()
    kwargs: Dict[str, Any] = field(default_factory=dict)


class UnitOfWork:
    """Ordered writes with inverse-write-on-failure"""

    def __init__(self, name: str, log: Optional[logging.Logger] = None,
                 audit_trail: Optional[AuditTrail] = None, module: Optional[str] = None):
        self.name = name
        self.logger = log or logger
        self.audit_trail = audit_trail
        self.module = module or "ledger"
        self._compensations: List[_Compensation] = []
        self.committed = False
        self.rolled_back = False

    def on_rollback(self, description: str, fn: Callable[..., Any], *args, **kwargs) -> None:
        """Register the inverse of a write that has just completed"""
        self._compensations.append(_Compensation(description, fn, args, kwargs))

    @property
    def pending_compensations(self) -> List[str]:
        return [c.description for c in self._compensations]

    def commit(self) -> None:
        """Forget the compensation log; the operation is complete"""
        self._compensations.clear()
        self.committed = True

    def rollback(self) -> List[str]:
        """
        Run registered compensations newest first.

        Returns:
            Descriptions of compensations that failed
        """
        failed = []
        while self._compensations:
            step = self._compensations.pop()
            try:
                step.fn(*step.args, **step.kwargs)
                self.logger.warning(f"[{self.name}] compensated: {step.description}")
            except Exception as e:
                self.logger.error(f"[{self.name}] compensation failed: {step.description}: {e}")
                failed.append(step.description)
        self.rolled_back = True
        return failed

    def __enter__(self) -> 'UnitOfWork':
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            self.commit()
            return False

        self.logger.warning(f"[{self.name}] failed, compensating {len(self._compensations)} step(s): {exc}")
        steps = self.pending_compensations
        failed = self.rollback()
        if steps and self.audit_trail is not None:
            self.audit_trail.record(
                AuditAction.COMPENSATION,
                self.module,
                f"{self.name} rolled back: {exc}",
                entity_id=self.name,
                entity_type="operation",
                metadata={'compensated': steps, 'failed': failed, 'error': type(exc).__name__}
            )
        if failed:
            raise CompensationError(
                f"{self.name} failed and could not be fully undone ({', '.join(failed)})",
                original=exc,
                failed_steps=failed
            ) from exc
        return False
