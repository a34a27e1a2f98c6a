"""
ledger.py

Audit ledger strategies.

Both strategies implement application.AbstractAuditLedger and differ only in
how an entity write is paired with its audit record:

  TransactionalAuditLedger
      The entity write and the audit insert run inside one Unit-of-Work
      transaction.  Either both persist or neither does.

  BestEffortAuditLedger
      For stores without multi-collection transactions.  The entity write is
      committed first, then the audit insert is retried with linear backoff.
      If every attempt fails, AuditWriteFailed is raised and the entity
      mutation stays in place; the log line carries the entity id so an
      operator can reconcile the gap.

The strategy is chosen explicitly from Settings.ledger_mode (build_ledger);
it is never inferred from whether a transaction happens to work.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional

from application import AbstractAuditLedger, AbstractUnitOfWork
from config import LEDGER_BEST_EFFORT, LEDGER_TRANSACTIONAL, Settings
from errors import AuditWriteFailed
from model import AuditAction, AuditRecord, EntityType, RequestMetadata

logger = logging.getLogger("workorders.ledger")


class TransactionalAuditLedger(AbstractAuditLedger):
    """Entity write + audit insert in a single transaction."""

    def append(
        self,
        uow: AbstractUnitOfWork,
        entity_type: EntityType,
        entity_id: str,
        action: AuditAction,
        before: Dict[str, Any],
        after: Dict[str, Any],
        actor: str,
        metadata: Optional[RequestMetadata],
        apply: Callable[[], None],
        extra: Optional[Dict[str, Any]] = None,
    ) -> AuditRecord:
        if not uow.supports_transactions:
            raise RuntimeError(
                f"{type(self).__name__} requires a transactional unit of work, "
                f"got {type(uow).__name__}."
            )
        try:
            with uow:
                record = self.build_record(
                    uow, entity_type, entity_id, action, before, after, actor, metadata, extra
                )
                apply()
                uow.audit_records.add(record)
        except Exception:
            logger.error(
                "%s %s: %s rolled back, entity and audit record discarded",
                entity_type.value, entity_id, action.value,
            )
            raise
        return record


class BestEffortAuditLedger(AbstractAuditLedger):
    """
    Entity write first, audit insert with bounded retries afterwards.

    `sleep` is injectable so tests can run the retry loop without waiting.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        backoff_seconds: float = 0.05,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    def append(
        self,
        uow: AbstractUnitOfWork,
        entity_type: EntityType,
        entity_id: str,
        action: AuditAction,
        before: Dict[str, Any],
        after: Dict[str, Any],
        actor: str,
        metadata: Optional[RequestMetadata],
        apply: Callable[[], None],
        extra: Optional[Dict[str, Any]] = None,
    ) -> AuditRecord:
        record = self.build_record(
            uow, entity_type, entity_id, action, before, after, actor, metadata, extra
        )
        with uow:
            apply()

        last_error: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                with uow:
                    uow.audit_records.add(record)
                return record
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "%s %s: audit insert for %s failed (attempt %d/%d): %s",
                    entity_type.value, entity_id, action.value, attempt, self.max_attempts, exc,
                )
                if attempt < self.max_attempts:
                    self._sleep(self.backoff_seconds * attempt)

        logger.error(
            "%s %s: %s committed WITHOUT audit record after %d attempts; reconcile manually",
            entity_type.value, entity_id, action.value, self.max_attempts,
        )
        raise AuditWriteFailed(
            f"Audit record for {entity_type.value} {entity_id} could not be written "
            f"after {self.max_attempts} attempt(s).",
            entity_id=entity_id,
            attempts=self.max_attempts,
            cause=last_error,
        ) from last_error


def build_ledger(settings: Settings) -> AbstractAuditLedger:
    if settings.ledger_mode == LEDGER_TRANSACTIONAL:
        return TransactionalAuditLedger()
    if settings.ledger_mode == LEDGER_BEST_EFFORT:
        return BestEffortAuditLedger(
            max_attempts=settings.audit_retry_attempts,
            backoff_seconds=settings.audit_retry_backoff_seconds,
        )
    raise ValueError(f"Unknown ledger mode '{settings.ledger_mode}'.")
