"""
BaseService -- abstract base for all kernel services.

Responsibility:
    Common constructor and session-handling contract for every writer in the
    kernel layer.  Services persist through ``session.flush()``, never
    ``session.commit()``.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Invariants enforced:
    - Transaction boundaries belong to the caller (the reconciliation engine
      façade, the API layer or a test).  A service that commits would break
      the all-or-nothing guarantee of a cascade.
"""

from abc import ABC
from typing import Generic, TypeVar
from uuid import UUID

from sqlalchemy.orm import Session

from ledger_kernel.db.base import Base
from ledger_kernel.domain.clock import Clock, SystemClock

ModelType = TypeVar("ModelType", bound=Base)


class BaseService(ABC, Generic[ModelType]):
    """
    Abstract base class for all kernel services.

    Contract:
        Accepts a SQLAlchemy ``Session`` from the caller and uses
        ``session.flush()`` to persist changes within the active
        transaction.

    Non-goals:
        - Does NOT manage transaction lifecycle (commit/rollback).
        - Does NOT provide read models; those live in
          ``ledger_kernel/selectors/``.
    """

    def __init__(
        self,
        session: Session,
        actor_id: UUID,
        clock: Clock | None = None,
    ):
        self.session = session
        self.actor_id = actor_id
        self.clock = clock or SystemClock()
