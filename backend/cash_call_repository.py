"""
Cash Call Record Store

Abstract store contracts the engine depends on, plus the SQLAlchemy
implementations used by the API. Cash calls carry a version column, so a
write based on a stale read fails with StaleWriteError instead of silently
overwriting a concurrent change.
"""

from abc import ABC, abstractmethod
from typing import Optional

from sqlalchemy.orm import Session, Query
from sqlalchemy.orm.exc import StaleDataError

import models


class StaleWriteError(Exception):
    """The record changed between read and write."""
    pass


class CashCallStore(ABC):
    """get/put/query/delete access to cash calls by key."""

    @abstractmethod
    def get(self, cash_call_id: str, for_update: bool = False) -> Optional[models.CashCall]:
        pass

    @abstractmethod
    def get_by_call_number(self, call_number: str) -> Optional[models.CashCall]:
        pass

    @abstractmethod
    def query(self) -> Query:
        """Base list query; callers apply visibility and filters."""
        pass

    @abstractmethod
    def put(self, cash_call: models.CashCall) -> models.CashCall:
        pass

    @abstractmethod
    def delete(self, cash_call: models.CashCall) -> None:
        pass

    @abstractmethod
    def rollback(self) -> None:
        pass


class AffiliateDirectory(ABC):
    @abstractmethod
    def get_affiliate(self, affiliate_id: str) -> Optional[models.Affiliate]:
        pass


class SqlCashCallStore(CashCallStore):
    def __init__(self, db: Session):
        self.db = db

    def get(self, cash_call_id: str, for_update: bool = False) -> Optional[models.CashCall]:
        """
        Load a cash call by id.

        With for_update=True the row is re-read from the database (not the
        session's identity map) and locked where the backend supports it.
        """
        query = self.db.query(models.CashCall).filter(models.CashCall.id == cash_call_id)
        if for_update:
            query = query.populate_existing().with_for_update()
        return query.first()

    def get_by_call_number(self, call_number: str) -> Optional[models.CashCall]:
        return self.db.query(models.CashCall).filter(
            models.CashCall.call_number == call_number
        ).first()

    def query(self) -> Query:
        return self.db.query(models.CashCall)

    def put(self, cash_call: models.CashCall) -> models.CashCall:
        self.db.add(cash_call)
        try:
            self.db.commit()
        except StaleDataError as e:
            self.db.rollback()
            raise StaleWriteError(f"Cash call {cash_call.id} was modified concurrently") from e
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(cash_call)
        return cash_call

    def delete(self, cash_call: models.CashCall) -> None:
        self.db.delete(cash_call)
        try:
            self.db.commit()
        except StaleDataError as e:
            self.db.rollback()
            raise StaleWriteError(f"Cash call {cash_call.id} was modified concurrently") from e
        except Exception:
            self.db.rollback()
            raise

    def rollback(self) -> None:
        self.db.rollback()


class SqlAffiliateDirectory(AffiliateDirectory):
    def __init__(self, db: Session):
        self.db = db

    def get_affiliate(self, affiliate_id: str) -> Optional[models.Affiliate]:
        if not affiliate_id:
            return None
        return self.db.get(models.Affiliate, affiliate_id)
