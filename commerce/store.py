"""Ledger store: the single source of truth for orders, payments and refunds.

Every mutation is one conditional ``UPDATE`` so concurrent writers against the
same row are linearised by the database. A writer that loses the race gets
``Conflict`` and is expected to re-read and retry.
"""
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import func, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from commerce.errors import Conflict, Internal, NotFound, ValidationError
from commerce.models import utcnow

logger = structlog.get_logger(component="store")


class LedgerStore:

    def __init__(self, session_factory):
        self._session_factory = session_factory

    @contextmanager
    def _session(self):
        session = self._session_factory()
        try:
            yield session
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("store_error", error=str(exc))
            raise Internal("ledger store failure") from exc
        finally:
            session.close()

    def get(self, model, id: str) -> Dict[str, Any]:
        with self._session() as session:
            record = session.get(model, id)
            if record is None:
                raise NotFound(f"{_name(model)} {id} not found")
            return record.to_dict()

    def find_one(self, model, **filters) -> Optional[Dict[str, Any]]:
        with self._session() as session:
            record = session.execute(select(model).filter_by(**filters)).scalars().first()
            return record.to_dict() if record is not None else None

    def exists(self, model, id: str) -> bool:
        with self._session() as session:
            return session.get(model, id) is not None

    def create(self, model, row: Dict[str, Any]) -> Dict[str, Any]:
        with self._session() as session:
            record = model(**row)
            session.add(record)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise Conflict(f"{_name(model)} {row.get('id')} already exists") from exc
            return record.to_dict()

    def update(
        self,
        model,
        id: str,
        patch: Dict[str, Any],
        expected_status: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Dict[str, Any]:
        frozen = set(patch) & set(model.immutable)
        if frozen:
            raise ValidationError(f"{', '.join(sorted(frozen))} cannot be changed")

        values = dict(patch)
        stmt = update(model).where(model.id == id)
        if expected_status is not None:
            stmt = stmt.where(model.status == expected_status)
        if expected_version is not None:
            stmt = stmt.where(model.version == expected_version)
        if hasattr(model, "version"):
            values["version"] = model.version + 1
        if hasattr(model, "updated_at"):
            values["updated_at"] = utcnow()

        with self._session() as session:
            result = session.execute(
                stmt.values(**values).execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                session.rollback()
                if session.get(model, id) is None:
                    raise NotFound(f"{_name(model)} {id} not found")
                logger.info("write_conflict", table=model.__tablename__, id=id,
                            expected_status=expected_status, expected_version=expected_version)
                raise Conflict(f"{_name(model)} {id} was modified concurrently")
            session.commit()
            return session.get(model, id, populate_existing=True).to_dict()

    def query(
        self,
        model,
        filters: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        created_before=None,
    ) -> Tuple[List[Dict[str, Any]], int]:
        conditions = [getattr(model, key) == value for key, value in (filters or {}).items()]
        if created_before is not None:
            conditions.append(model.created_at < created_before)

        with self._session() as session:
            total = session.execute(
                select(func.count()).select_from(model).where(*conditions)
            ).scalar_one()
            stmt = (
                select(model)
                .where(*conditions)
                .order_by(model.created_at.desc(), model.id.desc())
                .offset(offset)
            )
            if limit:
                stmt = stmt.limit(limit)
            records = session.execute(stmt).scalars().all()
            return [record.to_dict() for record in records], total

    def ping(self) -> bool:
        try:
            with self._session() as session:
                session.execute(text("SELECT 1"))
            return True
        except Internal:
            return False


def _name(model) -> str:
    return model.__tablename__[:-1]
