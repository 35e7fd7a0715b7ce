"""
Generic CRUD helpers shared by the services.

These functions work with any model in crm_export_core.db and scope queries
to a location when the model carries a location_id column.
"""

from typing import Any, Dict, List, Optional, Type, TypeVar

from sqlalchemy.orm import Session

from ..exceptions import ErrorCode, RepositoryError, not_found
from ..utils.logger import get_logger

T = TypeVar("T")


def _apply_filters(query, model_class, filters: Optional[Dict[str, Any]], location_id: Optional[str]):
    if location_id and hasattr(model_class, "location_id"):
        query = query.filter(model_class.location_id == location_id)  # type: ignore[attr-defined]
    for key, value in (filters or {}).items():
        if hasattr(model_class, key) and value is not None:
            query = query.filter(getattr(model_class, key) == value)
    return query


def create_record(
    session: Session,
    model_class: Type[T],
    data: Dict[str, Any],
    commit: bool = True,
) -> T:
    """
    Generic create operation for any model.

    Args:
        session: Database session
        model_class: SQLAlchemy model class
        data: Column values
        commit: Commit immediately, otherwise only flush

    Returns:
        Created record instance

    Raises:
        RepositoryError: If creation fails
    """
    logger = get_logger()

    try:
        record = model_class(**data)
        session.add(record)
        if commit:
            session.commit()
        else:
            session.flush()

        logger.info(
            f"Created {model_class.__name__}",
            extra={"model": model_class.__name__, "record_id": getattr(record, "id", None)},
        )
        return record

    except Exception as e:
        session.rollback()
        raise RepositoryError(
            f"Failed to create {model_class.__name__}: {str(e)}",
            error_code=ErrorCode.DATABASE_ERROR,
            cause=e,
            model=model_class.__name__,
        )


def get_record(
    session: Session,
    model_class: Type[T],
    filters: Dict[str, Any],
    location_id: Optional[str] = None,
) -> Optional[T]:
    """
    Generic get operation for any model.

    Args:
        session: Database session
        model_class: SQLAlchemy model class
        filters: Equality filters; None values are ignored
        location_id: Optional location scope

    Returns:
        Record instance or None
    """
    return _apply_filters(session.query(model_class), model_class, filters, location_id).first()


def get_record_by_id(
    session: Session, model_class: Type[T], record_id: str, location_id: Optional[str] = None
) -> Optional[T]:
    return get_record(session, model_class, {"id": record_id}, location_id)


def require_record(
    session: Session, model_class: Type[T], record_id: str, location_id: Optional[str] = None
) -> T:
    """Like get_record_by_id but raises a 404 RepositoryError when missing."""
    record = get_record_by_id(session, model_class, record_id, location_id)
    if record is None:
        raise not_found(model_class.__name__, record_id=record_id)
    return record


def list_records(
    session: Session,
    model_class: Type[T],
    filters: Optional[Dict[str, Any]] = None,
    location_id: Optional[str] = None,
    limit: Optional[int] = None,
    offset: Optional[int] = None,
) -> List[T]:
    """
    Generic list operation, newest first when the model has created_at.
    """
    query = _apply_filters(session.query(model_class), model_class, filters, location_id)

    if hasattr(model_class, "created_at"):
        query = query.order_by(model_class.created_at.desc())  # type: ignore[attr-defined]

    if offset:
        query = query.offset(offset)
    if limit:
        query = query.limit(limit)

    return query.all()
