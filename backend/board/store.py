"""
Record store and device cache contracts
=======================================

Every component talks to persistence through two narrow contracts:

RecordStore - row-level access to the five board tables, rows are plain dicts
DeviceCache - a tiny key/value cache that lives on the device

Keeping them narrow means identity resolution, reactions and thread assembly
can be tested with a Mock standing in for an unreachable store, while
production uses DjangoRecordStore over the ORM.

ERROR TRANSLATION:
------------------
DjangoRecordStore converts database errors at the boundary:
- IntegrityError (unique constraint) -> ConflictError
- any other django.db.Error         -> TransientStoreError
Callers never see Django exceptions.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Optional
import logging

from django.db import Error, IntegrityError, transaction
from django.db.models import Count

from .exceptions import ConflictError, TransientStoreError
from .models import (
    AnonymousIdentity,
    Confession,
    ConfessionReaction,
    ConfessionComment,
    CommentReaction,
)

logger = logging.getLogger(__name__)

Row = dict[str, Any]

IDENTITIES = 'anonymous_users'
CONFESSIONS = 'confessions'
CONFESSION_REACTIONS = 'confession_likes'
COMMENTS = 'confession_comments'
COMMENT_REACTIONS = 'comment_likes'

# Votable entity kind -> (reaction table, foreign key column)
VOTABLE_ENTITIES = {
    'confession': (CONFESSION_REACTIONS, 'confession_id'),
    'comment': (COMMENT_REACTIONS, 'comment_id'),
}


class RecordStore(ABC):
    """Abstract interface for the remote record store."""

    @abstractmethod
    def find_one(self, table: str, **predicate) -> Optional[Row]:
        """Return the first row matching the predicate, or None."""
        ...

    @abstractmethod
    def insert(self, table: str, row: Row) -> Row:
        """Insert a row and return it as stored.

        Raises:
            ConflictError: a unique constraint rejected the row
            TransientStoreError: the store is unavailable
        """
        ...

    @abstractmethod
    def update(self, table: str, pk: Any, patch: Row) -> int:
        """Apply patch to the row with primary key pk. Returns rows changed."""
        ...

    @abstractmethod
    def delete(self, table: str, pk: Any) -> int:
        """Delete the row with primary key pk. Returns rows removed."""
        ...

    @abstractmethod
    def list_with_joins(
        self,
        table: str,
        predicate: Optional[Row] = None,
        joins: tuple = (),
        order: tuple = (),
        limit: Optional[int] = None,
        counts: tuple = (),
    ) -> list[Row]:
        """List rows, each decorated with the rows of the named relations.

        joins are reverse relation names (e.g. 'comment_likes'); each
        joined relation appears under its own key as a list of rows.
        counts are reverse relations that are only counted; each appears
        as '<name>_count'.
        """
        ...


class DeviceCache(ABC):
    """Abstract interface for the device-scoped key/value cache."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        ...


# ============================================================================
# DJANGO IMPLEMENTATIONS
# ============================================================================

TABLES = {
    IDENTITIES: AnonymousIdentity,
    CONFESSIONS: Confession,
    CONFESSION_REACTIONS: ConfessionReaction,
    COMMENTS: ConfessionComment,
    COMMENT_REACTIONS: CommentReaction,
}


def _to_row(instance) -> Row:
    # attname gives 'confession_id' rather than the related object
    return {
        field.attname: getattr(instance, field.attname)
        for field in instance._meta.concrete_fields
    }


@contextmanager
def _store_errors(table: str):
    try:
        yield
    except IntegrityError as e:
        raise ConflictError(f"Conflict in {table}: {e}") from e
    except Error as e:
        # DatabaseError and InterfaceError alike (e.g. connection already closed)
        logger.error(f"Store error on {table}: {e}")
        raise TransientStoreError(f"Store error on {table}: {e}") from e


class DjangoRecordStore(RecordStore):
    """
    RecordStore over the Django ORM.

    Query count for list_with_joins: 1 + one per join (prefetch_related),
    regardless of how many rows come back. counts are annotated onto the
    main query (COUNT ... GROUP BY), so they add no queries.
    """

    def _model(self, table: str):
        try:
            return TABLES[table]
        except KeyError:
            raise ValueError(f"Unknown table: {table}")

    def find_one(self, table: str, **predicate) -> Optional[Row]:
        model = self._model(table)
        with _store_errors(table):
            return model.objects.filter(**predicate).values().first()

    def insert(self, table: str, row: Row) -> Row:
        model = self._model(table)
        with _store_errors(table):
            # Savepoint so a unique violation doesn't poison the outer transaction
            with transaction.atomic():
                instance = model.objects.create(**row)
        return _to_row(instance)

    def update(self, table: str, pk: Any, patch: Row) -> int:
        model = self._model(table)
        with _store_errors(table):
            return model.objects.filter(pk=pk).update(**patch)

    def delete(self, table: str, pk: Any) -> int:
        model = self._model(table)
        with _store_errors(table):
            deleted_count, _ = model.objects.filter(pk=pk).delete()
        return deleted_count

    def list_with_joins(
        self,
        table: str,
        predicate: Optional[Row] = None,
        joins: tuple = (),
        order: tuple = (),
        limit: Optional[int] = None,
        counts: tuple = (),
    ) -> list[Row]:
        model = self._model(table)
        queryset = model.objects.filter(**(predicate or {}))
        if counts:
            queryset = queryset.annotate(**{f"{name}_count": Count(name, distinct=True) for name in counts})
        if order:
            queryset = queryset.order_by(*order)
        if joins:
            queryset = queryset.prefetch_related(*joins)
        if limit is not None:
            queryset = queryset[:limit]

        rows = []
        with _store_errors(table):
            for instance in queryset:
                row = _to_row(instance)
                for join in joins:
                    row[join] = [_to_row(related) for related in getattr(instance, join).all()]
                for name in counts:
                    row[f"{name}_count"] = getattr(instance, f"{name}_count")
                rows.append(row)
        return rows


class SessionDeviceCache(DeviceCache):
    """
    DeviceCache over a Django session.

    With the signed_cookies session engine the payload is stored in the
    device's cookie jar, so this really is a local, device-scoped cache:
    clearing site data clears it, independently of anonymous_users.
    """

    def __init__(self, session):
        self.session = session

    def get(self, key: str) -> Optional[str]:
        value = self.session.get(key)
        return str(value) if value is not None else None

    def set(self, key: str, value: str) -> None:
        self.session[key] = value
