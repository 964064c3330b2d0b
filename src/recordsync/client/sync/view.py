"""Pure merge rules for the ordered record view.

A view is an immutable tuple of records with unique ids, sorted by
created_at descending. Every function returns a new tuple (or the same
tuple object when nothing changed) and never mutates its input.

The id is the only merge key, which makes each operation idempotent:
inserting a record whose id is already present, updating or removing an
absent id are no-ops.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

from recordsync.core.types import TodoFilter

if TYPE_CHECKING:
    from recordsync.client.api import Record

View = tuple["Record", ...]


def index_of(view: View, record_id: str) -> int:
    """Position of a record id in the view, or -1."""
    for i, record in enumerate(view):
        if record.id == record_id:
            return i
    return -1


def find(view: View, record_id: str) -> Record | None:
    """Get a record by id."""
    i = index_of(view, record_id)
    return view[i] if i >= 0 else None


def insert_record(view: View, record: Record) -> View:
    """Insert a record at its created_at position.

    The new record goes before existing records with the same timestamp,
    so inserts in delivery order behave like a prepend.
    """
    if index_of(view, record.id) >= 0:
        return view

    position = len(view)
    for i, existing in enumerate(view):
        if existing.created_at <= record.created_at:
            position = i
            break
    return view[:position] + (record,) + view[position:]


def update_record(view: View, record: Record) -> View:
    """Replace the mutable fields of the record with the same id."""
    i = index_of(view, record.id)
    if i < 0:
        return view
    current = view[i]
    merged = current.with_fields(record)
    if merged == current:
        return view
    return view[:i] + (merged,) + view[i + 1 :]


def replace_record(view: View, record: Record) -> View:
    """Swap in a new version of a present record (same id)."""
    i = index_of(view, record.id)
    if i < 0:
        return view
    return view[:i] + (record,) + view[i + 1 :]


def remove_record(view: View, record_id: str) -> View:
    """Remove the record with this id."""
    i = index_of(view, record_id)
    if i < 0:
        return view
    return view[:i] + view[i + 1 :]


def merge_records(view: View, records: Iterable[Record]) -> View:
    """Insert many records, skipping ids already present."""
    for record in records:
        view = insert_record(view, record)
    return view


def filter_todos(view: View, todo_filter: TodoFilter) -> View:
    """Apply the all/active/completed filter of the todo list."""
    if todo_filter == TodoFilter.ALL:
        return view
    want_completed = todo_filter == TodoFilter.COMPLETED
    return tuple(r for r in view if bool(getattr(r, "completed", False)) == want_completed)
