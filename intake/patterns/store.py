"""Per-supplier learned pattern storage.

One active pattern per (supplier, field): a new learning event overwrites the
previous pattern for that key, never appends.
"""

import logging
import threading
from datetime import UTC, datetime
from typing import Protocol

from pydantic import BaseModel, Field

from intake.extraction.schema import FieldName

logger = logging.getLogger(__name__)


class SupplierPattern(BaseModel):
    """A learned regex matching the text immediately before a field value.

    Attributes:
        supplier_id: Supplier the pattern belongs to (weak reference)
        field_name: Field the pattern locates
        pattern: Regular expression for the preceding context
        updated_at: Time of the last learning event for this key
    """

    supplier_id: str
    field_name: FieldName
    pattern: str
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class PatternStore(Protocol):
    """Protocol for supplier pattern stores.

    Implementations must allow concurrent reads; writes to the same key are
    last-writer-wins.
    """

    def get(self, supplier_id: str, field_name: FieldName) -> SupplierPattern | None:
        """Get the pattern for one (supplier, field) key."""
        ...

    def get_all(self, supplier_id: str) -> list[SupplierPattern]:
        """Get every pattern of a supplier, ordered by field name."""
        ...

    def upsert(self, supplier_id: str, field_name: FieldName, pattern_text: str) -> SupplierPattern:
        """Create or overwrite the pattern for one (supplier, field) key."""
        ...


class InMemoryPatternStore:
    """Process-local pattern store guarded by a lock."""

    def __init__(self) -> None:
        self._patterns: dict[tuple[str, FieldName], SupplierPattern] = {}
        self._lock = threading.Lock()

    def get(self, supplier_id: str, field_name: FieldName) -> SupplierPattern | None:
        with self._lock:
            return self._patterns.get((supplier_id, FieldName(field_name)))

    def get_all(self, supplier_id: str) -> list[SupplierPattern]:
        with self._lock:
            patterns = [p for (sid, _), p in self._patterns.items() if sid == supplier_id]
        return sorted(patterns, key=lambda p: p.field_name.value)

    def upsert(self, supplier_id: str, field_name: FieldName, pattern_text: str) -> SupplierPattern:
        field = FieldName(field_name)
        stored = SupplierPattern(supplier_id=supplier_id, field_name=field, pattern=pattern_text)
        with self._lock:
            replaced = (supplier_id, field) in self._patterns
            self._patterns[(supplier_id, field)] = stored
        logger.debug(
            f"{'Replaced' if replaced else 'Stored'} pattern for supplier {supplier_id}, "
            f"field {field.value}"
        )
        return stored
