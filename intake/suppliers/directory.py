"""Supplier directory: the known counterparties documents are matched against."""

import logging
import threading
from collections.abc import Iterable
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, TypeAdapter

logger = logging.getLogger(__name__)


def normalize_identifier(value: str | None) -> str:
    """Normalize a tax id or IBAN for comparison (no spaces, upper case)."""
    if not value:
        return ""
    return "".join(value.split()).upper()


class Supplier(BaseModel):
    """A known supplier.

    Attributes:
        id: Stable supplier identifier
        name: Display name as printed on invoices
        tax_id: VAT id or tax number
        iban: Bank account
        bic: Bank identifier
        email: Contact address
    """

    id: str
    name: str
    tax_id: str | None = None
    iban: str | None = None
    bic: str | None = None
    email: str | None = None


class SupplierDirectory(Protocol):
    """Protocol for supplier lookups."""

    def find_by_tax_id(self, tax_id: str) -> Supplier | None:
        """Find a supplier by tax id (spaces and case ignored)."""
        ...

    def find_by_iban(self, iban: str) -> Supplier | None:
        """Find a supplier by IBAN (spaces and case ignored)."""
        ...

    def find_by_name(self, name: str) -> Supplier | None:
        """Find a supplier by exact name (case ignored)."""
        ...

    def all(self) -> list[Supplier]:
        """List suppliers in directory order."""
        ...


class InMemorySupplierDirectory:
    """Supplier directory held in process memory, in insertion order."""

    def __init__(self, suppliers: Iterable[Supplier] = ()) -> None:
        self._suppliers: dict[str, Supplier] = {}
        self._lock = threading.Lock()
        for supplier in suppliers:
            self.add(supplier)

    def add(self, supplier: Supplier) -> None:
        """Add or replace a supplier (replacement keeps its position)."""
        with self._lock:
            self._suppliers[supplier.id] = supplier

    def get(self, supplier_id: str) -> Supplier | None:
        with self._lock:
            return self._suppliers.get(supplier_id)

    def find_by_tax_id(self, tax_id: str) -> Supplier | None:
        wanted = normalize_identifier(tax_id)
        if not wanted:
            return None
        return next((s for s in self.all() if normalize_identifier(s.tax_id) == wanted), None)

    def find_by_iban(self, iban: str) -> Supplier | None:
        wanted = normalize_identifier(iban)
        if not wanted:
            return None
        return next((s for s in self.all() if normalize_identifier(s.iban) == wanted), None)

    def find_by_name(self, name: str) -> Supplier | None:
        wanted = name.strip().casefold() if name else ""
        if not wanted:
            return None
        return next((s for s in self.all() if s.name.strip().casefold() == wanted), None)

    def all(self) -> list[Supplier]:
        with self._lock:
            return list(self._suppliers.values())


def load_supplier_directory(path: str | Path | None) -> InMemorySupplierDirectory:
    """Build a directory from a JSON list of suppliers.

    Args:
        path: JSON file path, or None for an empty directory

    Returns:
        Directory holding the suppliers in file order

    Raises:
        OSError: If the file cannot be read
        pydantic.ValidationError: If the file content is not a supplier list
    """
    if path is None:
        return InMemorySupplierDirectory()

    suppliers = TypeAdapter(list[Supplier]).validate_json(Path(path).read_bytes())
    logger.info(f"Loaded {len(suppliers)} supplier(s) from {path}")
    return InMemorySupplierDirectory(suppliers)
