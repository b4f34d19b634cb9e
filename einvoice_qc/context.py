"""
In-memory data context consumed by the check engines.

Records are untyped field bags (mappings keyed by field name). The context
keeps the three record collections in their given order and derives the
lookup indices the engines need.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Optional

Record = Mapping[str, Any]


class EngineInputError(ValueError):
    """Raised when the engine is handed a wholly malformed input."""


@dataclass
class DataContext:
    """
    Header, line and party records plus convenience indices.

    Attributes:
        headers: One record per invoice
        lines: One record per invoice line, keyed to an invoice by invoice_id
        buyers: One record per party
        header_map: invoice_id -> header record
        lines_by_invoice: invoice_id -> list of line records (in input order)
        buyer_map: buyer_id -> party record
    """
    headers: list[Record] = field(default_factory=list)
    lines: list[Record] = field(default_factory=list)
    buyers: list[Record] = field(default_factory=list)
    header_map: dict[str, Record] = field(init=False, repr=False)
    lines_by_invoice: dict[str, list[Record]] = field(init=False, repr=False)
    buyer_map: dict[str, Record] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        for name in ("headers", "lines", "buyers"):
            records = getattr(self, name)
            if not isinstance(records, list):
                raise EngineInputError(f"{name} must be a list of records, got {type(records).__name__}")
            for index, record in enumerate(records):
                if not isinstance(record, Mapping):
                    raise EngineInputError(f"{name}[{index}] is not a record mapping")

        self.header_map = {}
        for header in self.headers:
            invoice_id = header.get("invoice_id")
            # First occurrence wins so duplicated ids stay deterministic
            if invoice_id is not None and str(invoice_id) not in self.header_map:
                self.header_map[str(invoice_id)] = header

        self.lines_by_invoice = {}
        for line in self.lines:
            invoice_id = line.get("invoice_id")
            if invoice_id is None:
                continue
            self.lines_by_invoice.setdefault(str(invoice_id), []).append(line)

        self.buyer_map = {}
        for buyer in self.buyers:
            buyer_id = buyer.get("buyer_id")
            if buyer_id is not None and str(buyer_id) not in self.buyer_map:
                self.buyer_map[str(buyer_id)] = buyer

    @classmethod
    def build(
        cls,
        headers: Optional[list[Record]] = None,
        lines: Optional[list[Record]] = None,
        buyers: Optional[list[Record]] = None,
    ) -> "DataContext":
        """Build a context from record lists, treating None as empty."""
        return cls(
            headers=list(headers) if headers is not None else [],
            lines=list(lines) if lines is not None else [],
            buyers=list(buyers) if buyers is not None else [],
        )

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "DataContext":
        """Build a context from a {"headers": [...], "lines": [...], "buyers": [...]} mapping."""
        if not isinstance(payload, Mapping):
            raise EngineInputError("Dataset payload must be an object with headers, lines and buyers")
        return cls.build(
            headers=payload.get("headers"),
            lines=payload.get("lines"),
            buyers=payload.get("buyers"),
        )

    def header_for(self, record: Record) -> Optional[Record]:
        """Return the header a record belongs to, if it can be resolved."""
        invoice_id = record.get("invoice_id")
        if invoice_id is None:
            return None
        return self.header_map.get(str(invoice_id))

    def lines_for(self, invoice_id: Any) -> list[Record]:
        if invoice_id is None:
            return []
        return self.lines_by_invoice.get(str(invoice_id), [])

    @property
    def is_empty(self) -> bool:
        return not (self.headers or self.lines or self.buyers)


def require_context(data: Any) -> DataContext:
    """Reject anything that is not a DataContext before a run starts."""
    if data is None:
        raise EngineInputError("DataContext is required")
    if not isinstance(data, DataContext):
        raise EngineInputError(f"Expected DataContext, got {type(data).__name__}")
    return data


def get_field_value(record: Any, field_path: str) -> Any:
    """
    Resolve a possibly dotted field path against a record.

    Mappings are indexed by key, other objects by attribute. Returns None
    as soon as any segment is missing.
    """
    value = record
    for part in field_path.split("."):
        if value is None:
            return None
        if isinstance(value, Mapping):
            value = value.get(part)
        elif isinstance(value, (list, tuple)) and part.isdigit():
            index = int(part)
            value = value[index] if index < len(value) else None
        else:
            value = getattr(value, part, None)
    return value


def is_empty(value: Any) -> bool:
    """A value is empty when it is None or blank after stripping."""
    return value is None or str(value).strip() == ""
