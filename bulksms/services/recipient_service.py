from __future__ import annotations

import csv
import io
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from .exceptions import ValidationError

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")
_PHONE_LIKE_VALUE = re.compile(r"^[\d+]")


@dataclass
class Recipient:
    original_index: int
    attributes: dict[str, str] = field(default_factory=dict)
    phone: str | None = None

    def template_context(self) -> dict[str, Any]:
        return {**self.attributes, "originalIndex": self.original_index}

    def to_payload(self) -> dict[str, Any]:
        return {
            "originalIndex": self.original_index,
            "phone": self.phone,
            "attributes": dict(self.attributes),
        }

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "Recipient":
        attributes = data.get("attributes") or {}
        phone = data.get("phone")
        return cls(
            original_index=int(data.get("originalIndex", 0)),
            attributes={str(key): "" if value is None else str(value) for key, value in attributes.items()},
            phone=str(phone) if phone not in (None, "") else None,
        )

    def fail(self, error: str) -> "FailedRecipient":
        return FailedRecipient(recipient=self, error=error)


@dataclass
class FailedRecipient:
    recipient: Recipient
    error: str

    def to_payload(self) -> dict[str, Any]:
        return {**self.recipient.to_payload(), "error": self.error}


class PhoneFieldResolver:
    """Decides which attribute of a row holds the phone number.

    An explicitly configured field wins. Otherwise the first column whose name
    contains ``phone``, or ``number`` but not ``account``. When no column name
    looks like a phone column, each row is sniffed for the first value longer
    than five characters that starts with a digit or ``+``.
    """

    def __init__(self, explicit_field: str | None = None):
        self.explicit_field = _normalize_header(explicit_field) if explicit_field else None

    def detect_field(self, columns: Sequence[str]) -> str | None:
        if self.explicit_field:
            if self.explicit_field in columns:
                return self.explicit_field
            logger.warning("Configured phone column '%s' not present in %s", self.explicit_field, list(columns))
        for column in columns:
            lowered = column.lower()
            if "phone" in lowered or ("number" in lowered and "account" not in lowered):
                return column
        return None

    def resolve(self, attributes: Mapping[str, str], phone_field: str | None) -> str | None:
        if phone_field is not None:
            value = (attributes.get(phone_field) or "").strip()
            return value or None
        for value in attributes.values():
            value = (value or "").strip()
            if len(value) > 5 and _PHONE_LIKE_VALUE.match(value):
                return value
        return None

    def has_candidate(self, attributes: Mapping[str, str]) -> bool:
        """True when some value is long enough to have been a phone number."""

        return any(len((value or "").strip()) > 5 for value in attributes.values())


def _normalize_header(header: str) -> str:
    return _WHITESPACE.sub("", header.strip().lower())


class RecipientService:
    """Turns uploaded tabular data into ``Recipient`` records."""

    def __init__(self, resolver: PhoneFieldResolver | None = None):
        self.resolver = resolver or PhoneFieldResolver()

    def parse_csv(self, text: str) -> list[dict[str, str]]:
        text = (text or "").lstrip("\ufeff")
        reader = csv.DictReader(io.StringIO(text))
        try:
            if not reader.fieldnames:
                return []
            reader.fieldnames = [_normalize_header(name or "") for name in reader.fieldnames]
            rows: list[dict[str, str]] = []
            for raw in reader:
                row = {key: value or "" for key, value in raw.items() if key}
                if not any(value.strip() for value in row.values()):
                    continue
                rows.append(row)
        except csv.Error as exc:
            raise ValidationError(f"Invalid CSV: {exc}") from exc
        logger.info("CSV parsed: %s rows, columns=%s", len(rows), reader.fieldnames)
        return rows

    def columns(self, rows: Sequence[Mapping[str, Any]]) -> list[str]:
        return list(rows[0].keys()) if rows else []

    def normalize_rows(self, rows: Sequence[Mapping[str, Any]]) -> list[Recipient]:
        if not rows:
            logger.warning("No data rows found")
            return []

        phone_field = self.resolver.detect_field(self.columns(rows))
        if phone_field is None:
            logger.warning("No phone column detected; sniffing row values for phone numbers")

        recipients: list[Recipient] = []
        for index, row in enumerate(rows):
            attributes = {str(key): str(value if value is not None else "").strip() for key, value in row.items()}
            phone = self.resolver.resolve(attributes, phone_field)
            if not phone and (phone_field is not None or not self.resolver.has_candidate(attributes)):
                continue
            recipients.append(Recipient(original_index=index, attributes=attributes, phone=phone))

        dropped = len(rows) - len(recipients)
        if dropped:
            logger.warning("Filtered out %s rows with empty phone numbers", dropped)
        unresolved = sum(1 for recipient in recipients if not recipient.phone)
        if unresolved:
            logger.warning("%s rows kept without a recognizable phone number", unresolved)
        logger.info("Normalized %s recipients (phone column: %s)", len(recipients), phone_field or "-")
        return recipients

    def recipients_from_payload(self, payload: Mapping[str, Any]) -> list[Recipient]:
        if payload.get("is_retry"):
            return [Recipient.from_payload(item) for item in payload.get("recipients") or []]
        return self.normalize_rows(payload.get("source_rows") or [])

    def flatten_failed(self, batches: Iterable[Sequence[Mapping[str, Any]]]) -> list[dict[str, Any]]:
        """Flatten failed-batch entries into retry payloads, dropping their ``error``."""

        recipients: list[dict[str, Any]] = []
        for batch in batches:
            for entry in batch:
                recipients.append(Recipient.from_payload(entry).to_payload())
        return recipients
