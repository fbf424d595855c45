"""Boundary models: extraction output and matching requests."""
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, ConfigDict, Field, field_validator, model_validator

from ledgermatch.models.base import LMBaseModel
from ledgermatch.services.normalization import (
    normalize_currency,
    parse_amount,
    parse_date,
    to_minor_units,
)


class ExtractedFields(LMBaseModel):
    """
    Validated view of the OCR/AI extraction blob for one inbox item.

    Extraction output is loosely shaped: keys vary by provider and values
    arrive as strings. Unknown keys are ignored and unparseable values
    become ``None`` rather than failing the item.
    """
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    amount: Optional[Decimal] = Field(
        default=None,
        validation_alias=AliasChoices("amount", "total", "total_amount", "amount_total"),
    )
    currency: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("currency", "currency_code")
    )
    document_date: Optional[date] = Field(
        default=None,
        validation_alias=AliasChoices("document_date", "date", "invoice_date", "receipt_date"),
    )
    merchant_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("merchant_name", "merchant", "vendor_name", "vendor", "supplier"),
    )
    description: Optional[str] = None
    document_type: Optional[Literal["expense", "invoice"]] = Field(
        default=None, validation_alias=AliasChoices("document_type", "type")
    )
    amount_minor: Optional[int] = None

    @field_validator("amount", mode="before")
    @classmethod
    def _parse_amount(cls, value: Any) -> Optional[Decimal]:
        return parse_amount(value)

    @field_validator("currency", mode="before")
    @classmethod
    def _parse_currency(cls, value: Any) -> Optional[str]:
        return normalize_currency(value)

    @field_validator("document_date", mode="before")
    @classmethod
    def _parse_date(cls, value: Any) -> Optional[date]:
        return parse_date(value)

    @field_validator("merchant_name", "description", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @field_validator("document_type", mode="before")
    @classmethod
    def _parse_document_type(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip().lower()
        if text in {"receipt", "expense"}:
            return "expense"
        if text in {"invoice", "bill"}:
            return "invoice"
        return None

    @model_validator(mode="after")
    def _derive_minor_units(self) -> "ExtractedFields":
        if self.amount_minor is None and self.amount is not None:
            self.amount_minor = to_minor_units(self.amount, self.currency)
        return self

    def to_item_fields(self) -> Dict[str, Any]:
        """Columns to write back onto the inbox item; absent values are omitted."""
        fields = {
            "amount_minor": self.amount_minor,
            "currency": self.currency,
            "document_date": self.document_date,
            "merchant_name": self.merchant_name,
            "description": self.description,
            "document_type": self.document_type,
        }
        return {key: value for key, value in fields.items() if value is not None}


class MatchingRequestKind(str, Enum):
    INBOX = "inbox"
    TRANSACTION = "transaction"
    BATCH = "batch"


class BatchMatchingRequest(LMBaseModel):
    tenant_id: str = Field(..., min_length=1)
    inbox_ids: List[str] = Field(..., min_length=1)

    @field_validator("inbox_ids")
    @classmethod
    def _dedupe(cls, value: List[str]) -> List[str]:
        cleaned = [item.strip() for item in value]
        if any(not item for item in cleaned):
            raise ValueError("inbox_ids must not contain blank ids")
        return list(dict.fromkeys(cleaned))


class MatchingRequest(LMBaseModel):
    """One unit of work for the orchestrator."""
    kind: MatchingRequestKind
    tenant_id: str = Field(..., min_length=1)
    inbox_id: Optional[str] = None
    transaction_id: Optional[str] = None
    inbox_ids: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_target(self) -> "MatchingRequest":
        if self.kind == MatchingRequestKind.INBOX and not self.inbox_id:
            raise ValueError("inbox requests need inbox_id")
        if self.kind == MatchingRequestKind.TRANSACTION and not self.transaction_id:
            raise ValueError("transaction requests need transaction_id")
        if self.kind == MatchingRequestKind.BATCH and not self.inbox_ids:
            raise ValueError("batch requests need at least one inbox id")
        return self
