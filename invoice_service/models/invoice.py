from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, Optional
import re

TEXT_FIELDS = (
    "invoice_year",
    "invoice_quarter",
    "invoice_month",
    "invoice_date",
    "invoice_number",
    "category",
    "supplier",
    "description",
    "vat_region",
    "currency",
)

AMOUNT_FIELDS = ("amount_incl_vat", "amount_ex_vat", "vat")

_NON_NUMERIC = re.compile(r"[^\d,.\-]")


def parse_amount(value: Any) -> Optional[float]:
    """Coerce a monetary value returned by the model into a float.

    Accepts numbers and strings such as ``"€ 1.234,50"`` or ``"1,234.50"``.
    Anything that cannot be read as a number becomes ``None``.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        return None

    cleaned = _NON_NUMERIC.sub("", value)
    if not cleaned or cleaned in {"-", ".", ","}:
        return None

    if "," in cleaned and "." in cleaned:
        # The right-most separator is the decimal one
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif "," in cleaned:
        head, _, tail = cleaned.rpartition(",")
        if len(tail) != 3 and cleaned.count(",") == 1:
            cleaned = f"{head}.{tail}"
        else:
            cleaned = cleaned.replace(",", "")

    try:
        return float(cleaned)
    except ValueError:
        return None


class InvoiceRecord(BaseModel):
    """Structured invoice fields produced by the normalization service"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    invoice_year: Optional[str] = Field(None, alias="InvoiceYear")
    invoice_quarter: Optional[str] = Field(None, alias="InvoiceQuarter")
    invoice_month: Optional[str] = Field(None, alias="InvoiceMonth")
    invoice_date: Optional[str] = Field(None, alias="InvoiceDate")
    invoice_number: Optional[str] = Field(None, alias="InvoiceNumber")
    category: Optional[str] = Field(None, alias="Category")
    supplier: Optional[str] = Field(None, alias="Supplier")
    description: Optional[str] = Field(None, alias="Description")
    vat_region: Optional[str] = Field(None, alias="VATRegion")
    currency: Optional[str] = Field(None, alias="Currency")
    amount_incl_vat: Optional[float] = Field(None, alias="AmountInclVAT")
    amount_ex_vat: Optional[float] = Field(None, alias="AmountExVAT")
    vat: Optional[float] = Field(None, alias="VAT")

    @field_validator(*TEXT_FIELDS, mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> Optional[str]:
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            value = str(value)
        if not isinstance(value, str):
            raise ValueError("expected a string value")
        value = value.strip()
        return value or None

    @field_validator("invoice_quarter")
    @classmethod
    def _strip_quarter_prefix(cls, value: Optional[str]) -> Optional[str]:
        if value and value[0] in "Qq":
            return value[1:].strip() or None
        return value

    @field_validator("invoice_month", "invoice_date")
    @classmethod
    def _zero_pad(cls, value: Optional[str]) -> Optional[str]:
        if value and value.isdigit() and len(value) == 1:
            return f"0{value}"
        return value

    @field_validator(*AMOUNT_FIELDS, mode="before")
    @classmethod
    def _coerce_amount(cls, value: Any) -> Optional[float]:
        return parse_amount(value)
