"""Structured receipt data attached to a chat turn.

Receipts arrive either in ``context.receipts`` or as one inline annotation in
the user's message::

    [REÇU | chemin: receipts/u1/r1.jpg | fournisseur: Rona | sous-total: 100.00
     | taxes: TPS=5.00, TVQ=9.98 | total: 114.98 | date: 2025-01-15
     | articles: Vis=12.50; Planche=87.50]

The extracted values are shown to the model and then bound verbatim onto the
``create_expense`` actions it returns.
"""

import math
import re
from dataclasses import dataclass, field
from typing import Any

import structlog

from fiscalia.normalise import normalize_date, normalize_nullable_string, parse_amount
from fiscalia.orchestration.actions import ActionName, ModelAction

logger = structlog.get_logger(__name__)

RECEIPT_BLOCK_RE = re.compile(
    r"\[\s*(?:REÇU|RECU|RECEIPT)\s*((?:\|[^\[\]]*)?)\]",
    re.IGNORECASE,
)
_TAX_SPLIT_RE = re.compile(r"[,;]\s*(?=[^\W\d_][\w\s-]*[=:])")
_ITEM_RE = re.compile(r"^(?P<name>.+?)\s*(?:x\s*(?P<qty>\d+))?\s*[=:]\s*(?P<price>.+)$", re.IGNORECASE)

_FIELD_ALIASES = {
    "chemin": "path",
    "path": "path",
    "fichier": "path",
    "receiptpath": "path",
    "fournisseur": "vendor",
    "vendor": "vendor",
    "marchand": "vendor",
    "sous-total": "subtotal",
    "sous_total": "subtotal",
    "soustotal": "subtotal",
    "subtotal": "subtotal",
    "taxes": "taxes",
    "taxe": "taxes",
    "tax": "taxes",
    "total": "total",
    "date": "date",
    "articles": "items",
    "items": "items",
    "catégorie": "category",
    "categorie": "category",
    "category": "category",
}


def _amount(value: Any) -> float | None:
    parsed = parse_amount(value)
    return round(parsed, 2) if math.isfinite(parsed) else None


@dataclass
class ReceiptItem:
    name: str
    price: float
    quantity: int | None = None


@dataclass
class ReceiptData:
    path: str | None = None
    vendor: str | None = None
    subtotal: float | None = None
    taxes: dict[str, float] = field(default_factory=dict)
    total: float | None = None
    date: str | None = None
    items: list[ReceiptItem] = field(default_factory=list)
    category: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ReceiptData":
        """Build from a structured receipt (OCR output shape)."""
        tax_source = raw.get("taxes") if isinstance(raw.get("taxes"), dict) else raw.get("tax")
        taxes: dict[str, float] = {}
        if isinstance(tax_source, dict):
            for name, value in tax_source.items():
                amount = _amount(value)
                if amount is not None and name.lower() != "total":
                    taxes[name.upper()] = amount

        items: list[ReceiptItem] = []
        for item in raw.get("items") or []:
            if not isinstance(item, dict):
                continue
            name = normalize_nullable_string(item.get("name"))
            price = _amount(item.get("price"))
            if name and price is not None:
                quantity = item.get("quantity")
                items.append(
                    ReceiptItem(
                        name=name,
                        price=price,
                        quantity=int(quantity) if isinstance(quantity, int | float) else None,
                    )
                )

        return cls(
            path=normalize_nullable_string(raw.get("path") or raw.get("receiptPath")),
            vendor=normalize_nullable_string(raw.get("vendor")),
            subtotal=_amount(raw.get("subtotal")),
            taxes=taxes,
            total=_amount(raw.get("total")),
            date=normalize_date(raw.get("date")),
            items=items,
            category=normalize_nullable_string(raw.get("category")),
        )

    @property
    def tax_total(self) -> float:
        return round(sum(self.taxes.values()), 2)

    def describe(self) -> str:
        """One prompt line per receipt."""
        parts = []
        if self.vendor:
            parts.append(f"fournisseur={self.vendor}")
        if self.total is not None:
            parts.append(f"total={self.total:.2f}$")
        if self.subtotal is not None:
            parts.append(f"sous-total={self.subtotal:.2f}$")
        if self.taxes:
            parts.append(
                "taxes=" + ", ".join(f"{name} {amount:.2f}$" for name, amount in self.taxes.items())
            )
        if self.date:
            parts.append(f"date={self.date}")
        if self.category:
            parts.append(f"catégorie={self.category}")
        if self.items:
            parts.append(
                "articles=" + "; ".join(f"{item.name} {item.price:.2f}$" for item in self.items)
            )
        if self.path:
            parts.append(f"reçu={self.path}")
        return " | ".join(parts)


def _parse_taxes(value: str) -> dict[str, float]:
    taxes: dict[str, float] = {}
    for chunk in _TAX_SPLIT_RE.split(value):
        name, sep, amount = chunk.partition("=")
        if not sep:
            name, sep, amount = chunk.partition(":")
        parsed = _amount(amount)
        if sep and name.strip() and parsed is not None:
            taxes[name.strip().upper()] = parsed
    return taxes


def _parse_items(value: str) -> list[ReceiptItem]:
    items: list[ReceiptItem] = []
    for chunk in value.split(";"):
        match = _ITEM_RE.match(chunk.strip())
        if not match:
            continue
        price = _amount(match.group("price"))
        if price is None:
            continue
        qty = match.group("qty")
        items.append(
            ReceiptItem(
                name=match.group("name").strip(),
                price=price,
                quantity=int(qty) if qty else None,
            )
        )
    return items


def parse_receipt_block(body: str) -> ReceiptData:
    """Parse the ``| key: value | ...`` part of an annotation."""
    receipt = ReceiptData()
    for segment in body.split("|"):
        key, sep, value = segment.partition(":")
        if not sep:
            continue
        field_name = _FIELD_ALIASES.get(key.strip().lower().replace(" ", ""))
        value = value.strip()
        if not field_name or not value:
            continue
        if field_name == "path":
            receipt.path = value
        elif field_name == "vendor":
            receipt.vendor = normalize_nullable_string(value)
        elif field_name == "subtotal":
            receipt.subtotal = _amount(value)
        elif field_name == "total":
            receipt.total = _amount(value)
        elif field_name == "date":
            receipt.date = normalize_date(value)
        elif field_name == "taxes":
            receipt.taxes = _parse_taxes(value)
        elif field_name == "items":
            receipt.items = _parse_items(value)
        elif field_name == "category":
            receipt.category = normalize_nullable_string(value)
    return receipt


def extract_receipts(text: str) -> tuple[str, list[ReceiptData]]:
    """Pull receipt annotations out of ``text``.

    Returns the message without the annotation and the parsed receipts.
    """
    receipts = [parse_receipt_block(m.group(1)) for m in RECEIPT_BLOCK_RE.finditer(text)]
    if not receipts:
        return text, []
    cleaned = RECEIPT_BLOCK_RE.sub("", text).strip()
    logger.debug("receipt_annotations_parsed", count=len(receipts))
    return cleaned, receipts


def bind_receipts(actions: list[ModelAction], receipts: list[ReceiptData]) -> list[ModelAction]:
    """Copy receipt vendor, total, date and path onto ``create_expense`` actions.

    An action is matched to the receipt carrying its ``receiptPath``; the
    remaining actions take the remaining receipts in order. Receipt values
    replace whatever the model wrote.
    """
    if not receipts:
        return actions

    unused = list(receipts)
    pending: list[ModelAction] = []
    for action in actions:
        if action.name != ActionName.CREATE_EXPENSE:
            continue
        path = action.data.get("receiptPath") or action.data.get("receiptImage")
        match = next((r for r in unused if path and r.path == path), None)
        if match is None:
            pending.append(action)
            continue
        unused.remove(match)
        _apply(action, match)

    for action, receipt in zip(pending, unused):
        _apply(action, receipt)
    return actions


def _apply(action: ModelAction, receipt: ReceiptData) -> None:
    data = action.data
    if receipt.vendor:
        data["vendor"] = receipt.vendor
        if not normalize_nullable_string(data.get("name")):
            data["name"] = receipt.vendor
    if receipt.total is not None:
        data["amount"] = receipt.total
    if receipt.date:
        data["date"] = receipt.date
    if receipt.path:
        data["receiptPath"] = receipt.path
    if receipt.category and not normalize_nullable_string(data.get("category")):
        data["category"] = receipt.category
    logger.info(
        "receipt_bound",
        vendor=receipt.vendor,
        amount=receipt.total,
        receipt_path=receipt.path,
    )
