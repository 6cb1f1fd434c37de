"""Tests for receipt annotations and receipt binding."""

from fiscalia.orchestration.actions import ActionName, ModelAction
from fiscalia.orchestration.receipts import ReceiptData, bind_receipts, extract_receipts

ANNOTATED = (
    "Ajoute ce reçu au contrat Terrasse "
    "[REÇU | chemin: receipts/u1/r1.jpg | fournisseur: Rona | sous-total: 100.00 "
    "| taxes: TPS=5.00, TVQ=9.98 | total: 114.98 | date: 2025-01-15 "
    "| articles: Vis=12.50; Planche=87.50]"
)


class TestExtractReceipts:
    """Tests for inline annotation parsing."""

    def test_annotation_is_parsed_and_removed(self):
        text, receipts = extract_receipts(ANNOTATED)

        assert text == "Ajoute ce reçu au contrat Terrasse"
        assert len(receipts) == 1
        receipt = receipts[0]
        assert receipt.path == "receipts/u1/r1.jpg"
        assert receipt.vendor == "Rona"
        assert receipt.subtotal == 100.0
        assert receipt.taxes == {"TPS": 5.0, "TVQ": 9.98}
        assert receipt.tax_total == 14.98
        assert receipt.total == 114.98
        assert receipt.date == "2025-01-15"
        assert [(i.name, i.price) for i in receipt.items] == [("Vis", 12.5), ("Planche", 87.5)]

    def test_english_keys(self):
        _, receipts = extract_receipts("[receipt | path: r.jpg | vendor: Home Depot | total: $42.10]")

        assert receipts[0].vendor == "Home Depot"
        assert receipts[0].total == 42.1

    def test_thousands_separator_in_total(self):
        _, receipts = extract_receipts("[REÇU | fournisseur: Rona | sous-total: 1,000 | total: $1,149]")

        assert receipts[0].subtotal == 1000.0
        assert receipts[0].total == 1149.0

    def test_text_without_annotation_is_untouched(self):
        assert extract_receipts("Bonjour [note]") == ("Bonjour [note]", [])

    def test_from_structured_payload(self):
        receipt = ReceiptData.from_dict(
            {
                "path": "receipts/u1/r2.jpg",
                "vendor": "Canac",
                "total": "57,49",
                "date": "15/01/2025",
                "tax": {"TPS": 2.5, "TVQ": 4.99, "total": 7.49},
                "items": [{"name": "Peinture", "price": 50, "quantity": 1}, {"name": ""}],
            }
        )

        assert receipt.total == 57.49
        assert receipt.date == "2025-01-15"
        assert receipt.taxes == {"TPS": 2.5, "TVQ": 4.99}
        assert len(receipt.items) == 1
        assert "fournisseur=Canac" in receipt.describe()


class TestBindReceipts:
    """Tests for copying receipt fields onto create_expense actions."""

    def test_receipt_values_override_model_values(self):
        _, receipts = extract_receipts(ANNOTATED)
        action = ModelAction(
            name=ActionName.CREATE_EXPENSE,
            data={"name": "Matériaux", "amount": 100, "date": "2025-02-01"},
        )

        bind_receipts([action], receipts)

        assert action.data["amount"] == 114.98
        assert action.data["vendor"] == "Rona"
        assert action.data["date"] == "2025-01-15"
        assert action.data["receiptPath"] == "receipts/u1/r1.jpg"
        assert action.data["name"] == "Matériaux"

    def test_match_by_receipt_path_before_order(self):
        first = ReceiptData(path="a.jpg", vendor="A", total=10)
        second = ReceiptData(path="b.jpg", vendor="B", total=20)
        by_path = ModelAction(name=ActionName.CREATE_EXPENSE, data={"receiptPath": "b.jpg"})
        unmatched = ModelAction(name=ActionName.CREATE_EXPENSE, data={})

        bind_receipts([unmatched, by_path], [first, second])

        assert by_path.data["vendor"] == "B"
        assert unmatched.data["vendor"] == "A"
        assert unmatched.data["name"] == "A"

    def test_other_actions_are_ignored(self):
        receipt = ReceiptData(vendor="Rona", total=10)
        action = ModelAction(name=ActionName.CREATE_JOB, data={"name": "Terrasse", "revenue": 10})

        bind_receipts([action], [receipt])

        assert action.data == {"name": "Terrasse", "revenue": 10}
