"""Tests for the turn-scoped alias codec."""

from fiscalia.models import Expense, Job
from fiscalia.orchestration.aliases import AliasTable


def _job(job_id: str, name: str) -> Job:
    return Job(id=job_id, user_id="user-1", name=name, revenue=1000)


def _expense(expense_id: str, name: str) -> Expense:
    return Expense(id=expense_id, user_id="user-1", name=name, amount=100)


class TestAliasTable:
    """Tests for AliasTable encoding and decoding."""

    def test_tokens_follow_snapshot_order(self):
        table = AliasTable.build(
            [_job("job-a", "Terrasse Dupuis"), _job("job-b", "Cuisine")],
            [_expense("exp-a", "Bois")],
        )

        assert len(table) == 3
        assert table.token_for("job-a") == "JOB_01"
        assert table.token_for("job-b") == "JOB_02"
        assert table.token_for("exp-a") == "EXP_01"
        assert table.token_for("unknown") is None

    def test_encode_replaces_whole_names(self):
        table = AliasTable.build([_job("job-a", "Terrasse Dupuis")], [_expense("exp-a", "Bois")])

        encoded = table.encode("Ajoute Bois au contrat terrasse dupuis, pas Boisé.")

        assert encoded == "Ajoute EXP_01 au contrat JOB_01, pas Boisé."

    def test_decode_leaves_unknown_tokens(self):
        table = AliasTable.build([_job("job-a", "Terrasse Dupuis")], [])

        assert table.decode("JOB_01 et EXP_99") == "Terrasse Dupuis et EXP_99"

    def test_strip_tokens(self):
        assert AliasTable.strip_tokens("Terminé (EXP_99) !") == "Terminé!"

    def test_duplicate_names_resolve_to_newest_job(self):
        table = AliasTable.build(
            [_job("job-old", "Terrasse"), _job("job-new", "Terrasse")],
            [_expense("exp-a", "Terrasse")],
        )

        assert table.encode("Terrasse") == "JOB_02"
        assert table.lookup_name("terrasse").entity_id == "job-new"

    def test_restore_data_maps_tokens_by_key(self):
        table = AliasTable.build([_job("job-a", "Terrasse Dupuis")], [_expense("exp-a", "Bois")])

        restored = table.restore_data(
            {
                "jobId": "JOB_01",
                "jobName": "JOB_01",
                "expenseId": "Bois",
                "name": "Bois pour JOB_01",
                "amount": 120,
            }
        )

        assert restored == {
            "jobId": "job-a",
            "jobName": "Terrasse Dupuis",
            "expenseId": "exp-a",
            "name": "Bois pour Terrasse Dupuis",
            "amount": 120,
        }

    def test_name_token_fills_missing_id(self):
        table = AliasTable.build(
            [_job("job-a", "Plomberie"), _job("job-b", "Plomberie Laval")],
            [_expense("exp-a", "Tuyaux")],
        )

        restored = table.restore_data({"jobName": "JOB_01", "expenseName": "EXP_01"})

        assert restored == {
            "jobName": "Plomberie",
            "jobId": "job-a",
            "expenseName": "Tuyaux",
            "expenseId": "exp-a",
        }

    def test_name_token_keeps_explicit_id(self):
        table = AliasTable.build(
            [_job("job-a", "Plomberie"), _job("job-b", "Plomberie Laval")], []
        )

        restored = table.restore_data({"jobName": "JOB_01", "jobId": "JOB_02"})

        assert restored == {"jobName": "Plomberie", "jobId": "job-b"}

    def test_plain_name_does_not_fill_id(self):
        table = AliasTable.build([_job("job-a", "Plomberie")], [])

        assert table.restore_data({"jobName": "Plomberie"}) == {"jobName": "Plomberie"}

    def test_restore_nested_updates(self):
        table = AliasTable.build([_job("job-a", "Terrasse")], [_expense("exp-a", "Bois")])

        restored = table.restore_data({"expenseId": "EXP_01", "updates": {"jobId": "JOB_01"}})

        assert restored == {"expenseId": "exp-a", "updates": {"jobId": "job-a"}}

    def test_empty_table_is_identity(self):
        table = AliasTable.build([], [])

        assert table.encode("Bonjour") == "Bonjour"
        assert table.restore_data({"jobId": "JOB_01"}) == {"jobId": "JOB_01"}
