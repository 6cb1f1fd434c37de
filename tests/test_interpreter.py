"""Tests for model reply interpretation and repair."""

import json

import pytest

from fiscalia.errors import QualityTooLowError, ValidationError
from fiscalia.orchestration.actions import (
    ActionName,
    ModelAction,
    sanitize_action,
    sanitize_actions,
    sanitize_actions_lenient,
)
from fiscalia.orchestration.interpreter import (
    DEFAULT_CONFIRMATION,
    FALLBACK_MESSAGES,
    SHORT_REPLY,
    extract_json_candidate,
    fallback_context,
    interpret_response,
    is_proper_french_text,
    sanitize_reply_text,
    score_response,
    synthesize_confirmation,
)


def _envelope(text, actions=None) -> str:
    return json.dumps({"text": text, "actions": actions or []}, ensure_ascii=False)


class TestActionSanitisation:
    """Tests for the closed action catalogue boundary."""

    def test_strict_rejects_unknown_action(self):
        with pytest.raises(ValidationError, match="hack_db"):
            sanitize_action({"action": "hack_db"})

    def test_legacy_name_is_normalised(self):
        action = sanitize_action({"action": "create_contract", "data": {"name": "X"}})

        assert action.name == ActionName.CREATE_JOB

    def test_strict_list_requires_list(self):
        with pytest.raises(ValidationError):
            sanitize_actions({"action": "query"})

    def test_lenient_drops_invalid_entries(self):
        actions = sanitize_actions_lenient(
            [{"action": "hack_db"}, "nope", {"action": "QUERY", "confirmationMessage": "  "}]
        )

        assert [a.name for a in actions] == [ActionName.QUERY]
        assert actions[0].confirmation_message is None


class TestExtraction:
    """Tests for locating JSON in a raw reply."""

    def test_fenced_block_wins(self):
        raw = 'Voici {"ignored": 1}\n```json\n{"text": "Salut."}\n```'

        assert extract_json_candidate(raw) == '{"text": "Salut."}'

    def test_balanced_object_ignores_braces_in_strings(self):
        raw = 'Réponse: {"text": "Un } dans le texte.", "actions": []} merci'

        assert extract_json_candidate(raw) == '{"text": "Un } dans le texte.", "actions": []}'


class TestQualityRubric:
    """Tests for the reply scoring heuristics."""

    def test_good_french_sentence_scores_high(self):
        assert score_response("Parfait! Le contrat est créé.") == 100

    def test_structure_is_penalised(self):
        assert score_response('{"text": "oups"') < 70
        assert not is_proper_french_text('Voici {"action": "query"}')
        assert not is_proper_french_text('"Bonjour."')

    def test_sanitize_strips_fragments(self):
        assert sanitize_reply_text('C\'est fait {"a": 1} [JOB_01]') == "C'est fait."


class TestInterpretResponse:
    """Tests for interpret_response."""

    def test_valid_envelope(self):
        raw = _envelope(
            "Parfait! J'ai créé le contrat Terrasse avec un revenu de 5000$.",
            [{"action": "create_job", "data": {"name": "Terrasse", "revenue": 5000}}],
        )

        result = interpret_response(raw)

        assert result.source == "model"
        assert result.text == "Parfait! J'ai créé le contrat Terrasse avec un revenu de 5000$."
        assert len(result.actions) == 1
        assert result.actions[0].name == ActionName.CREATE_JOB
        assert result.actions[0].data == {"name": "Terrasse", "revenue": 5000}

    def test_fenced_reply(self):
        raw = "Voici:\n```json\n" + _envelope("C'est fait! La dépense est supprimée.") + "\n```"

        result = interpret_response(raw)

        assert result.text == "C'est fait! La dépense est supprimée."
        assert result.source == "model"

    def test_trailing_comma_is_repaired(self):
        raw = '{"text": "D\'accord! Je note la dépense.", "actions": [],}'

        result = interpret_response(raw)

        assert result.text == "D'accord! Je note la dépense."
        assert result.fallback_used is False

    def test_invalid_text_gets_synthesized_confirmation(self):
        raw = _envelope(
            "{action: create_job}",
            [
                {"action": "create_job", "data": {"name": "Terrasse", "revenue": 5000}},
                {"action": "create_expense", "data": {"name": "Bois", "amount": 20}},
            ],
        )

        result = interpret_response(raw)

        assert result.source == "synthesized"
        assert result.text == "Contrat créé avec succès! Dépense ajoutée."
        assert len(result.actions) == 2

    def test_confirmation_message_preferred(self):
        actions = [
            ModelAction(name=ActionName.DELETE_JOB, confirmation_message="Contrat Terrasse supprimé."),
            ModelAction(name=ActionName.QUERY),
        ]

        assert synthesize_confirmation(actions) == "Contrat Terrasse supprimé."

    def test_lone_action_object(self):
        result = interpret_response('{"action": "query", "data": {}}')

        assert [a.name for a in result.actions] == [ActionName.QUERY]
        assert result.text == DEFAULT_CONFIRMATION

    def test_unsupported_actions_dropped(self):
        raw = _envelope(
            "Parfait! Je crée le contrat X pour toi.",
            [{"action": "hack_db"}, {"action": "create_contract", "data": {"name": "X", "revenue": 1}}],
        )

        result = interpret_response(raw)

        assert [a.name for a in result.actions] == [ActionName.CREATE_JOB]

    def test_plain_text_is_salvaged(self):
        result = interpret_response("Bonjour! Je suis là pour t'aider avec tes finances.")

        assert result.source == "salvaged"
        assert result.text == "Bonjour! Je suis là pour t'aider avec tes finances."
        assert result.actions == []

    def test_empty_text_without_actions(self):
        result = interpret_response(_envelope(""))

        assert result.text == SHORT_REPLY

    @pytest.mark.parametrize("raw", ["", "[1, 2, 3]", "   "])
    def test_unusable_reply_falls_back(self, raw):
        result = interpret_response(raw, prompt="Supprime la dépense Bois")

        assert result.fallback_used
        assert result.text == FALLBACK_MESSAGES["deletion"]
        assert result.actions == []

    def test_long_reply_is_truncated(self):
        raw = _envelope("Je note la dépense. " * 100)

        result = interpret_response(raw)

        assert result.text.endswith("...")
        assert len(result.text) <= 1003

    def test_reply_below_floor_is_replaced(self):
        raw = _envelope("null error")

        result = interpret_response(raw, prompt="Combien j'ai fait?", floor=60)

        assert result.fallback_used
        assert result.text == FALLBACK_MESSAGES["query"]

    def test_reply_below_floor_can_raise(self):
        with pytest.raises(QualityTooLowError):
            interpret_response(_envelope("null error"), floor=60, raise_on_reject=True)

    @pytest.mark.parametrize(
        "raw",
        ["", "{}", "null", '{"text": null}', '{"actions": "create_job"}', "```json\n```", "ok"],
    )
    def test_never_returns_empty_text(self, raw):
        assert interpret_response(raw).text.strip()


class TestFallbackContext:
    """Tests for fallback sentence selection."""

    def test_actions_take_precedence(self):
        actions = [ModelAction(name=ActionName.CREATE_EXPENSE)]

        assert fallback_context("Supprime tout", actions) == "creation"

    def test_prompt_keywords(self):
        assert fallback_context("Ajoute un contrat") == "creation"
        assert fallback_context("Le montant de 50$") == "financial"
        assert fallback_context("Salut") == "general"
        assert fallback_context(None) == "general"
