"""
Тесты разбора вердикта
"""

from types import SimpleNamespace

from services.analysis_parser import (
    DEFAULT_COMMITMENT, DEFAULT_ROOT_CAUSE, DEFAULT_SUMMARY, AnalysisFields, build_apology_scripts,
    healing_challenge_categories, normalize_fault, parse_analysis,
)

from .conftest import VERDICT_TEXT


class TestDefaults:

    def test_empty_text_gets_every_default(self):
        fields = parse_analysis("")

        assert fields.summary == DEFAULT_SUMMARY
        assert fields.root_cause == DEFAULT_ROOT_CAUSE
        assert (fields.partner1_fault, fields.partner2_fault) == (50, 50)
        assert fields.partner1_actions == []
        assert fields.partner1_should_apologize is False
        assert fields.partner1_commitment == DEFAULT_COMMITMENT
        assert set(fields.degraded_fields) >= {"summary", "root_cause", "fault", "actions"}

    def test_none_is_accepted(self):
        assert parse_analysis(None).summary == DEFAULT_SUMMARY

    def test_single_percentage_keeps_even_split(self):
        fields = parse_analysis("Partner 1 carries 80% of the blame here.")
        assert (fields.partner1_fault, fields.partner2_fault) == (50, 50)
        assert "fault" in fields.degraded_fields


class TestFault:

    def test_normalized_to_hundred(self):
        fields = parse_analysis("Partner 1 is 60% at fault. Partner 2 is 60% at fault.")
        assert (fields.partner1_fault, fields.partner2_fault) == (50, 50)

        fields = parse_analysis("Partner 1 holds 30 percent of the responsibility, Partner 2 holds 10 percent responsibility.")
        assert (fields.partner1_fault, fields.partner2_fault) == (75, 25)

    def test_partner_labels_decide_ownership(self):
        fields = parse_analysis(
            "Partner 2 bears 70% of the responsibility for the blow-up. Partner 1 bears 30% of the responsibility."
        )
        assert (fields.partner1_fault, fields.partner2_fault) == (30, 70)

        fields = parse_analysis("Partner 2 carries 65% of the blame, while Partner 1 carries 35% of the blame.")
        assert (fields.partner1_fault, fields.partner2_fault) == (35, 65)

    def test_unlabeled_percentages_follow_text_order(self):
        fields = parse_analysis("Split it 60% responsibility and 40% responsibility.")
        assert (fields.partner1_fault, fields.partner2_fault) == (60, 40)

        fields = parse_analysis("Partner 2 holds 20% of the blame. The rest, 80% of the blame, is shared history.")
        assert (fields.partner1_fault, fields.partner2_fault) == (80, 20)

    def test_normalize_fault_edges(self):
        assert normalize_fault(0, 0) == (50, 50)
        assert normalize_fault(-5, 10) == (0, 100)
        assert normalize_fault(33.3, 66.7) == (33, 67)
        for first, second in [(1, 2), (17, 4), (99.5, 0.5)]:
            assert sum(normalize_fault(first, second)) == 100


class TestFullVerdict:

    def test_extracts_all_fields(self):
        fields = parse_analysis(VERDICT_TEXT)

        assert fields.summary == "this fight was about feeling unheard."
        assert fields.root_cause == "a lack of communication about plans."
        assert (fields.partner1_fault, fields.partner2_fault) == (70, 30)
        assert fields.partner1_actions == ["apologize for cancelling last minute"]
        assert fields.partner2_actions == ["say what they need instead of going silent"]
        assert fields.joint_actions == ["schedule a weekly planning talk"]
        assert fields.partner1_should_apologize is True
        assert fields.partner2_should_apologize is False
        assert fields.partner1_commitment == "call ahead when plans change"
        assert fields.partner2_commitment == DEFAULT_COMMITMENT
        assert fields.healing_challenges == ["Five-Minute Listening Swap."]
        assert fields.emotional_validation == "Your feelings of disappointment are valid."
        assert fields.degraded_fields == []

    def test_both_should_apologize(self):
        fields = parse_analysis("Both of you should apologize for the shouting.")
        assert fields.partner1_should_apologize is True
        assert fields.partner2_should_apologize is True


class TestDerived:

    def test_apology_scripts_only_for_apologizers(self):
        fields = AnalysisFields(partner2_should_apologize=True, partner2_commitment="listen first")
        partner1 = SimpleNamespace(trigger_event="They forgot my birthday.", emotional_state="hurt")
        partner2 = SimpleNamespace(trigger_event="I said something mean.", emotional_state="angry")

        scripts = build_apology_scripts(fields, partner1, partner2)

        assert list(scripts) == ["partner2"]
        assert scripts["partner2"] == (
            "I'm sorry for what I said. I understand how that made you feel hurt. "
            "I will listen first going forward."
        )

    def test_challenge_categories(self):
        assert healing_challenge_categories(AnalysisFields(root_cause="broken trust")) == ["trust"]
        assert healing_challenge_categories(
            AnalysisFields(root_cause="poor communication and trust", partner1_should_apologize=True)
        ) == ["communication", "trust"]
        assert healing_challenge_categories(AnalysisFields(root_cause="money")) == ["communication"]
