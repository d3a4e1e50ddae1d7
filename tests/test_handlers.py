"""
Тесты форматирования ответов бота
"""

from handlers.results import format_verdict
from handlers.sos import emergency_keyboard, question_keyboard
from services.questions import fight_solver_flow

from .conftest import SAMPLE_ANALYSIS


class TestFormatVerdict:

    def test_partner_sees_own_share_and_apology(self):
        text = format_verdict(SAMPLE_ANALYSIS, "partner1")

        assert "Your share: 70% / your partner: 30%" in text
        assert "• apologize for cancelling" in text
        assert "• plan the week together" in text
        assert "I'm sorry for my actions." in text
        assert "Own it, honey." in text
        assert "say what you need" not in text

    def test_other_partner_view(self):
        text = format_verdict(SAMPLE_ANALYSIS, "partner2")

        assert "Your share: 30% / your partner: 70%" in text
        assert "apology script" not in text
        assert "Own it, honey." not in text
        assert "You did fine." in text


class TestKeyboards:

    def test_choice_question_gets_buttons(self):
        flow = fight_solver_flow()
        keyboard = question_keyboard(7, flow.get("emotional-state"))

        data = [button.callback_data for row in keyboard.inline_keyboard for button in row]
        assert data == [f"sos_ans:7:{index}" for index in range(5)]

    def test_text_question_has_no_buttons(self):
        flow = fight_solver_flow()
        assert question_keyboard(7, flow.get("trigger-event")) is None

    def test_emergency_choices(self):
        keyboard = emergency_keyboard(7)
        data = [button.callback_data for row in keyboard.inline_keyboard for button in row]
        assert data == ["sos_em:7:continue", "sos_em:7:escalate", "sos_em:7:abandon"]
