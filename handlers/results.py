"""
Обработчики просмотра вердикта и PDF-экспорта
"""

import logging
import os

from aiogram import Router, types, F
from aiogram.filters import Command
from aiogram.types import InlineKeyboardMarkup, InlineKeyboardButton, FSInputFile

from db.models import SOS_RESOLVED
from db.repository import Repository
from services.errors import SOSError
from services.pdf_generator import generate_verdict_pdf
from services.sos import SOSService

router = Router()
logger = logging.getLogger(__name__)


def format_verdict(analysis: dict, role: str) -> str:
    """Вердикт глазами одного партнёра"""
    fault = analysis["fault_assignment"]
    other = "partner2" if role == "partner1" else "partner1"
    recommendations = analysis["recommendations"]
    apology = analysis["apology_required"]
    feedback = analysis["personalized_feedback"][role]

    lines = [
        "📋 Dr. Marcie's verdict",
        "",
        analysis["summary"],
        "",
        f"🔍 Root cause: {analysis['root_cause']}",
        f"⚖️ Your share: {fault[f'{role}_fault']}% / your partner: {fault[f'{other}_fault']}%",
        fault["explanation"],
        "",
        f"💬 {analysis['communication_breakdown']}",
        f"💛 {analysis['emotional_validation']}",
    ]

    actions = recommendations[f"{role}_actions"] + recommendations["joint_actions"]
    if actions:
        lines += ["", "✅ Next steps:"] + [f"• {item}" for item in actions]
    if apology[f"{role}_should_apologize"]:
        lines += ["", "🙏 Your apology script:", apology["apology_scripts"].get(role, "")]
    lines += ["", "🩺 Just for you:", feedback["message"]]
    return "\n".join(lines)


@router.message(Command("results"))
async def show_results(message: types.Message, sos_service: SOSService, repository: Repository):
    """Последний вердикт пары"""
    couple = await repository.get_couple_for_user(message.from_user.id)
    sos_session = await repository.latest_session(couple.id, SOS_RESOLVED) if couple else None

    if not sos_session:
        await message.answer(
            "❌ There's no verdict yet.\n\n"
            "Start an SOS session with /sos"
        )
        return

    try:
        analysis = await sos_service.get_analysis(sos_session.id, message.from_user.id)
    except SOSError as e:
        await message.answer(f"❌ {e.reason}")
        return

    if analysis is None:
        await message.answer("❌ Verdict not found.")
        return

    keyboard = InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="📄 Download as PDF", callback_data=f"sos_pdf:{sos_session.id}")],
        [InlineKeyboardButton(text="🎯 Healing challenges", callback_data="show_challenges")],
    ])

    text = format_verdict(analysis.analysis, analysis.role_of(message.from_user.id))
    # длинные сообщения Telegram не принимает
    parts = [text[i:i + 4000] for i in range(0, len(text), 4000)]
    for part in parts[:-1]:
        await message.answer(part)
    await message.answer(parts[-1], reply_markup=keyboard)


@router.callback_query(F.data.startswith("sos_pdf:"))
async def send_pdf(callback: types.CallbackQuery, sos_service: SOSService):
    """PDF с вердиктом для нажавшего партнёра"""
    session_id = int(callback.data.split(":")[1])

    try:
        analysis = await sos_service.get_analysis(session_id, callback.from_user.id)
    except SOSError as e:
        await callback.answer(f"❌ {e.reason}", show_alert=True)
        return

    if analysis is None:
        await callback.answer("❌ Verdict not found.", show_alert=True)
        return

    await callback.answer("⏳ Generating your PDF...")
    pdf_path = generate_verdict_pdf(analysis.analysis, analysis.role_of(callback.from_user.id))
    try:
        await callback.message.answer_document(
            document=FSInputFile(pdf_path),
            caption="📄 Your copy of Dr. Marcie's verdict. Keep it somewhere you'll actually reread it."
        )
    finally:
        # Удаляем временный PDF файл
        if os.path.exists(pdf_path):
            os.remove(pdf_path)
