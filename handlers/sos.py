"""
Обработчики SOS Fight Solver: запуск, вопросы, экстренный протокол, отмена
"""

import logging

from aiogram import Router, types, F
from aiogram.filters import Command
from aiogram.fsm.context import FSMContext
from aiogram.fsm.state import State, StatesGroup
from aiogram.types import InlineKeyboardMarkup, InlineKeyboardButton

from db.models import INPUT_SOS_STATUSES
from db.repository import Repository
from services.errors import GenerationFailure, SOSError
from services.questions import QUESTION_SCALE, QUESTION_TEXT, SCALE_MAX, SCALE_MIN
from services.sos import (
    AnswerOutcome, EMERGENCY_ABANDON, EMERGENCY_CONTINUE, EMERGENCY_ESCALATE, SOSService,
)
from services.sos_machine import Phase

router = Router()
logger = logging.getLogger(__name__)


class SOSStates(StatesGroup):
    """Состояния для FSM"""
    answering = State()
    emergency = State()


def question_keyboard(session_id: int, question):
    """Кнопки для вопросов с вариантами (для текстовых вопросов - None)"""
    if question.type == QUESTION_TEXT:
        return None
    if question.type == QUESTION_SCALE:
        row = [
            InlineKeyboardButton(text=str(value), callback_data=f"sos_ans:{session_id}:{value - SCALE_MIN}")
            for value in range(SCALE_MIN, SCALE_MAX + 1)
        ]
        return InlineKeyboardMarkup(inline_keyboard=[row])
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text=option, callback_data=f"sos_ans:{session_id}:{index}")]
        for index, option in enumerate(question.options)
    ])


def emergency_keyboard(session_id: int):
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="💬 I'm okay, continue", callback_data=f"sos_em:{session_id}:{EMERGENCY_CONTINUE}")],
        [InlineKeyboardButton(text="🆘 Show me support resources", callback_data=f"sos_em:{session_id}:{EMERGENCY_ESCALATE}")],
        [InlineKeyboardButton(text="⏹ Stop this session", callback_data=f"sos_em:{session_id}:{EMERGENCY_ABANDON}")],
    ])


async def ask_question(message: types.Message, state: FSMContext, session_id: int, question, progress: float = 0.0):
    await state.set_state(SOSStates.answering)
    await state.update_data(session_id=session_id, question_id=question.id)
    hint = "\n\n✍️ Reply in your own words." if question.type == QUESTION_TEXT else ""
    await message.answer(
        f"({progress:.0f}%) {question.text}{hint}",
        reply_markup=question_keyboard(session_id, question)
    )


@router.message(Command("sos"))
async def sos_command(message: types.Message, state: FSMContext, sos_service: SOSService, repository: Repository):
    """Запуск SOS или возврат в свою "кабинку" в уже открытой сессии"""
    user_id = message.from_user.id
    couple = await repository.get_couple_for_user(user_id)
    if couple is None:
        await message.answer("❌ You need to pair with your partner first. Use /start")
        return

    try:
        active = await sos_service.get_active_session(user_id)
        if active is not None and active.status in INPUT_SOS_STATUSES:
            question = await sos_service.current_question(active.id, user_id)
            if question is None:
                await message.answer("⏳ Your side is in. Waiting for your partner to finish theirs.")
                return
            await message.answer("🔒 Welcome to your private booth. Your partner can't see these answers.")
            await ask_question(message, state, active.id, question)
            return

        initiation = await sos_service.initiate(couple.id, user_id)
    except SOSError as e:
        await message.answer(f"❌ {e.reason}")
        return

    await message.answer(f"🚨 {initiation.message.message}")
    await ask_question(message, state, initiation.session.id, initiation.first_question)


@router.callback_query(F.data.startswith("sos_ans:"), SOSStates.answering)
async def answer_callback(callback: types.CallbackQuery, state: FSMContext, sos_service: SOSService):
    """Ответ кнопкой"""
    _, session_id, index = callback.data.split(":")
    data = await state.get_data()
    session_id = int(session_id)

    try:
        question = await sos_service.current_question(session_id, callback.from_user.id)
        if question is None or question.id != data.get("question_id"):
            await callback.answer("This question was already answered.", show_alert=True)
            return
        if question.type == QUESTION_SCALE:
            answer = SCALE_MIN + int(index)
        else:
            answer = question.options[int(index)]
        await callback.answer()
        await callback.message.edit_reply_markup(reply_markup=None)
        outcome = await sos_service.submit_answer(session_id, callback.from_user.id, question.id, answer)
    except GenerationFailure as e:
        logger.error("Анализ SOS-сессии %s не удался: %s", session_id, e.reason)
        await state.clear()
        await callback.message.answer("💔 Dr. Marcie couldn't finish the analysis, so this session has ended. You can start a new one with /sos.")
        return
    except SOSError as e:
        await callback.message.answer(f"❌ {e.reason}")
        return

    await render_outcome(callback.message, state, session_id, outcome)


@router.message(SOSStates.answering)
async def answer_text(message: types.Message, state: FSMContext, sos_service: SOSService):
    """Текстовый ответ"""
    data = await state.get_data()
    session_id = data["session_id"]

    try:
        outcome = await sos_service.submit_answer(
            session_id, message.from_user.id, data["question_id"], message.text or ""
        )
    except GenerationFailure as e:
        logger.error("Анализ SOS-сессии %s не удался: %s", session_id, e.reason)
        await state.clear()
        await message.answer("💔 Dr. Marcie couldn't finish the analysis, so this session has ended. You can start a new one with /sos.")
        return
    except SOSError as e:
        await message.answer(f"❌ {e.reason}")
        return

    await render_outcome(message, state, session_id, outcome)


@router.callback_query(F.data.startswith("sos_em:"))
async def emergency_callback(callback: types.CallbackQuery, state: FSMContext, sos_service: SOSService):
    """Выбор в экстренном протоколе"""
    _, session_id, choice = callback.data.split(":")
    session_id = int(session_id)
    await callback.answer()

    try:
        outcome = await sos_service.resolve_emergency(session_id, callback.from_user.id, choice)
    except GenerationFailure as e:
        logger.error("Анализ SOS-сессии %s не удался: %s", session_id, e.reason)
        await state.clear()
        await callback.message.answer("💔 Dr. Marcie couldn't finish the analysis, so this session has ended. You can start a new one with /sos.")
        return
    except SOSError as e:
        await callback.message.answer(f"❌ {e.reason}")
        return

    if choice != EMERGENCY_ESCALATE:
        await callback.message.edit_reply_markup(reply_markup=None)
    await render_outcome(callback.message, state, session_id, outcome)


@router.message(SOSStates.emergency)
async def emergency_text(message: types.Message, state: FSMContext):
    data = await state.get_data()
    await message.answer(
        "💛 Your last answer is safe with me. Please pick one of the options first.",
        reply_markup=emergency_keyboard(data["session_id"])
    )


async def render_outcome(message: types.Message, state: FSMContext, session_id: int, outcome: AnswerOutcome):
    """Показ результата ответа пользователю"""
    if outcome.emergency is not None:
        await state.set_state(SOSStates.emergency)
        notice = outcome.emergency
        text = f"💛 {notice.message.message}"
        if notice.resources:
            text += "\n\n" + "\n".join(f"• {item}" for item in notice.resources)
        if notice.professional_referral:
            text += "\n\nTalking to a licensed professional is a strong move, not a weak one."
        await message.answer(text, reply_markup=emergency_keyboard(session_id))
        return

    if outcome.phase == Phase.ABANDONED:
        await state.clear()
        await message.answer("⏹ This SOS session has been stopped. Take care of yourself first. 💛")
        return

    if outcome.next_question is not None:
        if outcome.acknowledgment is not None:
            await message.answer(outcome.acknowledgment.message)
        await ask_question(message, state, session_id, outcome.next_question, outcome.progress)
        return

    await state.clear()
    if outcome.acknowledgment is not None:
        await message.answer(f"✅ {outcome.acknowledgment.message}")
    if outcome.phase == Phase.RESOLVED:
        await message.answer("📋 Both sides are in and the verdict is ready! Use /results to see it.")
    elif outcome.phase == Phase.ANALYZING:
        await message.answer("🧠 Both sides are in. Dr. Marcie is working on the verdict...")
    else:
        await message.answer("⏳ Your side is locked in. I'll let you know when your partner finishes.")


@router.message(Command("abort"))
async def abort_command(message: types.Message, state: FSMContext, sos_service: SOSService):
    """Отмена SOS-сессии инициатором"""
    active = await sos_service.get_active_session(message.from_user.id)
    if active is None:
        await message.answer("There's no active SOS session to stop.")
        return

    try:
        await sos_service.abort_session(active.id, message.from_user.id)
    except SOSError as e:
        await message.answer(f"❌ {e.reason}")
        return

    await state.clear()
    await message.answer("⏹ SOS session stopped.")
