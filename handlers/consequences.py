"""
Обработчики заданий, последствий и настроек согласия
"""

import logging

from aiogram import Router, types, F
from aiogram.filters import Command
from aiogram.types import InlineKeyboardMarkup, InlineKeyboardButton

from db.models import CONSEQUENCE_ACTIVE, CONSEQUENCE_PENDING_CONSENT
from db.repository import Repository
from services.consequences import ConsequenceEngine
from services.errors import SOSError

router = Router()
logger = logging.getLogger(__name__)

PREFERENCE_TOGGLES = {
    "allow_screensaver_changes": "📱 Screensaver changes",
    "allow_app_blocking": "🚫 App blocking",
    "allow_notification_spam": "🔔 Reminder spam",
}


def consent_keyboard(consequence_id: int):
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="✅ I accept", callback_data=f"cq_yes:{consequence_id}")],
        [InlineKeyboardButton(text="🙅 No thanks", callback_data=f"cq_no:{consequence_id}")],
    ])


async def send_challenges(message: types.Message, user_id: int, repository: Repository):
    couple = await repository.get_couple_for_user(user_id)
    if couple is None:
        await message.answer("❌ You need to pair with your partner first. Use /start")
        return

    attempts = await repository.list_challenge_attempts(couple.id, status="pending")
    if not attempts:
        await message.answer("🎉 No pending challenges. Enjoy the peace!")
        return

    for attempt in attempts:
        keyboard = InlineKeyboardMarkup(inline_keyboard=[[
            InlineKeyboardButton(text="✅ Done", callback_data=f"ch_done:{attempt.id}"),
            InlineKeyboardButton(text="⏭ Skip", callback_data=f"ch_skip:{attempt.id}"),
        ]])
        challenge = attempt.challenge
        await message.answer(
            f"🎯 {challenge.title} ({challenge.category}, level {challenge.difficulty_level})\n\n"
            f"{challenge.description}",
            reply_markup=keyboard
        )


@router.message(Command("challenges"))
async def challenges_command(message: types.Message, repository: Repository):
    """Назначенные паре задания"""
    await send_challenges(message, message.from_user.id, repository)


@router.callback_query(F.data == "show_challenges")
async def challenges_callback(callback: types.CallbackQuery, repository: Repository):
    await callback.answer()
    await send_challenges(callback.message, callback.from_user.id, repository)


async def _own_attempt(callback: types.CallbackQuery, repository: Repository):
    attempt_id = int(callback.data.split(":")[1])
    attempt = await repository.get_attempt(attempt_id)
    couple = await repository.get_couple_for_user(callback.from_user.id)
    if attempt is None or couple is None or attempt.couple_id != couple.id:
        await callback.answer("❌ Challenge not found.", show_alert=True)
        return None, None
    return attempt, couple


@router.callback_query(F.data.startswith("ch_done:"))
async def challenge_done(callback: types.CallbackQuery, repository: Repository):
    attempt, _ = await _own_attempt(callback, repository)
    if attempt is None:
        return
    if not await repository.set_attempt_status(attempt.id, "completed"):
        await callback.answer("This challenge is already closed.", show_alert=True)
        return
    await callback.message.edit_reply_markup(reply_markup=None)
    await callback.answer("🎉 Proud of you two!")


@router.callback_query(F.data.startswith("ch_skip:"))
async def challenge_skip(callback: types.CallbackQuery, repository: Repository,
                         consequence_engine: ConsequenceEngine):
    """Пропуск задания запускает последствие skipped_task"""
    attempt, couple = await _own_attempt(callback, repository)
    if attempt is None:
        return
    if not await repository.set_attempt_status(attempt.id, "skipped"):
        await callback.answer("This challenge is already closed.", show_alert=True)
        return
    await callback.message.edit_reply_markup(reply_markup=None)
    await callback.answer()

    consequence = await consequence_engine.trigger_consequence(
        callback.from_user.id,
        couple.id,
        "skipped_task",
        f"skipped the '{attempt.challenge.title}' challenge",
    )
    if consequence is None:
        await callback.message.answer("⏭ Skipped. I'll let it slide... this time. 😏")
        return
    await send_consequence(callback.message, consequence)


async def send_consequence(message: types.Message, consequence):
    commentary = consequence.dr_marcie_commentary[-1] if consequence.dr_marcie_commentary else ""
    text = f"⚖️ Consequence: {consequence.rule.description}\n\n{commentary}"
    if consequence.status == CONSEQUENCE_PENDING_CONSENT:
        await message.answer(text + "\n\nDo you accept?", reply_markup=consent_keyboard(consequence.id))
    elif consequence.status == CONSEQUENCE_ACTIVE:
        keyboard = InlineKeyboardMarkup(inline_keyboard=[
            [InlineKeyboardButton(text="🏁 I've done my time", callback_data=f"cq_done:{consequence.id}")]
        ])
        await message.answer(text, reply_markup=keyboard)
    else:
        await message.answer(text)


@router.callback_query(F.data.startswith("cq_yes:") | F.data.startswith("cq_no:"))
async def consent_callback(callback: types.CallbackQuery, consequence_engine: ConsequenceEngine):
    """Согласие или отказ"""
    action, consequence_id = callback.data.split(":")
    consent = action == "cq_yes"

    try:
        consequence = await consequence_engine.give_consent(int(consequence_id), consent, callback.from_user.id)
    except SOSError as e:
        await callback.answer(f"❌ {e.reason}", show_alert=True)
        return

    await callback.message.edit_reply_markup(reply_markup=None)
    await callback.answer()
    if consent:
        await send_consequence(callback.message, consequence)
    else:
        await callback.message.answer("🙅 Declined. Your boundaries, your call.")


@router.callback_query(F.data.startswith("cq_done:"))
async def complete_callback(callback: types.CallbackQuery, consequence_engine: ConsequenceEngine):
    consequence_id = int(callback.data.split(":")[1])
    try:
        await consequence_engine.complete_consequence(consequence_id, callback.from_user.id)
    except SOSError as e:
        await callback.answer(f"❌ {e.reason}", show_alert=True)
        return

    await callback.message.edit_reply_markup(reply_markup=None)
    await callback.answer("🏁 Consequence completed. Back to normal!")


@router.message(Command("consequences"))
async def consequences_command(message: types.Message, consequence_engine: ConsequenceEngine):
    """Ожидающие согласия и активные последствия"""
    consequences = await consequence_engine.get_active_consequences(message.from_user.id)
    if not consequences:
        await message.answer("😇 No active consequences. Keep it that way!")
        return
    for consequence in consequences:
        await send_consequence(message, consequence)


def preferences_keyboard(preferences):
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(
            text=f"{'✅' if getattr(preferences, field) else '❌'} {label}",
            callback_data=f"pref:{field}",
        )]
        for field, label in PREFERENCE_TOGGLES.items()
    ])


@router.message(Command("preferences"))
async def preferences_command(message: types.Message, consequence_engine: ConsequenceEngine):
    preferences = await consequence_engine.get_preferences(message.from_user.id)
    await message.answer(
        "⚙️ Which consequences do you allow?\n\n"
        f"Reminders come at most every {preferences.max_notification_frequency} min.",
        reply_markup=preferences_keyboard(preferences)
    )


@router.callback_query(F.data.startswith("pref:"))
async def toggle_preference(callback: types.CallbackQuery, consequence_engine: ConsequenceEngine):
    field = callback.data.split(":")[1]
    if field not in PREFERENCE_TOGGLES:
        await callback.answer()
        return
    preferences = await consequence_engine.get_preferences(callback.from_user.id)
    preferences = await consequence_engine.update_preferences(
        callback.from_user.id, **{field: not getattr(preferences, field)}
    )
    await callback.message.edit_reply_markup(reply_markup=preferences_keyboard(preferences))
    await callback.answer("Saved ✓")
