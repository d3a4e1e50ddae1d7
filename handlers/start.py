"""
Обработчики команды /start и создания пары
"""

import logging
from datetime import datetime

from aiogram import Router, types, F
from aiogram.filters import Command, CommandObject, CommandStart
from aiogram.types import InlineKeyboardMarkup, InlineKeyboardButton

from db.repository import Repository
from services.errors import SOSError
from services.utils import generate_join_link, parse_join_payload

router = Router()
logger = logging.getLogger(__name__)


@router.message(CommandStart())
async def start_cmd(message: types.Message, command: CommandObject, repository: Repository):
    """Приветствие или присоединение по deep link"""
    couple_id = parse_join_payload(command.args)
    if couple_id is not None:
        await join_couple_deep_link(message, couple_id, repository)
        return

    keyboard = InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="💞 Pair with my partner", callback_data="create_couple")]
    ])

    await message.answer(
        "❤️ **Hi! I'm Dr. Marcie Liss.**\n\n"
        "Sweet, a little savage, and always on the side of your relationship.\n\n"
        "Pair with your partner first. When things get heated, hit /sos and "
        "I'll hear both sides privately before I deliver my verdict.",
        parse_mode="Markdown",
        reply_markup=keyboard
    )


@router.callback_query(F.data == "create_couple")
async def create_couple_callback(callback: types.CallbackQuery, repository: Repository):
    """Создание пары после нажатия кнопки"""
    existing = await repository.get_couple_for_user(callback.from_user.id)
    if existing and not existing.is_complete:
        couple = existing
    else:
        couple = await repository.create_couple(callback.from_user.id, datetime.now())
        logger.info("Пара %s создана пользователем %s", couple.id, callback.from_user.id)

    bot_info = await callback.bot.get_me()
    join_link = generate_join_link(bot_info.username, couple.id)

    await callback.message.answer(
        "✅ Your couple space is ready!\n\n"
        "Send this link to your partner:\n"
        f"{join_link}\n\n"
        "I'll let you know as soon as they join."
    )
    await callback.answer()


async def join_couple_deep_link(message: types.Message, couple_id: int, repository: Repository):
    """Присоединение второго партнёра по ссылке"""
    try:
        couple = await repository.join_couple(couple_id, message.from_user.id)
    except SOSError as e:
        await message.answer(f"❌ {e.reason}")
        return

    logger.info("Пользователь %s присоединился к паре %s", message.from_user.id, couple.id)
    await message.answer(
        "💞 You're paired!\n\n"
        "Whenever a fight needs a referee, use /sos. Your answers stay private until "
        "both of you have shared your side."
    )
    await message.bot.send_message(
        couple.partner1_user_id,
        "💞 Your partner just joined! You can now use /sos when you need me."
    )


@router.message(Command("help"))
async def help_command(message: types.Message):
    """Справка по командам бота"""
    help_text = """
❤️ **Dr. Marcie - SOS Fight Solver**

**Commands:**

/start - Pair with your partner
/sos - Start (or continue) an SOS session
/abort - Stop the SOS session you started
/results - Dr. Marcie's latest verdict
/challenges - Your healing challenges
/consequences - Active consequences
/preferences - What consequences you allow
/help - This help

**How SOS works:**

1. One of you hits /sos, the other gets a heads-up
2. Each of you answers a few questions privately
3. Once both sides are in, Dr. Marcie delivers her verdict
4. You get healing challenges to work on together
"""
    await message.answer(help_text, parse_mode="Markdown")
