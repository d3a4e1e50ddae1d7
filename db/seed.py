"""
Стартовые данные: правила последствий и каталог заданий
"""

import logging

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from .models import Challenge, ConsequenceRule

logger = logging.getLogger(__name__)

DEFAULT_CHALLENGES = [
    # (title, category, difficulty, description)
    ("Five-Minute Listening Swap", "communication", 1,
     "Each partner talks for five minutes while the other only listens, then summarizes what they heard."),
    ("Daily Check-In", "communication", 2,
     "Ask each other three open questions about your day, every evening for a week."),
    ("Hard Conversation Rehearsal", "communication", 3,
     "Pick one topic you avoid and talk it through using only 'I feel' statements."),
    ("Promise Ledger", "trust", 1,
     "Write down one small promise each and keep it for 48 hours."),
    ("Open Phone Evening", "trust", 2,
     "Spend one evening answering any question your partner asks, honestly."),
    ("Cool-Down Pact", "conflict-resolution", 1,
     "Agree on a signal for taking a 20-minute break during arguments and use it once."),
    ("Repair Attempt Practice", "conflict-resolution", 2,
     "Each partner makes one repair attempt (humor, touch, apology) during the next disagreement."),
    ("Silly Date Night", "fun", 1,
     "Plan a date where the only rule is that nothing may be taken seriously."),
    ("Memory Lane", "romance", 1,
     "Share your favourite memory of the other person from the first year together."),
]

DEFAULT_RULES = [
    # (triggered_by, severity, type, requires_consent, max_duration, description)
    ("missed_challenge", "light", "screensaver", False, 120,
     "Your screensaver becomes a reminder of the challenge you missed."),
    ("missed_challenge", "medium", "notification_spam", True, 120,
     "A stream of persistent reminders until you get back to your partner."),
    ("missed_challenge", "medium", "challenge_assignment", False, None,
     "A makeup challenge is added to your list."),
    ("low_score", "light", "screensaver", False, 60,
     "A motivational screensaver to keep your head in the game."),
    ("low_score", "medium", "challenge_assignment", False, None,
     "A focused practice challenge to lift your score."),
    ("skipped_task", "light", "notification_spam", True, 90,
     "Friendly-but-relentless nudges to finish what you skipped."),
    ("skipped_task", "heavy", "app_block", True, 45,
     "Distracting apps are paused so you can focus on your relationship."),
    ("skipped_task", "medium", "challenge_assignment", False, None,
     "A makeup challenge replaces the task you skipped."),
    ("game_abandoned", "light", "screensaver", False, 90,
     "A romantic screensaver to remind you why you started."),
    ("game_abandoned", "heavy", "app_block", True, 90,
     "Social apps are paused until the game is done."),
    ("fight_unresolved", "medium", "challenge_assignment", False, None,
     "A conflict-resolution challenge for the two of you."),
    ("streak_broken", "light", "notification_spam", True, 60,
     "Reminders to restart your streak."),
]


async def seed_defaults(session_maker: async_sessionmaker):
    """Заполнение каталога заданий и правил, если таблицы пустые"""
    async with session_maker() as session:
        challenges_count = await session.scalar(select(func.count()).select_from(Challenge))
        if not challenges_count:
            session.add_all([
                Challenge(title=title, category=category, difficulty_level=difficulty, description=description)
                for title, category, difficulty, description in DEFAULT_CHALLENGES
            ])
            logger.info("Каталог заданий заполнен: %d", len(DEFAULT_CHALLENGES))

        rules_count = await session.scalar(select(func.count()).select_from(ConsequenceRule))
        if not rules_count:
            session.add_all([
                ConsequenceRule(
                    triggered_by=triggered_by,
                    severity=severity,
                    type=rule_type,
                    requires_consent=requires_consent,
                    max_duration=max_duration,
                    description=description,
                )
                for triggered_by, severity, rule_type, requires_consent, max_duration, description in DEFAULT_RULES
            ])
            logger.info("Правила последствий заполнены: %d", len(DEFAULT_RULES))

        await session.commit()
