"""
Геймификация — очки, челленджи, значки, уровни
"""

import bisect
import logging
from dataclasses import replace
from datetime import datetime
from typing import List, Optional, Sequence

from homework_core.clock import SystemClock, ensure_utc
from homework_core.config import config
from homework_core.database.models import (
    Badge,
    Challenge,
    ChallengeProgress,
    SubmissionEvent,
    UserLevel,
    UserStats,
)
from homework_core.database.protocols import BadgeStore, ChallengeStore, PointLedger, StatsStore
from homework_core.errors import ConcurrencyConflict, InvalidStateError, NotFoundError, ValidationError
from homework_core.locks import KeyedLocks
from homework_core.states import BadgeType, ChallengeType, EventKind

logger = logging.getLogger(__name__)


DEFAULT_LEVELS = [
    UserLevel(1, 0, "Новичок"),
    UserLevel(2, 100, "Ученик"),
    UserLevel(3, 500, "Знаток"),
    UserLevel(4, 1500, "Мастер"),
    UserLevel(5, 5000, "Легенда"),
]

SUBMITTED_KINDS = (EventKind.SUBMITTED, EventKind.SUBMITTED_ON_TIME)

# Какие типы челленджей продвигает каждое событие
CHALLENGE_TYPES_BY_EVENT = {
    EventKind.SUBMITTED: (ChallengeType.SUBMISSION_COUNT, ChallengeType.STREAK),
    EventKind.SUBMITTED_ON_TIME: (
        ChallengeType.SUBMISSION_COUNT,
        ChallengeType.ON_TIME_COUNT,
        ChallengeType.STREAK,
    ),
    EventKind.GRADED: (ChallengeType.GRADED_COUNT, ChallengeType.PERFECT_SCORE),
}

# Порог значка, если у значка не задан свой
BADGE_DEFAULT_THRESHOLDS = {
    BadgeType.HOMEWORK_COMPLETION: 1,
    BadgeType.ON_TIME_SUBMISSION: 1,
    BadgeType.PERFECT_SCORE: 1,
    BadgeType.STREAK: 5,
    BadgeType.SUBJECT_MASTERY: 10,
    BadgeType.CONSISTENCY: 10,
}

# Счётчик UserStats, с которым сравнивается порог
BADGE_COUNTERS = {
    BadgeType.HOMEWORK_COMPLETION: "homework_completed",
    BadgeType.ON_TIME_SUBMISSION: "on_time_submissions",
    BadgeType.PERFECT_SCORE: "perfect_scores",
    BadgeType.STREAK: "current_streak",
    BadgeType.SUBJECT_MASTERY: "homework_completed",
    BadgeType.CONSISTENCY: "on_time_submissions",
}

MAX_CONFLICT_RETRIES = 3


def completion_percentage(progress: int, target: int) -> float:
    """Процент выполнения, не больше 100"""
    if target <= 0:
        return 100.0 if progress > 0 else 0.0
    return min(100.0, 100.0 * progress / target)


class LevelTable:
    """Упорядоченная таблица уровней (порог строго возрастает)"""

    def __init__(self, levels: Sequence[UserLevel]):
        levels = sorted(levels, key=lambda level: level.points_required)
        if not levels:
            raise ValidationError("Таблица уровней пуста")
        thresholds = [level.points_required for level in levels]
        if any(b <= a for a, b in zip(thresholds, thresholds[1:])):
            raise ValidationError("Пороги уровней должны строго возрастать")
        numbers = [level.level_number for level in levels]
        if any(b <= a for a, b in zip(numbers, numbers[1:])):
            raise ValidationError("Номера уровней должны возрастать вместе с порогом")
        self.levels = levels
        self._thresholds = thresholds

    @classmethod
    def from_pairs(cls, pairs) -> "LevelTable":
        return cls([UserLevel(number, points) for number, points in pairs])

    def level_for(self, total_points: int) -> UserLevel:
        """Наибольший уровень с порогом <= total_points; ниже первого порога — базовый"""
        index = bisect.bisect_right(self._thresholds, total_points) - 1
        if index < 0:
            base = self.levels[0]
            return base if base.level_number == 1 else UserLevel(1, 0)
        return self.levels[index]

    def resolve(self, total_points: int) -> int:
        return self.level_for(total_points).level_number

    def next_level(self, total_points: int) -> Optional[UserLevel]:
        index = bisect.bisect_right(self._thresholds, total_points)
        if index >= len(self.levels):
            return None
        return self.levels[index]

    def progress_to_next(self, total_points: int) -> float:
        """Процент пути от текущего уровня до следующего"""
        upcoming = self.next_level(total_points)
        if upcoming is None:
            return 100.0
        floor = min(self.level_for(total_points).points_required, total_points)
        return completion_percentage(total_points - floor, upcoming.points_required - floor)


def extend_run(run: int, last_at: Optional[datetime], at: datetime) -> int:
    """Серия дней подряд (UTC) после сдачи в момент at"""
    day = ensure_utc(at).date()
    last = ensure_utc(last_at).date() if last_at else None
    if last is None or (day - last).days > 1:
        return 1
    if (day - last).days == 1:
        return run + 1
    return run


def qualifies(ctype: ChallengeType, event: SubmissionEvent, perfect_score: int) -> bool:
    """Засчитывается ли событие челленджу этого типа"""
    if ctype in (ChallengeType.SUBMISSION_COUNT, ChallengeType.STREAK):
        return event.kind in SUBMITTED_KINDS
    if ctype == ChallengeType.ON_TIME_COUNT:
        return event.kind == EventKind.SUBMITTED_ON_TIME
    if ctype == ChallengeType.GRADED_COUNT:
        return event.kind == EventKind.GRADED
    if ctype == ChallengeType.PERFECT_SCORE:
        return event.kind == EventKind.GRADED and event.grade is not None and event.grade >= perfect_score
    raise InvalidStateError(f"Неизвестный тип челленджа: {ctype}")


def advance(challenge: Challenge, progress: ChallengeProgress, event: SubmissionEvent,
            perfect_score: int) -> ChallengeProgress:
    """Новый прогресс после события (без сохранения). Прогресс не уменьшается."""
    value, run = progress.progress, progress.current_run

    if qualifies(challenge.type, event, perfect_score):
        if challenge.type == ChallengeType.STREAK:
            run = extend_run(run, progress.last_event_at, event.occurred_at)
            value = max(value, run)
        else:
            value += 1

    last_event_at = progress.last_event_at
    if last_event_at is None or event.occurred_at > last_event_at:
        last_event_at = event.occurred_at

    return replace(
        progress,
        progress=min(value, challenge.target),
        current_run=run,
        last_event_at=last_event_at,
    )


def stats_event_key(event: SubmissionEvent, perfect_score: int) -> Optional[str]:
    """Ключ учёта события в статистике; None — событие счётчики не меняет"""
    if event.kind in SUBMITTED_KINDS:
        if event.attempt > 1:
            return f"{event.event_id}:attempt:{event.attempt}"
        return event.event_id
    if event.kind == EventKind.GRADED:
        if event.grade is not None and event.grade >= perfect_score:
            return f"{event.event_id}:perfect"
        return None
    raise InvalidStateError(f"Неизвестное событие: {event.kind}")


def apply_stats(stats: UserStats, event: SubmissionEvent) -> UserStats:
    """
    Счётчики после события (без сохранения).
    Пересдача увеличивает только total_submissions; оценка — только perfect_scores
    (stats_event_key уже отсеял неидеальные оценки).
    """
    if event.kind == EventKind.GRADED:
        return replace(stats, perfect_scores=stats.perfect_scores + 1)

    if event.attempt > 1:
        return replace(stats, total_submissions=stats.total_submissions + 1)

    streak = extend_run(stats.current_streak, stats.last_submission_at, event.occurred_at)
    last = stats.last_submission_at
    if last is None or event.occurred_at > last:
        last = event.occurred_at
    return replace(
        stats,
        homework_completed=stats.homework_completed + 1,
        on_time_submissions=stats.on_time_submissions + (event.kind == EventKind.SUBMITTED_ON_TIME),
        total_submissions=stats.total_submissions + 1,
        current_streak=streak,
        longest_streak=max(stats.longest_streak, streak),
        last_submission_at=last,
    )


def should_award(badge: Badge, stats: UserStats) -> bool:
    """Достигнут ли порог значка"""
    if not badge.is_active:
        return False
    threshold = badge.threshold or BADGE_DEFAULT_THRESHOLDS[badge.type]
    return getattr(stats, BADGE_COUNTERS[badge.type]) >= threshold


class GamificationEngine:
    """
    Обработка событий сдачи: базовые очки, прогресс челленджей, счётчики,
    значки, уровни.

    Каждое событие учитывается атомарно вместе с записью прогресса
    (update_progress / update_user_stats с event_id), поэтому повтор события
    ничего не меняет. При гонке версий запись перечитывается и повторяется.
    Завершение челленджа и выдача значка — односторонние флаги.
    """

    def __init__(
        self,
        challenges: ChallengeStore,
        ledger: PointLedger,
        stats: StatsStore,
        badges: BadgeStore,
        clock=None,
        levels: Optional[LevelTable] = None,
    ):
        self.challenges = challenges
        self.ledger = ledger
        self.stats = stats
        self.badges = badges
        self.clock = clock or SystemClock()
        self.levels = levels or LevelTable(DEFAULT_LEVELS)
        self.perfect_score = config.PERFECT_SCORE
        self._locks = KeyedLocks()

    async def load_levels(self) -> LevelTable:
        """Подгрузить таблицу уровней из хранилища (если она там есть)"""
        stored = await self.ledger.get_level_table()
        if stored:
            self.levels = LevelTable(stored)
        return self.levels

    # ============================================
    # Events
    # ============================================

    async def handle_event(self, event: SubmissionEvent):
        """Подписчик для SubmissionTracker.add_listener"""
        await self.on_submission_event(event.user_id, event)

    async def on_submission_event(self, user_id: int, event: SubmissionEvent) -> List[Challenge]:
        """Обработать событие; вернуть челленджи, завершённые этим событием"""
        occurred_at = ensure_utc(event.occurred_at)
        await self._award_base_points(user_id, event)
        await self._record_stats(user_id, event)

        completed = []
        for ctype in CHALLENGE_TYPES_BY_EVENT[event.kind]:
            if not qualifies(ctype, event, self.perfect_score):
                continue
            for challenge in await self.challenges.list_active_challenges(ctype, occurred_at):
                if not challenge.is_open(occurred_at):
                    continue
                if await self._apply(user_id, challenge, event):
                    completed.append(challenge)
        return completed

    async def _award_base_points(self, user_id: int, event: SubmissionEvent):
        awards = []
        if event.kind in SUBMITTED_KINDS:
            awards.append((config.POINTS_SUBMISSION, event.event_id))
            if event.kind == EventKind.SUBMITTED_ON_TIME:
                awards.append((config.POINTS_ON_TIME, f"{event.event_id}:on_time"))
        elif event.kind == EventKind.GRADED:
            if event.grade is not None and event.grade >= self.perfect_score:
                awards.append((config.POINTS_PERFECT_SCORE, f"{event.event_id}:perfect"))
        else:
            raise InvalidStateError(f"Неизвестное событие: {event.kind}")

        for amount, reference in awards:
            if amount and await self.ledger.credit_points(user_id, amount, reference=reference):
                logger.debug(f"Начислено {amount} очков user={user_id} ({reference})")

    async def _apply(self, user_id: int, challenge: Challenge, event: SubmissionEvent) -> bool:
        occurred_at = ensure_utc(event.occurred_at)
        async with self._locks.hold((user_id, challenge.id)):
            for attempt in range(1, MAX_CONFLICT_RETRIES + 1):
                progress = await self.challenges.get_progress(user_id, challenge.id)
                if progress is None:
                    progress = ChallengeProgress(user_id=user_id, challenge_id=challenge.id)
                if progress.completed:
                    return False

                updated = advance(challenge, progress, event, self.perfect_score)
                try:
                    return await self._save(challenge, updated, occurred_at, event_id=event.event_id)
                except ConcurrencyConflict:
                    if attempt == MAX_CONFLICT_RETRIES:
                        raise
                    logger.warning(
                        f"Прогресс челленджа {challenge.id} user={user_id} изменён параллельно, "
                        f"повтор {attempt}"
                    )
        return False

    async def _save(
        self,
        challenge: Challenge,
        progress: ChallengeProgress,
        now: datetime,
        event_id: Optional[str] = None,
    ) -> bool:
        """Сохранить прогресс; при достижении цели — завершить и наградить"""
        just_completed = not progress.completed and progress.progress >= challenge.target
        if just_completed:
            progress = replace(progress, completed=True, completed_at=now)

        if not await self.challenges.update_progress(progress, event_id):
            logger.debug(f"Событие {event_id} уже учтено для челленджа {challenge.id}")
            return False

        if just_completed:
            await self.ledger.credit_points(
                progress.user_id,
                challenge.points_reward,
                reference=f"challenge:{challenge.id}",
            )
            logger.info(
                f"Челлендж «{challenge.title}» выполнен: user={progress.user_id}, "
                f"+{challenge.points_reward} очков"
            )
        return just_completed

    async def _record_stats(self, user_id: int, event: SubmissionEvent) -> Optional[UserStats]:
        """Обновить счётчики, начислить очки за серию, выдать значки"""
        key = stats_event_key(event, self.perfect_score)
        if key is None:
            return None

        async with self._locks.hold(("stats", user_id)):
            for attempt in range(1, MAX_CONFLICT_RETRIES + 1):
                stats = await self.stats.get_user_stats(user_id)
                if stats is None:
                    stats = UserStats(user_id=user_id)
                updated = apply_stats(stats, event)
                try:
                    if not await self.stats.update_user_stats(updated, key):
                        return None
                    break
                except ConcurrencyConflict:
                    if attempt == MAX_CONFLICT_RETRIES:
                        raise
                    logger.warning(f"Статистика user={user_id} изменена параллельно, повтор {attempt}")

        milestone = config.STREAK_MILESTONE_DAYS
        if updated.current_streak > stats.current_streak and updated.current_streak % milestone == 0:
            if await self.ledger.credit_points(
                user_id, config.POINTS_STREAK_MILESTONE, reference=f"{key}:streak_milestone"
            ):
                logger.info(
                    f"Серия {updated.current_streak} дн.: user={user_id}, "
                    f"+{config.POINTS_STREAK_MILESTONE} очков"
                )

        await self.check_badges(user_id, updated, ensure_utc(event.occurred_at))
        return updated

    async def check_badges(self, user_id: int, stats: UserStats, now: datetime) -> List[Badge]:
        """Выдать значки, порог которых достигнут; вернуть выданные сейчас"""
        awarded = []
        for badge in await self.badges.list_active_badges():
            if should_award(badge, stats) and await self.badges.award_badge(user_id, badge.id, now):
                logger.info(f"Значок «{badge.name}» выдан user={user_id}")
                awarded.append(badge)
        return awarded

    async def set_progress(
        self,
        user_id: int,
        challenge_id: int,
        value: int,
        now: Optional[datetime] = None,
    ) -> ChallengeProgress:
        """Ручная установка прогресса (например, учителем)"""
        now = ensure_utc(now or self.clock.now())
        if value < 0:
            raise ValidationError("Прогресс не может быть отрицательным")

        challenge = await self.challenges.get_challenge(challenge_id)
        if challenge is None:
            raise NotFoundError(f"Челлендж {challenge_id} не найден")

        async with self._locks.hold((user_id, challenge_id)):
            progress = await self.challenges.get_progress(user_id, challenge_id)
            if progress is None:
                progress = ChallengeProgress(user_id=user_id, challenge_id=challenge_id)
            if progress.completed:
                raise InvalidStateError(f"Челлендж {challenge_id} уже выполнен")

            updated = replace(progress, progress=min(max(value, progress.progress), challenge.target))
            await self._save(challenge, updated, now)
            return await self.challenges.get_progress(user_id, challenge_id)

    # ============================================
    # Levels / overview
    # ============================================

    def resolve_level(self, total_points: int) -> int:
        return self.levels.resolve(total_points)

    def next_level(self, total_points: int) -> Optional[UserLevel]:
        """Следующий уровень; None — если достигнут максимальный"""
        return self.levels.next_level(total_points)

    def progress_to_next_level(self, total_points: int) -> float:
        return self.levels.progress_to_next(total_points)

    @staticmethod
    def completion_percentage(progress: int, target: int) -> float:
        return completion_percentage(progress, target)

    async def user_summary(self, user_id: int) -> dict:
        """Очки, уровни и счётчики пользователя"""
        total = await self.ledger.get_total_points(user_id)
        current = self.levels.level_for(total)
        upcoming = self.next_level(total)
        stats = await self.stats.get_user_stats(user_id) or UserStats(user_id=user_id)
        return {
            "user_id": user_id,
            "total_points": total,
            "level": current.level_number,
            "level_name": current.name,
            "next_level": upcoming.level_number if upcoming else None,
            "next_level_required": upcoming.points_required if upcoming else None,
            "points_to_next_level": upcoming.points_required - total if upcoming else 0,
            "progress_to_next_level": self.progress_to_next_level(total),
            "homework_completed": stats.homework_completed,
            "on_time_submissions": stats.on_time_submissions,
            "perfect_scores": stats.perfect_scores,
            "total_submissions": stats.total_submissions,
            "current_streak": stats.current_streak,
            "longest_streak": stats.longest_streak,
            "last_submission_at": stats.last_submission_at,
        }

    async def user_badges(self, user_id: int) -> List[Badge]:
        return await self.badges.list_user_badges(user_id)

    async def leaderboard(self, limit: int = 10) -> List[dict]:
        """Лучшие пользователи по очкам"""
        if limit <= 0:
            raise ValidationError("Размер таблицы лидеров должен быть положительным")
        return [
            {
                "rank": rank,
                "user_id": user_id,
                "total_points": total,
                "level": self.resolve_level(total),
            }
            for rank, (user_id, total) in enumerate(await self.ledger.list_top_points(limit), start=1)
        ]

    async def challenge_overview(self, user_id: int, now: Optional[datetime] = None) -> List[dict]:
        """Активные челленджи с прогрессом пользователя"""
        now = ensure_utc(now or self.clock.now())
        overview = []
        for challenge in await self.challenges.list_active_challenges(None, now):
            progress = await self.challenges.get_progress(user_id, challenge.id)
            value = progress.progress if progress else 0
            overview.append({
                "challenge_id": challenge.id,
                "title": challenge.title,
                "type": challenge.type.value,
                "target": challenge.target,
                "points_reward": challenge.points_reward,
                "progress": value,
                "completed": bool(progress and progress.completed),
                "completion_percentage": completion_percentage(value, challenge.target),
                "end_date": challenge.end_date,
            })
        return overview
