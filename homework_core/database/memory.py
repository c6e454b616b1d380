"""
Хранилище в памяти — та же поверхность, что и queries.py.

Используется в тестах и при локальном запуске без PostgreSQL.
Внутри методов нет await между проверкой и записью, поэтому
в пределах одного event loop операции атомарны.
"""

import itertools
from dataclasses import replace
from datetime import datetime, timedelta
from typing import List, Optional

from homework_core.database.models import (
    Badge,
    Challenge,
    ChallengeProgress,
    Homework,
    Reminder,
    Report,
    Submission,
    UserLevel,
    UserStats,
)
from homework_core.errors import ConcurrencyConflict, ValidationError
from homework_core.states import ChallengeType


class MemoryStore:
    """Все хранилища ядра в одном объекте"""

    def __init__(self):
        self.homework: dict[int, Homework] = {}
        self.class_students: dict[int, list[int]] = {}
        self.submissions: dict[tuple, Submission] = {}
        self.reminders: dict[tuple, Reminder] = {}
        self.challenges: dict[int, Challenge] = {}
        self.progress: dict[tuple, ChallengeProgress] = {}
        self.challenge_events: set[tuple] = set()
        self.user_stats: dict[int, UserStats] = {}
        self.stat_events: set[tuple] = set()
        self.badges: dict[int, Badge] = {}
        self.user_badges: dict[int, dict[int, datetime]] = {}
        self.points: dict[int, int] = {}
        self.point_references: set[tuple] = set()
        self.levels: list[UserLevel] = []
        self.reports: list[Report] = []
        self._ids = itertools.count(1)

    def _next_id(self) -> int:
        return next(self._ids)

    # --- Наполнение (тесты, локальный запуск) ---

    def add_homework(self, homework: Homework) -> Homework:
        self.homework[homework.id] = homework
        return homework

    def enroll(self, class_id: int, *student_ids: int):
        students = self.class_students.setdefault(class_id, [])
        students.extend(s for s in student_ids if s not in students)

    def add_challenge(self, challenge: Challenge) -> Challenge:
        self.challenges[challenge.id] = challenge
        return challenge

    def add_badge(self, badge: Badge) -> Badge:
        self.badges[badge.id] = badge
        return badge

    # ============================================
    # Homework
    # ============================================

    async def get_homework(self, homework_id: int) -> Optional[Homework]:
        return self.homework.get(homework_id)

    async def list_active_homework(self, before: datetime, after: Optional[datetime] = None) -> List[Homework]:
        found = [
            h for h in self.homework.values()
            if h.is_active and h.due_date <= before and (after is None or h.due_date > after)
        ]
        return sorted(found, key=lambda h: h.due_date)

    async def list_class_students(self, class_id: int) -> List[int]:
        return sorted(self.class_students.get(class_id, []))

    async def list_class_homework(self, class_id: int, start: datetime, end: datetime) -> List[Homework]:
        found = [
            h for h in self.homework.values()
            if h.class_id == class_id and start <= h.due_date < end
        ]
        return sorted(found, key=lambda h: h.due_date)

    # ============================================
    # Submissions
    # ============================================

    async def get_submission(self, homework_id: int, student_id: int) -> Optional[Submission]:
        found = self.submissions.get((homework_id, student_id))
        return replace(found) if found else None

    async def get_submission_by_id(self, submission_id: int) -> Optional[Submission]:
        for submission in self.submissions.values():
            if submission.id == submission_id:
                return replace(submission)
        return None

    async def upsert_submission(self, submission: Submission) -> Submission:
        key = (submission.homework_id, submission.student_id)
        current = self.submissions.get(key)
        current_version = current.version if current else 0

        if submission.version != current_version:
            raise ConcurrencyConflict(
                f"Сдача homework={submission.homework_id} student={submission.student_id} "
                f"изменена параллельно"
            )

        saved = replace(
            submission,
            id=current.id if current else self._next_id(),
            version=current_version + 1,
        )
        self.submissions[key] = saved
        return replace(saved)

    async def list_student_submissions(self, student_id: int, homework_ids: List[int]) -> List[Submission]:
        wanted = set(homework_ids)
        return [
            replace(s) for s in self.submissions.values()
            if s.student_id == student_id and s.homework_id in wanted
        ]

    # ============================================
    # Reminders
    # ============================================

    async def reminder_exists(self, homework_id: int, student_id: int, offset: timedelta) -> bool:
        return (homework_id, student_id, offset) in self.reminders

    async def insert_reminder_if_absent(self, reminder: Reminder) -> Optional[Reminder]:
        key = (reminder.homework_id, reminder.student_id, reminder.offset_from_due)
        if key in self.reminders:
            return None
        saved = replace(reminder, id=self._next_id())
        self.reminders[key] = saved
        return replace(saved)

    async def list_user_reminders(self, user_id: int, unread_only: bool = False) -> List[Reminder]:
        found = [
            replace(r) for r in self.reminders.values()
            if r.student_id == user_id and not (unread_only and r.is_read)
        ]
        return sorted(found, key=lambda r: (r.fired_at, r.id), reverse=True)

    async def mark_reminder_read(self, reminder_id: int) -> Optional[Reminder]:
        for reminder in self.reminders.values():
            if reminder.id == reminder_id:
                reminder.is_read = True
                return replace(reminder)
        return None

    async def mark_all_reminders_read(self, user_id: int) -> int:
        count = 0
        for reminder in self.reminders.values():
            if reminder.student_id == user_id and not reminder.is_read:
                reminder.is_read = True
                count += 1
        return count

    async def delete_reminders_before(self, fired_before: datetime) -> int:
        stale = [k for k, r in self.reminders.items() if r.fired_at < fired_before]
        for key in stale:
            del self.reminders[key]
        return len(stale)

    # ============================================
    # Points / Levels
    # ============================================

    async def credit_points(self, user_id: int, amount: int, reference: Optional[str] = None) -> bool:
        if amount < 0:
            raise ValidationError("Начисление не может быть отрицательным")
        if reference is not None:
            if (user_id, reference) in self.point_references:
                return False
            self.point_references.add((user_id, reference))
        self.points[user_id] = self.points.get(user_id, 0) + amount
        return True

    async def get_total_points(self, user_id: int) -> int:
        return self.points.get(user_id, 0)

    async def get_level_table(self) -> List[UserLevel]:
        return sorted(self.levels, key=lambda level: level.points_required)

    async def list_top_points(self, limit: int) -> List[tuple[int, int]]:
        ranked = sorted(self.points.items(), key=lambda item: (-item[1], item[0]))
        return ranked[:limit]

    # ============================================
    # Challenges
    # ============================================

    async def list_active_challenges(self, challenge_type: Optional[ChallengeType], now: datetime) -> List[Challenge]:
        return [
            c for c in sorted(self.challenges.values(), key=lambda c: c.id)
            if c.is_open(now) and (challenge_type is None or c.type == challenge_type)
        ]

    async def get_challenge(self, challenge_id: int) -> Optional[Challenge]:
        return self.challenges.get(challenge_id)

    async def get_progress(self, user_id: int, challenge_id: int) -> Optional[ChallengeProgress]:
        found = self.progress.get((user_id, challenge_id))
        return replace(found) if found else None

    async def update_progress(self, progress: ChallengeProgress, event_id: Optional[str] = None) -> bool:
        key = (progress.user_id, progress.challenge_id)
        event_key = (progress.user_id, progress.challenge_id, event_id)
        if event_id is not None and event_key in self.challenge_events:
            return False

        current = self.progress.get(key)
        current_version = current.version if current else 0
        if progress.version != current_version:
            raise ConcurrencyConflict(
                f"Прогресс user={progress.user_id} challenge={progress.challenge_id} "
                f"изменён параллельно"
            )

        if current is not None:
            # Прогресс не уменьшается, completed не сбрасывается
            progress = replace(
                progress,
                progress=max(current.progress, progress.progress),
                completed=current.completed or progress.completed,
                completed_at=current.completed_at or progress.completed_at,
            )
        if event_id is not None:
            self.challenge_events.add(event_key)
        self.progress[key] = replace(progress, version=current_version + 1)
        return True

    # ============================================
    # Stats / Badges
    # ============================================

    async def get_user_stats(self, user_id: int) -> Optional[UserStats]:
        found = self.user_stats.get(user_id)
        return replace(found) if found else None

    async def update_user_stats(self, stats: UserStats, event_id: str) -> bool:
        if (stats.user_id, event_id) in self.stat_events:
            return False

        current = self.user_stats.get(stats.user_id)
        current_version = current.version if current else 0
        if stats.version != current_version:
            raise ConcurrencyConflict(f"Статистика user={stats.user_id} изменена параллельно")

        self.stat_events.add((stats.user_id, event_id))
        self.user_stats[stats.user_id] = replace(stats, version=current_version + 1)
        return True

    async def list_active_badges(self) -> List[Badge]:
        return [b for b in sorted(self.badges.values(), key=lambda b: b.id) if b.is_active]

    async def award_badge(self, user_id: int, badge_id: int, awarded_at: datetime) -> bool:
        earned = self.user_badges.setdefault(user_id, {})
        if badge_id in earned:
            return False
        earned[badge_id] = awarded_at
        return True

    async def list_user_badges(self, user_id: int) -> List[Badge]:
        earned = self.user_badges.get(user_id, {})
        ordered = sorted(earned.items(), key=lambda item: (item[1], item[0]))
        return [self.badges[badge_id] for badge_id, _ in ordered if badge_id in self.badges]

    # ============================================
    # Reports
    # ============================================

    async def insert_report(self, report: Report) -> Report:
        saved = replace(report, id=self._next_id())
        self.reports.append(saved)
        return saved

    async def list_student_reports(self, student_id: int) -> List[Report]:
        found = [r for r in self.reports if r.student_id == student_id]
        return sorted(found, key=lambda r: (r.generated_at, r.id), reverse=True)
