"""
SQL-запросы к базе данных.

Модуль целиком реализует интерфейсы из protocols.py, поэтому передаётся
в сервисы как хранилище: SubmissionTracker(homework=db, submissions=db).
"""

from datetime import datetime, timedelta
from typing import Optional, List

from homework_core.database.connection import get_pool
from homework_core.database.models import (
    Badge,
    Challenge,
    ChallengeProgress,
    Homework,
    Reminder,
    Report,
    ReportWindow,
    Submission,
    UserLevel,
    UserStats,
)
from homework_core.errors import ConcurrencyConflict, ValidationError
from homework_core.states import ChallengeType


# ============================================
# Homework
# ============================================

async def get_homework(homework_id: int) -> Optional[Homework]:
    """Получить ДЗ по ID"""
    pool = await get_pool()
    row = await pool.fetchrow(
        """
        SELECT id, title, subject, due_date, class_id, teacher_id, is_active
        FROM homework WHERE id = $1
        """,
        homework_id
    )
    if row:
        return Homework(**dict(row))
    return None


async def list_active_homework(before: datetime, after: Optional[datetime] = None) -> List[Homework]:
    """Активные ДЗ с дедлайном в (after, before]"""
    pool = await get_pool()
    rows = await pool.fetch(
        """
        SELECT id, title, subject, due_date, class_id, teacher_id, is_active
        FROM homework
        WHERE is_active
          AND due_date <= $1
          AND ($2::timestamptz IS NULL OR due_date > $2)
        ORDER BY due_date
        """,
        before, after
    )
    return [Homework(**dict(row)) for row in rows]


async def list_class_students(class_id: int) -> List[int]:
    """ID учеников класса"""
    pool = await get_pool()
    rows = await pool.fetch(
        "SELECT student_id FROM class_students WHERE class_id = $1 ORDER BY student_id",
        class_id
    )
    return [row["student_id"] for row in rows]


async def list_class_homework(class_id: int, start: datetime, end: datetime) -> List[Homework]:
    """ДЗ класса с дедлайном в окне [start, end)"""
    pool = await get_pool()
    rows = await pool.fetch(
        """
        SELECT id, title, subject, due_date, class_id, teacher_id, is_active
        FROM homework
        WHERE class_id = $1 AND due_date >= $2 AND due_date < $3
        ORDER BY due_date
        """,
        class_id, start, end
    )
    return [Homework(**dict(row)) for row in rows]


# ============================================
# Submissions
# ============================================

_SUBMISSION_COLUMNS = """
    id, homework_id, student_id, submitted_at, status, is_late, submission_type,
    content_text, attachment_url, audio_url, image_url, pdf_url,
    grade, feedback, graded_at, version
"""


async def get_submission(homework_id: int, student_id: int) -> Optional[Submission]:
    """Получить сдачу по паре (ДЗ, ученик)"""
    pool = await get_pool()
    row = await pool.fetchrow(
        f"SELECT {_SUBMISSION_COLUMNS} FROM submissions WHERE homework_id = $1 AND student_id = $2",
        homework_id, student_id
    )
    if row:
        return Submission(**dict(row))
    return None


async def get_submission_by_id(submission_id: int) -> Optional[Submission]:
    """Получить сдачу по ID"""
    pool = await get_pool()
    row = await pool.fetchrow(
        f"SELECT {_SUBMISSION_COLUMNS} FROM submissions WHERE id = $1",
        submission_id
    )
    if row:
        return Submission(**dict(row))
    return None


async def upsert_submission(submission: Submission) -> Submission:
    """
    Сохранить сдачу.
    Новая запись (version = 0) вставляется, существующая обновляется только
    если версия в БД совпадает. Иначе — ConcurrencyConflict.
    """
    pool = await get_pool()
    values = (
        submission.submitted_at,
        submission.status.value,
        submission.is_late,
        submission.submission_type.value,
        submission.content_text,
        submission.attachment_url,
        submission.audio_url,
        submission.image_url,
        submission.pdf_url,
        submission.grade,
        submission.feedback,
        submission.graded_at,
    )

    if submission.version == 0:
        row = await pool.fetchrow(
            f"""
            INSERT INTO submissions
            (homework_id, student_id, submitted_at, status, is_late, submission_type,
             content_text, attachment_url, audio_url, image_url, pdf_url,
             grade, feedback, graded_at, version)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, 1)
            ON CONFLICT (homework_id, student_id) DO NOTHING
            RETURNING {_SUBMISSION_COLUMNS}
            """,
            submission.homework_id, submission.student_id, *values
        )
    else:
        row = await pool.fetchrow(
            f"""
            UPDATE submissions SET
                submitted_at = $3, status = $4, is_late = $5, submission_type = $6,
                content_text = $7, attachment_url = $8, audio_url = $9,
                image_url = $10, pdf_url = $11,
                grade = $12, feedback = $13, graded_at = $14,
                version = version + 1
            WHERE id = $1 AND version = $2
            RETURNING {_SUBMISSION_COLUMNS}
            """,
            submission.id, submission.version, *values
        )

    if row is None:
        raise ConcurrencyConflict(
            f"Сдача homework={submission.homework_id} student={submission.student_id} "
            f"изменена параллельно"
        )
    return Submission(**dict(row))


async def list_student_submissions(student_id: int, homework_ids: List[int]) -> List[Submission]:
    """Сдачи ученика по списку ДЗ"""
    if not homework_ids:
        return []
    pool = await get_pool()
    rows = await pool.fetch(
        f"""
        SELECT {_SUBMISSION_COLUMNS} FROM submissions
        WHERE student_id = $1 AND homework_id = ANY($2::int[])
        """,
        student_id, homework_ids
    )
    return [Submission(**dict(row)) for row in rows]


# ============================================
# Reminders (без дублей)
# ============================================

_REMINDER_COLUMNS = """
    id, homework_id, student_id, offset_from_due, due_date,
    title, message, priority, fired_at, is_read
"""


async def reminder_exists(homework_id: int, student_id: int, offset: timedelta) -> bool:
    """Было ли уже напоминание с этим смещением"""
    pool = await get_pool()
    result = await pool.fetchval(
        """
        SELECT EXISTS(
            SELECT 1 FROM reminders
            WHERE homework_id = $1 AND student_id = $2 AND offset_from_due = $3
        )
        """,
        homework_id, student_id, offset
    )
    return result or False


async def insert_reminder_if_absent(reminder: Reminder) -> Optional[Reminder]:
    """Записать напоминание; None — если такое уже есть"""
    pool = await get_pool()
    row = await pool.fetchrow(
        f"""
        INSERT INTO reminders
        (homework_id, student_id, offset_from_due, due_date, title, message, priority, fired_at)
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
        ON CONFLICT (homework_id, student_id, offset_from_due) DO NOTHING
        RETURNING {_REMINDER_COLUMNS}
        """,
        reminder.homework_id, reminder.student_id, reminder.offset_from_due,
        reminder.due_date, reminder.title, reminder.message,
        reminder.priority.value, reminder.fired_at
    )
    if row:
        return Reminder(**dict(row))
    return None


async def list_user_reminders(user_id: int, unread_only: bool = False) -> List[Reminder]:
    """Напоминания пользователя, новые первыми"""
    pool = await get_pool()
    rows = await pool.fetch(
        f"""
        SELECT {_REMINDER_COLUMNS} FROM reminders
        WHERE student_id = $1 AND (NOT $2 OR NOT is_read)
        ORDER BY fired_at DESC, id DESC
        """,
        user_id, unread_only
    )
    return [Reminder(**dict(row)) for row in rows]


async def mark_reminder_read(reminder_id: int) -> Optional[Reminder]:
    """Пометить напоминание прочитанным"""
    pool = await get_pool()
    row = await pool.fetchrow(
        f"UPDATE reminders SET is_read = TRUE WHERE id = $1 RETURNING {_REMINDER_COLUMNS}",
        reminder_id
    )
    if row:
        return Reminder(**dict(row))
    return None


async def mark_all_reminders_read(user_id: int) -> int:
    """Пометить все напоминания пользователя прочитанными"""
    pool = await get_pool()
    rows = await pool.fetch(
        "UPDATE reminders SET is_read = TRUE WHERE student_id = $1 AND NOT is_read RETURNING id",
        user_id
    )
    return len(rows)


async def delete_reminders_before(fired_before: datetime) -> int:
    """Удалить старые напоминания"""
    pool = await get_pool()
    rows = await pool.fetch(
        "DELETE FROM reminders WHERE fired_at < $1 RETURNING id",
        fired_before
    )
    return len(rows)


# ============================================
# Points / Levels
# ============================================

async def credit_points(user_id: int, amount: int, reference: Optional[str] = None) -> bool:
    """
    Начислить очки.
    С reference начисление однократное: повтор возвращает False.
    """
    if amount < 0:
        raise ValidationError("Начисление не может быть отрицательным")

    pool = await get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            tx_id = await conn.fetchval(
                """
                INSERT INTO point_transactions (user_id, amount, reference)
                VALUES ($1, $2, $3)
                ON CONFLICT (user_id, reference) DO NOTHING
                RETURNING id
                """,
                user_id, amount, reference
            )
            if tx_id is None:
                return False

            await conn.execute(
                """
                INSERT INTO user_points (user_id, total_points)
                VALUES ($1, $2)
                ON CONFLICT (user_id)
                DO UPDATE SET total_points = user_points.total_points + $2
                """,
                user_id, amount
            )
    return True


async def get_total_points(user_id: int) -> int:
    """Сумма очков пользователя"""
    pool = await get_pool()
    total = await pool.fetchval(
        "SELECT total_points FROM user_points WHERE user_id = $1",
        user_id
    )
    return total or 0


async def get_level_table() -> List[UserLevel]:
    """Таблица уровней по возрастанию порога"""
    pool = await get_pool()
    rows = await pool.fetch(
        "SELECT level_number, points_required, name FROM user_levels ORDER BY points_required"
    )
    return [UserLevel(**dict(row)) for row in rows]


async def list_top_points(limit: int) -> List[tuple[int, int]]:
    """Лидеры по очкам"""
    pool = await get_pool()
    rows = await pool.fetch(
        """
        SELECT user_id, total_points FROM user_points
        ORDER BY total_points DESC, user_id
        LIMIT $1
        """,
        limit
    )
    return [(row["user_id"], row["total_points"]) for row in rows]


# ============================================
# Challenges
# ============================================

_CHALLENGE_COLUMNS = "id, title, type, target, points_reward, start_date, end_date, is_active"


async def list_active_challenges(challenge_type: Optional[ChallengeType], now: datetime) -> List[Challenge]:
    """Активные челленджи (окно [start_date, end_date) содержит now)"""
    pool = await get_pool()
    rows = await pool.fetch(
        f"""
        SELECT {_CHALLENGE_COLUMNS} FROM challenges
        WHERE is_active
          AND start_date <= $2 AND end_date > $2
          AND ($1::text IS NULL OR type = $1)
        ORDER BY id
        """,
        challenge_type.value if challenge_type else None, now
    )
    return [Challenge(**dict(row)) for row in rows]


async def get_challenge(challenge_id: int) -> Optional[Challenge]:
    """Получить челлендж по ID"""
    pool = await get_pool()
    row = await pool.fetchrow(
        f"SELECT {_CHALLENGE_COLUMNS} FROM challenges WHERE id = $1",
        challenge_id
    )
    if row:
        return Challenge(**dict(row))
    return None


_PROGRESS_COLUMNS = """
    user_id, challenge_id, progress, current_run, completed, completed_at,
    last_event_at, version
"""


async def get_progress(user_id: int, challenge_id: int) -> Optional[ChallengeProgress]:
    """Прогресс пользователя по челленджу"""
    pool = await get_pool()
    row = await pool.fetchrow(
        f"""
        SELECT {_PROGRESS_COLUMNS}
        FROM challenge_progress
        WHERE user_id = $1 AND challenge_id = $2
        """,
        user_id, challenge_id
    )
    if row:
        return ChallengeProgress(**dict(row))
    return None


async def update_progress(progress: ChallengeProgress, event_id: Optional[str] = None) -> bool:
    """
    Учесть событие и сохранить прогресс в одной транзакции.
    False — событие уже учтено. При устаревшей версии — ConcurrencyConflict,
    транзакция откатывается вместе с записью события.
    Прогресс не уменьшается, флаг completed не сбрасывается.
    """
    pool = await get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            if event_id is not None:
                recorded = await conn.fetchval(
                    """
                    INSERT INTO challenge_events (user_id, challenge_id, event_id)
                    VALUES ($1, $2, $3)
                    ON CONFLICT (user_id, challenge_id, event_id) DO NOTHING
                    RETURNING challenge_id
                    """,
                    progress.user_id, progress.challenge_id, event_id
                )
                if recorded is None:
                    return False

            values = (
                progress.progress, progress.current_run, progress.completed,
                progress.completed_at, progress.last_event_at,
            )
            if progress.version == 0:
                saved = await conn.fetchval(
                    """
                    INSERT INTO challenge_progress
                    (user_id, challenge_id, progress, current_run, completed,
                     completed_at, last_event_at, version)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, 1)
                    ON CONFLICT (user_id, challenge_id) DO NOTHING
                    RETURNING version
                    """,
                    progress.user_id, progress.challenge_id, *values
                )
            else:
                saved = await conn.fetchval(
                    """
                    UPDATE challenge_progress SET
                        progress = GREATEST(progress, $4),
                        current_run = $5,
                        completed = completed OR $6,
                        completed_at = COALESCE(completed_at, $7),
                        last_event_at = $8,
                        version = version + 1
                    WHERE user_id = $1 AND challenge_id = $2 AND version = $3
                    RETURNING version
                    """,
                    progress.user_id, progress.challenge_id, progress.version, *values
                )

            if saved is None:
                raise ConcurrencyConflict(
                    f"Прогресс user={progress.user_id} challenge={progress.challenge_id} "
                    f"изменён параллельно"
                )
    return True


# ============================================
# Stats / Badges
# ============================================

_STATS_COLUMNS = """
    user_id, homework_completed, on_time_submissions, perfect_scores,
    total_submissions, current_streak, longest_streak, last_submission_at, version
"""


async def get_user_stats(user_id: int) -> Optional[UserStats]:
    """Счётчики пользователя"""
    pool = await get_pool()
    row = await pool.fetchrow(
        f"SELECT {_STATS_COLUMNS} FROM user_stats WHERE user_id = $1",
        user_id
    )
    if row:
        return UserStats(**dict(row))
    return None


async def update_user_stats(stats: UserStats, event_id: str) -> bool:
    """Учесть событие и сохранить счётчики (как update_progress)"""
    pool = await get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            recorded = await conn.fetchval(
                """
                INSERT INTO stat_events (user_id, event_id)
                VALUES ($1, $2)
                ON CONFLICT (user_id, event_id) DO NOTHING
                RETURNING user_id
                """,
                stats.user_id, event_id
            )
            if recorded is None:
                return False

            values = (
                stats.homework_completed, stats.on_time_submissions, stats.perfect_scores,
                stats.total_submissions, stats.current_streak, stats.longest_streak,
                stats.last_submission_at,
            )
            if stats.version == 0:
                saved = await conn.fetchval(
                    """
                    INSERT INTO user_stats
                    (user_id, homework_completed, on_time_submissions, perfect_scores,
                     total_submissions, current_streak, longest_streak, last_submission_at, version)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, 1)
                    ON CONFLICT (user_id) DO NOTHING
                    RETURNING version
                    """,
                    stats.user_id, *values
                )
            else:
                saved = await conn.fetchval(
                    """
                    UPDATE user_stats SET
                        homework_completed = $3, on_time_submissions = $4,
                        perfect_scores = $5, total_submissions = $6,
                        current_streak = $7, longest_streak = $8,
                        last_submission_at = $9,
                        version = version + 1
                    WHERE user_id = $1 AND version = $2
                    RETURNING version
                    """,
                    stats.user_id, stats.version, *values
                )

            if saved is None:
                raise ConcurrencyConflict(f"Статистика user={stats.user_id} изменена параллельно")
    return True


_BADGE_COLUMNS = "id, name, type, threshold, description, is_active"


async def list_active_badges() -> List[Badge]:
    """Активные значки"""
    pool = await get_pool()
    rows = await pool.fetch(
        f"SELECT {_BADGE_COLUMNS} FROM badges WHERE is_active ORDER BY id"
    )
    return [Badge(**dict(row)) for row in rows]


async def award_badge(user_id: int, badge_id: int, awarded_at: datetime) -> bool:
    """Выдать значок; False — уже выдан"""
    pool = await get_pool()
    row_id = await pool.fetchval(
        """
        INSERT INTO user_badges (user_id, badge_id, awarded_at)
        VALUES ($1, $2, $3)
        ON CONFLICT (user_id, badge_id) DO NOTHING
        RETURNING badge_id
        """,
        user_id, badge_id, awarded_at
    )
    return row_id is not None


async def list_user_badges(user_id: int) -> List[Badge]:
    """Значки пользователя в порядке получения"""
    pool = await get_pool()
    rows = await pool.fetch(
        """
        SELECT b.id, b.name, b.type, b.threshold, b.description, b.is_active
        FROM user_badges ub
        JOIN badges b ON b.id = ub.badge_id
        WHERE ub.user_id = $1
        ORDER BY ub.awarded_at, b.id
        """,
        user_id
    )
    return [Badge(**dict(row)) for row in rows]


# ============================================
# Reports
# ============================================

def _report(row) -> Report:
    data = dict(row)
    window = ReportWindow(start=data.pop("window_start"), end=data.pop("window_end"))
    return Report(window=window, **data)


_REPORT_COLUMNS = """
    id, student_id, class_id, window_start, window_end, total_assigned,
    total_completed, completion_rate, average_score, on_time_count,
    late_count, generated_at
"""


async def insert_report(report: Report) -> Report:
    """Сохранить снимок отчёта (только вставка)"""
    pool = await get_pool()
    row = await pool.fetchrow(
        f"""
        INSERT INTO reports
        (student_id, class_id, window_start, window_end, total_assigned,
         total_completed, completion_rate, average_score, on_time_count,
         late_count, generated_at)
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
        RETURNING {_REPORT_COLUMNS}
        """,
        report.student_id, report.class_id, report.window.start, report.window.end,
        report.total_assigned, report.total_completed, report.completion_rate,
        report.average_score, report.on_time_count, report.late_count,
        report.generated_at
    )
    return _report(row)


async def list_student_reports(student_id: int) -> List[Report]:
    """История отчётов ученика, новые первыми"""
    pool = await get_pool()
    rows = await pool.fetch(
        f"""
        SELECT {_REPORT_COLUMNS} FROM reports
        WHERE student_id = $1
        ORDER BY generated_at DESC, id DESC
        """,
        student_id
    )
    return [_report(row) for row in rows]
