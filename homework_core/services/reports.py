"""
Отчёты по ученикам — снимки статистики за окно времени
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional

from homework_core.clock import SystemClock, ensure_utc
from homework_core.database.models import Homework, Report, ReportWindow, Submission
from homework_core.database.protocols import HomeworkSource, ReportStore, SubmissionStore
from homework_core.errors import ValidationError
from homework_core.states import COMPLETED_STATUSES, SubmissionStatus

logger = logging.getLogger(__name__)


def build_report(
    student_id: int,
    class_id: int,
    window: ReportWindow,
    homework: Iterable[Homework],
    submissions: Iterable[Submission],
    generated_at: datetime,
) -> Report:
    """
    Чистая функция: статистика ученика по ДЗ класса с дедлайном в окне.

    average_score = None, если оценённых работ нет (а не 0).
    """
    assigned = {
        h.id for h in homework
        if h.class_id == class_id and window.contains(h.due_date)
    }
    completed = [
        s for s in submissions
        if s.student_id == student_id
        and s.homework_id in assigned
        and s.status in COMPLETED_STATUSES
    ]

    late_count = sum(1 for s in completed if s.is_late)
    grades = [
        s.grade for s in completed
        if s.status == SubmissionStatus.GRADED and s.grade is not None
    ]

    return Report(
        id=None,
        student_id=student_id,
        class_id=class_id,
        window=window,
        total_assigned=len(assigned),
        total_completed=len(completed),
        completion_rate=len(completed) / len(assigned) if assigned else 0.0,
        average_score=sum(grades) / len(grades) if grades else None,
        on_time_count=len(completed) - late_count,
        late_count=late_count,
        generated_at=generated_at,
    )


class ReportAggregator:
    """Расчёт и сохранение отчётов. Повторный расчёт создаёт новый снимок."""

    def __init__(
        self,
        homework: HomeworkSource,
        submissions: SubmissionStore,
        reports: ReportStore,
        clock=None,
    ):
        self.homework = homework
        self.submissions = submissions
        self.reports = reports
        self.clock = clock or SystemClock()

    @staticmethod
    def make_window(start: datetime, end: datetime) -> ReportWindow:
        start, end = ensure_utc(start), ensure_utc(end)
        if end <= start:
            raise ValidationError("Конец окна отчёта должен быть позже начала")
        return ReportWindow(start=start, end=end)

    async def compute(self, student_id: int, class_id: int, window: ReportWindow) -> Report:
        """Рассчитать отчёт без сохранения"""
        homework = await self.homework.list_class_homework(class_id, window.start, window.end)
        submissions = await self.submissions.list_student_submissions(
            student_id, [h.id for h in homework]
        )
        return build_report(student_id, class_id, window, homework, submissions, self.clock.now())

    async def aggregate(self, student_id: int, class_id: int, window: ReportWindow) -> Report:
        """Рассчитать и сохранить снимок"""
        report = await self.compute(student_id, class_id, window)
        saved = await self.reports.insert_report(report)
        logger.info(
            f"Отчёт: student={student_id}, class={class_id}, "
            f"completion={saved.completion_rate:.2f}, avg={saved.average_score}"
        )
        return saved

    async def aggregate_class(
        self,
        class_id: int,
        window: ReportWindow,
        student_ids: Optional[List[int]] = None,
    ) -> List[Report]:
        """Отчёты по всем ученикам класса; ошибка по одному ученику не прерывает пакет"""
        if student_ids is None:
            student_ids = await self.homework.list_class_students(class_id)

        reports = []
        for student_id in student_ids:
            try:
                reports.append(await self.aggregate(student_id, class_id, window))
            except Exception as e:
                logger.error(f"Отчёт: ошибка для ученика {student_id}, класс {class_id}: {e}")

        logger.info(f"Отчёт: класс {class_id}, готово {len(reports)} из {len(student_ids)}")
        return reports

    async def history(self, student_id: int) -> List[Report]:
        return await self.reports.list_student_reports(student_id)
