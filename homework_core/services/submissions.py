"""
Сдача и проверка ДЗ — машина состояний сдачи
"""

import logging
from dataclasses import replace
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from homework_core.clock import SystemClock, ensure_utc, is_late
from homework_core.config import config
from homework_core.database.models import Submission, SubmissionEvent, SubmissionPayload
from homework_core.database.protocols import HomeworkSource, SubmissionStore
from homework_core.errors import InvalidStateError, NotFoundError, ValidationError
from homework_core.locks import KeyedLocks
from homework_core.states import EventKind, SubmissionStatus

logger = logging.getLogger(__name__)

Listener = Callable[[SubmissionEvent], Awaitable[None]]


def submission_event_id(homework_id: int, student_id: int) -> str:
    """Одна сдача ДЗ — одно логическое событие (пересдача не считается заново)"""
    return f"submission:{homework_id}:{student_id}"


def graded_event_id(homework_id: int, student_id: int) -> str:
    return f"graded:{homework_id}:{student_id}"


class SubmissionTracker:
    """
    Сдача ДЗ учеником и оценка учителем.

    Переходы: (нет записи) -> SUBMITTED | LATE -> GRADED.
    Пересдача перезаписывает запись, пока она не оценена.
    Повторная оценка GRADED-записи — правка оценки/отзыва.
    """

    def __init__(
        self,
        homework: HomeworkSource,
        submissions: SubmissionStore,
        clock=None,
        grade_min: Optional[int] = None,
        grade_max: Optional[int] = None,
    ):
        self.homework = homework
        self.submissions = submissions
        self.clock = clock or SystemClock()
        self.grade_min = config.GRADE_MIN if grade_min is None else grade_min
        self.grade_max = config.GRADE_MAX if grade_max is None else grade_max
        self._locks = KeyedLocks()
        self._listeners: List[Listener] = []

    def add_listener(self, listener: Listener):
        """Подписать обработчик событий сдачи (например, геймификацию)"""
        self._listeners.append(listener)

    async def record_submission(
        self,
        homework_id: int,
        student_id: int,
        payload: SubmissionPayload,
        now: Optional[datetime] = None,
    ) -> Submission:
        """Сдать (или пересдать) ДЗ"""
        now = ensure_utc(now or self.clock.now())

        homework = await self.homework.get_homework(homework_id)
        if homework is None:
            raise NotFoundError(f"ДЗ {homework_id} не найдено")
        if not homework.is_active:
            raise InvalidStateError(f"ДЗ {homework_id} деактивировано")
        if payload is None or payload.is_empty():
            raise ValidationError("Пустая сдача: нужен текст или вложение")

        late = is_late(now, homework.due_date)

        async with self._locks.hold((homework_id, student_id)):
            existing = await self.submissions.get_submission(homework_id, student_id)
            if existing is not None and existing.status == SubmissionStatus.GRADED:
                raise InvalidStateError("Оценённую работу нельзя пересдать")

            submission = Submission(
                id=existing.id if existing else None,
                homework_id=homework_id,
                student_id=student_id,
                submitted_at=now,
                status=SubmissionStatus.LATE if late else SubmissionStatus.SUBMITTED,
                is_late=late,
                submission_type=payload.submission_type,
                content_text=payload.text,
                attachment_url=payload.attachment_url,
                audio_url=payload.audio_url,
                image_url=payload.image_url,
                pdf_url=payload.pdf_url,
                version=existing.version if existing else 0,
            )
            saved = await self.submissions.upsert_submission(submission)

        logger.info(
            f"ДЗ сдано: homework={homework_id}, student={student_id}, "
            f"status={saved.status.value}, resubmission={existing is not None}"
        )

        await self._emit(SubmissionEvent(
            event_id=submission_event_id(homework_id, student_id),
            kind=EventKind.SUBMITTED if late else EventKind.SUBMITTED_ON_TIME,
            user_id=student_id,
            homework_id=homework_id,
            occurred_at=now,
            attempt=saved.version,
        ))
        return saved

    async def grade(
        self,
        submission_id: int,
        grade: int,
        feedback: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Submission:
        """Оценить сдачу"""
        now = ensure_utc(now or self.clock.now())

        if isinstance(grade, bool) or not isinstance(grade, int):
            raise ValidationError(f"Оценка должна быть целым числом: {grade!r}")
        if not self.grade_min <= grade <= self.grade_max:
            raise ValidationError(
                f"Оценка {grade} вне диапазона [{self.grade_min}, {self.grade_max}]"
            )

        submission = await self.submissions.get_submission_by_id(submission_id)
        if submission is None:
            raise NotFoundError(f"Сдача {submission_id} не найдена")

        async with self._locks.hold((submission.homework_id, submission.student_id)):
            # Перечитываем под блокировкой
            submission = await self.submissions.get_submission_by_id(submission_id)
            if submission is None:
                raise NotFoundError(f"Сдача {submission_id} не найдена")

            status = submission.status
            if status == SubmissionStatus.NOT_SUBMITTED:
                raise InvalidStateError("Нельзя оценить несданную работу")
            elif status in (SubmissionStatus.SUBMITTED, SubmissionStatus.LATE, SubmissionStatus.GRADED):
                pass
            else:
                raise InvalidStateError(f"Неизвестный статус: {status}")

            graded = replace(
                submission,
                status=SubmissionStatus.GRADED,
                grade=grade,
                feedback=feedback if feedback is not None else submission.feedback,
                graded_at=now,
            )
            saved = await self.submissions.upsert_submission(graded)

        logger.info(
            f"ДЗ оценено: submission={submission_id}, grade={grade}, "
            f"regrade={status == SubmissionStatus.GRADED}"
        )

        await self._emit(SubmissionEvent(
            event_id=graded_event_id(saved.homework_id, saved.student_id),
            kind=EventKind.GRADED,
            user_id=saved.student_id,
            homework_id=saved.homework_id,
            occurred_at=now,
            grade=grade,
        ))
        return saved

    async def status(self, homework_id: int, student_id: int) -> SubmissionStatus:
        """Текущий статус; без записи — NOT_SUBMITTED"""
        submission = await self.submissions.get_submission(homework_id, student_id)
        if submission is None:
            return SubmissionStatus.NOT_SUBMITTED
        return submission.status

    async def get_submission(self, homework_id: int, student_id: int) -> Optional[Submission]:
        return await self.submissions.get_submission(homework_id, student_id)

    async def _emit(self, event: SubmissionEvent):
        for listener in self._listeners:
            try:
                await listener(event)
            except Exception:
                # Сбой подписчика не отменяет сдачу
                logger.exception(f"Ошибка обработчика события {event.event_id}")
