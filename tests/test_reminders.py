"""
Тесты для ReminderScheduler

Проверяем окна срабатывания, отсутствие дублей, догон пропущенных окон
и то, что медленная доставка не тормозит проход.
"""

import asyncio
import pytest

pytestmark = [pytest.mark.unit]

from datetime import timedelta
from unittest.mock import AsyncMock

from conftest import utc
from homework_core.database.models import Homework, SubmissionPayload
from homework_core.errors import NotFoundError, ValidationError
from homework_core.services.reminders import (
    ReminderScheduler,
    reminder_content,
    reminder_priority,
)
from homework_core.states import ReminderPriority

DUE = utc(2024, 3, 10, 23, 59, 59)


def make_scheduler(store, sink, clock, **kwargs):
    kwargs.setdefault("offsets", [timedelta(hours=24)])
    kwargs.setdefault("interval", timedelta(minutes=15))
    return ReminderScheduler(
        homework=store, submissions=store, reminders=store, sink=sink, clock=clock, **kwargs
    )


def hourly_homework(store, students=(101, 102, 103, 104, 105)):
    """Два ДЗ одного класса: дедлайны в 10:00 и 10:15"""
    store.enroll(9, *students)
    for homework_id, due in ((1, utc(2024, 3, 1, 10, 0)), (2, utc(2024, 3, 1, 10, 15))):
        store.add_homework(Homework(
            id=homework_id, title=f"Тест {homework_id}", subject="Физика",
            due_date=due, class_id=9, teacher_id=900,
        ))


# ============================================
# Tests: sweep() — окна
# ============================================

@pytest.mark.asyncio
async def test_sweep_creates_24h_reminders(core, homework, mock_sink):
    """
    Тест: проход в окне 24h создаёт напоминание каждому ученику класса
    """
    result = await core.reminders.sweep(now=DUE - timedelta(hours=24))
    await core.reminders.drain()

    assert result.reminders_created == 3
    assert result.notifications_queued == 3
    assert mock_sink.enqueue.call_count == 3

    user_ids = sorted(c.args[0] for c in mock_sink.enqueue.call_args_list)
    assert user_ids == [101, 102, 103]
    assert all(c.args[3] == DUE for c in mock_sink.enqueue.call_args_list)


@pytest.mark.asyncio
async def test_sweep_outside_windows_does_nothing(store, homework, mock_sink, clock):
    """
    Тест: вне окон [due - offset, due - offset + interval) ничего не создаётся
    """
    for now in (
        DUE - timedelta(hours=24, seconds=1),
        DUE - timedelta(hours=24) + timedelta(minutes=15),
        DUE - timedelta(hours=3),
        DUE + timedelta(minutes=1),
    ):
        # Отдельный планировщик — без истории проходов, догонять нечего
        reminders = make_scheduler(store, mock_sink, clock, offsets=[timedelta(hours=24), timedelta(hours=1)])
        result = await reminders.sweep(now=now)
        assert result.reminders_created == 0

    assert not mock_sink.enqueue.called


@pytest.mark.asyncio
async def test_sweep_end_of_window(core, homework, mock_sink):
    """
    Тест: последняя секунда окна 1h ещё срабатывает
    """
    now = DUE - timedelta(hours=1) + timedelta(minutes=14, seconds=59)
    result = await core.reminders.sweep(now=now)

    assert result.reminders_created == 3
    assert {r.offset_from_due for r in result.created} == {timedelta(hours=1)}


@pytest.mark.asyncio
async def test_sweep_idempotent(core, store, homework, mock_sink):
    """
    Тест: повторный проход в том же окне не создаёт дублей
    """
    now = DUE - timedelta(hours=24)
    await core.reminders.sweep(now=now)
    second = await core.reminders.sweep(now=now + timedelta(minutes=5))
    await core.reminders.drain()

    assert second.reminders_created == 0
    assert len(store.reminders) == 3
    assert mock_sink.enqueue.call_count == 3


@pytest.mark.asyncio
async def test_sweep_each_offset_fires_once(core, store, homework):
    """
    Тест: за всю жизнь ДЗ — ровно по одному напоминанию на каждое смещение
    """
    now = DUE - timedelta(hours=30)
    while now < DUE:
        await core.reminders.sweep(now=now)
        now += timedelta(minutes=15)

    keys = list(store.reminders)
    assert len(keys) == 6  # 3 ученика × 2 смещения
    assert len(set(keys)) == len(keys)


@pytest.mark.asyncio
async def test_sweep_skips_submitted_students(core, store, homework, mock_sink):
    """
    Тест: сдавшие ДЗ ученики не получают напоминаний
    """
    await core.submissions.record_submission(
        homework.id, 101, SubmissionPayload(text="готово"), now=utc(2024, 3, 5)
    )

    result = await core.reminders.sweep(now=DUE - timedelta(hours=24))
    await core.reminders.drain()

    assert result.reminders_created == 2
    assert 101 not in [c.args[0] for c in mock_sink.enqueue.call_args_list]


@pytest.mark.asyncio
async def test_submission_between_sweeps_stops_reminders(core, store, homework, mock_sink):
    """
    Тест: сдача между проходами — следующего напоминания нет
    """
    await core.reminders.sweep(now=DUE - timedelta(hours=24))
    await core.submissions.record_submission(
        homework.id, 102, SubmissionPayload(image_url="photo.jpg"), now=DUE - timedelta(hours=5)
    )
    await core.reminders.drain()
    mock_sink.enqueue.reset_mock()

    await core.reminders.sweep(now=DUE - timedelta(hours=1))
    await core.reminders.drain()

    notified = sorted(c.args[0] for c in mock_sink.enqueue.call_args_list)
    assert notified == [101, 103]


@pytest.mark.asyncio
async def test_sweep_ignores_inactive_and_past_homework(core, store, homework, mock_sink):
    """
    Тест: деактивированные и просроченные ДЗ не сканируются
    """
    homework.is_active = False
    store.add_homework(Homework(
        id=2, title="Старое", subject="История", due_date=utc(2024, 1, 1),
        class_id=7, teacher_id=900,
    ))

    result = await core.reminders.sweep(now=DUE - timedelta(hours=24))
    await core.reminders.drain()

    assert result.homework_scanned == 0
    assert not mock_sink.enqueue.called


@pytest.mark.asyncio
async def test_due_date_edit_does_not_retract(core, store, homework):
    """
    Тест: после переноса дедлайна уже отправленные напоминания остаются
    """
    await core.reminders.sweep(now=DUE - timedelta(hours=24))
    homework.due_date = DUE + timedelta(days=2)

    await core.reminders.sweep(now=DUE + timedelta(days=1))

    assert len(store.reminders) == 3
    assert all(r.due_date == DUE for r in store.reminders.values())


# ============================================
# Tests: sweep() — пропущенные окна
# ============================================

@pytest.mark.asyncio
async def test_missed_window_is_caught_up(store, mock_sink, clock):
    """
    Тест: проход 09:15 не состоялся — проход 09:30 создаёт напоминание
    для окна, начавшегося в 09:15
    """
    hourly_homework(store)
    reminders = make_scheduler(store, mock_sink, clock, offsets=[timedelta(hours=1)])

    first = await reminders.sweep(now=utc(2024, 3, 1, 9, 0))
    late = await reminders.sweep(now=utc(2024, 3, 1, 9, 30))

    assert {r.homework_id for r in first.created} == {1}
    assert late.covered_from == utc(2024, 3, 1, 9, 0)
    assert {r.homework_id for r in late.created} == {2}
    assert late.reminders_created == 5
    assert len(store.reminders) == 10


@pytest.mark.asyncio
async def test_first_sweep_does_not_look_back(store, mock_sink, clock):
    """
    Тест: без истории проходов окно — только последний интервал
    """
    hourly_homework(store)
    reminders = make_scheduler(store, mock_sink, clock, offsets=[timedelta(hours=1)])

    result = await reminders.sweep(now=utc(2024, 3, 1, 9, 20))

    assert result.covered_from == utc(2024, 3, 1, 9, 5)
    assert {r.homework_id for r in result.created} == {2}


@pytest.mark.asyncio
async def test_skipped_sweep_window_is_caught_up(store, mock_sink, clock, monkeypatch):
    """
    Тест: проход, пропущенный из-за наложения, догоняется следующим
    """
    hourly_homework(store)
    reminders = make_scheduler(store, mock_sink, clock, offsets=[timedelta(hours=1)])
    gate = asyncio.Event()
    original = store.list_active_homework

    async def slow_list(before, after=None):
        await gate.wait()
        return await original(before, after)

    monkeypatch.setattr(store, "list_active_homework", slow_list)
    first = asyncio.create_task(reminders.sweep(now=utc(2024, 3, 1, 9, 0)))
    await asyncio.sleep(0)
    skipped = await reminders.sweep(now=utc(2024, 3, 1, 9, 15))
    gate.set()
    await first

    caught_up = await reminders.sweep(now=utc(2024, 3, 1, 9, 30))

    assert skipped.skipped is True
    assert {r.homework_id for r in caught_up.created} == {2}
    assert len(store.reminders) == 10


# ============================================
# Tests: sweep() — доставка
# ============================================

@pytest.mark.asyncio
async def test_sink_error_does_not_fail_sweep(core, store, homework, mock_sink):
    """
    Тест: ошибка доставки не останавливает проход и не отменяет запись
    """
    mock_sink.enqueue.side_effect = [Exception("Network error"), None, None]

    result = await core.reminders.sweep(now=DUE - timedelta(hours=24))
    failures = await core.reminders.drain()

    assert mock_sink.enqueue.call_count == 3
    assert result.reminders_created == 3
    assert failures == 1
    assert len(store.reminders) == 3


@pytest.mark.asyncio
async def test_slow_sink_times_out(store, homework, clock):
    """
    Тест: зависшая доставка обрывается по таймауту
    """
    async def hang(*args):
        await asyncio.sleep(60)

    sink = AsyncMock()
    sink.enqueue = AsyncMock(side_effect=hang)
    reminders = make_scheduler(store, sink, clock, notify_timeout=0.01)

    result = await reminders.sweep(now=DUE - timedelta(hours=24))

    assert result.reminders_created == 3
    assert await reminders.drain() == 3
    assert reminders.pending_deliveries == 0


@pytest.mark.asyncio
async def test_slow_delivery_does_not_block_next_sweep(store, clock):
    """
    Тест: доставка идёт дольше интервала — проход не ждёт её,
    следующий проход не пропускается, второе ДЗ получает свои напоминания
    """
    hourly_homework(store)

    async def slow(*args):
        await asyncio.sleep(1)

    sink = AsyncMock()
    sink.enqueue = AsyncMock(side_effect=slow)
    reminders = make_scheduler(store, sink, clock, offsets=[timedelta(hours=1)], notify_timeout=0.2)

    first = await asyncio.wait_for(reminders.sweep(now=utc(2024, 3, 1, 9, 0)), timeout=0.1)
    second = await asyncio.wait_for(reminders.sweep(now=utc(2024, 3, 1, 9, 15)), timeout=0.1)

    assert reminders.pending_deliveries == 10
    assert second.skipped is False
    assert {r.homework_id for r in first.created} == {1}
    assert {r.homework_id for r in second.created} == {2}

    assert await reminders.drain() == 10  # все доставки упёрлись в таймаут
    assert sink.enqueue.call_count == 10


@pytest.mark.asyncio
async def test_bad_student_is_skipped(core, store, homework, mock_sink, monkeypatch):
    """
    Тест: ошибка по одному ученику не прерывает проход
    """
    original = store.get_submission

    async def flaky(homework_id, student_id):
        if student_id == 102:
            raise RuntimeError("broken row")
        return await original(homework_id, student_id)

    monkeypatch.setattr(store, "get_submission", flaky)

    result = await core.reminders.sweep(now=DUE - timedelta(hours=24))

    assert result.errors == 1
    assert result.reminders_created == 2


@pytest.mark.asyncio
async def test_bad_homework_is_skipped(core, store, homework, mock_sink, monkeypatch):
    """
    Тест: ошибка по одному ДЗ не прерывает проход
    """
    store.enroll(8, 201)
    store.add_homework(Homework(
        id=2, title="Стихи", subject="Литература", due_date=DUE,
        class_id=8, teacher_id=901,
    ))
    original = store.list_class_students

    async def flaky(class_id):
        if class_id == 7:
            raise RuntimeError("db hiccup")
        return await original(class_id)

    monkeypatch.setattr(store, "list_class_students", flaky)

    result = await core.reminders.sweep(now=DUE - timedelta(hours=24))
    await core.reminders.drain()

    assert result.errors == 1
    assert result.homework_scanned == 2
    assert [c.args[0] for c in mock_sink.enqueue.call_args_list] == [201]


@pytest.mark.asyncio
async def test_overlapping_sweep_is_skipped(store, homework, mock_sink, clock, monkeypatch):
    """
    Тест: проход, начатый во время другого, пропускается
    """
    gate = asyncio.Event()
    original = store.list_active_homework

    async def slow_list(before, after=None):
        await gate.wait()
        return await original(before, after)

    monkeypatch.setattr(store, "list_active_homework", slow_list)
    reminders = make_scheduler(store, mock_sink, clock)
    now = DUE - timedelta(hours=24)

    first = asyncio.create_task(reminders.sweep(now=now))
    await asyncio.sleep(0)
    second = await reminders.sweep(now=now)
    gate.set()
    first_result = await first

    assert second.skipped is True
    assert first_result.reminders_created == 3
    assert len(store.reminders) == 3


@pytest.mark.asyncio
async def test_concurrent_insert_loses_race(core, store, homework, mock_sink, monkeypatch):
    """
    Тест: если ключ занят параллельным проходом, уведомление не отправляется
    """
    async def taken(reminder):
        return None

    monkeypatch.setattr(store, "insert_reminder_if_absent", taken)

    result = await core.reminders.sweep(now=DUE - timedelta(hours=24))
    await core.reminders.drain()

    assert result.reminders_created == 0
    assert not mock_sink.enqueue.called


# ============================================
# Tests: настройки и содержимое
# ============================================

def test_invalid_configuration(store, mock_sink):
    """
    Тест: некорректные смещения и интервал отклоняются
    """
    with pytest.raises(ValidationError):
        ReminderScheduler(store, store, store, mock_sink, offsets=[timedelta(hours=-1)])
    with pytest.raises(ValidationError):
        ReminderScheduler(store, store, store, mock_sink, offsets=[timedelta(hours=1), timedelta(hours=1)])
    with pytest.raises(ValidationError):
        ReminderScheduler(store, store, store, mock_sink, interval=timedelta(minutes=-5))


@pytest.mark.parametrize("time_left, priority", [
    (timedelta(minutes=-1), ReminderPriority.URGENT),
    (timedelta(minutes=30), ReminderPriority.HIGH),
    (timedelta(hours=5), ReminderPriority.HIGH),
    (timedelta(hours=12), ReminderPriority.NORMAL),
    (timedelta(hours=24), ReminderPriority.LOW),
])
def test_reminder_priority(time_left, priority):
    assert reminder_priority(time_left) == priority


def test_reminder_content(homework):
    """
    Тест: текст зависит от оставшегося времени
    """
    title, message = reminder_content(homework, timedelta(hours=24))
    assert "Дроби" in title
    assert "Математика" in message
    assert "1 дн." in title

    title, _ = reminder_content(homework, timedelta(minutes=45))
    assert "Меньше часа" in title


@pytest.mark.asyncio
async def test_reminder_record_fields(core, store, homework):
    """
    Тест: запись напоминания содержит ключ, время и срочность
    """
    result = await core.reminders.sweep(now=DUE - timedelta(hours=1))
    reminder = result.created[0]

    assert reminder.offset_from_due == timedelta(hours=1)
    assert reminder.fired_at == DUE - timedelta(hours=1)
    assert reminder.priority == ReminderPriority.HIGH
    assert reminder.is_read is False


# ============================================
# Tests: входящие напоминания
# ============================================

@pytest.mark.asyncio
async def test_inbox_read_flags(core, homework):
    """
    Тест: прочтение одного и всех напоминаний
    """
    await core.reminders.sweep(now=DUE - timedelta(hours=24))
    await core.reminders.sweep(now=DUE - timedelta(hours=1))

    inbox = await core.reminders.list_reminders(101)
    assert len(inbox) == 2
    assert inbox[0].offset_from_due == timedelta(hours=1)  # новые первыми

    await core.reminders.mark_read(inbox[0].id)
    unread = await core.reminders.list_reminders(101, unread_only=True)
    assert [r.id for r in unread] == [inbox[1].id]

    assert await core.reminders.mark_all_read(101) == 1
    assert await core.reminders.list_reminders(101, unread_only=True) == []


@pytest.mark.asyncio
async def test_mark_read_unknown(core):
    with pytest.raises(NotFoundError):
        await core.reminders.mark_read(404)


@pytest.mark.asyncio
async def test_cleanup_old_reminders(core, store, homework, clock):
    """
    Тест: очистка удаляет напоминания старше срока хранения
    """
    await core.reminders.sweep(now=DUE - timedelta(hours=24))

    assert await core.reminders.cleanup(now=DUE + timedelta(days=3)) == 0
    assert await core.reminders.cleanup(now=DUE + timedelta(days=7)) == 3
    assert store.reminders == {}
