from contextlib import contextmanager
from datetime import date

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

import scheduler as scheduler_module
from database import init_db
from models import TemplateKind
from schemas import TemplateIn
from services import MonthService, TemplateService


class _FakeScheduler:
    def __init__(self) -> None:
        self.jobs: dict[str, object] = {}
        self.running = False

    def add_job(self, func, trigger, args=None, id=None, **kwargs) -> None:
        self.jobs[id] = trigger

    def start(self) -> None:
        self.running = True

    def shutdown(self, wait: bool = True) -> None:
        self.running = False


def _wire(monkeypatch, session: Session) -> None:
    @contextmanager
    def fake_scope():
        yield session
        session.commit()

    monkeypatch.setattr(scheduler_module, "session_scope", fake_scope)
    monkeypatch.setattr(scheduler_module, "local_today", lambda: date(2025, 2, 10))


def test_job_creates_and_syncs_current_month(monkeypatch):
    engine = create_engine("sqlite:///:memory:")
    init_db(engine)
    with Session(engine) as session:
        TemplateService(session, TemplateKind.bill).create(
            TemplateIn(name="Rent", amount=15000, day_of_month=31)
        )
        _wire(monkeypatch, session)
        manager = scheduler_module.SchedulerManager(scheduler=_FakeScheduler())

        assert manager._run_job("test") is True
        data = MonthService(session).get_month("2025-02")
        assert len(data.bill_instances) == 1

        assert manager._run_job("test") is True
        assert MonthService(session).get_month("2025-02").updated_at == data.updated_at


def test_job_skips_locked_month(monkeypatch):
    engine = create_engine("sqlite:///:memory:")
    init_db(engine)
    with Session(engine) as session:
        months = MonthService(session)
        months.create_month("2025-02")
        months.lock_month("2025-02", True)
        _wire(monkeypatch, session)

        manager = scheduler_module.SchedulerManager(scheduler=_FakeScheduler())
        assert manager._run_job("test") is False


def test_start_registers_daily_and_hourly_jobs(monkeypatch):
    engine = create_engine("sqlite:///:memory:")
    init_db(engine)
    with Session(engine) as session:
        _wire(monkeypatch, session)
        fake = _FakeScheduler()
        manager = scheduler_module.SchedulerManager(scheduler=fake)

        manager.start()
        assert set(fake.jobs) == {"month_sync_daily", "month_sync_hourly_safety"}
        assert fake.running is True

        manager.stop()
        assert fake.running is False
        assert MonthService(session).month_exists("2025-02")
