"""Tests for scheduler job registration."""

from pricesync.config import settings
from pricesync.worker.scheduler import setup_scheduler


def test_reconciliation_job_never_overlaps(monkeypatch):
    monkeypatch.setattr(settings, "reconciliation_enabled", True)

    scheduler = setup_scheduler()

    job = scheduler.get_job("price_reconciliation")
    assert job is not None
    assert job.max_instances == 1
    assert job.coalesce is True
    assert scheduler.get_job("llm_cost_reset") is not None


def test_disabled_reconciliation_registers_no_job(monkeypatch):
    monkeypatch.setattr(settings, "reconciliation_enabled", False)

    scheduler = setup_scheduler()

    assert scheduler.get_job("price_reconciliation") is None
