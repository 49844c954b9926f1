from __future__ import annotations

import pytest

from paygate import worker


@pytest.fixture
def calls(monkeypatch: pytest.MonkeyPatch, services) -> list[str]:
    recorded: list[str] = []
    monkeypatch.setattr(worker, "setup_logging", lambda level: None)
    monkeypatch.setattr(worker, "build_services", lambda cfg: services)
    monkeypatch.setattr(worker, "close_pool", lambda: recorded.append("closed"))
    return recorded


def test_main_releases_pool_after_workers_stop(monkeypatch: pytest.MonkeyPatch, calls: list[str]) -> None:
    async def fake_run(services) -> None:
        calls.append("ran")

    monkeypatch.setattr(worker, "run_workers", fake_run)

    worker.main([])

    assert calls == ["ran", "closed"]


def test_main_releases_pool_when_workers_crash(monkeypatch: pytest.MonkeyPatch, calls: list[str]) -> None:
    async def crash(services) -> None:
        raise RuntimeError("consumer crashed")

    monkeypatch.setattr(worker, "run_workers", crash)

    with pytest.raises(RuntimeError):
        worker.main([])

    assert calls == ["closed"]
