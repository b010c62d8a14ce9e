from backend.app import main
from backend.app.main import _maybe_start_job, _resolve_allowed_origins


def test_allowed_origins_accept_commas_and_whitespace(monkeypatch):
    monkeypatch.setenv(
        "BACKEND_ALLOWED_ORIGINS",
        "https://studio.example/, http://localhost:5173 http://localhost:5173",
    )

    assert _resolve_allowed_origins() == [
        "http://localhost:5173",
        "https://studio.example",
    ]


def test_allowed_origins_default_to_local_frontends(monkeypatch):
    monkeypatch.delenv("BACKEND_ALLOWED_ORIGINS", raising=False)

    assert "http://localhost:5173" in _resolve_allowed_origins()


def test_background_job_respects_its_flag(monkeypatch):
    started = []
    monkeypatch.setenv("MONTHLY_INVOICE_SCHEDULER_ENABLED", "off")

    _maybe_start_job("MONTHLY_INVOICE_SCHEDULER_ENABLED", "scheduler", lambda: started.append(1))
    assert started == []

    monkeypatch.setenv("MONTHLY_INVOICE_SCHEDULER_ENABLED", "1")
    _maybe_start_job("MONTHLY_INVOICE_SCHEDULER_ENABLED", "scheduler", lambda: started.append(1))
    assert started == [1]


def test_startup_skips_migrations_when_disabled(monkeypatch):
    calls = []
    monkeypatch.setenv("RUN_MIGRATIONS_ON_STARTUP", "0")
    monkeypatch.setattr(main, "run_database_migrations", lambda: calls.append("migrate"))

    main.ensure_database_is_ready()

    assert calls == []
