import pytest

from scripts import start


def test_gunicorn_argv_serves_wsgi_app():
    argv = start.gunicorn_argv(9000, 3, 8)
    assert argv[:2] == ["gunicorn", "app.wsgi:app"]
    assert argv[argv.index("--bind") + 1] == "0.0.0.0:9000"
    assert argv[argv.index("--workers") + 1] == "3"
    assert argv[argv.index("--threads") + 1] == "8"


def test_positive_int_defaults_and_bounds(monkeypatch):
    monkeypatch.delenv("WEB_CONCURRENCY", raising=False)
    assert start._positive_int("WEB_CONCURRENCY", 2, 64) == 2

    monkeypatch.setenv("WEB_CONCURRENCY", "5")
    assert start._positive_int("WEB_CONCURRENCY", 2, 64) == 5

    for bad in ("0", "65", "many"):
        monkeypatch.setenv("WEB_CONCURRENCY", bad)
        with pytest.raises(SystemExit):
            start._positive_int("WEB_CONCURRENCY", 2, 64)
