from decimal import Decimal

from fieldstock.app.core.config import Settings


def test_defaults(monkeypatch):
    for name in ("DATABASE_ECHO", "WAREHOUSE_NAME", "CREW_LOAD_WARNING_THRESHOLD", "DEFAULT_PAGE_SIZE"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings(_env_file=None)

    assert settings.database_echo is False
    assert settings.warehouse_name == "Central Warehouse"
    assert settings.crew_load_warning_threshold == Decimal("1000")
    assert settings.default_page_size == 20


def test_values_from_environment(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:///:memory:")
    monkeypatch.setenv("DATABASE_ECHO", "yes")
    monkeypatch.setenv("WAREHOUSE_NAME", "Main Depot")
    monkeypatch.setenv("CREW_LOAD_WARNING_THRESHOLD", "250.5")
    monkeypatch.setenv("DEFAULT_PAGE_SIZE", "50")

    settings = Settings(_env_file=None)

    assert settings.database_url == "sqlite+pysqlite:///:memory:"
    assert settings.database_echo is True
    assert settings.warehouse_name == "Main Depot"
    assert settings.crew_load_warning_threshold == Decimal("250.5")
    assert settings.default_page_size == 50
