from pathlib import Path

from alembic import command
from alembic.config import Config
import sqlalchemy as sa

PACKAGE_DIR = Path(__file__).resolve().parents[1] / "propertyhub"


def test_baseline_migration_creates_schema(tmp_path):
    db_url = f"sqlite:///{tmp_path / 'migrations.db'}"
    config = Config(str(PACKAGE_DIR / "alembic.ini"))
    config.set_main_option("script_location", str(PACKAGE_DIR / "migrations"))
    config.attributes["database_url"] = db_url
    config.attributes["configure_logger"] = False

    command.upgrade(config, "head")

    engine = sa.create_engine(db_url)
    try:
        inspector = sa.inspect(engine)
        tables = set(inspector.get_table_names())
        assert {
            "users",
            "apartments",
            "maintenance_requests",
            "maintenance_photos",
            "rent_payments",
            "rent_reminders",
            "notifications",
            "alembic_version",
        } <= tables
        apartment_constraints = {item["name"] for item in inspector.get_unique_constraints("apartments")}
        assert "uq_apartments_owner_number" in apartment_constraints
        request_columns = {column["name"] for column in inspector.get_columns("maintenance_requests")}
        assert {"status", "version", "start_date", "completion_date"} <= request_columns
    finally:
        engine.dispose()
