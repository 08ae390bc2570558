from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect


ROOT = Path(__file__).resolve().parents[1]


def test_upgrade_creates_documents_table(tmp_path: Path) -> None:
    db_url = f"sqlite:///{tmp_path / 'kakeibo.db'}"
    config = Config()
    config.set_main_option("script_location", str(ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", db_url)

    command.upgrade(config, "head")

    inspector = inspect(create_engine(db_url))
    columns = {c["name"] for c in inspector.get_columns("documents")}
    assert {"id", "path", "collection", "data", "created_at", "updated_at"} <= columns
    indexes = {i["name"] for i in inspector.get_indexes("documents")}
    assert "ix_documents_collection" in indexes

    command.downgrade(config, "base")
    assert "documents" not in inspect(create_engine(db_url)).get_table_names()
