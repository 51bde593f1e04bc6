import pytest

import backend.config as config
import database.db as db


@pytest.fixture()
def temp_db(tmp_path, monkeypatch):
    test_db = tmp_path / "punchsync_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)

    db.create_tables()
    return test_db
