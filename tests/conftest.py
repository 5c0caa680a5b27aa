import pytest

from siteaudit.storage.handles import DatabaseHandles


@pytest.fixture
def handles(tmp_path):
    db = DatabaseHandles(tmp_path / "data")
    yield db
    db.close()
