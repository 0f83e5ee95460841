import importlib
import sys
from pathlib import Path

import pytest

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


@pytest.fixture
def fresh_config(monkeypatch, tmp_path):
    """
    Reload config with a temporary database path to keep tests isolated.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("VIDEO_RECS_DB", str(db_path))
    import video_recs.config as config

    importlib.reload(config)
    return config


@pytest.fixture
def fresh_db(monkeypatch, tmp_path):
    """
    Reload config/database modules with a temp DB and cleanly close the pool after use.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("VIDEO_RECS_DB", str(db_path))

    import video_recs.config as config
    import video_recs.database as database

    importlib.reload(config)
    importlib.reload(database)

    yield database
    database.close_pool()


class RecordingStore:
    """
    In-memory RecommendationStore that records every call.

    Each ranked list is filtered by the exclusions and paged like the SQLite
    store (offset page * size). With honor_exclusions=False it ignores them,
    to check the engine deduplicates on its own.
    """

    def __init__(
        self,
        users=(),
        personalized=None,
        by_language=None,
        popular=(),
        fill=(),
        honor_exclusions=True,
    ):
        self.users = set(users)
        self.personalized = personalized or {}
        self.by_language = by_language or {}
        self.popular = list(popular)
        self.fill = list(fill)
        self.honor_exclusions = honor_exclusions
        self.calls = []

    def _page(self, ids, exclude, page, size):
        if self.honor_exclusions and exclude is not None:
            ids = [i for i in ids if i not in exclude]
        return list(ids)[page * size:page * size + size]

    def calls_to(self, name):
        return [kwargs for call, kwargs in self.calls if call == name]

    def user_exists(self, user_id):
        self.calls.append(("user_exists", {"user_id": user_id}))
        return user_id in self.users

    def personalized_for_user(self, user_id, popularity_since, page, size):
        self.calls.append(("personalized_for_user", {
            "user_id": user_id, "since": popularity_since, "page": page, "size": size,
        }))
        return self._page(self.personalized.get(user_id, []), None, page, size)

    def popular_by_language(self, popularity_since, language, exclude, page, size):
        self.calls.append(("popular_by_language", {
            "language": language, "since": popularity_since, "exclude": exclude, "page": page, "size": size,
        }))
        return self._page(self.by_language.get(language, []), exclude, page, size)

    def popular_global(self, popularity_since, exclude, page, size):
        self.calls.append(("popular_global", {
            "since": popularity_since, "exclude": exclude, "page": page, "size": size,
        }))
        return self._page(self.popular, exclude, page, size)

    def any_excluding(self, exclude, page, size):
        self.calls.append(("any_excluding", {"exclude": exclude, "page": page, "size": size}))
        return self._page(self.fill, exclude, page, size)


@pytest.fixture
def make_store():
    return RecordingStore
