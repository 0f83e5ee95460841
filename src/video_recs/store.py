"""
Query capabilities the recommendation engine reads from.

The engine only talks to a RecommendationStore. SQLiteRecommendationStore is
the production implementation over the schema created by database.init_db().
"""
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Protocol, Sequence

from . import database
from .config import EXCLUSION_SENTINEL_ID, MAX_RESULT_OFFSET, STORE_RETRIES, STORE_RETRY_DELAY
from .exceptions import StoreUnavailable
from .utils import retry_with_backoff, to_db_timestamp

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Exclusions:
    """
    Video ids a query must not return.

    Empty means "exclude nothing". Backends whose NOT IN handling of an empty
    set is unreliable should build their parameter list with for_query(),
    which substitutes a placeholder id that never exists.
    """
    ids: frozenset[int] = frozenset()

    @classmethod
    def of(cls, ids: Iterable[int]) -> "Exclusions":
        return cls(frozenset(ids))

    def __contains__(self, video_id: int) -> bool:
        return video_id in self.ids

    def __len__(self) -> int:
        return len(self.ids)

    def for_query(self) -> tuple[int, ...]:
        if not self.ids:
            return (EXCLUSION_SENTINEL_ID,)
        return tuple(sorted(self.ids))


class RecommendationStore(Protocol):
    """Read-only view of users, videos and likes used by the cascade."""

    def user_exists(self, user_id: str) -> bool: ...

    def personalized_for_user(
        self, user_id: str, popularity_since: datetime, page: int, size: int
    ) -> Sequence[int]: ...

    def popular_by_language(
        self, popularity_since: datetime, language: str, exclude: Exclusions, page: int, size: int
    ) -> Sequence[int]: ...

    def popular_global(
        self, popularity_since: datetime, exclude: Exclusions, page: int, size: int
    ) -> Sequence[int]: ...

    def any_excluding(self, exclude: Exclusions, page: int, size: int) -> Sequence[int]: ...


def _not_in(exclude: Exclusions) -> tuple[str, tuple[int, ...]]:
    params = exclude.for_query()
    return ",".join("?" * len(params)), params


def _addressable(page: int, size: int) -> bool:
    # A page past the largest SQLite OFFSET cannot hold any rows
    return size > 0 and page * size <= MAX_RESULT_OFFSET


class SQLiteRecommendationStore:
    """
    RecommendationStore backed by the application's SQLite database.

    Pagination follows page/size semantics: OFFSET page * size. Ties in like
    counts are broken by video id so pages are stable.

    Any sqlite3.Error surfaces as StoreUnavailable after transient
    OperationalErrors have been retried.
    """

    def user_exists(self, user_id: str) -> bool:
        rows = self._fetch("SELECT 1 FROM users WHERE id = ? LIMIT 1", (user_id,))
        return bool(rows)

    def personalized_for_user(self, user_id, popularity_since, page, size):
        if not _addressable(page, size):
            return []
        # Only videos whose language AND category the user has liked before
        sql = """
            SELECT v.id
            FROM videos v
            JOIN video_metadata vm ON vm.video_id = v.id
            JOIN video_likes l ON l.video_id = v.id
            JOIN user_categories uc ON uc.user_id = ? AND uc.category = vm.category
            JOIN user_languages ul ON ul.user_id = ? AND ul.language = vm.language
            WHERE l.timestamp > ?
            GROUP BY v.id
            ORDER BY MAX(ul.repeats) DESC, MAX(uc.repeats) DESC, COUNT(*) DESC, v.id
            LIMIT ? OFFSET ?
        """
        params = (user_id, user_id, to_db_timestamp(popularity_since), size, page * size)
        return self._fetch_ids(sql, params)

    def popular_by_language(self, popularity_since, language, exclude, page, size):
        if not _addressable(page, size):
            return []
        placeholders, excluded = _not_in(exclude)
        sql = f"""
            SELECT v.id
            FROM videos v
            JOIN video_metadata vm ON vm.video_id = v.id
            JOIN video_likes l ON l.video_id = v.id
            WHERE v.id NOT IN ({placeholders})
              AND l.timestamp >= ?
              AND vm.language = ?
            GROUP BY v.id
            ORDER BY COUNT(*) DESC, v.id
            LIMIT ? OFFSET ?
        """
        params = (*excluded, to_db_timestamp(popularity_since), language, size, page * size)
        return self._fetch_ids(sql, params)

    def popular_global(self, popularity_since, exclude, page, size):
        if not _addressable(page, size):
            return []
        placeholders, excluded = _not_in(exclude)
        sql = f"""
            SELECT v.id
            FROM videos v
            JOIN video_metadata vm ON vm.video_id = v.id
            JOIN video_likes l ON l.video_id = v.id
            WHERE v.id NOT IN ({placeholders})
              AND l.timestamp >= ?
            GROUP BY v.id
            ORDER BY COUNT(*) DESC, v.id
            LIMIT ? OFFSET ?
        """
        params = (*excluded, to_db_timestamp(popularity_since), size, page * size)
        return self._fetch_ids(sql, params)

    def any_excluding(self, exclude, page, size):
        if not _addressable(page, size):
            return []
        placeholders, excluded = _not_in(exclude)
        sql = f"""
            SELECT id FROM videos
            WHERE id NOT IN ({placeholders})
            ORDER BY id
            LIMIT ? OFFSET ?
        """
        return self._fetch_ids(sql, (*excluded, size, page * size))

    def _fetch_ids(self, sql: str, params: tuple) -> list[int]:
        return [row[0] for row in self._fetch(sql, params)]

    def _fetch(self, sql: str, params: tuple) -> list[sqlite3.Row]:
        try:
            return _execute_with_retry(sql, params)
        except sqlite3.Error as e:
            logger.error(f"Recommendation store query failed: {e}")
            raise StoreUnavailable(str(e)) from e


@retry_with_backoff(
    max_retries=STORE_RETRIES,
    initial_delay=STORE_RETRY_DELAY,
    exceptions=(sqlite3.OperationalError,),
)
def _execute_with_retry(sql: str, params: tuple) -> list[sqlite3.Row]:
    with database.get_db(read_only=True) as conn:
        return conn.execute(sql, params).fetchall()
