"""
Cascading video recommendations.

A request is filled from four tiers of decreasing specificity, each run only
while the result is still short of the quota:

1. personalized: videos matching the user's liked languages and categories
2. by language: most liked videos per requested language, in caller order
3. global: most liked videos regardless of language
4. fill: any videos at all

Every tier excludes what earlier tiers already chose. Popularity is the number
of likes inside a window of the last N days, computed once per request. The
final list is shuffled so no ordering leaks from the tier sequence.
"""
import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from .config import EngineConfig, MAX_RESULT_OFFSET
from .exceptions import InvalidRequest, NotFound
from .store import Exclusions, RecommendationStore
from .utils import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class RecommendationRequest:
    """
    Parameters of one recommendation call.

    languages are in priority order. page is applied by every tier to its own
    ranking, so it is not a stable offset into the merged result.
    """
    languages: tuple[str, ...]
    size: int
    user_id: Optional[str] = None
    page: int = 0

    def __post_init__(self):
        object.__setattr__(self, "languages", tuple(self.languages))
        if not self.languages:
            raise InvalidRequest("At least one language is required")
        if self.size < 1:
            raise InvalidRequest(f"size must be positive, got {self.size}")
        if self.page < 0:
            raise InvalidRequest(f"page must not be negative, got {self.page}")


@dataclass(frozen=True)
class PopularityWindow:
    since: datetime

    @classmethod
    def ending_at(cls, now: datetime, days: int) -> "PopularityWindow":
        return cls(since=now - timedelta(days=days))


class RecommendationEngine:
    def __init__(
        self,
        store: RecommendationStore,
        config: EngineConfig | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utcnow,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.config = config or EngineConfig()
        self._rng = rng or random.Random()
        self._clock = clock
        self._timer = timer

    def get_recommendations(self, request: RecommendationRequest) -> list[int]:
        """
        Get up to min(request.size, max_videos_per_request) distinct video ids.

        Fewer ids (even none) are returned when the whole catalog cannot fill
        the quota or the request deadline runs out between tiers.

        Raises:
            NotFound: if request.user_id is given but unknown; checked before
                any tier runs
            InvalidRequest: if page is too large to address any result
            StoreUnavailable: if the store fails
        """
        start = self._timer()
        deadline = start + self.config.deadline_seconds if self.config.deadline_seconds else None
        target = min(request.size, self.config.max_videos_per_request)
        if request.page * target > MAX_RESULT_OFFSET:
            raise InvalidRequest(f"page {request.page} is out of range")
        window = PopularityWindow.ending_at(self._clock(), self.config.popularity_days)
        chosen: set[int] = set()

        if request.user_id is not None:
            if not self.store.user_exists(request.user_id):
                raise NotFound(request.user_id)
            _add_unique(
                chosen,
                self.store.personalized_for_user(request.user_id, window.since, request.page, target),
                target,
            )

        if len(chosen) < target:
            self._fill_by_languages(chosen, request, window, target, deadline)

        if len(chosen) < target and not self._deadline_passed(deadline, "global", request.user_id):
            logger.warning(
                f"Recommendations not found by user and browser languages for user: {request.user_id}",
                extra={"user_id": request.user_id, "shortfall": target - len(chosen), "tier": "global"},
            )
            _add_unique(
                chosen,
                self.store.popular_global(
                    window.since, Exclusions.of(chosen), request.page, target - len(chosen)
                ),
                target,
            )

        if len(chosen) < target and not self._deadline_passed(deadline, "fill", request.user_id):
            logger.warning(
                f"Falling back to arbitrary videos for user: {request.user_id}",
                extra={"user_id": request.user_id, "shortfall": target - len(chosen), "tier": "fill"},
            )
            _add_unique(
                chosen,
                self.store.any_excluding(Exclusions.of(chosen), request.page, target - len(chosen)),
                target,
            )

        result = sorted(chosen)
        self._rng.shuffle(result)
        logger.debug(f"Recommendations found in {(self._timer() - start) * 1000:.0f}ms")
        return result

    def _fill_by_languages(self, chosen, request, window, target, deadline):
        for language in request.languages:
            if self._deadline_passed(deadline, "language", request.user_id):
                return
            _add_unique(
                chosen,
                self.store.popular_by_language(
                    window.since, language, Exclusions.of(chosen), request.page, target - len(chosen)
                ),
                target,
            )
            if len(chosen) >= target:
                return

    def _deadline_passed(self, deadline: float | None, tier: str, user_id: str | None) -> bool:
        if deadline is None or self._timer() < deadline:
            return False
        logger.warning(
            f"Recommendation deadline exceeded before {tier} tier for user: {user_id}",
            extra={"user_id": user_id, "tier": tier},
        )
        return True


def _add_unique(chosen: set[int], found: Iterable[int], limit: int) -> None:
    # Guards dedup and the quota even if a store returns more than asked
    for video_id in found:
        if len(chosen) >= limit:
            return
        chosen.add(video_id)
