"""Rule store: built-in rule snapshot plus cached per-guardian configuration.

Custom filters and monitoring settings change rarely and are read on every
classification, so they are cached per guardian for a short refresh window.
When the filter repository fails, the last list successfully loaded for that
guardian keeps being served and the degraded read is counted. Settings fall
back to the last loaded copy, or to the defaults.
"""
import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from guardian.shared.database import RepositoryError
from guardian.shared.models import Filter, MonitoringSettings
from guardian.shared.utils import hash_pii
from .config import DEFAULT_RULES, RuleSet

logger = logging.getLogger(__name__)


class RuleStoreUnavailableError(Exception):
    """Filters could not be loaded and no cached copy exists."""

    def __init__(self, guardian_id: str, message: str = "Rule store unavailable"):
        self.guardian_id = guardian_id
        # Recipients still to be processed, set by the monitoring pipeline
        self.pending_guardian_ids: Optional[List[Optional[str]]] = None
        super().__init__(message)


class RuleStore:
    """Serves the built-in rules, each guardian's active filters and settings.

    The filter repository only needs `list_active_for_guardian(guardian_id)`;
    the optional settings repository only needs `get(guardian_id)`.
    """

    def __init__(
        self,
        filter_repository,
        rules: RuleSet = DEFAULT_RULES,
        refresh_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        settings_repository=None,
    ):
        """Initialize rule store.

        Args:
            filter_repository: Source of custom filters
            rules: Built-in rule snapshot
            refresh_seconds: How long a guardian's filters and settings are reused
            clock: Monotonic time source (injectable for tests)
            settings_repository: Source of monitoring settings; every guardian
                gets the defaults when omitted
        """
        self._filter_repository = filter_repository
        self._rules = rules
        self.refresh_seconds = refresh_seconds
        self._clock = clock
        self._settings_repository = settings_repository
        self._cache: Dict[str, Tuple[float, List[Filter]]] = {}
        self._settings_cache: Dict[str, Tuple[float, MonitoringSettings]] = {}
        self._lock = threading.Lock()
        self._degraded_reads = 0

        logger.info(
            "RULE_STORE_INITIALIZED",
            extra={
                "rules_version": rules.version,
                "refresh_seconds": refresh_seconds,
            }
        )

    def get_builtin_rules(self) -> RuleSet:
        return self._rules

    def get_active_filters(self, guardian_id: str) -> List[Filter]:
        """Active custom filters for a guardian.

        Raises:
            RuleStoreUnavailableError: Repository failed and nothing is cached
        """
        now = self._clock()
        with self._lock:
            cached = self._cache.get(guardian_id)
        if cached is not None and now - cached[0] < self.refresh_seconds:
            return list(cached[1])

        try:
            filters = [
                f for f in self._filter_repository.list_active_for_guardian(guardian_id)
                if f.active
            ]
        except RepositoryError as e:
            return self._serve_stale(guardian_id, cached, e)

        with self._lock:
            self._cache[guardian_id] = (now, filters)
        return list(filters)

    def get_monitoring_settings(self, guardian_id: str) -> MonitoringSettings:
        """A guardian's monitoring settings; never raises.

        A guardian without stored settings gets the defaults. When the
        settings repository fails, the cached copy (or the defaults) is
        served and the degraded read is counted.
        """
        if self._settings_repository is None:
            return MonitoringSettings(guardian_id=guardian_id)

        now = self._clock()
        with self._lock:
            cached = self._settings_cache.get(guardian_id)
        if cached is not None and now - cached[0] < self.refresh_seconds:
            return cached[1]

        try:
            settings = self._settings_repository.get(guardian_id)
        except RepositoryError as e:
            with self._lock:
                self._degraded_reads += 1
            fallback = cached[1] if cached is not None else MonitoringSettings(
                guardian_id=guardian_id
            )
            logger.warning(
                "MONITORING_SETTINGS_UNAVAILABLE",
                extra={
                    "guardian_id_hash": hash_pii(guardian_id),
                    "serving": "cached" if cached is not None else "defaults",
                    "error": str(e),
                    "degraded_reads": self._degraded_reads,
                }
            )
            return fallback

        if settings is None:
            settings = MonitoringSettings(guardian_id=guardian_id)
        with self._lock:
            self._settings_cache[guardian_id] = (now, settings)
        return settings

    def invalidate(self, guardian_id: Optional[str] = None) -> None:
        """Drop one guardian's cached filters and settings, or everyone's."""
        with self._lock:
            if guardian_id is None:
                self._cache.clear()
                self._settings_cache.clear()
            else:
                self._cache.pop(guardian_id, None)
                self._settings_cache.pop(guardian_id, None)

    @property
    def degraded_reads(self) -> int:
        return self._degraded_reads

    def status(self) -> Dict[str, object]:
        with self._lock:
            cached_guardians = len(self._cache)
            cached_settings = len(self._settings_cache)
        return {
            "rules_version": self._rules.version,
            "cached_guardians": cached_guardians,
            "cached_settings": cached_settings,
            "degraded_reads": self._degraded_reads,
        }

    def _serve_stale(
        self,
        guardian_id: str,
        cached: Optional[Tuple[float, List[Filter]]],
        error: Exception,
    ) -> List[Filter]:
        with self._lock:
            self._degraded_reads += 1

        if cached is None:
            logger.error(
                "RULE_STORE_UNAVAILABLE",
                extra={
                    "guardian_id_hash": hash_pii(guardian_id),
                    "error": str(error),
                    "degraded_reads": self._degraded_reads,
                }
            )
            raise RuleStoreUnavailableError(guardian_id) from error

        logger.warning(
            "RULE_STORE_SERVING_STALE_FILTERS",
            extra={
                "guardian_id_hash": hash_pii(guardian_id),
                "cache_age_seconds": self._clock() - cached[0],
                "filter_count": len(cached[1]),
                "error": str(error),
                "degraded_reads": self._degraded_reads,
            }
        )
        return list(cached[1])
