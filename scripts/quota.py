"""
YouTube API quota tracking and management.

YouTube Data API v3 has a daily quota of 10,000 units (default) per credential.
This module tracks usage and gates the primary path: once the ceiling is
reached no further API call is attempted and callers switch to the
fallback path.

The daily boundary is computed in a fixed reference timezone (US Pacific by
default, matching the platform's quota epoch) rather than host local time.
A background timer re-checks the boundary about once a minute so long-lived
sessions reset across midnight without a new request.

Quota state is persisted to the settings store as two keys so usage carries
across runs within the same day.
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from config import get_config
from errors import QuotaExhaustedError
from logger import get_logger
from store import KeyValueStore, MemoryStore

log = get_logger("quota")

USED_KEY = "quota_units_used"
DATE_KEY = "quota_reset_date"


@dataclass(frozen=True)
class QuotaState:
    units_used: int
    reset_date_key: str


def date_key(moment: datetime) -> str:
    """YYYY-M-D without zero padding."""
    return f"{moment.year}-{moment.month}-{moment.day}"


class QuotaTracker:
    """
    Track YouTube API quota usage for the current quota day.

    The tracker is the only writer of its state. Increments and resets are
    serialized by one lock and publish a new immutable QuotaState, so readers
    (is_exhausted, remaining) never block and never see a half-applied update.
    """

    # API operation costs (units)
    # See: https://developers.google.com/youtube/v3/determine_quota_cost
    COSTS = {
        'subscriptions.list': 1,
        'channels.list': 1,
        'playlistItems.list': 1,
        'videos.list': 1,
        'search.list': 100,  # Very expensive - avoid!
    }

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        daily_limit: int = None,
        warn_threshold: float = None,
        tz_name: str = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize quota tracker and load today's usage from the store.

        Args:
            store: Settings store holding the quota ledger (default: in-memory)
            daily_limit: Daily quota ceiling (default: from config or 10000)
            warn_threshold: Fraction of quota at which to warn (default: from config or 0.8)
            tz_name: IANA timezone of the daily reset (default: from config, America/Los_Angeles)
            clock: Returns the current aware datetime (tests inject a fixed clock)
        """
        cfg = get_config()
        self.store = store if store is not None else MemoryStore()
        self.daily_limit = daily_limit if daily_limit is not None else cfg.quota_limit
        self.warn_threshold = warn_threshold if warn_threshold is not None else cfg.quota_warn_threshold
        self.tz = ZoneInfo(tz_name or cfg.quota_timezone)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.operations = {}  # Units by operation type, this process only
        self.session_used = 0
        self.session_start = datetime.now()

        self._lock = threading.Lock()  # Serializes writers
        self._db_lock = threading.Lock()  # Serializes store writes
        self._timer_stop = threading.Event()
        self._timer_thread: Optional[threading.Thread] = None

        self._state = self._load_state()
        self._save_state()

        log.info(f"Quota tracker initialized: limit={self.daily_limit}, used_today={self._state.units_used}, "
                 f"day={self._state.reset_date_key} ({self.tz.key})")

    # ------------------------------------------------------------------
    # Reads (lock-free)
    # ------------------------------------------------------------------

    @property
    def state(self) -> QuotaState:
        return self._state

    @property
    def used(self) -> int:
        return self._state.units_used

    def is_exhausted(self) -> bool:
        return self._state.units_used >= self.daily_limit

    def remaining(self) -> int:
        return max(0, self.daily_limit - self._state.units_used)

    def used_fraction(self) -> float:
        return self._state.units_used / self.daily_limit

    def cost_of(self, operation: str, count: int = 1) -> int:
        return self.COSTS.get(operation, 1) * count

    def can_afford(self, operation: str, count: int = 1) -> bool:
        """Check if an operation fits under the ceiling."""
        return self._state.units_used + self.cost_of(operation, count) <= self.daily_limit

    def current_date_key(self) -> str:
        return date_key(self._clock().astimezone(self.tz))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _load_state(self) -> QuotaState:
        """Load persisted quota state, discarding a previous day's usage."""
        today = self.current_date_key()
        try:
            stored_key = self.store.get(DATE_KEY)
            used = self.store.get_int(USED_KEY, 0)
        except Exception as e:
            log.warning(f"Could not load quota state: {e}")
            stored_key, used = None, 0

        if stored_key == today:
            if used > 0:
                log.info(f"Resumed from previous runs: {used} units already used today")
            return QuotaState(units_used=max(0, used), reset_date_key=today)

        log.debug(f"No quota state for {today} (stored: {stored_key}), starting fresh")
        return QuotaState(units_used=0, reset_date_key=today)

    def _save_state(self) -> None:
        """Persist the latest published state. Failures are logged, not raised."""
        with self._db_lock:
            state = self._state
            try:
                self.store.set(USED_KEY, str(state.units_used))
                self.store.set(DATE_KEY, state.reset_date_key)
            except Exception as e:
                log.warning(f"Could not save quota state: {e}")

    def record_usage(self, units: int, operation: str = None) -> QuotaState:
        """Add units to today's usage. Returns the new state."""
        if units < 0:
            raise ValueError(f"Quota units must be non-negative, got {units}")

        with self._lock:
            was_exhausted = self.is_exhausted()
            self._state = QuotaState(self._state.units_used + units, self._state.reset_date_key)
            self.session_used += units
            if operation:
                self.operations[operation] = self.operations.get(operation, 0) + units
            state = self._state

        log.debug(f"Quota: +{units} for {operation or 'usage'} (total: {state.units_used}/{self.daily_limit})")
        self._save_state()

        if not was_exhausted and self.is_exhausted():
            log.warning(f"Quota exhausted: {state.units_used}/{self.daily_limit}, switching to fallback path")
        else:
            self._check_thresholds()

        return state

    def use(self, operation: str, count: int = 1) -> int:
        """
        Record quota usage for an API operation.

        Args:
            operation: API operation name (e.g., 'videos.list')
            count: Number of API calls made

        Returns:
            Cost in quota units
        """
        cost = self.cost_of(operation, count)
        self.record_usage(cost, operation)
        return cost

    def mark_exhausted(self) -> None:
        """The platform reported the quota as exceeded; trust it over our count."""
        with self._lock:
            if self._state.units_used >= self.daily_limit:
                return
            self._state = QuotaState(self.daily_limit, self._state.reset_date_key)
        log.warning("Platform reported quota exceeded, marking quota exhausted for today")
        self._save_state()

    def check_daily_reset(self) -> bool:
        """
        Zero usage if the quota day has rolled over in the reference timezone.

        Returns:
            True if a reset happened
        """
        today = self.current_date_key()
        with self._lock:
            if today == self._state.reset_date_key:
                return False
            previous = self._state
            self._state = QuotaState(units_used=0, reset_date_key=today)
            self.operations = {}

        log.info(f"New quota day {today} ({self.tz.key}), resetting quota "
                 f"(was {previous.units_used} on {previous.reset_date_key})")
        self._save_state()
        return True

    def reset(self) -> None:
        """Reset quota counter to 0. Use if quota tracking was corrupted."""
        with self._lock:
            self._state = QuotaState(units_used=0, reset_date_key=self.current_date_key())
            self.session_used = 0
            self.operations = {}
        self._save_state()
        log.info(f"Quota reset to 0 for {self._state.reset_date_key}")

    def ensure_available(self, operation: str, count: int = 1) -> None:
        """
        Pre-flight gate for a primary-path call.

        Raises:
            QuotaExhaustedError: If the call would not fit under the ceiling
        """
        if self.is_exhausted():
            raise QuotaExhaustedError(
                f"Quota exhausted ({self.used}/{self.daily_limit}), not calling {operation}"
            )
        if not self.can_afford(operation, count):
            raise QuotaExhaustedError(
                f"Insufficient quota for {operation}: need {self.cost_of(operation, count)}, "
                f"have {self.remaining()}"
            )

    def _check_thresholds(self) -> None:
        usage_fraction = self.used_fraction()
        if usage_fraction >= self.warn_threshold:
            log.warning(f"QUOTA WARNING: {self.used}/{self.daily_limit} ({usage_fraction:.1%})")

    # ------------------------------------------------------------------
    # Background reset timer
    # ------------------------------------------------------------------

    def start_reset_timer(self, interval: float = None) -> None:
        """Re-check the daily boundary every `interval` seconds on a daemon thread."""
        if self._timer_thread is not None and self._timer_thread.is_alive():
            return
        interval = interval if interval is not None else get_config().quota_reset_check_seconds
        self._timer_stop.clear()

        def run():
            while not self._timer_stop.wait(interval):
                try:
                    self.check_daily_reset()
                except Exception as e:
                    log.warning(f"Quota reset check failed: {type(e).__name__}: {e}")

        self._timer_thread = threading.Thread(target=run, name="quota-reset-timer", daemon=True)
        self._timer_thread.start()
        log.debug(f"Quota reset timer started (every {interval:.0f}s)")

    def stop_reset_timer(self) -> None:
        self._timer_stop.set()
        if self._timer_thread is not None:
            self._timer_thread.join(timeout=5)
            self._timer_thread = None

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_summary(self) -> dict:
        """Get summary of quota usage for logging/reporting."""
        state = self._state
        return {
            'date': state.reset_date_key,
            'timezone': self.tz.key,
            'used': state.units_used,
            'remaining': self.remaining(),
            'limit': self.daily_limit,
            'used_fraction': self.used_fraction(),
            'exhausted': self.is_exhausted(),
            'session_used': self.session_used,
            'session_duration': str(datetime.now() - self.session_start),
            'by_operation': self.operations.copy(),
        }

    def log_summary(self) -> None:
        summary = self.get_summary()
        log.info(f"Quota summary: {summary['used']}/{summary['limit']} "
                 f"({summary['used_fraction']:.1%}), session: {summary['session_used']}")
        for op, cost in sorted(summary['by_operation'].items(), key=lambda x: -x[1]):
            log.debug(f"  {op}: {cost} units")
