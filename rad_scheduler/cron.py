"""
Cron evaluation and live cron triggers.

`CronClock` is the only place that talks to croniter. A `CronTrigger` is a
daemon thread bound to one schedule/timezone that sleeps until the next fire
time and calls its callback.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from .errors import InvalidScheduleError

logger = logging.getLogger(__name__)

UTC = timezone.utc
CRON_FIELD_COUNT = 5
MAX_CANDIDATES = 10000


def parse_timezone(name: str) -> ZoneInfo:
    if not isinstance(name, str) or not name.strip():
        raise InvalidScheduleError("Timezone must be a non-empty IANA name.")
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidScheduleError(f'Invalid timezone "{name}".') from exc


def validate_schedule(schedule: str) -> str:
    if not isinstance(schedule, str) or not schedule.strip():
        raise InvalidScheduleError("Cron schedule must be a non-empty string.")
    expr = " ".join(schedule.split())
    if len(expr.split(" ")) != CRON_FIELD_COUNT:
        raise InvalidScheduleError(
            f'Cron schedule must have {CRON_FIELD_COUNT} fields, got "{schedule}".'
        )
    if not croniter.is_valid(expr):
        raise InvalidScheduleError(f'Invalid cron schedule "{schedule}".')
    return expr


def _ensure_aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _is_nonexistent_local(local_dt: datetime, tz: ZoneInfo) -> bool:
    naive = local_dt.replace(tzinfo=None)
    assumed = naive.replace(tzinfo=tz, fold=0)
    roundtrip = assumed.astimezone(UTC).astimezone(tz).replace(tzinfo=None)
    return roundtrip != naive


def _is_ambiguous_local(local_dt: datetime, tz: ZoneInfo) -> bool:
    naive = local_dt.replace(tzinfo=None)
    fold0 = naive.replace(tzinfo=tz, fold=0)
    fold1 = naive.replace(tzinfo=tz, fold=1)
    return fold0.utcoffset() != fold1.utcoffset()


class CronClock:
    """Evaluates cron schedules and starts triggers for them."""

    def now(self) -> datetime:
        return datetime.now(tz=UTC)

    def next_fire_time(
        self,
        schedule: str,
        timezone_name: str,
        after: Optional[datetime] = None,
    ) -> Optional[datetime]:
        expr = validate_schedule(schedule)
        tz = parse_timezone(timezone_name)
        after_utc = _ensure_aware_utc(after or datetime.now(tz=UTC))
        iterator = croniter(expr, after_utc.astimezone(tz))
        for _ in range(MAX_CANDIDATES):
            nxt = iterator.get_next(datetime)
            if nxt.tzinfo is None:
                nxt = nxt.replace(tzinfo=tz)
            else:
                nxt = nxt.astimezone(tz)
            # Skip wall-clock slots that DST removes or repeats.
            if _is_nonexistent_local(nxt, tz):
                continue
            if _is_ambiguous_local(nxt, tz) and nxt.fold == 1:
                continue
            return nxt.astimezone(UTC)
        return None

    def next_fire_times(
        self,
        schedule: str,
        timezone_name: str,
        count: int,
        after: Optional[datetime] = None,
    ) -> List[datetime]:
        cursor = _ensure_aware_utc(after or datetime.now(tz=UTC))
        runs: List[datetime] = []
        while len(runs) < count:
            nxt = self.next_fire_time(schedule, timezone_name, cursor)
            if nxt is None:
                break
            runs.append(nxt)
            cursor = nxt + timedelta(seconds=1)
        return runs

    def start(
        self,
        schedule: str,
        timezone_name: str,
        callback: Callable[[], None],
        name: str = "",
    ) -> "CronTrigger":
        trigger = CronTrigger(self, schedule, timezone_name, callback, name=name)
        trigger.start()
        return trigger


class CronTrigger:
    """One live cron trigger running on its own daemon thread."""

    def __init__(
        self,
        clock: CronClock,
        schedule: str,
        timezone_name: str,
        callback: Callable[[], None],
        name: str = "",
    ) -> None:
        self.schedule = validate_schedule(schedule)
        self.timezone_name = timezone_name
        parse_timezone(timezone_name)
        self.name = name or self.schedule
        self._clock = clock
        self._callback = callback
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.next_fire: Optional[datetime] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, daemon=True, name=f"rad-cron-{self.name}")
        self._thread.start()

    def stop(self, timeout_seconds: float = 1.0) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread and thread is not threading.current_thread():
            thread.join(timeout=timeout_seconds)

    def _run(self) -> None:
        fired: Optional[datetime] = None
        while not self._stop_event.is_set():
            now = self._clock.now()
            # Never search from before the slot that just fired.
            after = fired if fired is not None and fired > now else now
            try:
                self.next_fire = self._clock.next_fire_time(self.schedule, self.timezone_name, after)
            except InvalidScheduleError as exc:
                logger.error("Cron trigger %s stopped: %s", self.name, exc)
                return
            if self.next_fire is None:
                logger.warning("Cron trigger %s has no further fire times.", self.name)
                return
            wait_seconds = max(0.0, (self.next_fire - now).total_seconds())
            if self._stop_event.wait(wait_seconds):
                return
            fired = self.next_fire
            try:
                self._callback()
            except Exception as exc:
                logger.exception("Cron trigger %s callback failed: %s", self.name, exc)
