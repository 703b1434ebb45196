"""ISO 8601 time dimension decoding and freshness evaluation."""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

logger = logging.getLogger(__name__)

SECS_PER_MINUTE = 60
SECS_PER_HOUR = 60 * SECS_PER_MINUTE
SECS_PER_DAY = 24 * SECS_PER_HOUR
SECS_PER_MONTH = 30 * SECS_PER_DAY  # estimate, not calendar accurate
SECS_PER_YEAR = 364 * SECS_PER_DAY  # estimate, not calendar accurate

_DATE_UNITS = {"D": SECS_PER_DAY, "M": SECS_PER_MONTH, "Y": SECS_PER_YEAR}
_TIME_UNITS = {"H": SECS_PER_HOUR, "M": SECS_PER_MINUTE, "S": 1}
_DIGITS = "0123456789"


def parse_period(token: str) -> int:
    """
    Decode an ISO 8601 period like "P1DT12H" into seconds.

    Digits accumulate until a unit letter consumes them; 'T' switches from
    date units to time units. Decimal fractions are not recognized and any
    other character is skipped.

    Args:
        token: Period token (must start with 'P')

    Returns:
        Period in seconds, 0 if the token is not a period
    """
    if not token.startswith("P"):
        return 0

    total = 0
    value = 0
    in_time = False
    for char in token[1:]:
        if char == "T":
            in_time = True
        elif char in _DIGITS:
            value = value * 10 + int(char)
        else:
            units = _TIME_UNITS if in_time else _DATE_UNITS
            if char in units:
                total += value * units[char]
                value = 0
    return total


def parse_time(token: str | None) -> datetime | None:
    """
    Parse a timestamp announced by a service.

    Accepts ISO 8601 (with 'Z' or an offset) and the RealEarth form
    "YYYYMMDD.HHMMSS". Timestamps without zone are taken as UTC.

    Returns:
        Aware datetime, or None if the token can't be parsed
    """
    if not token:
        return None
    text = token.strip()
    for candidate in (text, text.replace(".", "T", 1)):
        try:
            moment = datetime.fromisoformat(candidate)
        except ValueError:
            continue
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return moment
    logger.debug(f"Unparseable timestamp: {token!r}")
    return None


def format_time(moment: datetime) -> str:
    """Format as ISO 8601 UTC with second resolution."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class TimeDimension:
    """Queryable time range of a product.

    The end is the latest announced timestamp; period_seconds never drops
    below the service's polling floor.
    """

    start: str
    end: str
    period_seconds: int
    min_period_seconds: int
    values: list[str] = field(default_factory=list)

    @classmethod
    def parse_interval(cls, text: str, min_period_seconds: int) -> "TimeDimension | None":
        """
        Parse a dimension value.

        "start/end/period" yields an interval; otherwise a comma separated
        list of at least two values is taken as discrete times.

        Args:
            text: Dimension text from the capabilities document
            min_period_seconds: Service polling floor

        Returns:
            TimeDimension, or None if the text is neither form
        """
        parts = [part.strip() for part in text.strip().split("/")]
        if len(parts) == 3:
            period = max(parse_period(parts[2]), min_period_seconds)
            return cls(parts[0], parts[1], period, min_period_seconds)

        values = [value for value in text.split(",") if value.strip()]
        if len(values) < 2:
            return None
        return cls.from_values(values, min_period_seconds)

    @classmethod
    def from_values(cls, values: list[str], min_period_seconds: int) -> "TimeDimension | None":
        """Create a dimension from discrete time values (first is start, last is end)."""
        tokens = [value.strip() for value in values if value and value.strip()]
        if not tokens:
            return None
        return cls(tokens[0], tokens[-1], min_period_seconds, min_period_seconds, values=tokens)

    def is_stale(self, now: datetime, delay_seconds: int) -> bool:
        """
        Check whether a newer time step should be available by now.

        On staleness the end advances by one period, so repeated checks
        converge on the present.

        Args:
            now: Current UTC time
            delay_seconds: Processing delay the service introduces

        Returns:
            True if the cached end is outdated
        """
        end = parse_time(self.end)
        if end is None:
            return False  # can't tell
        expected = end + timedelta(seconds=self.period_seconds)
        if expected <= now - timedelta(seconds=delay_seconds):
            self.end = format_time(expected)
            logger.debug(f"Time dimension stale, advanced end to {self.end}")
            return True
        return False

    def latest_acceptable_time(
        self, prefer_current_time: bool, now: datetime, delay_seconds: int
    ) -> datetime | None:
        """
        Get the time to request.

        With prefer_current_time, an end lying in the future (forecast
        products) is rolled back in whole periods until it is no later than
        now minus the delay.

        Returns:
            Time to request, or None if the end can't be parsed
        """
        end = parse_time(self.end)
        if end is None or not prefer_current_time:
            return end

        limit = now - timedelta(seconds=delay_seconds)
        if end > limit:
            steps = math.ceil((end - limit).total_seconds() / self.period_seconds)
            end -= timedelta(seconds=steps * self.period_seconds)
        return end

    def time_token(self, moment: datetime | None) -> str:
        """TIME parameter value: the end token verbatim unless it was rolled back."""
        if moment is None or moment == parse_time(self.end):
            return self.end
        return format_time(moment)

    def observe(self, token: str) -> bool:
        """
        Record a latest value announced by the service.

        Returns:
            True if the value was not known before
        """
        if token == self.end or token in self.values:
            return False
        self.values.append(token)
        self.end = token
        return True
