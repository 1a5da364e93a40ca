"""
DateWindow — 本地日历窗口计算器。

所有 "today / yesterday / week / month" 都相对一个显式传入的参考时间点和固定 UTC 偏移计算，
不在业务逻辑里隐式读系统时间，方便单测。返回值一律是 UTC 的 (start, end)。
"""

from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone as dt_timezone

# 业务上的默认偏移：IST = UTC+05:30
IST_OFFSET_MINUTES = 330


@dataclass(frozen=True)
class DateWindow:
    reference: datetime
    utc_offset_minutes: int = IST_OFFSET_MINUTES

    def __post_init__(self):
        if self.reference.tzinfo is None:
            raise ValueError("DateWindow reference must be timezone-aware")

    @property
    def tz(self):
        return dt_timezone(timedelta(minutes=self.utc_offset_minutes))

    @property
    def local_now(self):
        return self.reference.astimezone(self.tz)

    def _day_bounds(self, day):
        start = datetime.combine(day, time.min, tzinfo=self.tz)
        end = datetime.combine(day, time.max, tzinfo=self.tz)
        return start.astimezone(dt_timezone.utc), end.astimezone(dt_timezone.utc)

    def today(self):
        return self._day_bounds(self.local_now.date())

    def yesterday(self):
        return self._day_bounds(self.local_now.date() - timedelta(days=1))

    def week(self):
        """Sunday 00:00 local up to the reference instant."""
        local_today = self.local_now.date()
        # weekday(): Monday=0 ... Sunday=6
        days_since_sunday = (local_today.weekday() + 1) % 7
        start, _ = self._day_bounds(local_today - timedelta(days=days_since_sunday))
        return start, self.reference.astimezone(dt_timezone.utc)

    def month(self):
        start, _ = self._day_bounds(self.local_now.date().replace(day=1))
        return start, self.reference.astimezone(dt_timezone.utc)

    def lookback(self, days):
        """Rolling window of `days` * 24h ending at the reference instant."""
        end = self.reference.astimezone(dt_timezone.utc)
        return end - timedelta(days=days), end

    def window(self, name):
        windows = {
            'today': self.today,
            'yesterday': self.yesterday,
            'week': self.week,
            'month': self.month,
        }
        # 未知的窗口名按 today 处理
        return windows.get(name, self.today)()

    def local_date(self):
        return self.local_now.date()
