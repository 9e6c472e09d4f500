"""Read the hardware clock and set the system clock from it."""

from __future__ import annotations

import struct
import time
from datetime import datetime, timedelta, timezone

RTC_DEVICE = "/dev/rtc"

# struct rtc_time: tm_sec, tm_min, tm_hour, tm_mday, tm_mon, tm_year, tm_wday, tm_yday, tm_isdst
_RTC_TIME = struct.Struct("9i")
# _IOR('p', 0x09, struct rtc_time)
_RTC_RD_TIME = 0x80247009

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def decode_rtc_time(raw: bytes) -> datetime:
    """Decode a ``struct rtc_time`` into a UTC datetime, normalising out-of-range fields."""
    if len(raw) != _RTC_TIME.size:
        raise ValueError(f"expected {_RTC_TIME.size} bytes of rtc_time, got {len(raw)}")
    sec, minute, hour, mday, mon, year, *_ = _RTC_TIME.unpack(raw)
    extra_years, month_index = divmod(mon, 12)
    first_of_month = datetime(year + 1900 + extra_years, month_index + 1, 1, tzinfo=timezone.utc)
    return first_of_month + timedelta(days=mday - 1, hours=hour, minutes=minute, seconds=sec)


def get_rtc_time() -> datetime:
    """Read the current time from the real-time clock device."""
    import fcntl

    buf = bytearray(_RTC_TIME.size)
    with open(RTC_DEVICE, "rb", buffering=0) as rtc:
        fcntl.ioctl(rtc.fileno(), _RTC_RD_TIME, buf, True)
    return decode_rtc_time(bytes(buf))


def set_system_time(t: datetime) -> None:
    """Set the system clock, to microsecond precision; a naive ``t`` is taken as UTC."""
    if t.tzinfo is None:
        t = t.replace(tzinfo=timezone.utc)
    micros = (t - _EPOCH) // timedelta(microseconds=1)
    time.clock_settime_ns(time.CLOCK_REALTIME, micros * 1000)