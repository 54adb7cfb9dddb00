import time
from datetime import datetime, timezone


# Current wall-clock time as integer milliseconds since the epoch. This is the unit every startTime is stored in.
def now_ms():
    return time.time_ns() // 1_000_000


# Current time as an aware UTC datetime, truncated to milliseconds so it survives any ISO round-trip untouched.
def utc_now():
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


# Formats elapsed seconds for display. "long" gives H:MM:SS (list screen), "short" gives M:SS with minutes allowed to
# run past 59 (recorder screen). Negative values clamp to zero.
def format_time(seconds, style="long"):
    seconds = max(0, int(seconds))
    if style == "short":
        m, s = divmod(seconds, 60)
        return f"{m}:{s:02d}"
    h, rem = divmod(seconds, 3600)
    m, s = divmod(rem, 60)
    return f"{h}:{m:02d}:{s:02d}"


# Formats a creation timestamp the way the record lists show it, e.g. "Oct 19, 2026, 09:41 AM", in local time.
def format_date(value: datetime):
    return value.astimezone().strftime("%b %d, %Y, %I:%M %p")
