from tt.util.misc import now_ms, utc_now, format_time, format_date
