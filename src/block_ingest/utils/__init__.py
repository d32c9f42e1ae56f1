from .retry import END, STOPPED, RetryConfig, next_or_end, retry_async, run_until_stopped, sleep_or_stop

__all__ = ["END", "RetryConfig", "STOPPED", "next_or_end", "retry_async", "run_until_stopped", "sleep_or_stop"]
