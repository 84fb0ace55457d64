"""Environment-based configuration."""
import os
from dataclasses import dataclass
from typing import Mapping, Optional


@dataclass
class Settings:
    """Runtime settings read from Lambda environment variables."""
    users_table: str = 'shift-users'
    events_table: str = 'shift-events'
    log_level: str = 'INFO'
    fetch_timeout_seconds: float = 10
    fetch_max_attempts: int = 1
    user_agent: str = 'ShiftCalendar/1.0'
    max_concurrent_feeds: int = 0
    default_time_zone: str = 'UTC'
    aws_region: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Settings':
        env = os.environ if environ is None else environ
        return cls(
            users_table=env.get('USERS_TABLE', 'shift-users'),
            events_table=env.get('EVENTS_TABLE', 'shift-events'),
            log_level=env.get('LOG_LEVEL', 'INFO'),
            fetch_timeout_seconds=float(env.get('FETCH_TIMEOUT_SECONDS', '10')),
            fetch_max_attempts=int(env.get('FETCH_MAX_ATTEMPTS', '1')),
            user_agent=env.get('USER_AGENT', 'ShiftCalendar/1.0'),
            max_concurrent_feeds=int(env.get('MAX_CONCURRENT_FEEDS', '0')),
            default_time_zone=env.get('DEFAULT_TIME_ZONE', 'UTC'),
            aws_region=env.get('AWS_REGION') or None
        )
