"""
Environment-driven settings and per-run options.

Settings come from the process environment, optionally seeded from a .env file.
RunOptions carries everything that changes behaviour for one invocation
(dry run, fast mode, wipe, timeouts) and is passed explicitly to every stage.
"""

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

from dotenv import load_dotenv

from .errors import ConfigurationError
from .models import DELETION_ORDER, ServiceKind

DEFAULT_BASE_URL = 'https://graph.microsoft.com/v1.0'
DEFAULT_AUTHORITY = 'https://login.microsoftonline.com'
DEFAULT_TIMEOUT = 30
DEFAULT_PAGE_SIZE = 999
DEFAULT_POLL_INTERVAL = 30.0
DEFAULT_MAX_WAIT = 900.0
DEFAULT_WIPE_TIMEOUT = 1800.0


def _float_env(name, default):
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}")


def _int_env(name, default):
    return int(_float_env(name, default))


@dataclass
class Settings:
    tenant_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    access_token: Optional[str] = None
    base_url: str = DEFAULT_BASE_URL
    authority: str = DEFAULT_AUTHORITY
    timeout: int = DEFAULT_TIMEOUT
    page_size: int = DEFAULT_PAGE_SIZE
    poll_interval: float = DEFAULT_POLL_INTERVAL
    max_wait: float = DEFAULT_MAX_WAIT
    wipe_timeout: float = DEFAULT_WIPE_TIMEOUT

    @classmethod
    def from_env(cls, env_file=None):
        """Load settings from the environment (and .env if present)"""
        load_dotenv(env_file)

        base_url = os.getenv('GRAPH_BASE_URL', DEFAULT_BASE_URL).rstrip('/')
        if not base_url.startswith('http'):
            base_url = f'https://{base_url}'

        return cls(
            tenant_id=os.getenv('GRAPH_TENANT_ID'),
            client_id=os.getenv('GRAPH_CLIENT_ID'),
            client_secret=os.getenv('GRAPH_CLIENT_SECRET'),
            access_token=os.getenv('GRAPH_ACCESS_TOKEN'),
            base_url=base_url,
            authority=os.getenv('GRAPH_AUTHORITY', DEFAULT_AUTHORITY).rstrip('/'),
            timeout=_int_env('GRAPH_TIMEOUT', DEFAULT_TIMEOUT),
            page_size=_int_env('GRAPH_PAGE_SIZE', DEFAULT_PAGE_SIZE),
            poll_interval=_float_env('RECONCILE_POLL_INTERVAL', DEFAULT_POLL_INTERVAL),
            max_wait=_float_env('RECONCILE_MAX_WAIT', DEFAULT_MAX_WAIT),
            wipe_timeout=_float_env('RECONCILE_WIPE_TIMEOUT', DEFAULT_WIPE_TIMEOUT),
        )

    @property
    def has_client_credentials(self):
        return bool(self.tenant_id and self.client_id and self.client_secret)

    def validate(self):
        if not self.access_token and not self.has_client_credentials:
            raise ConfigurationError(
                'Missing Graph credentials - set GRAPH_ACCESS_TOKEN or '
                'GRAPH_TENANT_ID, GRAPH_CLIENT_ID and GRAPH_CLIENT_SECRET'
            )
        if self.timeout <= 0:
            raise ConfigurationError('GRAPH_TIMEOUT must be positive')
        return self


def parse_services(value) -> Tuple[ServiceKind, ...]:
    """Turn 'management,directory' into services, kept in deletion order"""
    if not value:
        return DELETION_ORDER
    wanted = set()
    aliases = {
        'intune': ServiceKind.MANAGEMENT,
        'mdm': ServiceKind.MANAGEMENT,
        'autopilot': ServiceKind.REGISTRY,
        'entra': ServiceKind.DIRECTORY,
        'aad': ServiceKind.DIRECTORY,
    }
    for part in str(value).split(','):
        key = part.strip().lower()
        if not key:
            continue
        if key in aliases:
            wanted.add(aliases[key])
            continue
        try:
            wanted.add(ServiceKind(key))
        except ValueError:
            raise ConfigurationError(f"Unknown service {part.strip()!r}")
    return tuple(service for service in DELETION_ORDER if service in wanted)


@dataclass(frozen=True)
class RunOptions:
    """Per-invocation behaviour, threaded through every stage"""
    dry_run: bool = False
    fast: bool = False
    wipe: bool = False
    keep_enrollment: bool = False
    keep_user: bool = False
    max_wait: float = DEFAULT_MAX_WAIT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    wipe_timeout: float = DEFAULT_WIPE_TIMEOUT
    targets: Tuple[ServiceKind, ...] = field(default=DELETION_ORDER)

    def __post_init__(self):
        if self.poll_interval <= 0:
            raise ConfigurationError('Poll interval must be positive')
        if self.max_wait < 0 or self.wipe_timeout < 0:
            raise ConfigurationError('Timeouts cannot be negative')

    @property
    def verify(self):
        return not (self.dry_run or self.fast)
