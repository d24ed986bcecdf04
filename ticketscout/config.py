"""
Engine settings and per-profile configuration records

Settings come from config/engine_config.json with environment overrides;
profiles come from config/profiles.json. Both arrive already resolved, so
nothing here touches the browser provider or credential storage.
"""

import json
import logging
import os
import random
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Union
from urllib.parse import urlparse

from .errors import ConfigurationError
from .utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_ENGINE_CONFIG = "config/engine_config.json"
DEFAULT_PROFILES_CONFIG = "config/profiles.json"

PROXY_NONE = "none"
PROXY_AUTHENTICATED = "authenticated"
PROXY_UNAUTHENTICATED = "unauthenticated"
PROXY_MODES = (PROXY_NONE, PROXY_AUTHENTICATED, PROXY_UNAUTHENTICATED)

DEFAULT_USER_AGENT = ('Mozilla/5.0 (Linux; Android 10; K) AppleWebKit/537.36 '
                      '(KHTML, like Gecko) Chrome/120.0.0.0 Mobile Safari/537.36')


@dataclass(frozen=True)
class ProxyDescriptor:
    """Upstream proxy for one profile's HTTP session"""
    mode: str = PROXY_NONE
    host: str = ""
    port: int = 0
    username: Optional[str] = None
    password: Optional[str] = None

    def __post_init__(self):
        if self.mode not in PROXY_MODES:
            raise ConfigurationError(f"Unknown proxy mode: {self.mode}")
        if self.mode != PROXY_NONE:
            if not self.host or not 0 < int(self.port) <= 65535:
                raise ConfigurationError(f"Invalid proxy address: {self.host}:{self.port}")
        if self.mode == PROXY_AUTHENTICATED and not (self.username and self.password):
            raise ConfigurationError("Authenticated proxy requires username and password")

    @property
    def enabled(self) -> bool:
        return self.mode != PROXY_NONE

    @property
    def url(self) -> Optional[str]:
        """Proxy URL without credentials (credentials travel separately)"""
        if not self.enabled:
            return None
        return f"http://{self.host}:{self.port}"

    @classmethod
    def parse(cls, proxy_string: Optional[str]) -> "ProxyDescriptor":
        """Parse 'user:pass@host:port' or 'host|port'; anything else means no proxy"""
        if not proxy_string or not proxy_string.strip():
            return cls()

        proxy_string = proxy_string.strip()
        try:
            if '@' in proxy_string:
                user_pass, host_port = proxy_string.split('@')
                username, password = (part.strip() for part in user_pass.split(':'))
                host, port = (part.strip() for part in host_port.split(':'))
                return cls(PROXY_AUTHENTICATED, host, int(port), username, password)

            if '|' in proxy_string:
                host, port = (part.strip() for part in proxy_string.split('|'))
                return cls(PROXY_UNAUTHENTICATED, host, int(port))
        except (ValueError, ConfigurationError) as e:
            logger.warning(f"Invalid proxy string '{proxy_string}': {e} - using no proxy")
            return cls()

        logger.warning(f"Invalid proxy format: {proxy_string}. "
                       f"Expected 'user:pass@host:port' or 'host|port' - using no proxy")
        return cls()

    @classmethod
    def from_value(cls, value: Union[None, str, Mapping]) -> "ProxyDescriptor":
        if value is None or isinstance(value, str):
            return cls.parse(value)
        mode = value.get('mode', PROXY_NONE)
        if mode == 'http':
            # Provider-style record: credentials decide the mode
            mode = PROXY_AUTHENTICATED if value.get('username') or value.get('user') else PROXY_UNAUTHENTICATED
        return cls(
            mode=mode,
            host=value.get('host', ''),
            port=int(value.get('port') or 0),
            username=value.get('username', value.get('user')),
            password=value.get('password', value.get('pass')),
        )


@dataclass(frozen=True)
class BrowserFingerprint:
    """Header values copied from the profile the browser was launched with"""
    user_agent: str = DEFAULT_USER_AGENT
    sec_ch_ua: str = '"Chromium";v="120", "Google Chrome";v="120", "Not?A_Brand";v="99"'
    sec_ch_ua_full_version_list: str = ''
    platform: str = '"Android"'
    mobile: str = '?1'
    arch: str = '"arm"'
    device_memory: str = '8'
    accept_language: str = 'en-US,en;q=0.9'

    @classmethod
    def from_dict(cls, data: Optional[Mapping]) -> "BrowserFingerprint":
        if not data:
            return cls()
        aliases = {'userAgent': 'user_agent', 'uaHalf': 'sec_ch_ua', 'uaFull': 'sec_ch_ua_full_version_list'}
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            key = aliases.get(key, key)
            if key in known and value is not None:
                kwargs[key] = str(value)
        return cls(**kwargs)

    def client_hint_headers(self) -> Dict[str, str]:
        headers = {
            'sec-ch-device-memory': self.device_memory,
            'sec-ch-ua': self.sec_ch_ua,
            'sec-ch-ua-arch': self.arch,
            'sec-ch-ua-mobile': self.mobile,
            'sec-ch-ua-model': '""',
            'sec-ch-ua-platform': self.platform,
        }
        if self.sec_ch_ua_full_version_list:
            headers['sec-ch-ua-full-version-list'] = self.sec_ch_ua_full_version_list
        return headers

    def base_headers(self) -> Dict[str, str]:
        """Headers every request from this profile carries"""
        headers = {
            'user-agent': self.user_agent,
            'accept-language': self.accept_language,
        }
        headers.update(self.client_hint_headers())
        return headers


@dataclass(frozen=True)
class ProfileConfig:
    """Per-profile configuration record consumed by the engine"""
    profile_id: str
    target_url: str
    requested_seats: int = 1
    area_filter: List[str] = field(default_factory=list)
    access_keyword: str = ""
    poll_speed_tier: str = "normal"
    proxy: ProxyDescriptor = field(default_factory=ProxyDescriptor)
    fingerprint: BrowserFingerprint = field(default_factory=BrowserFingerprint)
    name: str = ""
    event_id: str = ""
    seller_host: str = ""
    homepage_url: str = ""
    queue_host: str = ""
    price_type_id: str = ""
    price_levels: List[str] = field(default_factory=list)
    debugger_url: str = ""

    def __post_init__(self):
        if not self.profile_id:
            raise ConfigurationError("Profile record is missing an id")
        if not self.target_url.startswith(('http://', 'https://')):
            raise ConfigurationError(f"Profile {self.profile_id}: invalid target URL '{self.target_url}'")
        if int(self.requested_seats) < 1:
            raise ConfigurationError(f"Profile {self.profile_id}: requested seats must be >= 1")

    @property
    def host(self) -> str:
        """Seller host, defaulting to the target URL's host"""
        return self.seller_host or urlparse(self.target_url).netloc

    @property
    def referer(self) -> str:
        return self.homepage_url or f"https://{self.host}/"

    @classmethod
    def from_dict(cls, data: Mapping) -> "ProfileConfig":
        try:
            return cls(
                profile_id=str(data.get('id') or data.get('profile_id') or ''),
                target_url=str(data.get('target_url') or data.get('targetUrl') or data.get('matchUrl') or ''),
                requested_seats=int(data.get('requested_seats', data.get('requestedSeats', data.get('seats', 1)))),
                area_filter=[str(a) for a in (data.get('area_filter') or data.get('areaFilter') or [])],
                access_keyword=str(data.get('access_keyword') or data.get('accessKeyword') or data.get('keyword1') or ''),
                poll_speed_tier=str(data.get('poll_speed_tier') or data.get('pollSpeedTier') or data.get('speedLimit') or 'normal'),
                proxy=ProxyDescriptor.from_value(data.get('proxy')),
                fingerprint=BrowserFingerprint.from_dict(data.get('fingerprint') or data.get('browserData')),
                name=str(data.get('name', '')),
                event_id=str(data.get('event_id') or data.get('eventId') or ''),
                seller_host=str(data.get('seller_host') or data.get('hostUrl') or ''),
                homepage_url=str(data.get('homepage_url') or data.get('homepageUrl') or ''),
                queue_host=str(data.get('queue_host') or ''),
                price_type_id=str(data.get('price_type_id') or data.get('priceTypeId') or ''),
                price_levels=[str(p) for p in (data.get('price_levels') or data.get('priceLevels') or [])],
                debugger_url=str(data.get('debugger_url') or data.get('wsUrl') or ''),
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid profile record {data.get('id', '?')}: {e}") from e


@dataclass(frozen=True)
class EngineSettings:
    """Business tunables for the engine; all times in seconds"""
    affordability_ceiling: float = 100.0
    speed_tiers: Dict[str, float] = field(default_factory=lambda: {'fast': 0.0, 'normal': 1.0, 'slow': 2.0})
    sleep_base_offset: float = 1.3
    sleep_jitter_window: float = 0.3
    penalty_delay: float = 2.0
    config_refresh_every: int = 30
    session_refresh_every: int = 100
    request_timeout: float = 30.0
    connect_timeout: float = 10.0
    stop_grace_period: float = 2.0
    status_queue_size: int = 1000
    single_seat_fallback: bool = True
    max_consecutive_failures: int = 2
    queue_host: str = ""
    fetch_retry: RetryPolicy = RetryPolicy(max_attempts=2, min_delay=1.0, max_delay=3.0)
    purchase_retry: RetryPolicy = RetryPolicy(max_attempts=3, min_delay=0.5, max_delay=2.0)
    session_retry: RetryPolicy = RetryPolicy(max_attempts=2, min_delay=1.0, max_delay=5.0)
    log_dir: str = "logs"
    log_level: str = "INFO"

    def __post_init__(self):
        if self.affordability_ceiling <= 0:
            raise ConfigurationError("affordability_ceiling must be positive")
        if self.config_refresh_every < 1 or self.session_refresh_every < 1:
            raise ConfigurationError("refresh cadences must be >= 1")
        if self.max_consecutive_failures < 1:
            raise ConfigurationError("max_consecutive_failures must be >= 1")

    def tier_speed(self, tier: str) -> float:
        if tier in self.speed_tiers:
            return self.speed_tiers[tier]
        try:
            return max(0.0, float(tier))
        except (TypeError, ValueError):
            logger.warning(f"Unknown speed tier '{tier}', using 'normal'")
            return self.speed_tiers.get('normal', 1.0)

    def poll_interval(self, tier: str, penalized: bool = False, rng: Optional[random.Random] = None) -> float:
        """Randomized inter-iteration sleep for a speed tier"""
        start = self.tier_speed(tier) + self.sleep_base_offset
        end = start + self.sleep_jitter_window
        delay = (rng or random).uniform(start, end)
        if penalized:
            delay += self.penalty_delay
        return delay

    def with_overrides(self, **overrides) -> "EngineSettings":
        return replace(self, **overrides)

    @classmethod
    def from_dict(cls, data: Mapping) -> "EngineSettings":
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            if key not in known:
                logger.warning(f"Ignoring unknown engine setting: {key}")
                continue
            kwargs[key] = value
        try:
            for key in [k for k in kwargs if k.endswith('_retry') and isinstance(kwargs[k], Mapping)]:
                kwargs[key] = RetryPolicy.from_dict(kwargs[key])
            return cls(**kwargs)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid engine settings: {e}") from e

    @classmethod
    def load(cls, path: Union[str, Path, None] = DEFAULT_ENGINE_CONFIG,
             env: Optional[Mapping[str, str]] = None) -> "EngineSettings":
        """Load settings from JSON (defaults if missing), then apply environment overrides"""
        data = {}
        if path is not None:
            config_path = Path(path)
            if config_path.exists():
                try:
                    with open(config_path, 'r') as f:
                        data = json.load(f)
                except json.JSONDecodeError as e:
                    raise ConfigurationError(f"Could not parse {config_path}: {e}") from e
                logger.info(f"Loaded engine settings from {config_path}")
            else:
                logger.info(f"No engine config at {config_path}, using defaults")

        env = os.environ if env is None else env
        overrides = {
            'TICKETSCOUT_LOG_LEVEL': ('log_level', str),
            'TICKETSCOUT_LOG_DIR': ('log_dir', str),
            'TICKETSCOUT_AFFORDABILITY_CEILING': ('affordability_ceiling', float),
            'TICKETSCOUT_REQUEST_TIMEOUT': ('request_timeout', float),
        }
        for variable, (key, convert) in overrides.items():
            if env.get(variable):
                try:
                    data[key] = convert(env[variable])
                except ValueError as e:
                    raise ConfigurationError(f"Invalid value for {variable}: {e}") from e

        return cls.from_dict(data)


def load_profiles(path: Union[str, Path] = DEFAULT_PROFILES_CONFIG) -> List[ProfileConfig]:
    """Load profile records; accepts a list or {"profiles": [...]}"""
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigurationError(f"Profiles file not found: {config_path}")

    with open(config_path, 'r') as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Could not parse {config_path}: {e}") from e

    records = data.get('profiles', []) if isinstance(data, dict) else data
    profiles = [ProfileConfig.from_dict(record) for record in records if record.get('enabled', True)]

    ids = [p.profile_id for p in profiles]
    if len(ids) != len(set(ids)):
        raise ConfigurationError("Duplicate profile ids in profiles file")

    logger.info(f"Loaded {len(profiles)} enabled profiles from {config_path}")
    return profiles
