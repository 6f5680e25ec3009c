import os
import re
import tempfile
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any

import yaml
from apscheduler.triggers.cron import CronTrigger

from doksnap.models import Source, RetentionPolicy, Hooks
from doksnap.backup.encryption import EncryptionError, normalize_key_id


class ConfigError(Exception):
    """Raised when the daemon configuration is missing or invalid."""
    pass


MAX_CONFIG_SIZE = 1 * 1024 * 1024  # 1MB

SOURCE_NAME_PATTERN = re.compile(r'\A[a-zA-Z0-9_\-]+\Z')
BUCKET_PATTERN = re.compile(r'\A[a-z0-9][a-z0-9\-.]*[a-z0-9]\Z')
ENDPOINT_PATTERN = re.compile(r'\A[a-zA-Z0-9][a-zA-Z0-9.\-]*[a-zA-Z0-9]\Z')

DEFAULT_ENDPOINT = 's3.amazonaws.com'
SOURCE_TYPES = ('volume', 'directory')

DEFAULT_ALLOWED_BASE_PATHS = [
    '/var/lib/docker/volumes',
    '/data',
    '/backups',
    '/opt',
    '/srv',
]

DISALLOWED_PATHS = [
    '/etc',
    '/root',
    '/home',
    '/usr/bin',
    '/usr/sbin',
    '/bin',
    '/sbin',
    '/proc',
    '/sys',
    '/dev',
]

# (min, max) for each retention tier
RETENTION_BOUNDS = {
    'keep_last': (1, 1000),
    'daily': (1, 365),
    'weekly': (1, 104),  # ~2 years
    'monthly': (1, 120),  # 10 years
}


def _env_list(name: str, default: List[str]) -> List[str]:
    value = os.environ.get(name)
    if not value:
        return list(default)
    return [p for p in value.split(':') if p]


class Config:
    """Base configuration"""

    # YAML file describing sources, S3 and encryption
    CONFIG_PATH = os.environ.get('DOKSNAP_CONFIG') or 'config.yaml'

    # Diagnostic mode: keeps raw error messages and logs tracebacks
    DEBUG = os.environ.get('DEBUG', 'false').lower() == 'true'

    # Temp
    TEMP_DIR = os.environ.get('TEMP_DIR') or '/tmp/doksnap'
    LOG_DIR = os.environ.get('LOG_DIR') or os.path.join(
        os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'data', 'logs'
    )

    # Source roots that may be backed up
    ALLOWED_BASE_PATHS = _env_list('DOKSNAP_ALLOWED_PATHS', DEFAULT_ALLOWED_BASE_PATHS)

    # Scheduler
    SCHEDULER_ENABLED = os.environ.get('SCHEDULER_WORKER', 'true').lower() == 'true'
    SCHEDULER_TIMEZONE = 'UTC'
    JSON_SORT_KEYS = False


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')


class ProductionConfig(Config):
    """Production configuration"""
    pass


class TestingConfig(Config):
    """Configuration used by the test-suite"""
    TESTING = True
    DEBUG = False
    SCHEDULER_ENABLED = False
    TEMP_DIR = os.path.join(tempfile.gettempdir(), 'doksnap-test', 'temp')
    LOG_DIR = os.path.join(tempfile.gettempdir(), 'doksnap-test', 'logs')


config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}


@dataclass
class S3Settings:
    bucket: str
    access_key_id: str
    secret_access_key: str
    region: str = 'us-east-1'
    endpoint: str = DEFAULT_ENDPOINT

    def __repr__(self):
        # Never print credentials
        return f'<S3Settings bucket={self.bucket} endpoint={self.endpoint} region={self.region}>'


@dataclass
class EncryptionSettings:
    method: str  # 'gpg' or 'aes256'
    public_key: Optional[str] = None
    key_id: Optional[str] = None
    gnupghome: Optional[str] = None
    password: Optional[str] = None

    def __repr__(self):
        return f'<EncryptionSettings method={self.method} key_id={self.key_id}>'


@dataclass
class StatusServerSettings:
    enabled: bool = True
    bind: str = '0.0.0.0'
    port: int = 4567
    api_key: Optional[str] = None
    require_auth: bool = False


@dataclass
class DokSnapConfig:
    s3: S3Settings
    encryption: EncryptionSettings
    sources: List[Source] = field(default_factory=list)
    status_server: StatusServerSettings = field(default_factory=StatusServerSettings)

    def get_source(self, name: str) -> Optional[Source]:
        for source in self.sources:
            if source.name == name:
                return source
        return None


def load_config(path: str, allowed_base_paths: Optional[List[str]] = None) -> DokSnapConfig:
    """
    Load and validate the YAML configuration file.

    Args:
        path: Path to the YAML file
        allowed_base_paths: Roots under which source paths must live
            (default: Config.ALLOWED_BASE_PATHS)

    Returns:
        DokSnapConfig instance

    Raises:
        ConfigError: If the file is missing, too large or invalid
    """
    if not os.path.exists(path):
        raise ConfigError(f"Configuration file not found: {path}")

    config_size = os.path.getsize(path)
    if config_size > MAX_CONFIG_SIZE:
        raise ConfigError(
            f"Configuration file too large: {config_size} bytes. "
            f"Maximum allowed: {MAX_CONFIG_SIZE} bytes (1MB)"
        )

    try:
        with open(path, 'r') as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")

    if not isinstance(raw, dict):
        raise ConfigError("Configuration root must be a mapping")

    if allowed_base_paths is None:
        allowed_base_paths = Config.ALLOWED_BASE_PATHS

    sources = parse_sources(raw.get('apps') or raw.get('sources') or [], allowed_base_paths)

    return DokSnapConfig(
        s3=parse_s3_settings(raw.get('s3') or {}),
        encryption=parse_encryption_settings(raw.get('encryption') or {}),
        sources=sources,
        status_server=parse_status_server_settings(raw.get('status_server') or {}),
    )


def parse_s3_settings(raw: Dict[str, Any]) -> S3Settings:
    bucket = raw.get('bucket')
    if not bucket:
        raise ConfigError("S3 bucket is required")

    if not (BUCKET_PATTERN.match(bucket) and 3 <= len(bucket) <= 63):
        raise ConfigError(
            f"Invalid S3 bucket name: {bucket}. Must be 3-63 characters, lowercase alphanumeric."
        )

    endpoint = raw.get('endpoint') or DEFAULT_ENDPOINT

    # Hostname only: no protocol, port or path
    if '://' in endpoint or ':' in endpoint or '/' in endpoint:
        raise ConfigError(
            f"Invalid S3 endpoint: {endpoint}. Endpoint must be a hostname only (no protocol, port, or path)."
        )
    if not ENDPOINT_PATTERN.match(endpoint):
        raise ConfigError(f"Invalid S3 endpoint format: {endpoint}. Must be a valid hostname.")

    access_key = os.environ.get('AWS_ACCESS_KEY_ID')
    if not access_key:
        raise ConfigError("AWS_ACCESS_KEY_ID environment variable is required")
    secret_key = os.environ.get('AWS_SECRET_ACCESS_KEY')
    if not secret_key:
        raise ConfigError("AWS_SECRET_ACCESS_KEY environment variable is required")

    return S3Settings(
        bucket=bucket,
        access_key_id=access_key,
        secret_access_key=secret_key,
        region=raw.get('region') or 'us-east-1',
        endpoint=endpoint,
    )


def parse_encryption_settings(raw: Dict[str, Any]) -> EncryptionSettings:
    method = raw.get('method') or 'gpg'

    if method == 'gpg':
        public_key = os.environ.get('GPG_PUBLIC_KEY')
        if not public_key:
            raise ConfigError("GPG_PUBLIC_KEY environment variable is required for GPG encryption")
        key_id = raw.get('key_id') or os.environ.get('GPG_KEY_ID') or None
        if key_id:
            try:
                key_id = normalize_key_id(str(key_id))
            except EncryptionError as e:
                raise ConfigError(str(e))
        return EncryptionSettings(
            method='gpg',
            public_key=public_key,
            key_id=key_id,
            gnupghome=raw.get('gnupghome') or os.environ.get('GNUPGHOME') or None,
        )

    if method == 'aes256':
        password = os.environ.get('ENCRYPTION_PASSWORD')
        if not password:
            raise ConfigError("ENCRYPTION_PASSWORD environment variable is required for AES-256 encryption")
        return EncryptionSettings(method='aes256', password=password)

    raise ConfigError(f"Unsupported encryption method: {method}. Use 'gpg' or 'aes256'")


def parse_sources(raw: List[Dict[str, Any]], allowed_base_paths: List[str]) -> List[Source]:
    if not isinstance(raw, list):
        raise ConfigError("'apps' must be a list")

    sources = []
    for entry in raw:
        if not isinstance(entry, dict):
            raise ConfigError("Each app entry must be a mapping")
        sources.append(parse_source(entry, allowed_base_paths))

    names = [s.name for s in sources]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ConfigError(f"Duplicate app names found: {', '.join(duplicates)}")

    return sources


def parse_source(raw: Dict[str, Any], allowed_base_paths: List[str]) -> Source:
    name = raw.get('name')
    if not name:
        raise ConfigError("App name is required")
    name = str(name)
    if not SOURCE_NAME_PATTERN.match(name):
        raise ConfigError(f"Invalid app name: {name}. Only alphanumeric, underscore, and dash allowed.")

    source_type = raw.get('type')
    if not source_type:
        raise ConfigError(f"App type is required for {name} (volume or directory)")
    if source_type not in SOURCE_TYPES:
        raise ConfigError(f"Invalid app type for {name}: {source_type}. Must be 'volume' or 'directory'")

    path = raw.get('source') or raw.get('path')
    if not path:
        raise ConfigError(f"App source path is required for {name}")

    schedule = raw.get('schedule')
    if not schedule:
        raise ConfigError(f"App schedule is required for {name} (cron format)")

    return Source(
        name=name,
        type=source_type,
        path=validate_source_path(name, str(path), allowed_base_paths),
        schedule=validate_schedule(name, str(schedule)),
        retention=parse_retention_policy(raw.get('retention') or {}),
        hooks=parse_hooks(raw.get('hooks') or {}),
    )


def validate_source_path(name: str, path: str, allowed_base_paths: List[str]) -> str:
    """
    Normalize a source path and make sure it is safe to archive.

    Returns:
        Absolute, normalized path
    """
    if '..' in path.split('/') or '//' in path:
        raise ConfigError(f"Path traversal detected in source path for app {name}: {path}")

    normalized = os.path.abspath(os.path.expanduser(path))

    for disallowed in DISALLOWED_PATHS:
        if _is_under(normalized, disallowed):
            raise ConfigError(f"Source path for app {name} is in a disallowed directory: {path}")

    if not any(_is_under(normalized, os.path.abspath(base)) for base in allowed_base_paths):
        raise ConfigError(
            f"Source path for app {name} must be under one of: {', '.join(allowed_base_paths)}"
        )

    if not os.path.exists(normalized):
        raise ConfigError(f"Source path does not exist for app {name}: {normalized}")

    return normalized


def _is_under(path: str, base: str) -> bool:
    base = base.rstrip('/') or '/'
    return path == base or path.startswith(base + '/')


def validate_schedule(name: str, schedule: str) -> str:
    try:
        CronTrigger.from_crontab(schedule, timezone='UTC')
    except ValueError as e:
        raise ConfigError(f"Invalid cron schedule for app {name}: {schedule} - {e}")
    return schedule


def parse_retention_policy(raw: Dict[str, Any]) -> RetentionPolicy:
    if not isinstance(raw, dict):
        raise ConfigError("Retention must be a mapping")

    values = {
        tier: validate_retention_value(raw.get(tier), tier, low, high)
        for tier, (low, high) in RETENTION_BOUNDS.items()
    }
    return RetentionPolicy(**values)


def validate_retention_value(value, name: str, minimum: int, maximum: int) -> Optional[int]:
    if value is None:
        return None

    # bool is an int subclass
    if isinstance(value, bool) or not (
        isinstance(value, int) or (isinstance(value, str) and value.isdigit())
    ):
        raise ConfigError(f"Invalid retention value for {name}: must be an integer")

    int_value = int(value)
    if int_value < minimum or int_value > maximum:
        raise ConfigError(
            f"Invalid retention value for {name}: must be between {minimum} and {maximum}, got {int_value}"
        )
    return int_value


def parse_hooks(raw: Dict[str, Any]) -> Hooks:
    if not isinstance(raw, dict):
        raise ConfigError("Hooks must be a mapping")

    timeout = raw.get('timeout')
    if timeout is not None:
        try:
            timeout = float(timeout)
        except (TypeError, ValueError):
            raise ConfigError(f"Invalid hook timeout: {timeout}")
        if timeout <= 0:
            raise ConfigError(f"Hook timeout must be positive, got {timeout}")

    return Hooks(
        pre_backup=raw.get('pre_backup'),
        post_backup=raw.get('post_backup'),
        timeout=timeout,
    )


def parse_status_server_settings(raw: Dict[str, Any]) -> StatusServerSettings:
    try:
        port = int(raw.get('port', 4567))
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid status server port: {raw.get('port')}")

    return StatusServerSettings(
        enabled=bool(raw.get('enabled', True)),
        bind=raw.get('bind', '0.0.0.0'),
        port=port,
        api_key=os.environ.get('DOKSNAP_API_KEY') or raw.get('api_key') or None,
        require_auth=bool(raw.get('require_auth', False)),
    )
