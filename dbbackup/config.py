import os
from dataclasses import dataclass, field
from typing import List, Optional, Mapping


class ConfigError(ValueError):
    """Raised when configuration is invalid, before any I/O is performed."""
    pass


class Config:
    """Base configuration"""

    DEBUG = os.environ.get('DB_DEBUG', 'false').lower() == 'true'

    # Working files
    TEMP_DIR = os.environ.get('DB_TMP') or '/tmp'
    LOG_DIR = os.environ.get('DB_LOG_DIR')

    # Lifecycle hook directories
    PRE_BACKUP_SCRIPTS = '/scripts.d/pre-backup'
    POST_BACKUP_SCRIPTS = '/scripts.d/post-backup'
    PRE_RESTORE_SCRIPTS = '/scripts.d/pre-restore'
    POST_RESTORE_SCRIPTS = '/scripts.d/post-restore'

    # Dump defaults
    FREQUENCY = 1440
    BEGIN = '+0'
    COMPRESSION = 'gzip'
    FILENAME_PATTERN = 'db_backup_{{ .now }}.{{ .compression }}'
    DB_PORT = 3306


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    PRE_BACKUP_SCRIPTS = os.path.join(DATA_DIR, 'scripts.d', 'pre-backup')
    POST_BACKUP_SCRIPTS = os.path.join(DATA_DIR, 'scripts.d', 'post-backup')
    PRE_RESTORE_SCRIPTS = os.path.join(DATA_DIR, 'scripts.d', 'pre-restore')
    POST_RESTORE_SCRIPTS = os.path.join(DATA_DIR, 'scripts.d', 'post-restore')


class ProductionConfig(Config):
    """Production configuration"""
    pass


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}


def get_config(config_name: str = None, environ: Mapping[str, str] = None):
    """
    Select the configuration class.

    Args:
        config_name: Key in the config mapping; read from DB_ENV when omitted

    Raises:
        ConfigError: If the name is not a known configuration
    """
    if config_name is None:
        environ = os.environ if environ is None else environ
        config_name = environ.get('DB_ENV') or 'production'

    if config_name not in config:
        raise ConfigError(
            f"Unknown environment {config_name!r}. Valid options: {list(config.keys())}"
        )
    return config[config_name]


@dataclass(frozen=True)
class Credentials:
    """
    Secrets shared by every backend for the duration of a run.

    smb_credentials uses the "user%password" form; the user part may carry a
    domain as "domain;user".
    """
    aws_endpoint_url: Optional[str] = None
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    aws_region: Optional[str] = None
    smb_credentials: Optional[str] = None


@dataclass
class SchedulePolicy:
    once: bool = False
    cron: Optional[str] = None
    begin: str = Config.BEGIN
    frequency: int = Config.FREQUENCY


@dataclass
class DumpOptions:
    """Everything one backup cycle needs, passed explicitly down the call chain."""
    targets: List[str]
    credentials: Credentials = field(default_factory=Credentials)
    compression: str = Config.COMPRESSION
    filename_pattern: str = Config.FILENAME_PATTERN
    safechars: bool = False
    by_schema: bool = False
    keep_permissions: bool = True
    include: List[str] = field(default_factory=list)
    exclude: List[str] = field(default_factory=list)
    pre_backup_scripts: Optional[str] = Config.PRE_BACKUP_SCRIPTS
    post_backup_scripts: Optional[str] = Config.POST_BACKUP_SCRIPTS
    temp_dir: str = Config.TEMP_DIR
    timeout: Optional[float] = None
    debug: bool = False
    schedule: SchedulePolicy = field(default_factory=SchedulePolicy)


@dataclass
class RestoreOptions:
    target: str
    credentials: Credentials = field(default_factory=Credentials)
    compression: str = Config.COMPRESSION
    pre_restore_scripts: Optional[str] = Config.PRE_RESTORE_SCRIPTS
    post_restore_scripts: Optional[str] = Config.POST_RESTORE_SCRIPTS
    temp_dir: str = Config.TEMP_DIR
    timeout: Optional[float] = None


def _get_bool(environ: Mapping[str, str], key: str, default: bool) -> bool:
    value = environ.get(key)
    if value is None or value == '':
        return default
    value = value.strip().lower()
    if value in ('1', 'true', 'yes', 'on'):
        return True
    if value in ('0', 'false', 'no', 'off'):
        return False
    raise ConfigError(f"Invalid boolean for {key}: {value!r}")


def _get_int(environ: Mapping[str, str], key: str, default: int) -> int:
    value = environ.get(key)
    if value is None or value == '':
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"Invalid integer for {key}: {value!r}")


def _get_float(environ: Mapping[str, str], key: str) -> Optional[float]:
    value = environ.get(key)
    if value is None or value == '':
        return None
    try:
        return float(value)
    except ValueError:
        raise ConfigError(f"Invalid number for {key}: {value!r}")


def _get_list(environ: Mapping[str, str], key: str) -> List[str]:
    """Split a comma and/or whitespace separated variable into a list."""
    value = environ.get(key) or ''
    return [item for item in value.replace(',', ' ').split() if item]


def load_credentials(environ: Mapping[str, str] = None) -> Credentials:
    """
    Build Credentials from the environment.

    SMB_USER and SMB_PASS are joined as "user%password" only when a user is
    set, so that URL userinfo is still used otherwise.
    """
    environ = os.environ if environ is None else environ

    smb_user = environ.get('SMB_USER') or ''
    smb_pass = environ.get('SMB_PASS') or ''
    smb_credentials = f"{smb_user}%{smb_pass}" if smb_user else None

    return Credentials(
        aws_endpoint_url=environ.get('AWS_ENDPOINT_URL') or None,
        aws_access_key_id=environ.get('AWS_ACCESS_KEY_ID') or None,
        aws_secret_access_key=environ.get('AWS_SECRET_ACCESS_KEY') or None,
        aws_region=environ.get('AWS_DEFAULT_REGION') or None,
        smb_credentials=smb_credentials
    )


def load_dump_options(environ: Mapping[str, str] = None, base=Config) -> DumpOptions:
    """
    Build DumpOptions from DB_DUMP_* environment variables.

    Raises:
        ConfigError: If no target is configured or a value is malformed
    """
    environ = os.environ if environ is None else environ

    targets = _get_list(environ, 'DB_DUMP_TARGET')
    if not targets:
        raise ConfigError("At least one target must be provided (DB_DUMP_TARGET)")

    frequency = _get_int(environ, 'DB_DUMP_FREQUENCY', base.FREQUENCY)
    if frequency <= 0:
        raise ConfigError(f"Frequency must be a positive number of minutes: {frequency}")

    schedule = SchedulePolicy(
        once=_get_bool(environ, 'DB_DUMP_ONCE', False),
        cron=environ.get('DB_DUMP_CRON') or None,
        begin=environ.get('DB_DUMP_BEGIN') or base.BEGIN,
        frequency=frequency
    )

    return DumpOptions(
        targets=targets,
        credentials=load_credentials(environ),
        compression=environ.get('DB_COMPRESSION') or base.COMPRESSION,
        filename_pattern=environ.get('DB_DUMP_FILENAME_PATTERN') or base.FILENAME_PATTERN,
        safechars=_get_bool(environ, 'DB_DUMP_SAFECHARS', False),
        by_schema=_get_bool(environ, 'DB_DUMP_BY_SCHEMA', False),
        keep_permissions=_get_bool(environ, 'DB_DUMP_KEEP_PERMISSIONS', True),
        include=_get_list(environ, 'DB_DUMP_INCLUDE'),
        exclude=_get_list(environ, 'DB_DUMP_EXCLUDE'),
        pre_backup_scripts=environ.get('DB_DUMP_PRE_BACKUP_SCRIPTS') or base.PRE_BACKUP_SCRIPTS,
        post_backup_scripts=environ.get('DB_DUMP_POST_BACKUP_SCRIPTS') or base.POST_BACKUP_SCRIPTS,
        temp_dir=environ.get('DB_TMP') or base.TEMP_DIR,
        timeout=_get_float(environ, 'DB_DUMP_TIMEOUT'),
        debug=_get_bool(environ, 'DB_DEBUG', base.DEBUG),
        schedule=schedule
    )


def load_restore_options(environ: Mapping[str, str] = None, base=Config) -> RestoreOptions:
    """
    Build RestoreOptions from DB_RESTORE_* environment variables.

    Raises:
        ConfigError: If no restore target is configured
    """
    environ = os.environ if environ is None else environ

    target = (environ.get('DB_RESTORE_TARGET') or '').strip()
    if not target:
        raise ConfigError("A restore target must be provided (DB_RESTORE_TARGET)")

    return RestoreOptions(
        target=target,
        credentials=load_credentials(environ),
        compression=environ.get('DB_COMPRESSION') or base.COMPRESSION,
        pre_restore_scripts=environ.get('DB_RESTORE_PRE_RESTORE_SCRIPTS') or base.PRE_RESTORE_SCRIPTS,
        post_restore_scripts=environ.get('DB_RESTORE_POST_RESTORE_SCRIPTS') or base.POST_RESTORE_SCRIPTS,
        temp_dir=environ.get('DB_TMP') or base.TEMP_DIR,
        timeout=_get_float(environ, 'DB_RESTORE_TIMEOUT')
    )


def load_database_url(environ: Mapping[str, str] = None):
    """
    Resolve the database URL: DB_URL wins, otherwise it is built from
    DB_SERVER, DB_PORT, DB_USER, DB_PASS and DB_NAME.
    """
    environ = os.environ if environ is None else environ

    if environ.get('DB_URL'):
        return environ['DB_URL']

    server = environ.get('DB_SERVER')
    if not server:
        raise ConfigError("Database server must be provided (DB_SERVER or DB_URL)")

    from dbbackup.backup.database import database_url
    return database_url(
        server=server,
        port=_get_int(environ, 'DB_PORT', Config.DB_PORT),
        user=environ.get('DB_USER') or None,
        password=environ.get('DB_PASS') or None,
        database=environ.get('DB_NAME') or None
    )
