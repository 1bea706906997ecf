import os
import tempfile


def _env_bool(name, default):
    return os.environ.get(name, default).lower() == 'true'


class Config:
    """Base configuration"""

    # Backup configuration file (None = default search path)
    CONFIG_FILE = os.environ.get('LAUNCH_AGENT_CONFIG')

    # Logs
    LAUNCH_AGENT_DIR = os.environ.get('LAUNCH_AGENT_DIR') or os.path.expanduser('~/.launch')
    LOG_DIR = os.environ.get('LOG_DIR') or os.path.join(LAUNCH_AGENT_DIR, 'logs')

    # Scheduler
    SCHEDULER_TIMEZONE = os.environ.get('SCHEDULER_TIMEZONE') or None
    SCHEDULER_MAX_WORKERS = int(os.environ.get('SCHEDULER_MAX_WORKERS', 3))
    SCHEDULER_ENABLED = _env_bool('SCHEDULER_ENABLED', 'true')

    # Control API
    API_TOKEN = os.environ.get('API_TOKEN')


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    LOG_DIR = os.path.join(BASE_DIR, 'data', 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = False
    SCHEDULER_ENABLED = False
    API_TOKEN = None
    LOG_DIR = os.path.join(tempfile.gettempdir(), 'launch-agent-tests', 'logs')


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
