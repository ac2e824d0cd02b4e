import os


class Config:
    """Base configuration"""

    # Flask
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'gfsbackup-dev-key'

    # Data locations
    DATA_DIR = os.environ.get('DATA_DIR') or '/data'
    LOG_DIR = os.environ.get('LOG_DIR') or os.path.join(DATA_DIR, 'logs')

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or f'sqlite:///{os.path.join(DATA_DIR, "gfsbackup.db")}'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Backups
    DEFAULT_COMPRESSION = os.environ.get('DEFAULT_COMPRESSION') or 'tar.gz'

    # Scheduler
    SCHEDULER_ENABLED = os.environ.get('SCHEDULER_ENABLED', 'true').lower() == 'true'
    SCHEDULER_TIMEZONE = 'UTC'
    RETENTION_CRON = os.environ.get('RETENTION_CRON') or '0 2 * * *'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = False

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "gfsbackup.db")}'


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Test configuration: in-memory database, no scheduler, console logging only"""
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SCHEDULER_ENABLED = False
    LOG_DIR = None


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
