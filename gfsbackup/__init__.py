import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask
from flask_sqlalchemy import SQLAlchemy


# Initialize extensions
db = SQLAlchemy()


def configure_logging(app):
    """Configure application logging"""

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]

    # File handler (skipped when no log directory is configured)
    log_dir = app.config.get('LOG_DIR')
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'gfsbackup.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    # Configure Flask app logger ('gfsbackup'); engine modules log to its children
    app.logger.setLevel(log_level)
    for handler in list(app.logger.handlers):
        app.logger.removeHandler(handler)
        handler.close()
    for handler in handlers:
        app.logger.addHandler(handler)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def _sqlite_directory(uri: str):
    """Directory holding a file-backed SQLite database, or None."""
    if not uri.startswith('sqlite:///') or uri.endswith(':memory:'):
        return None
    return os.path.dirname(uri.replace('sqlite:///', '', 1)) or None


def create_app(config_name=None):
    """Flask application factory"""

    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from gfsbackup.config import config
    app.config.from_object(config[config_name])

    # Configure logging
    configure_logging(app)

    # Ensure required directories exist
    db_dir = _sqlite_directory(app.config['SQLALCHEMY_DATABASE_URI'])
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)

    # Initialize extensions
    db.init_app(app)

    # Register blueprints
    from gfsbackup.routes import jobs_routes, history_routes, dashboard_routes
    app.register_blueprint(jobs_routes.bp)
    app.register_blueprint(history_routes.bp)
    app.register_blueprint(dashboard_routes.bp)

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    # Initialize database schema and run migrations
    from gfsbackup import models
    from gfsbackup.migrations import init_database_schema

    init_database_schema(app)

    # Initialize and start scheduler (only in designated worker or development child process)
    if app.config.get('SCHEDULER_ENABLED', False):
        from gfsbackup.scheduler import init_scheduler, start_scheduler, sync_backup_jobs, stop_scheduler
        import atexit

        # Exactly one process owns the scheduler, so one run at a time writes to a destination:
        # - Development: the Flask reloader child, not the parent
        # - Production: the designated Gunicorn worker (SCHEDULER_WORKER=true)
        is_reloader_child = os.environ.get('WERKZEUG_RUN_MAIN') == 'true'
        is_scheduler_worker = os.environ.get('SCHEDULER_WORKER', 'true').lower() == 'true'
        if app.config.get('DEBUG', False):
            should_init_scheduler = is_reloader_child
        else:
            should_init_scheduler = is_scheduler_worker

        if should_init_scheduler:
            app.logger.info("Initializing scheduler in this process...")
            init_scheduler(app)
            start_scheduler()

            # Sync backup jobs from database to scheduler
            with app.app_context():
                sync_backup_jobs()

            # Register cleanup function to stop scheduler on app shutdown
            atexit.register(stop_scheduler)
            app.logger.info("Scheduler initialized and started successfully")
        else:
            app.logger.info("Scheduler initialization skipped in this process (not the scheduler owner)")
    else:
        app.logger.info("Scheduler disabled by configuration")

    return app
