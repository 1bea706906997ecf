import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask


def configure_logging(app):
    """Configure application logging"""

    # Create logs directory if it doesn't exist
    log_dir = app.config['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'launch-agent.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=[console_handler, file_handler])

    # Configure Flask app logger
    app.logger.setLevel(log_level)
    app.logger.addHandler(console_handler)
    app.logger.addHandler(file_handler)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_app(config_name=None, config_file=None, start_scheduler=None):
    """
    Flask application factory.

    Loads the backup configuration, builds the scheduler and mounts the
    status and control API. The scheduler is rebuilt on every successful
    configuration reload.

    Raises:
        ConfigError: If the backup configuration cannot be loaded
    """
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from launch_agent.config import config
    app.config.from_object(config[config_name])

    if config_file is not None:
        app.config['CONFIG_FILE'] = config_file

    # Configure logging
    configure_logging(app)

    from launch_agent.loader import ConfigStore
    from launch_agent.scheduler import Scheduler

    store = ConfigStore(app.config.get('CONFIG_FILE'))
    store.load()

    scheduler = Scheduler(
        store,
        timezone=app.config.get('SCHEDULER_TIMEZONE'),
        max_workers=app.config.get('SCHEDULER_MAX_WORKERS', 3)
    )
    app.extensions['launch_agent'] = {
        'store': store,
        'scheduler': scheduler,
    }

    # Register blueprints
    from launch_agent.routes import models_routes, status_routes
    app.register_blueprint(status_routes.bp)
    app.register_blueprint(models_routes.bp)

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    if start_scheduler is None:
        start_scheduler = app.config.get('SCHEDULER_ENABLED', True)

    if start_scheduler:
        import atexit

        store.on_change(scheduler.restart)
        app.logger.info("Starting scheduler...")
        failures = scheduler.start()
        for job_id, error in failures:
            app.logger.error(f"Job {job_id} was not scheduled: {error}")

        # Register cleanup function to stop scheduler on app shutdown
        atexit.register(scheduler.stop)
        app.logger.info("Scheduler started successfully")
    else:
        app.logger.info("Scheduler disabled by configuration")

    return app
