import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask

__version__ = '1.0.0'


def resolve_log_level(app) -> int:
    """
    Log level from LOG_LEVEL (name or number), else DEBUG/INFO by environment.

    Raises:
        ValueError: If LOG_LEVEL names no known level
    """
    configured = str(app.config.get('LOG_LEVEL') or '').strip()
    if not configured:
        return logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    if configured.isdigit():
        return int(configured)

    level = logging.getLevelName(configured.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown LOG_LEVEL: {configured}")
    return level


def configure_logging(app):
    """Configure application logging"""

    log_dir = app.config['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)

    log_level = resolve_log_level(app)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, app.config.get('LOG_FILE', 'backvault.log')),
        maxBytes=app.config.get('LOG_MAX_BYTES', 10485760),
        backupCount=app.config.get('LOG_BACKUP_COUNT', 10)
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


def create_app(config_name=None, publisher=None):
    """
    Flask application factory

    Args:
        config_name: Key in backvault.config.config (default: FLASK_ENV or 'production')
        publisher: EventPublisher for backup events (default: LoggingPublisher)
    """
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from backvault.config import config, get_backup_settings
    app.config.from_object(config[config_name])

    # Configure logging
    configure_logging(app)

    # Ensure required directories exist
    os.makedirs(app.config['BACKUP_TEMP_DIR'], exist_ok=True)

    # Build immutable backup settings once
    settings = get_backup_settings(app)
    app.logger.info(
        f"Backup '{settings.name}': {len(settings.databases)} database(s), "
        f"destinations: {', '.join(settings.destination_disks)}"
    )

    from backvault.notifications import LoggingPublisher
    app.extensions['backup_publisher'] = publisher or LoggingPublisher()

    from backvault.routes import backup_routes
    app.register_blueprint(backup_routes.bp)

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    # Initialize and start scheduler
    if app.config.get('SCHEDULER_ENABLED', False):
        from backvault.scheduler import init_scheduler, start_scheduler, stop_scheduler
        import atexit

        app.logger.info("Initializing scheduler in this process...")
        init_scheduler(app)
        start_scheduler()

        # Register cleanup function to stop scheduler on app shutdown
        atexit.register(stop_scheduler)
        app.logger.info("Scheduler initialized and started successfully")
    else:
        app.logger.info("Scheduler disabled (SCHEDULER_ENABLED is false)")

    return app
