import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask


__version__ = '0.1.0'

LOG_LEVELS = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warning': logging.WARNING,
    'warn': logging.WARNING,
    'error': logging.ERROR,
}


def configure_logging(level: str = 'info', log_dir: str = '', app=None):
    """
    Configure application logging.

    Args:
        level: general->log_level
        log_dir: Directory for chbackup.log (empty: console only)
        app: Flask app whose logger gets the same handlers
    """
    log_level = LOG_LEVELS.get(level.lower(), logging.INFO)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]

    # File handler
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'chbackup.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=handlers)

    # boto and paramiko are chatty at debug level
    for noisy in ('botocore', 'boto3', 's3transfer', 'urllib3', 'paramiko'):
        logging.getLogger(noisy).setLevel(max(log_level, logging.INFO))
    # the Azure SDK logs every request at info level
    logging.getLogger('azure').setLevel(max(log_level, logging.WARNING))

    if app is not None:
        app.logger.setLevel(log_level)
        for handler in handlers:
            app.logger.addHandler(handler)
        app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_app(config=None, with_scheduler: bool = True):
    """
    Flask application factory for server mode.

    Args:
        config: Validated Config (default: load_config())
        with_scheduler: Start the background scheduler for uploads and retention
    """
    from chbackup.config import load_config

    app = Flask(__name__)

    if config is None:
        config = load_config()
    app.config['CHBACKUP'] = config

    # Configure logging
    configure_logging(config.general.log_level, config.general.log_dir, app)

    from chbackup.routes import backup_routes
    app.register_blueprint(backup_routes.bp)

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    if with_scheduler:
        from chbackup.scheduler import init_scheduler, start_scheduler, stop_scheduler
        import atexit

        app.logger.info("Initializing scheduler in this process...")
        init_scheduler(app)
        start_scheduler()

        # Register cleanup function to stop scheduler on app shutdown
        atexit.register(stop_scheduler)
        app.logger.info("Scheduler initialized and started successfully")

    return app
