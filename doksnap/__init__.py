import os
import atexit
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from flask import Flask, request


class DokSnapState:
    """Per-app runtime objects, stored in app.extensions['doksnap']"""

    def __init__(self, config, job_manager, uploader, rate_limiter):
        self.config = config
        self.job_manager = job_manager
        self.uploader = uploader
        self.rate_limiter = rate_limiter


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
        os.path.join(log_dir, 'doksnap.log'),
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


def add_security_headers(response):
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['X-Frame-Options'] = 'DENY'
    response.headers['X-XSS-Protection'] = '1; mode=block'

    if request.is_secure:
        response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'
    return response


def create_app(config_name=None, doksnap_config=None, uploader=None):
    """
    Flask application factory.

    Args:
        config_name: Key of doksnap.config.config (default: FLASK_ENV or production)
        doksnap_config: Pre-loaded DokSnapConfig (default: load CONFIG_PATH)
        uploader: Pre-built S3Uploader (default: built from the s3 settings)
    """
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from doksnap.config import config, load_config
    app.config.from_object(config[config_name])

    # Configure logging
    configure_logging(app)

    # Ensure required directories exist
    os.makedirs(app.config['TEMP_DIR'], exist_ok=True)

    if doksnap_config is None:
        doksnap_config = load_config(app.config['CONFIG_PATH'], app.config['ALLOWED_BASE_PATHS'])

    app.logger.info(f"Loaded {len(doksnap_config.sources)} source(s) for backup")

    from doksnap.auth import RateLimiter
    from doksnap.backup import BackupJobManager, S3Uploader, UploadError, create_encryptor
    from doksnap.backup.archive import sweep_stale_temp_dirs
    from doksnap.backup.retention import create_retention_manager

    encryptor = create_encryptor(doksnap_config.encryption)
    if uploader is None:
        uploader = S3Uploader(doksnap_config.s3)
        try:
            uploader.test_connection()
            app.logger.info(f"S3 bucket {doksnap_config.s3.bucket} is reachable")
        except UploadError as e:
            # Scheduled runs will retry; each failure lands in job history
            app.logger.warning(f"S3 connection check failed: {e}")

    job_manager = BackupJobManager(
        encryptor,
        uploader,
        create_retention_manager(uploader),
        temp_root=app.config['TEMP_DIR'],
        debug=app.config['DEBUG'],
    )

    app.extensions['doksnap'] = DokSnapState(doksnap_config, job_manager, uploader, RateLimiter())

    # Register blueprints
    from doksnap.routes import status_routes
    app.register_blueprint(status_routes.bp)

    app.after_request(add_security_headers)

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy', 'timestamp': datetime.now(timezone.utc).isoformat()}, 200

    # Leftovers of a crashed previous run
    sweep_stale_temp_dirs(app.config['TEMP_DIR'])

    settings = doksnap_config.status_server
    if settings.require_auth:
        app.logger.info("Status server authentication enabled")
    else:
        app.logger.info("Status server authentication disabled (enable with require_auth: true for production)")

    # Initialize and start scheduler (only in the designated scheduler process)
    from doksnap.scheduler import init_scheduler, start_scheduler, stop_scheduler

    if app.config['SCHEDULER_ENABLED']:
        app.logger.info("Initializing scheduler in this process...")
        init_scheduler(job_manager, doksnap_config.sources)
        start_scheduler()

        # Drain running backups on interpreter exit
        atexit.register(stop_scheduler)
        app.logger.info("Scheduler initialized and started successfully")
    else:
        app.logger.info("Scheduler initialization skipped in this process (SCHEDULER_WORKER=false)")

    return app
