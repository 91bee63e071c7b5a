import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask, jsonify


def configure_logging(app):
    """Configure application logging"""

    # Create logs directory if it doesn't exist
    log_dir = app.config.get('LOG_DIR') or os.path.join(os.path.dirname(os.path.dirname(__file__)), 'data', 'logs')
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
        os.path.join(log_dir, 'snapvault.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    # Configure root logger; app.logger propagates to it
    logging.basicConfig(level=log_level, handlers=[console_handler, file_handler], force=True)
    app.logger.setLevel(log_level)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_app(config_name=None, orchestrator=None):
    """
    Flask application factory

    Args:
        config_name: Key into snapvault.config.config (default: FLASK_ENV)
        orchestrator: Pre-built JobOrchestrator (built from config when omitted)
    """
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from snapvault.config import config
    app.config.from_object(config[config_name])

    # Configure logging
    configure_logging(app)

    # Ensure required directories exist
    os.makedirs(app.config['TEMP_DIR'], exist_ok=True)

    # Backup pipeline; invalid settings stop startup here
    if orchestrator is None:
        from snapvault.backup.orchestrator import create_orchestrator
        orchestrator = create_orchestrator(app.config)
    app.extensions['backup_orchestrator'] = orchestrator

    # Register blueprints
    from snapvault.routes import backup_routes
    app.register_blueprint(backup_routes.bp)

    # Health check endpoint
    @app.route('/health')
    def health():
        return jsonify({
            'status': 'healthy',
            'backup_running': app.extensions['backup_orchestrator'].is_running()
        }), 200

    # Initialize and start scheduler (only in designated worker or development child process)
    from snapvault.scheduler import init_scheduler, start_scheduler, stop_scheduler
    import atexit

    is_reloader_child = os.environ.get('WERKZEUG_RUN_MAIN') == 'true'
    is_development = app.config.get('DEBUG', False)
    is_scheduler_worker = os.environ.get('SCHEDULER_WORKER', 'true').lower() == 'true'

    # Scheduler initialization logic:
    # - Development mode: Only in Flask reloader child process (not parent)
    # - Production mode: Only in designated scheduler worker (SCHEDULER_WORKER=true)
    if not app.config.get('SCHEDULER_ENABLED', True):
        should_init_scheduler = False
    elif is_development:
        should_init_scheduler = is_reloader_child
    else:
        should_init_scheduler = is_scheduler_worker

    if should_init_scheduler:
        app.logger.info("Initializing scheduler in this process...")
        init_scheduler(app, orchestrator)
        start_scheduler()

        # Register cleanup function to stop scheduler on app shutdown
        atexit.register(stop_scheduler)
        app.logger.info("Scheduler initialized and started successfully")
    else:
        app.logger.info("Scheduler initialization skipped in this process")

    return app
