# palenque/__init__.py
import os
from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_restful import Api
from flask_cors import CORS
from flask_bcrypt import Bcrypt
from flask_jwt_extended import JWTManager
from flask_apscheduler import APScheduler
from datetime import datetime, timezone
from palenque.config import config_by_name
from palenque.errors import ServiceError

import logging
log = logging.getLogger(__name__)

db = SQLAlchemy()
migrate = Migrate()
bcrypt = Bcrypt()
jwt = JWTManager()
scheduler = APScheduler()


def pago_expiry_job():
    """Rejects PAGO proposals nobody answered within the timeout and refunds the proposers."""
    app = scheduler.app
    with app.app_context():
        log.debug(f"--- Running PAGO Expiry Job at {datetime.now(timezone.utc)} ---")
        from palenque.services.betting_service import expire_pago_proposals
        try:
            expired = expire_pago_proposals()
            if expired:
                log.info(f"PAGO expiry job: {expired} proposal(s) expired.")
        except Exception as e:
            log.error(f"ERROR in PAGO expiry job: {e}", exc_info=True)
            db.session.rollback()


def betting_window_job():
    """Moves fights whose betting window has ended from 'betting' to 'live'."""
    app = scheduler.app
    with app.app_context():
        log.debug(f"--- Running Betting Window Job at {datetime.now(timezone.utc)} ---")
        from palenque.services.fight_service import close_expired_betting_windows
        try:
            closed = close_expired_betting_windows()
            if closed:
                log.info(f"Betting window job: closed betting on {closed} fight(s).")
        except Exception as e:
            log.error(f"ERROR in betting window job: {e}", exc_info=True)
            db.session.rollback()


def _schedule_job(app, job_id, func, **trigger_args):
    if not scheduler.get_job(job_id):
        app.logger.info(f"Scheduling job '{job_id}'.")
        scheduler.add_job(id=job_id, func=func, replace_existing=True, **trigger_args)
    else:
        app.logger.info(f"Job '{job_id}' already scheduled.")


def create_app(config_name=None):
    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'development')

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    logging.basicConfig(
        level=getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO),
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
    )
    app.logger.info(f"--- Using database URI: {app.config.get('SQLALCHEMY_DATABASE_URI')} ---")

    # --- Initialize extensions with the app object ---
    db.init_app(app)
    migrate.init_app(app, db)
    bcrypt.init_app(app)
    jwt.init_app(app)
    scheduler.init_app(app)

    frontend_url = app.config.get('FRONTEND_URL')

    allowed_origins = [
        "http://localhost:5173",
        "http://127.0.0.1:5173"
    ]

    if frontend_url and frontend_url not in allowed_origins:
        app.logger.info(f"Adding FRONTEND_URL to CORS origins: {frontend_url}")
        allowed_origins.append(frontend_url)

    CORS(app, resources={r"/api/*": {"origins": allowed_origins}}, supports_credentials=True)

    @app.errorhandler(ServiceError)
    def handle_service_error(e):
        return jsonify(e.to_dict()), e.status_code

    @jwt.unauthorized_loader
    def missing_token_callback(reason):
        return jsonify({'message': reason, 'status_code': 401}), 401

    @jwt.invalid_token_loader
    def invalid_token_callback(reason):
        return jsonify({'message': reason, 'status_code': 401}), 401

    @jwt.expired_token_loader
    def expired_token_callback(jwt_header, jwt_payload):
        return jsonify({'message': 'Token has expired', 'status_code': 401}), 401

    api = Api(app)
    from palenque.api.routes import initialize_routes
    initialize_routes(app, api)
    app.logger.info("--- Flask-RESTful API Routes Initialized ---")

    # --- Schedule Jobs ---
    if app.config.get('SCHEDULER_ENABLED'):
        _schedule_job(app, 'pago_expiry_job', pago_expiry_job, trigger='interval', minutes=1)
        _schedule_job(app, 'betting_window_job', betting_window_job, trigger='interval', minutes=1)

        # Start the scheduler AFTER all jobs have been added
        if not scheduler.running:
            try:
                scheduler.start()
                app.logger.info("Scheduler started successfully.")
            except Exception as e:
                app.logger.error(f"Failed to start scheduler: {e}", exc_info=True)
        else:
            app.logger.info("Scheduler already running.")
    else:
        app.logger.info("Scheduler disabled, background jobs not scheduled.")

    if app.debug:
        app.logger.debug("--- Final Registered Routes (app.url_map) ---")
        for rule in app.url_map.iter_rules():
            app.logger.debug(f"Endpoint: {rule.endpoint}, Methods: {list(rule.methods)}, Path: {rule.rule}")

    app.logger.info("--- App Creation Complete ---")

    return app
