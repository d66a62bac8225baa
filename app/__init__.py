import logging
import os

from flask import Flask, current_app, jsonify
from werkzeug.exceptions import HTTPException

from app.exceptions import LedgerError, NotFoundError
from app.extensions import db, login_manager
from app.logging_config import setup_logging
from config import Config

logger = logging.getLogger(__name__)


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)

    setup_logging(app.config.get('LOG_LEVEL', 'INFO'), app.config.get('LOG_FORMAT', 'standard'))
    os.makedirs(app.instance_path, exist_ok=True)

    # Initialize extensions
    db.init_app(app)
    login_manager.init_app(app)

    from app.models import User
    from app.services.user_service import get_active_user, resolve_acting_user

    @login_manager.user_loader
    def load_user(user_id):
        return get_active_user(int(user_id))

    # Identity comes from the auth provider as a subject header on every request
    @login_manager.request_loader
    def load_user_from_request(request):
        subject = request.headers.get(current_app.config['AUTH_HEADER'])
        if not subject:
            return None
        try:
            user_id = resolve_acting_user(subject)
        except NotFoundError:
            return None
        return db.session.get(User, user_id)

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({
            'error': 'UnauthorizedError',
            'message': 'Authentication required'
        }), 401

    # Register blueprints
    from app.routes.loans import loans_bp
    from app.routes.notifications import notifications_bp
    from app.routes.transactions import transactions_bp

    app.register_blueprint(loans_bp)
    app.register_blueprint(notifications_bp)
    app.register_blueprint(transactions_bp)

    register_error_handlers(app)

    with app.app_context():
        db.create_all()
        logger.info("Database tables ready")

    if app.config.get('SCHEDULER_ENABLED') and not app.config.get('TESTING'):
        from app.jobs.scheduler import init_scheduler
        init_scheduler(app)

    return app


def register_error_handlers(app):
    @app.errorhandler(LedgerError)
    def handle_ledger_error(error):
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        return jsonify({
            'error': error.name.replace(' ', ''),
            'message': error.description
        }), error.code
