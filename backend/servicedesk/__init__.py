import logging

from flask import Flask, request
from werkzeug.exceptions import HTTPException
from flask_jwt_extended import JWTManager
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
from sqlalchemy.orm import sessionmaker, scoped_session
from dotenv import load_dotenv
from typing import Optional, Dict, Any

load_dotenv()

db_engine = None
SessionLocal = None
jwt = JWTManager()
logger = logging.getLogger('servicedesk')


def _make_engine(db_url: str):
    if db_url.endswith(':memory:'):
        # one shared in-memory SQLite database for every session
        return create_engine(
            db_url,
            echo=False,
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(db_url, echo=False, future=True)


def create_app(config: Optional[Dict[str, Any]] = None):
    global db_engine, SessionLocal
    from .config.settings import load_settings
    from .errors import ServiceDeskError
    from .models.immutability import register_immutability_listeners
    from .services.collaborators import Collaborators, SequenceNumberGenerator
    from .services.dispatch import PostCommitDispatcher
    from .utils.log import configure_logging

    app = Flask(__name__)
    app.config.update(load_settings())
    if config:
        app.config.update(config)
    configure_logging(app.config['LOG_LEVEL'], app.config['LOG_JSON'])

    db_engine = _make_engine(app.config['DATABASE_URL'])
    SessionLocal = scoped_session(sessionmaker(bind=db_engine, expire_on_commit=False, autoflush=False))
    register_immutability_listeners()

    jwt.init_app(app)

    app.extensions['servicedesk.dispatcher'] = PostCommitDispatcher(
        app.config['DISPATCH_MODE'], int(app.config['DISPATCH_MAX_WORKERS'])
    )
    app.extensions['servicedesk.collaborators'] = Collaborators(
        numbers=SequenceNumberGenerator(app.config['TICKET_NUMBER_PREFIX'])
    )

    from .routes.tickets import tickets_bp
    from .routes.inventory import inv_bp
    app.register_blueprint(tickets_bp, url_prefix='/tickets')
    app.register_blueprint(inv_bp, url_prefix='/inventory')

    @app.route('/healthz')
    def health():
        return {'status': 'ok'}

    @app.teardown_appcontext
    def remove_session(exc=None):  # type: ignore
        SessionLocal.remove()

    @app.errorhandler(ServiceDeskError)
    def handle_domain_error(e):  # type: ignore
        return {'error': e.to_dict()}, e.status

    @app.errorhandler(Exception)
    def handle_errors(e):  # type: ignore
        if isinstance(e, HTTPException):
            return {
                'error': {
                    'status': e.code,
                    'code': (e.name or 'http_error').lower().replace(' ', '_'),
                    'title': e.name,
                    'detail': e.description,
                }
            }, e.code
        logger.exception('unhandled exception', extra={'operation': f'{request.method} {request.path}'})
        return {
            'error': {
                'status': 500,
                'code': 'internal_error',
                'title': 'Internal Server Error',
                'detail': 'Unexpected error',
            }
        }, 500

    return app


def get_db():
    return SessionLocal()
