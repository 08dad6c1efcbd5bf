# Flask application factory

import logging

import click
from flask import Flask, jsonify
from sqlalchemy import event
from sqlalchemy.engine import make_url
from werkzeug.exceptions import HTTPException

import config as default_config
from wya.extensions import db, socketio, login_manager
from wya.realtime import realtime
from wya.realtime.errors import RelayError

logger = logging.getLogger(__name__)


def create_app(config=None):
    # Create and configure Flask application
    flask_app = Flask(__name__)

    # Defaults from config.py / config.json, then the override object if any
    for key in default_config.CONFIG_KEYS:
        flask_app.config[key] = getattr(default_config, key)
    if config:
        flask_app.config.from_object(config)

    _setup_logging(flask_app.config['LOG_LEVEL'])

    # Import socket handlers and identity loaders
    import wya.identity  # noqa
    import wya.sockets  # noqa

    # Initialize extensions
    db.init_app(flask_app)
    socketio.init_app(
        flask_app,
        async_mode=flask_app.config['SOCKETIO_ASYNC_MODE'],
        cors_allowed_origins=flask_app.config['CORS_ALLOWED_ORIGINS'],
    )
    login_manager.init_app(flask_app)
    realtime.init_app(flask_app)

    _register_error_handlers(flask_app)

    # Register blueprints
    from wya.routes import auth_bp, api_bp, signal_bp
    flask_app.register_blueprint(auth_bp)
    flask_app.register_blueprint(api_bp)
    flask_app.register_blueprint(signal_bp)

    with flask_app.app_context():
        _init_database()

    _register_commands(flask_app)

    logger.info('[SERVER CONFIG] async_mode=%s database=%s',
                flask_app.config['SOCKETIO_ASYNC_MODE'],
                make_url(flask_app.config['SQLALCHEMY_DATABASE_URI']).render_as_string(hide_password=True))
    return flask_app


def _setup_logging(level):
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute('PRAGMA foreign_keys=ON')
    cursor.close()


def _init_database():
    # Create database tables
    if db.engine.dialect.name == 'sqlite':
        event.listen(db.engine, 'connect', _enable_sqlite_foreign_keys)
    db.create_all()


def _register_error_handlers(flask_app):

    @flask_app.errorhandler(RelayError)
    def _relay_error(exc):
        db.session.rollback()
        return jsonify({'error': exc.to_dict()}), exc.status_code

    @flask_app.errorhandler(HTTPException)
    def _http_error(exc):
        body = {'code': (exc.name or 'error').lower().replace(' ', '_'), 'message': exc.description}
        return jsonify({'error': body}), exc.code

    @flask_app.errorhandler(Exception)
    def _unexpected_error(exc):
        db.session.rollback()
        logger.exception('[SERVER ERROR] Unhandled exception')
        return jsonify({'error': {'code': 'internal_error', 'message': 'Internal server error'}}), 500


def _register_commands(flask_app):

    @flask_app.cli.command('purge-signals')
    @click.option('--older-than', type=int, default=None,
                  help='Age in seconds; defaults to SIGNAL_RETENTION_SECONDS.')
    def purge_signals(older_than):
        """Delete WebRTC signal envelopes past retention."""
        removed = realtime.signals.purge_expired(older_than)
        click.echo(f'Purged {removed} signal envelope(s)')
