"""
Combat Ledger - Flask Application

Main entry point. Runs a Flask server with WebSocket support that:
- accepts telemetry pushed by the packet decoder (section boundaries,
  connection changes, player profiles, running stats)
- exposes encounter history and manual lifecycle controls as JSON
- pushes encounter lifecycle changes to connected UIs over SocketIO
"""

import argparse
import logging
import os
import sys
from datetime import timedelta

from flask import Flask, Blueprint, current_app, request, jsonify
from flask_socketio import SocketIO, emit

from config import config
from engine import EncounterSync, LiveTelemetry
from persistence import NotFoundError, StoreIOError, ValidationError
from persistence.records import PlayerSnapshot, CombatStatsSnapshot
from settings import UserSettings

__version__ = '0.3.0'

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logger = logging.getLogger(__name__)

socketio = SocketIO()
api = Blueprint('api', __name__)


def setup_logging(log_dir: str = None, level: int = logging.INFO) -> str:
    """Log to <LOG_DIR>/ledger.log and stderr"""
    log_dir = log_dir or config.LOG_DIR
    os.makedirs(log_dir, exist_ok=True)
    log_file_path = os.path.join(log_dir, 'ledger.log')

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[
            logging.FileHandler(log_file_path),
            logging.StreamHandler()
        ]
    )
    return log_file_path


def create_app(sync: EncounterSync, telemetry: LiveTelemetry) -> Flask:
    """
    Build the Flask app around an already-initialized EncounterSync.

    Args:
        sync: Owns the database and encounter lifecycle
        telemetry: Source the ingestion endpoints publish into
    """
    app = Flask(__name__)
    app.config['SECRET_KEY'] = config.SECRET_KEY
    app.config['ENCOUNTER_SYNC'] = sync
    app.config['TELEMETRY'] = telemetry
    app.register_blueprint(api)

    socketio.init_app(app, cors_allowed_origins="*", async_mode='threading')

    def push_update(event_name: str, payload: dict):
        socketio.emit('encounter_update', {'event': event_name, **payload}, namespace='/')

    sync.add_listener(push_update)
    return app


def _sync() -> EncounterSync:
    return current_app.config['ENCOUNTER_SYNC']


def _telemetry() -> LiveTelemetry:
    return current_app.config['TELEMETRY']


def _json_body() -> dict:
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _int_arg(value, name: str, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"'{name}' must be an integer", {'value': value})


# Error handlers
@api.app_errorhandler(ValidationError)
def handle_validation_error(e):
    return jsonify({'error': 'validation', 'message': str(e)}), 400


@api.app_errorhandler(NotFoundError)
def handle_not_found(e):
    return jsonify({'error': 'not_found', 'message': str(e)}), 404


@api.app_errorhandler(StoreIOError)
def handle_store_error(e):
    logger.error(f"Storage failure while handling {request.path}: {e}")
    return jsonify({'error': 'storage', 'message': 'Database unavailable'}), 503


# Flask routes
@api.route('/health')
def health():
    """Health check endpoint for monitoring"""
    return {
        'status': 'ok',
        'version': __version__,
        'sync': _sync().status(),
    }


@api.route('/api/encounters')
def list_encounters():
    count = _int_arg(request.args.get('count'), 'count', config.DEFAULT_HISTORY_COUNT)
    summaries = _sync().list_recent_encounters(count)
    return {'encounters': [s.to_dict() for s in summaries]}


@api.route('/api/encounters/<encounter_id>')
def get_encounter(encounter_id):
    data = _sync().load_encounter(encounter_id)
    if data is None:
        raise NotFoundError("Encounter not found", {'encounter_id': encounter_id})
    return data.to_dict()


@api.route('/api/players/<int:uid>')
def get_player(uid):
    player = _sync().get_cached_player(uid)
    if player is None:
        raise NotFoundError("Player not cached", {'uid': uid})
    return player.to_dict()


@api.route('/api/encounters/start', methods=['POST'])
def start_encounter():
    encounter_id = _sync().start_encounter()
    return {'encounter_id': encounter_id}


@api.route('/api/encounters/end', methods=['POST'])
def end_encounter():
    body = _json_body()
    duration_ms = _int_arg(body.get('duration_ms'), 'duration_ms', 0)
    if duration_ms < 0:
        raise ValidationError("'duration_ms' cannot be negative", {'value': duration_ms})
    return {'ended': _sync().end_encounter(duration_ms)}


@api.route('/api/encounters/save', methods=['POST'])
def save_encounter():
    body = _json_body()
    return {'saved': _sync().save_current_encounter(force=bool(body.get('force', False)))}


@api.route('/api/encounters/cleanup', methods=['POST'])
def cleanup_encounters():
    body = _json_body()
    keep_count = _int_arg(body.get('keep_count'), 'keep_count', config.DEFAULT_KEEP_COUNT)
    return {'deleted': _sync().cleanup_old_encounters(keep_count)}


# Telemetry ingestion
@api.route('/api/telemetry/section', methods=['POST'])
def telemetry_section():
    _telemetry().publish_section_boundary()
    return {'accepted': True}


@api.route('/api/telemetry/connection', methods=['POST'])
def telemetry_connection():
    body = _json_body()
    if 'connected' not in body:
        raise ValidationError("'connected' is required")
    _telemetry().publish_connection_state(bool(body['connected']))
    return {'accepted': True}


@api.route('/api/telemetry/player', methods=['POST'])
def telemetry_player():
    snapshot = PlayerSnapshot.from_dict(_json_body())
    _telemetry().publish_player_info(snapshot)
    return {'accepted': True, 'uid': snapshot.uid}


@api.route('/api/telemetry/stats', methods=['POST'])
def telemetry_stats():
    body = _json_body()
    entries = body.get('players', [body])
    if not isinstance(entries, list):
        raise ValidationError("'players' must be a list")
    snapshots = [CombatStatsSnapshot.from_dict(entry) for entry in entries]
    telemetry = _telemetry()
    for snapshot in snapshots:
        telemetry.record_stats(snapshot)
    return {'accepted': len(snapshots)}


@api.route('/api/telemetry/reset', methods=['POST'])
def telemetry_reset():
    _telemetry().reset_section()
    return {'accepted': True}


# WebSocket event handlers
@socketio.on('connect')
def handle_connect():
    """Client connected to WebSocket"""
    logger.info('UI connected via WebSocket')
    emit('status_update', _sync().status())


@socketio.on('disconnect')
def handle_disconnect():
    """Client disconnected from WebSocket"""
    logger.info('UI disconnected from WebSocket')


@socketio.on('request_history')
def handle_request_history(data=None):
    """Client requesting the encounter list"""
    count = config.DEFAULT_HISTORY_COUNT
    if isinstance(data, dict) and data.get('count'):
        try:
            count = _int_arg(data['count'], 'count', count)
        except ValidationError:
            logger.warning(f"Ignoring bad history count: {data['count']!r}")
    try:
        summaries = _sync().list_recent_encounters(count)
    except StoreIOError as e:
        logger.error(f"History request failed: {e}")
        emit('log_message', {'message': 'Database unavailable', 'level': 'error'})
        return
    emit('history_update', {'encounters': [s.to_dict() for s in summaries]})


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description='Record combat encounters from the live feed')
    parser.add_argument('--db', help='Database file (default: user setting or data dir)')
    parser.add_argument('--host', default=config.HOST)
    parser.add_argument('--port', type=int, default=config.PORT)
    parser.add_argument('--no-cleanup', action='store_true',
                        help='Skip retention cleanup at startup')
    args = parser.parse_args(argv)

    setup_logging()
    user_settings = UserSettings.load()

    telemetry = LiveTelemetry(section_timeout=timedelta(seconds=config.SECTION_TIMEOUT_SECONDS))
    sync = EncounterSync(telemetry)

    try:
        sync.initialize(args.db or user_settings.resolved_database_path)
    except StoreIOError as e:
        logger.error(f"❌ Cannot open database: {e}")
        return 1

    if user_settings.cleanup_on_startup and not args.no_cleanup:
        deleted = sync.cleanup_old_encounters(user_settings.keep_count)
        if deleted:
            logger.info(f"🧹 Removed {deleted} old encounter(s)")

    app = create_app(sync, telemetry)

    logger.info('=' * 60)
    logger.info('📊 Combat Ledger Starting')
    logger.info(f'Version: {__version__}')
    logger.info(f'Host: {args.host}:{args.port}')
    logger.info(f'Database: {sync.store.path}')
    logger.info('=' * 60)

    try:
        socketio.run(
            app,
            host=args.host,
            port=args.port,
            debug=config.DEBUG,
            allow_unsafe_werkzeug=True,
        )
    finally:
        sync.end_encounter(0)
        sync.shutdown()
    return 0


if __name__ == '__main__':
    sys.exit(main())
