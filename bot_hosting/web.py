# web.py - HTTP surface served from a background thread
import asyncio
import logging
import os
import threading
from datetime import datetime

import psutil
from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException
from werkzeug.serving import make_server

from .connections import OUTCOMES
from .errors import PlatformError, ValidationError
from .models import DeploymentRequest

logger = logging.getLogger(__name__)

START_TIME = datetime.now()


def get_uptime() -> str:
    """Get formatted uptime"""
    uptime = datetime.now() - START_TIME
    hours, remainder = divmod(uptime.seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    if uptime.days > 0:
        return f"{uptime.days}d {hours}h {minutes}m"
    elif hours > 0:
        return f"{hours}h {minutes}m {seconds}s"
    return f"{minutes}m {seconds}s"


def get_memory_usage() -> float:
    """Get memory usage in MB"""
    return psutil.Process(os.getpid()).memory_info().rss / 1024 / 1024


def create_app(engine, loop: asyncio.AbstractEventLoop, call_timeout: float = 30) -> Flask:
    """Flask app whose handlers run engine coroutines on the engine's loop"""
    app = Flask(__name__)

    def run(coro):
        return asyncio.run_coroutine_threadsafe(coro, loop).result(timeout=call_timeout)

    def call(fn, *args):
        async def wrapper():
            return fn(*args)
        return run(wrapper())

    @app.route('/')
    def home():
        return jsonify({
            'status': 'online',
            'service': 'Bot Hosting',
            'endpoints': ['/health', '/ping', '/stats', '/api/deploy'],
        })

    @app.route('/health')
    def health():
        return jsonify({
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'uptime': get_uptime(),
            'pending_connections': len(engine.registry),
        }), 200

    @app.route('/ping')
    def ping():
        return jsonify({'message': 'pong', 'timestamp': datetime.now().isoformat()}), 200

    @app.route('/stats')
    def stats():
        return jsonify({
            'uptime': get_uptime(),
            'memory_mb': round(get_memory_usage(), 2),
            'cpu': psutil.cpu_percent(),
            'total_bots': len(engine.store.all_owned_bots()),
            'pending_connections': len(engine.registry),
            'running_deployments': engine.running_deployments,
        }), 200

    @app.route('/api/deploy', methods=['POST'])
    def deploy():
        payload = request.get_json(silent=True) or {}
        deployment = DeploymentRequest.from_dict(payload)
        deployment.validate()
        call(engine.start_deployment, deployment)
        return jsonify({
            'success': True,
            'message': 'Deployment initiated. Check the bot for updates.',
        }), 202

    @app.route('/api/check-app-name/<app_name>')
    def check_app_name(app_name):
        return jsonify({'available': run(engine.check_app_name(app_name))}), 200

    @app.route('/api/trial/<int:user_id>')
    def trial(user_id):
        status = call(engine.trial_status, user_id)
        return jsonify({'success': True, **status}), 200

    @app.route('/api/bots/<int:user_id>')
    def bots(user_id):
        owned = call(engine.list_bots, user_id)
        return jsonify({'success': True, 'bots': [b.public_dict() for b in owned]}), 200

    @app.route('/api/bots/<app_name>/restart', methods=['POST'])
    def restart(app_name):
        run(engine.restart_bot(app_name, _user_id_arg()))
        return jsonify({'success': True, 'message': f'Bot {app_name} is restarting.'}), 200

    @app.route('/api/bots/<app_name>', methods=['DELETE'])
    def delete(app_name):
        remote_ok = run(engine.delete_bot(app_name, _user_id_arg()))
        message = f'Bot {app_name} deleted.'
        if not remote_ok:
            message += ' The platform app could not be removed; an operator has been notified.'
        return jsonify({'success': True, 'message': message}), 200

    @app.route('/api/connections/<app_name>', methods=['POST'])
    def connection_report(app_name):
        payload = request.get_json(silent=True) or {}
        outcome = payload.get('outcome')
        if outcome not in OUTCOMES:
            return jsonify({'error': f"outcome must be one of {', '.join(OUTCOMES)}"}), 400
        matched = call(engine.signal_connection, app_name, outcome, payload.get('detail'))
        return jsonify({'success': True, 'matched': matched}), 200

    @app.errorhandler(ValidationError)
    def validation_error(e):
        status = 404 if e.code == 'bot_not_found' else 400
        return jsonify({'error': str(e), 'code': e.code}), status

    @app.errorhandler(PlatformError)
    def platform_error(e):
        if e.is_not_found:
            return jsonify({'error': e.user_message()}), 404
        return jsonify({'error': e.user_message()}), 502

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({'error': 'Not found', 'path': request.path}), 404

    @app.errorhandler(Exception)
    def server_error(e):
        if isinstance(e, HTTPException):
            return jsonify({'error': e.description}), e.code
        logger.error(f"HTTP handler error: {e}", exc_info=True)
        return jsonify({'error': 'Internal server error'}), 500

    return app


def _user_id_arg():
    value = request.args.get('user_id')
    if value is None:
        payload = request.get_json(silent=True) or {}
        value = payload.get('userId', payload.get('user_id'))
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError("user_id must be a number", code="invalid_user")


class FlaskServer(threading.Thread):
    """Flask server in a separate thread"""

    def __init__(self, engine, loop: asyncio.AbstractEventLoop, host: str, port: int):
        super().__init__(daemon=True)
        self.app = create_app(engine, loop)
        self.host = host
        self.port = port
        self.server = None

    def run(self):
        """Run the Flask server"""
        try:
            self.server = make_server(self.host, self.port, self.app, threaded=True)
            logger.info(f"Flask server starting on http://{self.host}:{self.port}")
            self.server.serve_forever()
        except Exception as e:
            logger.error(f"Flask server error: {e}")

    def stop(self):
        """Stop the Flask server"""
        if self.server:
            self.server.shutdown()
            logger.info("Flask server stopped")
