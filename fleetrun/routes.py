# fleetrun/routes.py

import os
from functools import wraps

from flask import current_app, jsonify, request

from .config import load_targets, resolve_targets
from .execution.context import create_runner_for_target, resolve_target_transport
from .executor import Executor, summarize
from .task import Task


class RequestError(ValueError):
    """Raised for malformed API payloads; rendered as a 400 response."""


def error_handler(f):
    """Decorator for consistent error handling across all routes"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except RequestError as e:
            return jsonify({'error': str(e)}), 400
        except Exception as e:
            current_app.logger.error(f"Error in {f.__name__}: {e}")
            current_app.logger.error("Traceback:", exc_info=True)
            return jsonify({'error': str(e)}), 500
    return decorated_function


def register_routes(app):
    executor = Executor(app.config, logger=app.logger)

    def _forbidden_response():
        return jsonify({'error': 'Forbidden'}), 403

    def _is_localhost_request(request_obj):
        return request_obj.remote_addr in {"127.0.0.1", "::1"}

    def _payload():
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            raise RequestError('Request body must be a JSON object')
        return payload

    def _required(payload, key):
        value = payload.get(key)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise RequestError(f'{key} is required')
        return value

    def _targets(payload):
        names = _required(payload, 'targets')
        if isinstance(names, str):
            names = [names]
        if not isinstance(names, list) or not names:
            raise RequestError('targets must be a non-empty list of target names')
        try:
            return resolve_targets(app.config, names)
        except KeyError as exc:
            raise RequestError(exc.args[0]) from exc

    def _timeout(payload):
        timeout = payload.get('timeout')
        if timeout is not None and (isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0):
            raise RequestError('timeout must be a positive number')
        return timeout

    def _respond(result_set):
        return jsonify(summarize(result_set))

    @app.route('/health', methods=['GET'])
    @error_handler
    def health():
        targets = {}
        for name, target in load_targets(app.config).items():
            entry = {
                'transport': resolve_target_transport(target),
                'host': target.host,
            }
            try:
                runner = create_runner_for_target(target, app.config, logger=app.logger)
                entry['shell'] = runner.shell.name
                entry['valid'] = True
            except Exception as exc:
                app.logger.warning("Target %s failed validation: %s", name, exc)
                entry['valid'] = False
                entry['error'] = str(exc)
            targets[name] = entry

        return jsonify({
            'status': 'ok',
            'configuration': {
                'targets': targets,
                'max_workers': executor.max_workers,
            },
        })

    @app.route('/api/targets', methods=['GET'])
    @error_handler
    def list_targets():
        return jsonify({
            'targets': [
                {'name': name, 'host': target.host, 'transport': target.transport}
                for name, target in load_targets(app.config).items()
            ]
        })

    @app.route('/api/command', methods=['POST'])
    @error_handler
    def run_command():
        if not _is_localhost_request(request):
            return _forbidden_response()
        payload = _payload()
        command = _required(payload, 'command')
        if not isinstance(command, str):
            raise RequestError('command must be a string')
        return _respond(executor.run_command(_targets(payload), command, timeout=_timeout(payload)))

    @app.route('/api/script', methods=['POST'])
    @error_handler
    def run_script():
        if not _is_localhost_request(request):
            return _forbidden_response()
        payload = _payload()
        script = _required(payload, 'script')
        arguments = payload.get('arguments') or []
        if not isinstance(arguments, list):
            raise RequestError('arguments must be a list')
        if not os.path.isfile(script):
            raise RequestError(f'Script not found: {script}')
        return _respond(executor.run_script(_targets(payload), script, arguments, timeout=_timeout(payload)))

    @app.route('/api/task', methods=['POST'])
    @error_handler
    def run_task():
        if not _is_localhost_request(request):
            return _forbidden_response()
        payload = _payload()
        task_path = _required(payload, 'task')
        arguments = payload.get('arguments') or {}
        if not isinstance(arguments, dict):
            raise RequestError('arguments must be an object')
        try:
            task = Task.from_path(task_path)
        except (FileNotFoundError, ValueError) as exc:
            raise RequestError(str(exc)) from exc
        return _respond(executor.run_task(_targets(payload), task, arguments, timeout=_timeout(payload)))

    @app.route('/api/upload', methods=['POST'])
    @error_handler
    def upload_file():
        if not _is_localhost_request(request):
            return _forbidden_response()
        payload = _payload()
        source = _required(payload, 'source')
        destination = _required(payload, 'destination')
        if not os.path.exists(source):
            raise RequestError(f'Upload source not found: {source}')
        return _respond(executor.upload_file(_targets(payload), source, destination))
