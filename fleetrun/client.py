import logging
from typing import Any, Dict, List, Optional, Sequence, Union
from urllib.parse import urljoin

import requests
from requests.adapters import HTTPAdapter, Retry

from .result import ResultSet


class FleetClientError(Exception):
    """Base exception for fleetrun client errors"""
    pass


class FleetAPIError(FleetClientError):
    """Exception for API-related errors"""
    def __init__(self, message: str, status_code: Optional[int] = None, response: Optional[Dict] = None):
        super().__init__(message)
        self.status_code = status_code
        self.response = response


class FleetClient:
    """Python client for the fleetrun HTTP API."""

    def __init__(self,
                 base_url: str = "http://127.0.0.1:1337",
                 timeout: int = 300,
                 max_retries: int = 3,
                 verify_ssl: bool = True,
                 logger: Optional[logging.Logger] = None,
                 headers: Optional[Dict] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.verify_ssl = verify_ssl
        self.logger = logger or logging.getLogger(__name__)
        self.headers = headers or {}
        self.session = self._create_session(max_retries)

    def _create_session(self, max_retries: int) -> requests.Session:
        """Create a session that retries reads; actions are never replayed."""
        session = requests.Session()

        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=0.5,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["HEAD", "GET", "OPTIONS"]
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)

        if not self.verify_ssl:
            session.verify = False
        session.headers.update(self.headers)
        return session

    def _make_request(self, method: str, endpoint: str, **kwargs) -> requests.Response:
        url = urljoin(self.base_url + '/', endpoint.lstrip('/'))
        self.logger.debug("Making %s request to %s", method, url)

        try:
            kwargs.setdefault('timeout', self.timeout)
            response = self.session.request(method, url, **kwargs)
            self.logger.debug("Response status: %s", response.status_code)
            response.raise_for_status()
            return response

        except requests.exceptions.HTTPError:
            try:
                error_data = response.json()
            except ValueError:
                error_data = {'error': response.text}

            error_msg = error_data.get('error', f'HTTP {response.status_code} error')
            raise FleetAPIError(
                error_msg,
                status_code=response.status_code,
                response=error_data
            )
        except requests.exceptions.RequestException as e:
            raise FleetClientError(f"Request failed: {str(e)}")

    @staticmethod
    def _target_names(targets: Union[str, Sequence[str]]) -> List[str]:
        if isinstance(targets, str):
            return [targets]
        return list(targets)

    def _run(self, endpoint: str, payload: Dict[str, Any]) -> ResultSet:
        response = self._make_request('POST', endpoint, json=payload)
        return ResultSet.from_data(response.json().get('results', []))

    def health(self) -> Dict:
        return self._make_request('GET', '/health').json()

    def targets(self) -> List[Dict]:
        return self._make_request('GET', '/api/targets').json().get('targets', [])

    def run_command(self, targets: Union[str, Sequence[str]], command: str,
                    timeout: Optional[float] = None) -> ResultSet:
        payload = {'targets': self._target_names(targets), 'command': command}
        if timeout is not None:
            payload['timeout'] = timeout
        return self._run('/api/command', payload)

    def run_script(self, targets: Union[str, Sequence[str]], script: str,
                   arguments: Optional[Sequence[str]] = None, timeout: Optional[float] = None) -> ResultSet:
        payload = {'targets': self._target_names(targets), 'script': script, 'arguments': list(arguments or [])}
        if timeout is not None:
            payload['timeout'] = timeout
        return self._run('/api/script', payload)

    def run_task(self, targets: Union[str, Sequence[str]], task: str,
                 arguments: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None) -> ResultSet:
        payload = {'targets': self._target_names(targets), 'task': task, 'arguments': dict(arguments or {})}
        if timeout is not None:
            payload['timeout'] = timeout
        return self._run('/api/task', payload)

    def upload_file(self, targets: Union[str, Sequence[str]], source: str, destination: str) -> ResultSet:
        payload = {'targets': self._target_names(targets), 'source': source, 'destination': destination}
        return self._run('/api/upload', payload)

    def close(self):
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
