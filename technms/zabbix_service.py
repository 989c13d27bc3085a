"""
Zabbix JSON-RPC service wrapper.
Every dashboard route goes through this class to reach api_jsonrpc.php.
"""

from typing import Any, Dict, Optional
import logging

import requests
import urllib3


logger = logging.getLogger('gunicorn.error')


class ZabbixServiceError(Exception):
    """Custom exception for Zabbix service errors."""
    pass


class ZabbixHTTPError(ZabbixServiceError):
    """Zabbix answered with a non-2xx HTTP status."""

    def __init__(self, status: int, body: Any):
        super().__init__(f"Zabbix returned HTTP {status}")
        self.status = status
        self.body = body


class ZabbixAPIError(ZabbixServiceError):
    """Zabbix answered with a JSON-RPC error object (or without a result)."""

    def __init__(self, error: Any, body: Any = None):
        if isinstance(error, dict):
            message = error.get('data') or error.get('message') or "Zabbix rejected the request"
        else:
            message = str(error) if error else "Zabbix rejected the request"
        super().__init__(message)
        self.error = error if error else {'message': "Zabbix rejected the request"}
        self.body = body


class ZabbixService:
    """
    Service class for interacting with the Zabbix API.
    Holds one pooled HTTP session; tokens are passed per call.
    """

    def __init__(self, url: str, verify_ssl: bool = False, timeout: int = 15):
        self.url = url
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        self.session = requests.Session()
        if not verify_ssl:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    def _headers(self, token: Optional[str]) -> Dict[str, str]:
        headers = {'Content-Type': 'application/json-rpc'}
        if token:
            headers['Authorization'] = f'Bearer {token}'
        return headers

    def request(self, payload: dict, token: Optional[str] = None) -> Any:
        """
        POST a raw JSON-RPC payload and return the decoded body.
        Raises ZabbixHTTPError on HTTP error status, ZabbixServiceError
        when Zabbix cannot be reached or the body is not JSON.
        """
        try:
            response = self.session.post(
                self.url,
                json=payload,
                headers=self._headers(token),
                timeout=self.timeout,
                verify=self.verify_ssl,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"[ZABBIX] {payload.get('method')} unreachable: {e}")
            raise ZabbixServiceError(f"Could not reach Zabbix API: {e}") from e

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = response.text
            logger.warning(f"[ZABBIX] {payload.get('method')} HTTP {response.status_code}")
            raise ZabbixHTTPError(response.status_code, body)

        try:
            return response.json()
        except ValueError as e:
            raise ZabbixServiceError("Zabbix returned a non-JSON response") from e

    def call(self, method: str, params: Any = None, token: Optional[str] = None,
             request_id: int = 1) -> Any:
        """Call a JSON-RPC method and return its result."""
        payload = {
            'jsonrpc': '2.0',
            'method': method,
            'params': params if params is not None else {},
            'id': request_id,
        }
        body = self.request(payload, token=token)

        if not isinstance(body, dict) or 'error' in body or 'result' not in body:
            error = body.get('error') if isinstance(body, dict) else None
            logger.warning(f"[ZABBIX] {method} rejected: {error}")
            raise ZabbixAPIError(error, body)

        return body['result']

    # ------------------------------------------------------------------
    # Session helpers
    # ------------------------------------------------------------------

    def login(self, username: str, password: str) -> str:
        """Log in and return the session token."""
        return self.call('user.login', {
            'username': username,
            'password': password,
            'userData': False,
        })

    def logout(self, token: str) -> bool:
        return bool(self.call('user.logout', [], token=token))

    def version(self) -> str:
        """API version; apiinfo.version must be called without auth."""
        return self.call('apiinfo.version', {})
