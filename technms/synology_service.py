"""
Synology DSM Web API wrapper.
All DSM calls are GET requests against /webapi/entry.cgi; the session id
is passed as the _sid query parameter instead of relying on DSM cookies.
"""

from typing import Any, Optional, Tuple
import logging

import requests
import urllib3


logger = logging.getLogger('gunicorn.error')


class SynologyServiceError(Exception):
    """Custom exception for DSM service errors."""
    pass


class SynologyAuthError(SynologyServiceError):
    """DSM refused the login; carries the DSM response body."""

    def __init__(self, body: Any):
        super().__init__("DSM login failed")
        self.body = body


class SynologyService:
    """Service class for the Synology DSM entry.cgi endpoint."""

    ENTRY_PATH = '/webapi/entry.cgi'

    def __init__(self, base_url: str, verify_ssl: bool = False, timeout: int = 10):
        self.base_url = (base_url or '').rstrip('/')
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        self.session = requests.Session()
        if not verify_ssl:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    @property
    def entry_url(self) -> str:
        return f'{self.base_url}{self.ENTRY_PATH}'

    def request(self, params: dict, sid: Optional[str] = None, timeout: int = None) -> Tuple[int, Any]:
        """
        GET entry.cgi with the given query parameters.
        Returns (http_status, body); the body is the raw text when DSM
        does not answer with JSON.
        """
        query = dict(params)
        if sid:
            query['_sid'] = sid
        try:
            response = self.session.get(
                self.entry_url,
                params=query,
                headers={'Accept': 'application/json'},
                timeout=timeout or self.timeout,
                verify=self.verify_ssl,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"[SYNOLOGY] {params.get('api')}.{params.get('method')} unreachable: {e}")
            raise SynologyServiceError(f"Could not reach DSM: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = response.text
        return response.status_code, body

    def entry(self, api: str, version: int, method: str, sid: Optional[str] = None, **params) -> Any:
        """Call a DSM API method and return the decoded body."""
        query = {'api': api, 'version': version, 'method': method}
        query.update({k: v for k, v in params.items() if v is not None})
        _, body = self.request(query, sid=sid)
        return body

    def login(self, account: str, passwd: str) -> str:
        """Log in to DSM and return the session id."""
        body = self.entry(
            'SYNO.API.Auth', 6, 'login',
            account=account,
            passwd=passwd,
            session='Core',
            format='sid',
        )
        if not isinstance(body, dict) or not body.get('success'):
            raise SynologyAuthError(body)

        sid = (body.get('data') or {}).get('sid')
        if not sid:
            raise SynologyAuthError(body)
        return sid

    def logout(self, sid: str) -> Any:
        return self.entry('SYNO.API.Auth', 6, 'logout', sid=sid, session='Core')

    def ping(self) -> Tuple[int, Any]:
        """Reachability check; any HTTP answer counts as reachable."""
        return self.request({}, timeout=5)
