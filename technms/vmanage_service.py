"""
Cisco vManage (SD-WAN) client and BFD down-session alert mail.
"""

from typing import Any, Dict, List, Optional
import logging
import smtplib
from email.message import EmailMessage

import requests
import urllib3


logger = logging.getLogger('gunicorn.error')

ALERT_SUBJECT = "SD-WAN BFD Session DOWN Alert"


class VManageServiceError(Exception):
    """Custom exception for vManage errors; detail holds the upstream body if any."""

    def __init__(self, message: str, detail: Any = None):
        super().__init__(message)
        self.detail = detail if detail is not None else message


class VManageService:
    """
    Polls vManage for devices and their BFD sessions.
    A fresh HTTP session (and login) is used for every poll.
    """

    def __init__(self, base_url: str, username: str, password: str,
                 verify_ssl: bool = False, timeout: int = 30):
        self.base_url = (base_url or '').rstrip('/')
        self.username = username
        self.password = password
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        if not verify_ssl:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    def _url(self, path: str) -> str:
        return f'{self.base_url}{path}'

    def _check(self, response: requests.Response, what: str) -> requests.Response:
        if response.status_code >= 400:
            try:
                detail = response.json()
            except ValueError:
                detail = response.text
            raise VManageServiceError(f"{what} failed with HTTP {response.status_code}", detail)
        return response

    def login(self, session: requests.Session) -> int:
        """Form login; vManage answers with a JSESSIONID cookie."""
        response = session.post(
            self._url('/j_security_check'),
            data={'j_username': self.username or '', 'j_password': self.password or ''},
            headers={'Content-Type': 'application/x-www-form-urlencoded'},
            timeout=self.timeout,
            verify=self.verify_ssl,
        )
        self._check(response, "vManage login")
        if not session.cookies:
            raise VManageServiceError("No cookies returned from vManage")
        return response.status_code

    def client_token(self, session: requests.Session) -> str:
        response = session.get(
            self._url('/dataservice/client/token'),
            timeout=self.timeout,
            verify=self.verify_ssl,
        )
        token = self._check(response, "vManage token").text.strip()
        if not token or token.startswith('<'):
            # an expired or rejected session gets the HTML login page
            raise VManageServiceError("vManage returned no XSRF token", response.text)
        return token

    def _data_list(self, response: requests.Response, what: str) -> List[dict]:
        """The 'data' list of a dataservice answer."""
        self._check(response, what)
        try:
            body = response.json()
        except ValueError as e:
            raise VManageServiceError(f"{what} returned a non-JSON answer", response.text) from e
        if not isinstance(body, dict):
            raise VManageServiceError(f"{what} returned an unexpected answer", body)
        data = body.get('data')
        return [d for d in data if isinstance(d, dict)] if isinstance(data, list) else []

    def devices(self, session: requests.Session, token: str) -> List[dict]:
        response = session.get(
            self._url('/dataservice/device'),
            headers={'X-XSRF-TOKEN': token},
            timeout=self.timeout,
            verify=self.verify_ssl,
        )
        return self._data_list(response, "vManage device list")

    def bfd_sessions(self, session: requests.Session, token: str, device_id: str) -> List[dict]:
        response = session.get(
            self._url('/dataservice/device/bfd/sessions'),
            params={'deviceId': device_id},
            headers={'X-XSRF-TOKEN': token},
            timeout=self.timeout,
            verify=self.verify_ssl,
        )
        return self._data_list(response, f"BFD sessions for {device_id}")

    def poll(self) -> Dict[str, Any]:
        """
        Log in, list devices and fetch BFD sessions for each distinct device id.
        A device whose BFD query fails contributes an empty session list.
        """
        session = requests.Session()
        try:
            try:
                login_status = self.login(session)
                token = self.client_token(session)
                devices = self.devices(session, token)
            except requests.exceptions.RequestException as e:
                raise VManageServiceError(f"Could not reach vManage: {e}") from e

            device_ids = []
            for device in devices:
                device_id = device.get('deviceId')
                if isinstance(device_id, str) and device_id.strip() and device_id not in device_ids:
                    device_ids.append(device_id)

            bfd = []
            for device_id in device_ids:
                try:
                    sessions = self.bfd_sessions(session, token, device_id)
                except (requests.exceptions.RequestException, VManageServiceError) as e:
                    logger.warning(f"[SDWAN] BFD query failed for {device_id}: {e}")
                    sessions = []
                bfd.append({'deviceId': device_id, 'sessions': sessions})
        finally:
            session.close()

        return {
            'login': {'status': login_status},
            'token': token,
            'devices': [dict(d, deviceId=d.get('deviceId')) for d in devices],
            'deviceIds': device_ids,
            'bfdSessions': bfd,
        }


def collect_down_sessions(bfd_sessions: List[dict]) -> List[dict]:
    """Flatten BFD sessions whose state is 'down'."""
    down = []
    for item in bfd_sessions:
        for s in item.get('sessions') or []:
            if s.get('state') == 'down':
                down.append({
                    'deviceId': item.get('deviceId'),
                    'hostname': s.get('vdevice-host-name') or 'NA',
                    'color': s.get('color') or 'NA',
                    'localColor': s.get('local-color') or 'NA',
                    'state': s.get('state'),
                })
    return down


def format_alert_body(down_sessions: List[dict]) -> str:
    blocks = []
    for d in down_sessions:
        blocks.append(
            f"Hostname: {d['hostname']}\n"
            f"IP / DeviceId: {d['deviceId']}\n"
            f"Color: {d['color']}\n"
            f"Local Color: {d['localColor']}\n"
            f"State: {d['state']}\n"
            "------------------------------\n"
        )
    return "The following BFD tunnels are DOWN:\n\n" + "\n".join(blocks)


def send_bfd_alert(down_sessions: List[dict], host: Optional[str], port: int = 587,
                   user: Optional[str] = None, password: Optional[str] = None,
                   mail_to: Optional[str] = None) -> bool:
    """
    Mail one alert listing every down session.
    Returns False (and sends nothing) when SMTP or the recipient is not configured.
    """
    if not down_sessions:
        return False
    if not host or not mail_to:
        logger.warning("[SDWAN] SMTP_HOST or ALERT_MAIL_TO not set, alert mail skipped")
        return False

    msg = EmailMessage()
    msg['Subject'] = ALERT_SUBJECT
    msg['From'] = f'SD-WAN Monitor <{user or "sdwan-monitor@localhost"}>'
    msg['To'] = mail_to
    msg.set_content(format_alert_body(down_sessions))

    with smtplib.SMTP(host, port, timeout=15) as server:
        server.ehlo()
        if server.has_extn('starttls'):
            server.starttls()
            server.ehlo()
        if user and password:
            server.login(user, password)
        server.send_message(msg)

    logger.info(f"[SDWAN] Alert mail sent for {len(down_sessions)} down sessions")
    return True
