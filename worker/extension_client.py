from typing import List, Dict, Optional, Any
import logging

import requests

logger = logging.getLogger(__name__)


class ExtensionApiError(Exception):
    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class DocumentClaimedError(ExtensionApiError):
    pass


class ExtensionApiClient:
    """/extension-api 的HTTP客户端"""

    def __init__(self, api_url: str, token: str, session=None, timeout: int = 60):
        self.api_url = api_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({'Authorization': f'Bearer {token}'})

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        response = self.session.request(method, f'{self.api_url}{path}', timeout=self.timeout, **kwargs)
        try:
            body = response.json()
        except ValueError:
            body = {'message': response.text}
        if response.status_code == 409:
            raise DocumentClaimedError(body.get('message', 'Conflict'), 409)
        if not response.ok:
            raise ExtensionApiError(body.get('message') or f'HTTP {response.status_code}', response.status_code)
        return body

    def pending(self) -> List[Dict]:
        return self._request('GET', '/pending').get('documents', [])

    def download(self, document_id: str) -> Dict[str, Any]:
        """领取文档，返回 document 和 signed_url"""
        return self._request('GET', f'/download/{document_id}')

    def fetch_file(self, signed_url: str) -> bytes:
        response = requests.get(signed_url, timeout=self.timeout)
        response.raise_for_status()
        return response.content

    def upload_report(self, document_id: str, report: bytes, report_name: str,
                      similarity_percentage: Optional[float] = None,
                      ai_report: bytes = None, ai_percentage: Optional[float] = None) -> Dict[str, Any]:
        data = {'document_id': document_id}
        if similarity_percentage is not None:
            data['similarity_percentage'] = str(similarity_percentage)
        if ai_percentage is not None:
            data['ai_percentage'] = str(ai_percentage)
        files = {'report': (report_name, report, 'application/pdf')}
        if ai_report:
            files['ai_report'] = (f'ai_{report_name}', ai_report, 'application/pdf')
        return self._request('POST', '/upload-report', data=data, files=files)

    def heartbeat(self, browser_info: Dict[str, Any] = None):
        return self._request('POST', '/heartbeat', json={'browser_info': browser_info or {}})

    def report_error(self, document_id: str, error_message: str):
        return self._request('POST', '/error', json={'document_id': document_id, 'error_message': error_message})

    def slots(self) -> List[Dict]:
        return self._request('GET', '/slots').get('slots', [])

    def update_slot_usage(self, slot_id: str, increment: int = 1) -> Dict[str, Any]:
        return self._request('POST', '/slots/update-usage', json={'slot_id': slot_id, 'increment': increment})
