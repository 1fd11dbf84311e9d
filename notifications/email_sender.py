from typing import Dict, Optional, Any
from datetime import datetime, timezone
import base64
import logging
import time

import requests

from config import SENDPULSE_CONFIG, WARMUP_CONFIG
from notifications.email_templates import html_to_text

logger = logging.getLogger(__name__)


def mask_email(email: str) -> str:
    return (email or '')[:5] + '...'


class SendPulseClient:
    """SendPulse SMTP API客户端"""

    def __init__(self, api_key=None, api_secret=None, base_url=None, session=None):
        self.api_key = api_key if api_key else SENDPULSE_CONFIG.get('api_key')
        self.api_secret = api_secret if api_secret else SENDPULSE_CONFIG.get('api_secret')
        self.base_url = (base_url if base_url else SENDPULSE_CONFIG['base_url']).rstrip('/')
        self.session = session or requests.Session()
        self._token = None
        self._token_expires_at = 0

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.api_secret)

    def get_access_token(self) -> Optional[str]:
        """获取OAuth访问令牌，过期前复用"""
        if self._token and time.time() < self._token_expires_at - 60:
            return self._token
        response = self.session.post(
            f'{self.base_url}/oauth/access_token',
            json={
                'grant_type': 'client_credentials',
                'client_id': self.api_key,
                'client_secret': self.api_secret,
            },
            timeout=SENDPULSE_CONFIG['timeout'],
        )
        if response.status_code != 200:
            logger.error(f"获取SendPulse令牌失败: HTTP {response.status_code}")
            return None
        data = response.json()
        self._token = data.get('access_token')
        self._token_expires_at = time.time() + int(data.get('expires_in', 3600))
        return self._token

    def send_email(self, to_email: str, to_name: str, subject: str, html: str) -> Dict[str, Any]:
        """
        发送单封邮件

        Returns:
            dict: success、response、error；服务商错误不会抛出异常
        """
        if not self.configured:
            return {'success': False, 'error': 'SendPulse is not configured'}
        try:
            token = self.get_access_token()
            if not token:
                return {'success': False, 'error': 'Failed to get SendPulse access token'}
            payload = {
                'email': {
                    'html': base64.b64encode(html.encode('utf-8')).decode('ascii'),
                    'text': html_to_text(html),
                    'subject': subject,
                    'from': {
                        'name': SENDPULSE_CONFIG['from_name'],
                        'email': SENDPULSE_CONFIG['from_email'],
                    },
                    'to': [{'name': to_name or to_email, 'email': to_email}],
                }
            }
            response = self.session.post(
                f'{self.base_url}/smtp/emails',
                json=payload,
                headers={'Authorization': f'Bearer {token}'},
                timeout=SENDPULSE_CONFIG['timeout'],
            )
            try:
                body = response.json()
            except ValueError:
                body = {'raw': response.text}
            if not response.ok:
                return {'success': False, 'response': body, 'error': f'HTTP {response.status_code}'}
            return {'success': True, 'response': body}
        except requests.RequestException as e:
            logger.error(f"SendPulse发送失败 {mask_email(to_email)}: {e}")
            return {'success': False, 'error': str(e)}


def warmup_limit_for_day(day: int) -> int:
    return min(
        WARMUP_CONFIG['initial_daily_limit'] + day * WARMUP_CONFIG['increment_per_day'],
        WARMUP_CONFIG['max_daily_limit'],
    )


class WarmupLimiter:
    """每日发信量预热限制，先检查后自增（非原子）"""

    def __init__(self, supabase):
        self.supabase = supabase

    def _settings(self) -> Optional[Dict]:
        result = self.supabase.table('email_warmup_settings').select('*').limit(1).execute()
        return result.data[0] if result.data else None

    def check(self) -> Dict[str, Any]:
        """
        检查今天是否还能发信，跨天时先重置计数并提高上限

        Returns:
            dict: can_send、daily_limit、emails_sent_today
        """
        try:
            settings = self._settings()
            if not settings:
                return {'can_send': True, 'daily_limit': WARMUP_CONFIG['max_daily_limit'], 'emails_sent_today': 0}

            today = datetime.now(timezone.utc).date().isoformat()
            if str(settings.get('last_reset_date')) != today:
                day = (settings.get('current_warmup_day') or 0) + 1
                settings.update({
                    'emails_sent_today': 0,
                    'current_warmup_day': day,
                    'daily_limit': warmup_limit_for_day(day),
                    'last_reset_date': today,
                })
                self.supabase.table('email_warmup_settings').update({
                    'emails_sent_today': 0,
                    'current_warmup_day': day,
                    'daily_limit': settings['daily_limit'],
                    'last_reset_date': today,
                }).eq('id', settings['id']).execute()

            sent = settings.get('emails_sent_today') or 0
            limit = settings.get('daily_limit') or 0
            if settings.get('is_warmup_active') and sent >= limit:
                logger.warning(f"今日发信已达上限: {sent}/{limit}")
                return {'can_send': False, 'daily_limit': limit, 'emails_sent_today': sent}
            return {'can_send': True, 'daily_limit': limit, 'emails_sent_today': sent}
        except Exception as e:
            logger.error(f"检查邮件预热设置失败: {e}")
            return {'can_send': True, 'daily_limit': WARMUP_CONFIG['max_daily_limit'], 'emails_sent_today': 0}

    def increment(self):
        try:
            settings = self._settings()
            if settings:
                self.supabase.table('email_warmup_settings').update({
                    'emails_sent_today': (settings.get('emails_sent_today') or 0) + 1,
                    'updated_at': datetime.now(timezone.utc).isoformat(),
                }).eq('id', settings['id']).execute()
        except Exception as e:
            logger.error(f"更新发信计数失败: {e}")


class EmailService:
    """事务邮件：开关检查、预热限制、发送与日志"""

    def __init__(self, supabase, client: SendPulseClient = None):
        self.supabase = supabase
        self.client = client or SendPulseClient()
        self.warmup = WarmupLimiter(supabase)

    def is_email_enabled(self, setting_key: str) -> bool:
        """email_settings 中没有记录时默认开启"""
        try:
            result = self.supabase.table('email_settings').select('is_enabled').eq('setting_key', setting_key).execute()
            if not result.data:
                return True
            return bool(result.data[0].get('is_enabled'))
        except Exception as e:
            logger.error(f"读取邮件设置失败 {setting_key}: {e}")
            return True

    def log_email(self, email_type: str, recipient_email: str, subject: str, status: str,
                  recipient_id: str = None, document_id: str = None, response: Any = None,
                  error_message: str = None, metadata: Dict[str, Any] = None):
        try:
            self.supabase.table('transactional_email_logs').insert({
                'email_type': email_type,
                'recipient_id': recipient_id,
                'recipient_email': recipient_email,
                'subject': subject,
                'document_id': document_id,
                'status': status,
                'provider_response': response,
                'error_message': error_message,
                'metadata': metadata,
                'sent_at': datetime.now(timezone.utc).isoformat() if status == 'sent' else None,
            }).execute()
        except Exception as e:
            logger.error(f"写入邮件日志失败: {e}")

    def send_transactional(self, email_type: str, setting_key: str, to_email: str, to_name: str,
                           subject: str, html: str, recipient_id: str = None,
                           document_id: str = None) -> Dict[str, Any]:
        """
        发送一封事务邮件

        Args:
            email_type: 日志中的邮件类型
            setting_key: email_settings 开关
            to_email: 收件人
            to_name: 收件人名称
            subject: 主题
            html: 邮件HTML
            recipient_id: 收件用户ID
            document_id: 关联文档

        Returns:
            dict: success / skipped / error
        """
        if not to_email:
            return {'success': False, 'skipped': True, 'error': 'No recipient'}
        if setting_key and not self.is_email_enabled(setting_key):
            logger.info(f"邮件类型 {setting_key} 已关闭，跳过")
            return {'success': False, 'skipped': True, 'error': 'Email type disabled'}
        if not self.warmup.check()['can_send']:
            self.log_email(email_type, to_email, subject, 'skipped', recipient_id, document_id,
                           error_message='Daily warm-up limit reached')
            return {'success': False, 'skipped': True, 'error': 'Daily warm-up limit reached'}

        result = self.client.send_email(to_email, to_name, subject, html)
        if result['success']:
            self.warmup.increment()
        self.log_email(
            email_type, to_email, subject,
            'sent' if result['success'] else 'failed',
            recipient_id, document_id,
            response=result.get('response'),
            error_message=result.get('error'),
        )
        return result
