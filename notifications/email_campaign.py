from typing import List, Dict, Any
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
import hashlib
import hmac
import logging
import time
from urllib.parse import urlencode

from config import SENDPULSE_CONFIG, UNSUBSCRIBE_CONFIG, WARMUP_CONFIG
from notifications.email_sender import EmailService
from notifications.email_templates import render_email
from schemas import EmailSendLog, ROLE_ADMIN, ROLE_CUSTOMER, ROLE_STAFF

logger = logging.getLogger(__name__)

AUDIENCES = ('all', 'customers', 'staff', 'admins', 'specific')
AUDIENCE_ROLES = {'customers': ROLE_CUSTOMER, 'staff': ROLE_STAFF, 'admins': ROLE_ADMIN}
# 这些类型尊重退订
OPT_OUT_TYPES = ('promotional', 'announcement')


# 群发在后台线程中逐封发送，不占用请求线程
CAMPAIGN_EXECUTOR = ThreadPoolExecutor(max_workers=2, thread_name_prefix='campaign')


def _log_campaign_failure(future):
    error = future.exception()
    if error is not None:
        logger.error(f"后台群发失败: {error}", exc_info=error)


def unsubscribe_token(user_id: str) -> str:
    return hmac.new(UNSUBSCRIBE_CONFIG['secret'].encode('utf-8'), str(user_id).encode('utf-8'),
                    hashlib.sha256).hexdigest()


def verify_unsubscribe_token(user_id: str, token: str) -> bool:
    if not UNSUBSCRIBE_CONFIG['secret'] or not user_id or not token:
        return False
    return hmac.compare_digest(unsubscribe_token(user_id), token)


def unsubscribe_url(user_id: str) -> str:
    query = urlencode({'uid': user_id, 'token': unsubscribe_token(user_id)})
    return f"{SENDPULSE_CONFIG['api_url']}/api/unsubscribe?{query}"


class CampaignSender:
    """管理员群发邮件：每位收件人单独一封"""

    def __init__(self, supabase, email_service: EmailService = None, delay: float = None):
        self.supabase = supabase
        self.email = email_service or EmailService(supabase)
        self.delay = WARMUP_CONFIG['send_delay_seconds'] if delay is None else delay

    def resolve_recipients(self, audience: str, email_type: str, specific_user_ids: List[str] = None) -> List[Dict]:
        """
        解析收件人

        Args:
            audience: all / customers / staff / admins / specific
            email_type: 推广与公告类邮件排除已退订用户
            specific_user_ids: audience 为 specific 时的用户ID

        Returns:
            List[Dict]: 去重后的 profile 列表
        """
        if audience not in AUDIENCES:
            raise ValueError(f'Unknown audience: {audience}')

        query = self.supabase.table('profiles').select('id, email, full_name, email_unsubscribed')
        if audience == 'specific':
            if not specific_user_ids:
                return []
            query = query.in_('id', specific_user_ids)
        elif audience in AUDIENCE_ROLES:
            roles = self.supabase.table('user_roles').select('user_id').eq('role', AUDIENCE_ROLES[audience]).execute()
            ids = [row['user_id'] for row in roles.data or []]
            if not ids:
                return []
            query = query.in_('id', ids)
        profiles = query.execute().data or []

        if email_type in OPT_OUT_TYPES:
            profiles = [p for p in profiles if not p.get('email_unsubscribed')]
        if email_type == 'promotional' and profiles:
            prefs = self.supabase.table('user_notification_preferences').select('user_id, promotional_enabled') \
                .in_('user_id', [p['id'] for p in profiles]).execute()
            opted_out = {row['user_id'] for row in prefs.data or [] if row.get('promotional_enabled') is False}
            profiles = [p for p in profiles if p['id'] not in opted_out]

        seen = set()
        recipients = []
        for profile in profiles:
            email = (profile.get('email') or '').strip().lower()
            if not email or email in seen:
                continue
            seen.add(email)
            recipients.append(profile)
        return recipients

    def prepare_campaign(self, payload: Dict[str, Any], sent_by: str) -> Dict[str, Any]:
        """校验内容、确定收件人并写入 email_logs，不发送"""
        email_type = payload.get('type') or 'announcement'
        if not payload.get('subject') or not payload.get('message'):
            raise ValueError('Subject and message are required')
        recipients = self.resolve_recipients(
            payload.get('targetAudience') or 'all', email_type, payload.get('specificUserIds'))
        log_id = payload.get('logId') or self._create_log(payload, email_type, sent_by, len(recipients))
        return {'email_type': email_type, 'recipients': recipients, 'log_id': log_id}

    def send_campaign(self, payload: Dict[str, Any], sent_by: str) -> Dict[str, Any]:
        """
        同步执行一次群发

        Args:
            payload: type, targetAudience, specificUserIds, subject, title, message, ctaText, ctaUrl, logId
            sent_by: 管理员ID

        Returns:
            dict: 发送统计与 email_logs 状态
        """
        prepared = self.prepare_campaign(payload, sent_by)
        return self.deliver(payload, prepared['email_type'], prepared['recipients'], prepared['log_id'])

    def start_campaign(self, payload: Dict[str, Any], sent_by: str, executor=None) -> Dict[str, Any]:
        """在请求内完成校验和建日志，逐封发送交给后台线程

        Returns:
            dict: log_id、total、status=sending
        """
        prepared = self.prepare_campaign(payload, sent_by)
        future = (executor or CAMPAIGN_EXECUTOR).submit(
            self.deliver, payload, prepared['email_type'], prepared['recipients'], prepared['log_id'])
        future.add_done_callback(_log_campaign_failure)
        logger.info(f"群发已提交后台: log={prepared['log_id']} 收件人 {len(prepared['recipients'])}")
        return {'log_id': prepared['log_id'], 'total': len(prepared['recipients']), 'status': 'sending'}

    def deliver(self, payload: Dict[str, Any], email_type: str, recipients: List[Dict], log_id) -> Dict[str, Any]:
        """逐封发送，两封之间等待 delay 秒，结束后更新 email_logs"""
        subject = payload.get('subject')
        title = payload.get('title') or subject
        message = payload.get('message')

        stats = {'total': len(recipients), 'sent': 0, 'failed': 0, 'deferred': 0}
        for index, recipient in enumerate(recipients):
            if not self.email.warmup.check()['can_send']:
                stats['deferred'] = len(recipients) - index
                logger.warning(f"达到每日发信上限，剩余 {stats['deferred']} 封未发送")
                break

            html = render_email(
                title, message,
                cta_text=payload.get('ctaText'),
                cta_url=payload.get('ctaUrl'),
                unsubscribe_url=unsubscribe_url(recipient['id']) if email_type in OPT_OUT_TYPES else None,
            )
            result = self.email.client.send_email(recipient['email'], recipient.get('full_name'), subject, html)
            if result['success']:
                stats['sent'] += 1
                self.email.warmup.increment()
            else:
                stats['failed'] += 1
                logger.warning(f"发送给 {str(recipient['id'])[:8]} 失败: {result.get('error')}")
            self._log_recipient(log_id, recipient, result)

            if self.delay and index < len(recipients) - 1:
                time.sleep(self.delay)

        status = self._final_status(stats)
        self._finish_log(log_id, stats, status)
        logger.info(f"群发完成: {stats}")
        return {**stats, 'status': status, 'log_id': log_id}

    @staticmethod
    def _final_status(stats: Dict[str, int]) -> str:
        if stats['sent'] == 0:
            return 'failed'
        if stats['failed'] or stats['deferred']:
            return 'partial'
        return 'sent'

    def _create_log(self, payload: Dict[str, Any], email_type: str, sent_by: str, recipient_count: int):
        try:
            result = self.supabase.table('email_logs').insert({
                'email_type': email_type,
                'subject': payload.get('subject'),
                'title': payload.get('title'),
                'message': payload.get('message'),
                'target_audience': payload.get('targetAudience') or 'all',
                'recipient_count': recipient_count,
                'status': 'sending',
                'sent_by': sent_by,
            }).execute()
            return result.data[0]['id'] if result.data else None
        except Exception as e:
            logger.error(f"创建群发日志失败: {e}")
            return None

    def _log_recipient(self, log_id, recipient: Dict[str, Any], result: Dict[str, Any]):
        try:
            entry = EmailSendLog(
                email_log_id=log_id,
                recipient_id=recipient['id'],
                recipient_email=recipient['email'],
                status='sent' if result['success'] else 'failed',
                error_message=result.get('error'),
                provider_response=result.get('response'),
            )
            self.supabase.table('email_send_logs').insert(entry.to_row()).execute()
        except Exception as e:
            logger.error(f"写入收件人日志失败: {e}")

    def _finish_log(self, log_id, stats: Dict[str, int], status: str):
        if not log_id:
            return
        try:
            self.supabase.table('email_logs').update({
                'status': status,
                'recipient_count': stats['total'],
                'success_count': stats['sent'],
                'failed_count': stats['failed'],
                'sent_at': datetime.now(timezone.utc).isoformat(),
            }).eq('id', log_id).execute()
        except Exception as e:
            logger.error(f"更新群发日志失败: {e}")

    def unsubscribe(self, user_id: str, token: str) -> bool:
        if not verify_unsubscribe_token(user_id, token):
            return False
        result = self.supabase.table('profiles').update({'email_unsubscribed': True}).eq('id', user_id).execute()
        return bool(result.data)
