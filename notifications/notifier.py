from typing import Dict, Any, Optional
import logging
import re

from config import SENDPULSE_CONFIG
from notifications.email_sender import EmailService
from notifications.email_templates import render_email
from notifications.push_sender import PushSender
from schemas import ROLE_ADMIN

logger = logging.getLogger(__name__)

# user_notification_preferences 中各类通知对应的字段
PREFERENCE_FIELDS = {
    'system': 'system_enabled',
    'promotional': 'promotional_enabled',
    'updates': 'updates_enabled',
    'document_upload': 'document_upload_enabled',
}


class Notifier:
    """站内通知、推送与事务邮件的统一出口

    每个渠道的失败都只记录日志，不会影响调用方的主流程
    """

    def __init__(self, supabase, email_service: EmailService = None, push_sender: PushSender = None):
        self.supabase = supabase
        self.email = email_service or EmailService(supabase)
        self.push_sender = push_sender or PushSender(supabase)

    def preference_enabled(self, user_id: str, category: str) -> bool:
        field = PREFERENCE_FIELDS.get(category)
        if not user_id or not field:
            return True
        try:
            result = self.supabase.table('user_notification_preferences').select('*').eq('user_id', user_id).execute()
            if not result.data:
                return True
            return result.data[0].get(field, True) is not False
        except Exception as e:
            logger.error(f"读取通知偏好失败: {e}")
            return True

    def notify_user(self, user_id: str, title: str, message: str, category: str = 'system'):
        if not user_id:
            return
        try:
            self.supabase.table('user_notifications').insert({
                'user_id': user_id,
                'title': title,
                'message': message,
                'category': category,
            }).execute()
        except Exception as e:
            logger.error(f"写入站内通知失败: {e}")

    def push(self, user_id: str, title: str, body: str, url: str = None, category: str = 'system'):
        if not self.preference_enabled(user_id, category):
            return
        try:
            self.push_sender.send(title, body, user_id=user_id, url=url)
        except Exception as e:
            logger.error(f"推送通知失败: {e}")

    def _profile(self, user_id: str) -> Optional[Dict]:
        result = self.supabase.table('profiles').select('id, email, full_name').eq('id', user_id).execute()
        return result.data[0] if result.data else None

    def _guest_completed(self, document: Dict[str, Any]):
        """访客文档完成：发给访客在上传页登记的邮箱"""
        try:
            result = self.supabase.table('magic_upload_links').select('guest_email, guest_name, token') \
                .eq('id', document['magic_link_id']).execute()
            if not result.data or not result.data[0].get('guest_email'):
                logger.info(f"魔法链接 {document['magic_link_id']} 未登记访客邮箱，跳过完成邮件")
                return
            link = result.data[0]
            file_name = re.sub(r'^\[Guest\]\s*', '', document.get('file_name') or '', flags=re.IGNORECASE)
            lines = [f'Hello {link.get("guest_name") or "Guest"}, your document "{file_name}" '
                     f'has been analyzed and is ready for review.']
            if document.get('similarity_percentage') is not None:
                lines.append(f"Similarity: {document['similarity_percentage']}%")
            if document.get('ai_percentage') is not None:
                lines.append(f"AI detection: {document['ai_percentage']}%")
            html = render_email(
                'Document processing complete',
                '\n\n'.join(lines),
                cta_text='View Results',
                cta_url=f"{SENDPULSE_CONFIG['site_url']}/guest-upload?token={link['token']}",
            )
            self.email.send_transactional(
                'guest_completion', 'document_completion',
                link['guest_email'], link.get('guest_name') or 'Guest',
                'Your Document Has Been Processed - Plagaiscans', html,
                document_id=document.get('id'),
            )
        except Exception as e:
            logger.error(f"发送访客完成邮件失败: {e}")

    def document_completed(self, document: Dict[str, Any]):
        """文档完成：站内通知、推送、完成邮件"""
        user_id = document.get('user_id')
        if not user_id:
            if document.get('magic_link_id'):
                self._guest_completed(document)
            return
        file_name = document.get('file_name')
        self.notify_user(user_id, 'Document completed', f'Your document "{file_name}" has been processed.')
        self.push(user_id, 'Document Ready', f'"{file_name}" has been checked.', url='/dashboard/documents')

        try:
            if not self.preference_enabled(user_id, 'system'):
                return
            profile = self._profile(user_id)
            if not profile:
                return
            lines = [f'Your document "{file_name}" has been processed and the reports are ready.']
            if document.get('similarity_percentage') is not None:
                lines.append(f"Similarity: {document['similarity_percentage']}%")
            if document.get('ai_percentage') is not None:
                lines.append(f"AI detection: {document['ai_percentage']}%")
            html = render_email(
                'Your document is ready',
                '\n\n'.join(lines),
                cta_text='View Results',
                cta_url=f"{SENDPULSE_CONFIG['site_url']}/dashboard/documents",
            )
            self.email.send_transactional(
                'document_completion', 'document_completion',
                profile.get('email'), profile.get('full_name'),
                'Your document is ready - Plagaiscans', html,
                recipient_id=user_id, document_id=document.get('id'),
            )
        except Exception as e:
            logger.error(f"发送完成邮件失败: {e}")

    def payment_succeeded(self, user_id: str, credits: int, amount: float, currency: str, provider: str):
        message = f'{credits} credits have been added to your account.'
        self.notify_user(user_id, 'Payment successful', message)
        self.push(user_id, 'Payment Successful', message, url='/dashboard/credits')
        try:
            profile = self._profile(user_id)
            if not profile:
                return
            html = render_email(
                'Payment confirmed',
                f'Thank you for your purchase via {provider}.\n\n'
                f'Amount: {amount} {currency}\n{credits} credits were added to your balance.',
                cta_text='Go to Dashboard',
                cta_url=f"{SENDPULSE_CONFIG['site_url']}/dashboard",
            )
            self.email.send_transactional(
                'payment_confirmation', 'payment_confirmation',
                profile.get('email'), profile.get('full_name'),
                'Payment confirmed - Plagaiscans', html, recipient_id=user_id,
            )
        except Exception as e:
            logger.error(f"发送支付确认邮件失败: {e}")

    def payment_failed(self, user_id: str, provider: str, reason: str = None):
        message = f'Your {provider} payment could not be completed.'
        if reason:
            message += f' Reason: {reason}'
        self.notify_user(user_id, 'Payment failed', message)
        self.push(user_id, 'Payment Failed', message, url='/dashboard/credits')

    def notify_admins_of_payment(self, user_id: str, credits: int, amount: float, currency: str, provider: str):
        """通知所有管理员有新的付款"""
        try:
            result = self.supabase.table('user_roles').select('user_id').eq('role', ROLE_ADMIN).execute()
            admin_ids = [row['user_id'] for row in result.data or []]
            message = f'{provider}: {credits} credits purchased ({amount} {currency}) by user {user_id}'
            for admin_id in admin_ids:
                self.notify_user(admin_id, 'New payment received', message, category='updates')
            if admin_ids:
                self.push_sender.send('New Payment', message, user_ids=admin_ids, url='/admin/payments')
        except Exception as e:
            logger.error(f"通知管理员失败: {e}")
