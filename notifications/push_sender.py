from typing import List, Dict, Any
import json
import logging

from pywebpush import webpush, WebPushException

from config import PUSH_CONFIG

logger = logging.getLogger(__name__)

GONE_STATUS_CODES = (404, 410)


class PushSender:
    """Web Push (VAPID) 推送"""

    def __init__(self, supabase, send=None):
        self.supabase = supabase
        self._send = send or webpush

    @property
    def configured(self) -> bool:
        return bool(PUSH_CONFIG.get('vapid_private_key') and PUSH_CONFIG.get('vapid_public_key'))

    def _subscriptions(self, user_id: str = None, user_ids: List[str] = None, send_to_all: bool = False) -> List[Dict]:
        query = self.supabase.table('push_subscriptions').select('*')
        if send_to_all:
            pass
        elif user_ids:
            query = query.in_('user_id', user_ids)
        elif user_id:
            query = query.eq('user_id', user_id)
        else:
            raise ValueError('Must specify user_id, user_ids, or send_to_all')
        return query.execute().data or []

    def send(self, title: str, body: str, user_id: str = None, user_ids: List[str] = None,
             send_to_all: bool = False, url: str = None, data: Dict[str, Any] = None) -> Dict[str, int]:
        """
        向订阅者推送通知，404/410 的订阅会被删除

        Returns:
            dict: sent、failed、removed 数量
        """
        stats = {'sent': 0, 'failed': 0, 'removed': 0}
        if not self.configured:
            logger.info("未配置VAPID密钥，跳过推送")
            return stats
        if not title or not body:
            raise ValueError('Title and body are required')

        payload = json.dumps({
            'title': title,
            'body': body,
            'icon': PUSH_CONFIG['icon'],
            'badge': PUSH_CONFIG['icon'],
            'data': {**(data or {}), 'url': url or '/dashboard'},
        })
        for subscription in self._subscriptions(user_id, user_ids, send_to_all):
            try:
                self._send(
                    subscription_info={
                        'endpoint': subscription['endpoint'],
                        'keys': {'p256dh': subscription['p256dh'], 'auth': subscription['auth']},
                    },
                    data=payload,
                    vapid_private_key=PUSH_CONFIG['vapid_private_key'],
                    vapid_claims={'sub': PUSH_CONFIG['vapid_subject']},
                    ttl=PUSH_CONFIG['ttl'],
                )
                stats['sent'] += 1
            except WebPushException as e:
                status_code = getattr(e.response, 'status_code', None)
                if status_code in GONE_STATUS_CODES:
                    self.supabase.table('push_subscriptions').delete().eq('id', subscription['id']).execute()
                    stats['removed'] += 1
                else:
                    logger.warning(f"推送失败 (HTTP {status_code}): {e}")
                    stats['failed'] += 1
        return stats
