from typing import List, Dict, Optional, Any
from datetime import datetime, timezone
import logging
import secrets
import string

from db.magic_link_operations import is_expired
from schemas import ExtensionLog

logger = logging.getLogger(__name__)

TOKEN_PREFIX = 'ext_'
TOKEN_LENGTH = 64
_ALPHABET = string.ascii_letters + string.digits


def generate_token() -> str:
    """ext_ 加 64 位随机字母数字"""
    return TOKEN_PREFIX + ''.join(secrets.choice(_ALPHABET) for _ in range(TOKEN_LENGTH))


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SlotLimitReachedError(Exception):
    pass


class ExtensionOperations:
    """浏览器扩展令牌、日志与检测账号槽位"""

    def __init__(self, supabase):
        self.supabase = supabase

    def create_token(self, user_id: str, name: str, expires_at: str = None) -> Dict[str, Any]:
        row = {
            'user_id': user_id,
            'name': name or 'Extension',
            'token': generate_token(),
            'is_active': True,
            'expires_at': expires_at,
        }
        result = self.supabase.table('extension_tokens').insert(row).execute()
        logger.info(f"用户 {user_id} 创建扩展令牌 {name}")
        return result.data[0]

    def list_tokens(self, user_id: str) -> List[Dict]:
        result = self.supabase.table('extension_tokens') \
            .select('id, name, is_active, expires_at, last_used_at, last_heartbeat_at, browser_info, created_at') \
            .eq('user_id', user_id) \
            .order('created_at', desc=True) \
            .execute()
        return result.data or []

    def revoke_token(self, user_id: str, token_id: str) -> bool:
        result = self.supabase.table('extension_tokens').update({'is_active': False}) \
            .eq('id', token_id).eq('user_id', user_id).execute()
        return bool(result.data)

    def delete_token(self, user_id: str, token_id: str) -> bool:
        result = self.supabase.table('extension_tokens').delete() \
            .eq('id', token_id).eq('user_id', user_id).execute()
        return bool(result.data)

    def authenticate(self, token: str) -> Optional[Dict]:
        """校验令牌：存在、启用、未过期；通过后更新 last_used_at

        Returns:
            dict: 令牌记录，校验失败返回None
        """
        if not token or not token.startswith(TOKEN_PREFIX):
            return None
        result = self.supabase.table('extension_tokens').select('*').eq('token', token).execute()
        if not result.data:
            return None
        record = result.data[0]
        if not record.get('is_active'):
            logger.warning(f"扩展令牌 {record['id']} 已停用")
            return None
        if is_expired(record):
            logger.warning(f"扩展令牌 {record['id']} 已过期")
            return None
        self.supabase.table('extension_tokens').update({'last_used_at': _now()}).eq('id', record['id']).execute()
        return record

    def log_action(
            self,
            token_id: str,
            action: str,
            document_id: str = None,
            status: str = 'success',
            error_message: str = None,
            metadata: Dict[str, Any] = None,
    ):
        try:
            entry = ExtensionLog(
                token_id=token_id,
                action=action,
                document_id=document_id,
                status=status,
                error_message=error_message,
                metadata=metadata or {},
            )
            self.supabase.table('extension_logs').insert(entry.to_row()).execute()
        except Exception as e:
            logger.error(f"写入扩展日志失败: {e}")

    def heartbeat(self, token_id: str, browser_info: Dict[str, Any] = None):
        self.supabase.table('extension_tokens').update({
            'last_heartbeat_at': _now(),
            'browser_info': browser_info or {},
        }).eq('id', token_id).execute()

    def list_slots(self) -> List[Dict]:
        result = self.supabase.table('turnitin_slots').select('*') \
            .eq('is_active', True).order('slot_number').execute()
        return result.data or []

    def update_slot_usage(self, slot_id: str, increment: int = 1) -> Dict[str, Any]:
        """增加槽位当日使用量，跨天时先清零

        Raises:
            SlotLimitReachedError: 已达到 max_files_per_day
        """
        result = self.supabase.table('turnitin_slots').select('*').eq('id', slot_id).execute()
        if not result.data:
            raise LookupError(f'Slot {slot_id} not found')
        slot = result.data[0]

        today = datetime.now(timezone.utc).date().isoformat()
        usage = slot.get('current_usage') or 0
        last_reset = str(slot.get('last_reset_at') or '')[:10]
        if last_reset != today:
            usage = 0

        limit = slot.get('max_files_per_day')
        if limit is not None and usage + increment > limit:
            raise SlotLimitReachedError(f"Slot {slot.get('slot_name')} reached its daily limit")

        updated = self.supabase.table('turnitin_slots').update({
            'current_usage': usage + increment,
            'last_reset_at': today if last_reset != today else slot.get('last_reset_at'),
            'last_used_at': _now(),
        }).eq('id', slot_id).execute()
        return updated.data[0] if updated.data else {**slot, 'current_usage': usage + increment}
