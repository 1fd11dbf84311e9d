from typing import List, Dict, Optional, Any
from datetime import datetime, timedelta, timezone
import logging
import os
import re
import secrets
import time
import uuid

from config import SUPABASE_CONFIG, DOCUMENT_CONFIG
from db.errors import DocumentNotFoundError, MagicLinkBusyError, MagicLinkUnavailableError, ValidationError
from report_utils.filename_normalizer import normalize_filename
from schemas import (
    DeletedDocumentLog,
    MagicUploadFile,
    DOCUMENT_PENDING,
    LINK_ACTIVE,
    LINK_DISABLED,
    SCAN_FULL,
)

logger = logging.getLogger(__name__)

RESERVE_ATTEMPTS = 3
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_expired(link: Dict[str, Any]) -> bool:
    expires_at = _parse_time(link.get('expires_at'))
    return expires_at is not None and expires_at <= _now()


class MagicLinkOperations:
    """访客上传链接操作类"""

    def __init__(self, supabase):
        self.supabase = supabase
        self.bucket = SUPABASE_CONFIG['magic_bucket_name']

    def create_link(self, max_uploads: int, created_by: str, expires_in_hours: int = None) -> Dict[str, Any]:
        """创建访客上传链接

        Args:
            max_uploads: 最多可上传的文件数
            created_by: 创建者（管理员）ID
            expires_in_hours: 有效小时数，默认30天

        Returns:
            dict: 新建的链接记录
        """
        if max_uploads < 1:
            raise MagicLinkUnavailableError('max_uploads must be at least 1')
        hours = expires_in_hours or DOCUMENT_CONFIG['magic_link_default_hours']
        row = {
            'token': secrets.token_urlsafe(32),
            'max_uploads': max_uploads,
            'current_uploads': 0,
            'expires_at': (_now() + timedelta(hours=hours)).isoformat(),
            'status': LINK_ACTIVE,
            'created_by': created_by,
        }
        result = self.supabase.table('magic_upload_links').insert(row).execute()
        logger.info(f"创建魔法链接，最多上传 {max_uploads} 个文件")
        return result.data[0]

    def list_links(self) -> List[Dict]:
        result = self.supabase.table('magic_upload_links').select('*').order('created_at', desc=True).execute()
        return result.data or []

    def disable_link(self, link_id: str) -> bool:
        result = self.supabase.table('magic_upload_links').update({'status': LINK_DISABLED}).eq('id', link_id).execute()
        return bool(result.data)

    def delete_link(self, link_id: str) -> bool:
        result = self.supabase.table('magic_upload_links').delete().eq('id', link_id).execute()
        return bool(result.data)

    def get_link_by_token(self, token: str) -> Optional[Dict]:
        if not token:
            return None
        result = self.supabase.table('magic_upload_links').select('*').eq('token', token).execute()
        return result.data[0] if result.data else None

    def validate_for_access(self, token: str) -> Dict[str, Any]:
        """链接存在、启用且未过期"""
        link = self.get_link_by_token(token)
        if not link:
            raise MagicLinkUnavailableError('Invalid upload link')
        if link.get('status') != LINK_ACTIVE:
            raise MagicLinkUnavailableError('This upload link has been disabled')
        if is_expired(link):
            raise MagicLinkUnavailableError('This upload link has expired')
        return link

    def validate_for_upload(self, token: str) -> Dict[str, Any]:
        """在访问校验的基础上要求还有剩余上传次数"""
        link = self.validate_for_access(token)
        if (link.get('current_uploads') or 0) >= link['max_uploads']:
            raise MagicLinkUnavailableError('Upload limit reached for this link')
        return link

    def _reserve_slot(self, link: Dict[str, Any]) -> Dict[str, Any]:
        """条件自增 current_uploads，只有读到的值未被改动时才成功"""
        for _ in range(RESERVE_ATTEMPTS):
            observed = link.get('current_uploads') or 0
            if observed >= link['max_uploads']:
                raise MagicLinkUnavailableError('Upload limit reached for this link')
            result = self.supabase.table('magic_upload_links') \
                .update({'current_uploads': observed + 1}) \
                .eq('id', link['id']) \
                .eq('current_uploads', observed) \
                .execute()
            if result.data:
                return result.data[0]
            link = self.validate_for_access(link['token'])
        if (link.get('current_uploads') or 0) >= link['max_uploads']:
            raise MagicLinkUnavailableError('Upload limit reached for this link')
        logger.warning(f"魔法链接 {link['id']} 并发上传冲突，{RESERVE_ATTEMPTS} 次尝试均失败")
        raise MagicLinkBusyError('This upload link is busy, please try again')

    def _release_slot(self, link: Dict[str, Any]):
        try:
            current = self.supabase.table('magic_upload_links').select('current_uploads') \
                .eq('id', link['id']).execute()
            if current.data and current.data[0]['current_uploads'] > 0:
                self.supabase.table('magic_upload_links') \
                    .update({'current_uploads': current.data[0]['current_uploads'] - 1}) \
                    .eq('id', link['id']).execute()
        except Exception as e:
            logger.error(f"回退魔法链接上传计数失败: {e}")

    def _discard_upload(self, file_path: Optional[str], document: Optional[Dict[str, Any]]):
        """上传中途失败时删除已写入的文档记录和存储文件"""
        if document:
            try:
                self.supabase.table('documents').delete().eq('id', document['id']).execute()
            except Exception as e:
                logger.error(f"删除未完成的访客文档 {document['id']} 失败: {e}")
        if file_path:
            try:
                self.supabase.storage.from_(self.bucket).remove([file_path])
            except Exception as e:
                logger.error(f"删除未完成的访客文件 {file_path} 失败: {e}")

    def upload_with_link(self, token: str, file_name: str, content: bytes) -> Dict[str, Any]:
        """访客通过链接上传文件

        Returns:
            dict: file 和 document 两条记录
        """
        link = self.validate_for_upload(token)
        link = self._reserve_slot(link)

        ext = os.path.splitext(file_name)[1].lstrip('.').lower() or 'bin'
        file_path = f"magic/{link['id']}/{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}.{ext}"
        stored = False
        document = None
        try:
            self.supabase.storage.from_(self.bucket).upload(path=file_path, file=content)
            stored = True
            # 按原始文件名归一化，不含 [Guest] 前缀
            document = self.supabase.table('documents').insert({
                'user_id': None,
                'magic_link_id': link['id'],
                'file_name': f'[Guest] {file_name}',
                'normalized_filename': normalize_filename(file_name),
                'file_path': file_path,
                'scan_type': SCAN_FULL,
                'status': DOCUMENT_PENDING,
                'uploaded_at': _now().isoformat(),
            }).execute().data[0]
            upload = MagicUploadFile(
                magic_link_id=link['id'],
                file_name=file_name,
                file_path=file_path,
                file_size=len(content),
                document_id=document['id'],
            )
            record = self.supabase.table('magic_upload_files').insert(upload.__dict__).execute().data[0]
        except Exception as e:
            logger.error(f"访客上传失败: {e}")
            self._discard_upload(file_path if stored else None, document)
            self._release_slot(link)
            raise

        logger.info(f"魔法链接 {link['id']} 上传 {link['current_uploads']}/{link['max_uploads']}")
        return {'file': record, 'document': document, 'link': link}

    def list_files(self, token: str) -> List[Dict]:
        link = self.validate_for_access(token)
        result = self.supabase.table('magic_upload_files').select('*') \
            .eq('magic_link_id', link['id']).order('uploaded_at', desc=True).execute()
        return result.data or []

    def set_guest_email(self, token: str, email: str, name: str = None) -> Dict[str, Any]:
        """访客登记接收完成通知的邮箱"""
        link = self.validate_for_access(token)
        email = (email or '').strip().lower()
        if not EMAIL_PATTERN.match(email):
            raise ValidationError('A valid email address is required')
        result = self.supabase.table('magic_upload_links').update({
            'guest_email': email,
            'guest_name': (name or '').strip() or None,
        }).eq('id', link['id']).execute()
        logger.info(f"魔法链接 {link['id']} 登记访客邮箱")
        return result.data[0] if result.data else {**link, 'guest_email': email}

    def delete_guest_file(self, token: str, file_id: str) -> bool:
        """访客删除已上传文件，上传计数不回退"""
        link = self.validate_for_access(token)
        result = self.supabase.table('magic_upload_files').select('*') \
            .eq('id', file_id).eq('magic_link_id', link['id']).execute()
        if not result.data:
            raise DocumentNotFoundError('File not found')
        record = result.data[0]

        document = None
        if record.get('document_id'):
            found = self.supabase.table('documents').select('*').eq('id', record['document_id']).execute()
            document = found.data[0] if found.data else None

        snapshot = DeletedDocumentLog(
            document_id=record.get('document_id') or file_id,
            file_name=record['file_name'],
            deleted_by_type='guest',
            magic_link_id=link['id'],
            file_path=record['file_path'],
            scan_type=document.get('scan_type') if document else None,
            status=document.get('status') if document else None,
            reason='Deleted by guest',
        )
        self.supabase.table('deleted_documents_log').insert(snapshot.to_row()).execute()

        try:
            self.supabase.storage.from_(self.bucket).remove([record['file_path']])
        except Exception as e:
            logger.warning(f"删除访客文件失败 {record['file_path']}: {e}")
        if document:
            self.supabase.table('documents').delete().eq('id', document['id']).execute()
        self.supabase.table('magic_upload_files').delete().eq('id', file_id).execute()
        return True
