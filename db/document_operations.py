from typing import List, Dict, Optional, Any
from datetime import datetime, timedelta, timezone
import logging
import os
import time
import uuid

from config import SUPABASE_CONFIG, DOCUMENT_CONFIG
from db.credit_operations import CreditOperations
from db.errors import (
    DocumentAlreadyClaimedError,
    DocumentNotFoundError,
    InsufficientCreditsError,
    InvalidTransitionError,
    MissingReportsError,
    ValidationError,
)
from report_utils.filename_normalizer import normalize_filename
from schemas import (
    ActivityLog,
    DeletedDocumentLog,
    DOCUMENT_COMPLETED,
    DOCUMENT_ERROR,
    DOCUMENT_IN_PROGRESS,
    DOCUMENT_PENDING,
    DOCUMENT_STATUSES,
    REPORT_KINDS,
    ROLE_STAFF,
    SCAN_FULL,
    SCAN_SIMILARITY_ONLY,
    SCAN_TYPES,
)

logger = logging.getLogger(__name__)

# 允许的状态迁移，同状态更新视为编辑
TRANSITIONS = {
    DOCUMENT_PENDING: {DOCUMENT_IN_PROGRESS, DOCUMENT_COMPLETED, DOCUMENT_ERROR},
    DOCUMENT_IN_PROGRESS: {DOCUMENT_PENDING, DOCUMENT_COMPLETED, DOCUMENT_ERROR},
    DOCUMENT_COMPLETED: {DOCUMENT_PENDING, DOCUMENT_IN_PROGRESS, DOCUMENT_ERROR},
    DOCUMENT_ERROR: {DOCUMENT_PENDING},
}

REQUIRED_REPORTS = {
    SCAN_FULL: ('similarity_report_path', 'ai_report_path'),
    SCAN_SIMILARITY_ONLY: ('similarity_report_path',),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def report_field(kind: str) -> str:
    return f'{kind}_report_path'


def missing_reports(document: Dict[str, Any]) -> List[str]:
    """返回该扫描类型完成前仍缺少的报告字段"""
    required = REQUIRED_REPORTS.get(document.get('scan_type') or SCAN_FULL, REQUIRED_REPORTS[SCAN_FULL])
    return [name for name in required if not document.get(name)]


def describe_changes(before: Dict[str, Any], after: Dict[str, Any]) -> str:
    """生成活动日志中的变更描述"""
    changes = []
    if after.get('status') and after['status'] != before.get('status'):
        changes.append(f"status -> {after['status']}")
    for kind in REPORT_KINDS:
        name = report_field(kind)
        if name not in after or after[name] == before.get(name):
            continue
        if after[name] is None:
            changes.append(f'removed {kind} report')
        elif before.get(name):
            changes.append(f'replaced {kind} report')
        else:
            changes.append(f'added {kind} report')
    for kind in REPORT_KINDS:
        name = f'{kind}_percentage'
        if name in after and after[name] != before.get(name):
            old = before.get(name)
            old_text = f'{old}%' if old is not None else 'none'
            changes.append(f'{kind} {old_text} -> {after[name]}%')
    if 'remarks' in after and after['remarks'] != before.get('remarks'):
        changes.append('updated remarks')
    if not changes:
        return 'Edited document'
    return 'Edited document: ' + ', '.join(changes)


class DocumentOperations:
    """文档记录与状态流转"""

    def __init__(self, supabase, notifier=None):
        self.supabase = supabase
        self.credit_ops = CreditOperations(supabase)
        if notifier is None:
            from notifications.notifier import Notifier
            notifier = Notifier(supabase)
        self.notifier = notifier

    def get_document(self, document_id: str) -> Optional[Dict]:
        result = self.supabase.table('documents').select('*').eq('id', document_id).execute()
        return result.data[0] if result.data else None

    def _require_document(self, document_id: str) -> Dict:
        document = self.get_document(document_id)
        if not document:
            raise DocumentNotFoundError(f'Document {document_id} not found')
        return document

    def list_documents(self, user_id: str = None, status: str = None, limit: int = 100) -> List[Dict]:
        """获取文档列表，user_id为空时返回全部"""
        query = self.supabase.table('documents').select('*')
        if user_id:
            query = query.eq('user_id', user_id)
        if status:
            query = query.eq('status', status)
        result = query.order('uploaded_at', desc=True).limit(limit).execute()
        return result.data or []

    def list_pending_for_extension(self, limit: int = None) -> List[Dict]:
        """自动化队列：未分配的 similarity_only 待处理文档，先到先得"""
        result = self.supabase.table('documents') \
            .select('id, file_name, file_path, scan_type, uploaded_at, user_id, magic_link_id') \
            .eq('scan_type', SCAN_SIMILARITY_ONLY) \
            .eq('status', DOCUMENT_PENDING) \
            .is_('assigned_staff_id', 'null') \
            .order('uploaded_at') \
            .limit(limit or DOCUMENT_CONFIG['pending_batch_size']) \
            .execute()
        return result.data or []

    def upload_document(
            self,
            user_id: str,
            file_name: str,
            content: bytes,
            scan_type: str = SCAN_FULL,
    ) -> Dict[str, Any]:
        """客户上传文档：检查积分、存储文件、写入记录、扣除1积分

        Args:
            user_id: 客户ID
            file_name: 原始文件名
            content: 文件内容
            scan_type: full 或 similarity_only

        Returns:
            dict: 新建的文档记录
        """
        if scan_type not in SCAN_TYPES:
            raise ValidationError(f'Unknown scan type: {scan_type}')
        if self.credit_ops.get_balance(user_id, scan_type) < 1:
            raise InsufficientCreditsError('Insufficient credits. Please purchase more credits.')

        ext = os.path.splitext(file_name)[1].lstrip('.').lower() or 'bin'
        file_path = f'{user_id}/{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}.{ext}'
        bucket = SUPABASE_CONFIG['documents_bucket_name']
        self.supabase.storage.from_(bucket).upload(path=file_path, file=content)

        row = {
            'user_id': user_id,
            'file_name': file_name,
            'normalized_filename': normalize_filename(file_name),
            'file_path': file_path,
            'scan_type': scan_type,
            'status': DOCUMENT_PENDING,
            'uploaded_at': _now().isoformat(),
        }
        result = self.supabase.table('documents').insert(row).execute()
        document = result.data[0]

        try:
            self.credit_ops.consume_credit(user_id, scan_type, f'Document upload: {file_name}')
        except InsufficientCreditsError:
            # 并发上传抢占了最后的积分
            self.supabase.table('documents').delete().eq('id', document['id']).execute()
            self.supabase.storage.from_(bucket).remove([file_path])
            raise
        logger.info(f"用户 {user_id} 上传文档 {document['id']} ({scan_type})")
        return document

    @staticmethod
    def validate_update(document: Dict[str, Any], status: str, actor_role: str, updates: Dict[str, Any] = None):
        """检查状态迁移和完成前的报告要求，不做任何写入

        路由层在上传或删除报告文件之前调用，被拒绝的编辑不会改动存储
        """
        if status not in DOCUMENT_STATUSES:
            raise InvalidTransitionError(f'Unknown status: {status}')
        current = document.get('status')
        if status != current and status not in TRANSITIONS.get(current, set()):
            raise InvalidTransitionError(f'Cannot change status from {current} to {status}')
        if status == DOCUMENT_COMPLETED and actor_role == ROLE_STAFF:
            missing = missing_reports({**document, **(updates or {})})
            if missing:
                raise MissingReportsError(
                    'Upload the required reports before completing: ' + ', '.join(missing))

    def update_status(
            self,
            document_id: str,
            status: str,
            actor_id: Optional[str],
            actor_role: str,
            updates: Dict[str, Any] = None,
            error_message: str = None,
    ) -> Dict[str, Any]:
        """文档状态流转

        Args:
            document_id: 文档ID
            status: 目标状态
            actor_id: 操作人ID，系统操作为None
            actor_role: admin / staff / system
            updates: 同时写入的字段（报告路径、百分比、备注等）
            error_message: 进入error状态时的错误信息

        Returns:
            dict: 更新后的文档
        """
        document = self._require_document(document_id)
        current = document.get('status')
        payload = dict(updates or {})
        self.validate_update(document, status, actor_role, payload)

        now = _now().isoformat()
        payload['status'] = status
        payload['updated_at'] = now
        if status != current:
            if status == DOCUMENT_IN_PROGRESS:
                payload.setdefault('assigned_staff_id', actor_id)
                payload['assigned_at'] = now
                payload['completed_at'] = None
            elif status == DOCUMENT_PENDING:
                payload['assigned_staff_id'] = None
                payload['assigned_at'] = None
                payload['completed_at'] = None
        if status == DOCUMENT_COMPLETED:
            payload['completed_at'] = document.get('completed_at') or now
        if status == DOCUMENT_ERROR and error_message is not None:
            payload['error_message'] = error_message

        result = self.supabase.table('documents').update(payload).eq('id', document_id).execute()
        updated = result.data[0] if result.data else {**document, **payload}
        self.log_activity(actor_id, document_id, describe_changes(document, payload))

        if status == DOCUMENT_COMPLETED and current != DOCUMENT_COMPLETED:
            self.notifier.document_completed(updated)
        return updated

    @staticmethod
    def report_path(document: Dict[str, Any], kind: str) -> str:
        if kind not in REPORT_KINDS:
            raise ValidationError(f'Unknown report type: {kind}')
        owner = document.get('user_id') or 'guest'
        return f"{owner}/{document['id']}_{kind}.pdf"

    def store_report(self, path: str, content: bytes):
        self.supabase.storage.from_(SUPABASE_CONFIG['reports_bucket_name']).upload(
            path=path,
            file=content,
            file_options={'content-type': 'application/pdf', 'upsert': 'true'}
        )

    def attach_report(self, document_id: str, kind: str, content: bytes) -> Dict[str, Any]:
        """上传（或覆盖）报告文件，返回需要写入文档的字段"""
        path = self.report_path(self._require_document(document_id), kind)
        self.store_report(path, content)
        return {report_field(kind): path}

    @staticmethod
    def clear_report(kind: str) -> Dict[str, Any]:
        """返回清空报告需要写入的字段，文件由 remove_report_files 在更新成功后删除"""
        if kind not in REPORT_KINDS:
            raise ValidationError(f'Unknown report type: {kind}')
        return {report_field(kind): None, f'{kind}_percentage': None}

    def remove_report_files(self, paths: List[str]):
        """删除不再被文档引用的报告文件，失败只记录"""
        paths = [path for path in paths if path]
        if not paths:
            return
        try:
            self.supabase.storage.from_(SUPABASE_CONFIG['reports_bucket_name']).remove(paths)
        except Exception as e:
            logger.warning(f"删除报告文件失败 {paths}: {e}")

    def claim_document(self, document_id: str, staff_id: str, extra: Dict[str, Any] = None) -> Dict[str, Any]:
        """领取文档：只有待处理且未分配的文档可以被领取

        使用带条件的更新，两个领取者竞争时只有一个能成功
        """
        now = _now().isoformat()
        payload = {
            'status': DOCUMENT_IN_PROGRESS,
            'assigned_staff_id': staff_id,
            'assigned_at': now,
            'completed_at': None,
            'updated_at': now,
        }
        payload.update(extra or {})
        result = self.supabase.table('documents') \
            .update(payload) \
            .eq('id', document_id) \
            .eq('status', DOCUMENT_PENDING) \
            .is_('assigned_staff_id', 'null') \
            .execute()
        if not result.data:
            document = self._require_document(document_id)
            if document.get('status') == DOCUMENT_IN_PROGRESS and document.get('assigned_staff_id') == staff_id:
                return document
            raise DocumentAlreadyClaimedError('Document is already being processed')

        self.log_activity(staff_id, document_id, 'Claimed document: status -> in_progress')
        return result.data[0]

    def release_document(self, document_id: str, actor_id: str, actor_role: str) -> Dict[str, Any]:
        return self.update_status(document_id, DOCUMENT_PENDING, actor_id, actor_role)

    def release_overdue(self, timeout_minutes: int = None) -> List[str]:
        """把超时未完成的 in_progress 文档退回待处理队列

        Returns:
            List[str]: 被释放的文档ID
        """
        if timeout_minutes is None:
            timeout_minutes = self.get_processing_timeout()
        cutoff = (_now() - timedelta(minutes=timeout_minutes)).isoformat()
        result = self.supabase.table('documents') \
            .select('id, assigned_at, assigned_staff_id') \
            .eq('status', DOCUMENT_IN_PROGRESS) \
            .lt('assigned_at', cutoff) \
            .execute()

        released = []
        for document in result.data or []:
            update = self.supabase.table('documents').update({
                'status': DOCUMENT_PENDING,
                'assigned_staff_id': None,
                'assigned_at': None,
                'automation_status': None,
                'updated_at': _now().isoformat(),
            }).eq('id', document['id']) \
                .eq('status', DOCUMENT_IN_PROGRESS) \
                .eq('assigned_at', document['assigned_at']) \
                .execute()
            if not update.data:
                continue
            released.append(document['id'])
            self.log_activity(
                None, document['id'],
                f'Auto-released after {timeout_minutes} minutes: status -> pending')
        if released:
            logger.info(f"自动释放 {len(released)} 个超时文档")
        return released

    def get_processing_timeout(self) -> int:
        """settings 表中的 processing_timeout_minutes 优先于配置文件"""
        try:
            result = self.supabase.table('settings').select('value') \
                .eq('key', 'processing_timeout_minutes').execute()
            if result.data:
                return int(result.data[0]['value'])
        except Exception as e:
            logger.warning(f"读取处理超时设置失败: {e}")
        return DOCUMENT_CONFIG['processing_timeout_minutes']

    def source_bucket(self, document: Dict[str, Any]) -> str:
        if document.get('magic_link_id'):
            return SUPABASE_CONFIG['magic_bucket_name']
        return SUPABASE_CONFIG['documents_bucket_name']

    def create_signed_url(self, document: Dict[str, Any], expires_in: int = None) -> Optional[str]:
        """生成源文件的临时下载链接"""
        response = self.supabase.storage.from_(self.source_bucket(document)).create_signed_url(
            document['file_path'], expires_in or DOCUMENT_CONFIG['signed_url_expires_in'])
        if not response:
            return None
        return response.get('signedURL') or response.get('signedUrl')

    def delete_document(
            self,
            document_id: str,
            actor_id: Optional[str],
            deleted_by_type: str,
            reason: str = None,
            refund: bool = False,
    ) -> Dict[str, Any]:
        """删除文档：先写入 deleted_documents_log 快照，再删除文件和记录

        Args:
            document_id: 文档ID
            actor_id: 操作人ID
            deleted_by_type: customer / admin / guest
            reason: 删除原因
            refund: 未完成的文档是否退还1积分

        Returns:
            dict: 被删除的文档与是否退款
        """
        document = self._require_document(document_id)
        snapshot = DeletedDocumentLog(
            document_id=document_id,
            file_name=document.get('file_name'),
            deleted_by_type=deleted_by_type,
            user_id=document.get('user_id'),
            magic_link_id=document.get('magic_link_id'),
            file_path=document.get('file_path'),
            scan_type=document.get('scan_type'),
            status=document.get('status'),
            similarity_percentage=document.get('similarity_percentage'),
            ai_percentage=document.get('ai_percentage'),
            deleted_by=actor_id,
            reason=reason,
            uploaded_at=document.get('uploaded_at'),
        )
        self.supabase.table('deleted_documents_log').insert(snapshot.to_row()).execute()

        try:
            if document.get('file_path'):
                self.supabase.storage.from_(self.source_bucket(document)).remove([document['file_path']])
            report_paths = [document[report_field(kind)] for kind in REPORT_KINDS if document.get(report_field(kind))]
            if report_paths:
                self.supabase.storage.from_(SUPABASE_CONFIG['reports_bucket_name']).remove(report_paths)
        except Exception as e:
            logger.warning(f"删除文档 {document_id} 的文件失败: {e}")

        self.supabase.table('documents').delete().eq('id', document_id).execute()

        refunded = False
        if (refund and document.get('user_id') and document.get('status') != DOCUMENT_COMPLETED
                and not document.get('credit_refunded')):
            self.credit_ops.refund_credit(
                document['user_id'],
                document.get('scan_type') or SCAN_FULL,
                f"Refund for cancelled document: {document.get('file_name')}",
                actor_id,
            )
            refunded = True
        logger.info(f"文档 {document_id} 已删除 (by {deleted_by_type}, refunded={refunded})")
        return {'document': document, 'refunded': refunded}

    def log_activity(self, actor_id: Optional[str], document_id: str, action: str):
        """写入活动日志，失败只记录不抛出"""
        try:
            entry = ActivityLog(staff_id=actor_id, document_id=document_id, action=action)
            self.supabase.table('activity_logs').insert(entry.to_row()).execute()
        except Exception as e:
            logger.error(f"写入活动日志失败: {e}")
