from typing import List, Dict, Any
from datetime import datetime, timezone
import logging
import re
import time

from config import SUPABASE_CONFIG
from db.document_operations import DocumentOperations, missing_reports, report_field
from db.errors import DocumentNotFoundError, WorkflowError
from report_utils.filename_normalizer import normalize_filename
from report_utils.report_reader import ReportReader, REPORT_UNKNOWN
from schemas import (
    UnmatchedReport,
    DOCUMENT_COMPLETED,
    DOCUMENT_IN_PROGRESS,
    DOCUMENT_PENDING,
    REPORT_KINDS,
    ROLE_SYSTEM,
)

logger = logging.getLogger(__name__)

REASON_UNCLASSIFIED = 'unclassified'
REASON_NO_MATCH = 'no_matching_document'
REASON_ALREADY_HAS_REPORT = 'already_has_report'
REASON_AMBIGUOUS = 'ambiguous'


def _safe_name(file_name: str) -> str:
    return re.sub(r'[^A-Za-z0-9._-]+', '_', file_name or 'report.pdf')


class BulkReportOperations:
    """批量报告匹配

    报告文件名规范化后与待处理/处理中文档一一匹配。宁可不匹配也不匹配错：
    无候选、候选都已有报告、候选不止一个时都进入 unmatched_reports 等待人工处理
    """

    def __init__(self, supabase, document_ops: DocumentOperations = None):
        self.supabase = supabase
        self.document_ops = document_ops or DocumentOperations(supabase)
        self.bucket = SUPABASE_CONFIG['reports_bucket_name']

    def find_candidates(self, normalized: str) -> List[Dict]:
        if not normalized:
            return []
        result = self.supabase.table('documents').select('*') \
            .eq('normalized_filename', normalized) \
            .in_('status', [DOCUMENT_PENDING, DOCUMENT_IN_PROGRESS]) \
            .execute()
        return result.data or []

    def match_reports(self, reports: List[Dict[str, Any]], uploader_id: str) -> Dict[str, Any]:
        """
        匹配一批报告

        Args:
            reports: [{'file_name': ..., 'content': bytes}]
            uploader_id: 上传者（员工/管理员）ID

        Returns:
            dict: mapped、unmatched、completed 列表和统计
        """
        mapped, unmatched, completed = [], [], []
        for report in reports:
            file_name = report['file_name']
            try:
                outcome = self._match_one(file_name, report['content'], uploader_id)
            except Exception as e:
                logger.error(f"处理报告 {file_name} 失败: {e}")
                unmatched.append({'file_name': file_name, 'reason': 'processing_error', 'error': str(e)})
                continue
            if outcome['matched']:
                mapped.append(outcome)
                if outcome.get('completed'):
                    completed.append(outcome['document_id'])
            else:
                unmatched.append(outcome)

        stats = {
            'total': len(reports),
            'mapped': len(mapped),
            'unmatched': len(unmatched),
            'completed': len(completed),
        }
        logger.info(f"批量报告处理完成: {stats}")
        return {'mapped': mapped, 'unmatched': unmatched, 'completed': completed, 'stats': stats}

    def _match_one(self, file_name: str, content: bytes, uploader_id: str) -> Dict[str, Any]:
        normalized = normalize_filename(file_name)
        summary = ReportReader(content=content).summary()
        kind = summary['report_type']
        percentage = summary['percentage']

        if kind == REPORT_UNKNOWN:
            return self._record_unmatched(file_name, normalized, content, kind, REASON_UNCLASSIFIED,
                                          uploader_id, percentage)

        candidates = self.find_candidates(normalized)
        field = report_field(kind)
        open_candidates = [doc for doc in candidates if not doc.get(field)]

        if not candidates:
            return self._record_unmatched(file_name, normalized, content, kind, REASON_NO_MATCH,
                                          uploader_id, percentage)
        if not open_candidates:
            return self._record_unmatched(file_name, normalized, content, kind, REASON_ALREADY_HAS_REPORT,
                                          uploader_id, percentage)
        if len(open_candidates) > 1:
            reason = f'{len(open_candidates)} documents share the name "{normalized}"'
            for doc in open_candidates:
                self.supabase.table('documents').update({
                    'needs_review': True,
                    'review_reason': reason,
                }).eq('id', doc['id']).execute()
            return self._record_unmatched(file_name, normalized, content, kind, REASON_AMBIGUOUS,
                                          uploader_id, percentage)

        document = open_candidates[0]
        updates = self.document_ops.attach_report(document['id'], kind, content)
        updates[f'{kind}_percentage'] = percentage
        updates['needs_review'] = False
        updates['review_reason'] = None

        done = not missing_reports({**document, **updates})
        status = DOCUMENT_COMPLETED if done else document['status']
        self.document_ops.update_status(document['id'], status, uploader_id, ROLE_SYSTEM, updates)
        return {
            'matched': True,
            'file_name': file_name,
            'document_id': document['id'],
            'report_type': kind,
            'percentage': percentage,
            'completed': done,
        }

    def _record_unmatched(self, file_name, normalized, content, kind, reason, uploader_id, percentage):
        path = f'unmatched/{int(time.time() * 1000)}_{_safe_name(file_name)}'
        self.supabase.storage.from_(self.bucket).upload(
            path=path, file=content, file_options={'content-type': 'application/pdf'})
        row = UnmatchedReport(
            file_name=file_name,
            normalized_filename=normalized,
            file_path=path,
            report_type=kind,
            reason=reason,
            uploaded_by=uploader_id,
            similarity_percentage=percentage if kind == 'similarity' else None,
            ai_percentage=percentage if kind == 'ai' else None,
        )
        created = self.supabase.table('unmatched_reports').insert(row.to_row()).execute()
        logger.info(f"报告 {file_name} 未匹配: {reason}")
        return {
            'matched': False,
            'id': created.data[0]['id'] if created.data else None,
            'file_name': file_name,
            'report_type': kind,
            'reason': reason,
        }

    def list_unmatched(self, include_resolved: bool = False) -> List[Dict]:
        query = self.supabase.table('unmatched_reports').select('*')
        if not include_resolved:
            query = query.eq('resolved', False)
        return query.order('created_at', desc=True).execute().data or []

    def assign_unmatched(self, unmatched_id: str, document_id: str, actor_id: str,
                         report_type: str = None) -> Dict[str, Any]:
        """人工把未匹配的报告指定给某个文档"""
        result = self.supabase.table('unmatched_reports').select('*').eq('id', unmatched_id).execute()
        if not result.data:
            raise DocumentNotFoundError('Unmatched report not found')
        unmatched = result.data[0]
        if unmatched.get('resolved'):
            raise WorkflowError('Report has already been assigned')

        kind = report_type or unmatched.get('report_type')
        if kind not in REPORT_KINDS:
            raise WorkflowError('Report type must be similarity or ai')

        document = self.document_ops.get_document(document_id)
        if not document:
            raise DocumentNotFoundError(f'Document {document_id} not found')

        updates = {
            report_field(kind): unmatched['file_path'],
            f'{kind}_percentage': unmatched.get(f'{kind}_percentage'),
            'needs_review': False,
            'review_reason': None,
        }
        done = not missing_reports({**document, **updates})
        status = DOCUMENT_COMPLETED if done else document['status']
        updated = self.document_ops.update_status(document_id, status, actor_id, ROLE_SYSTEM, updates)

        self.supabase.table('unmatched_reports').update({
            'resolved': True,
            'resolved_document_id': document_id,
            'resolved_by': actor_id,
            'resolved_at': datetime.now(timezone.utc).isoformat(),
        }).eq('id', unmatched_id).execute()
        return updated
