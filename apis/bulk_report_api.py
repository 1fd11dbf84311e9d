from flask import Blueprint, jsonify, request, g
import logging

from apis.auth_api import require_roles
from apis.responses import error_response, workflow_error_response
from db.bulk_report_operations import BulkReportOperations
from db.errors import WorkflowError
from db.supabase_client import get_admin_client
from schemas import ROLE_ADMIN, ROLE_STAFF

logger = logging.getLogger(__name__)

bulk_reports = Blueprint('bulk_reports', __name__, url_prefix='/api/bulk-reports')


@bulk_reports.route('', methods=['POST'])
@require_roles(ROLE_ADMIN, ROLE_STAFF)
def upload_bulk_reports():
    """批量上传报告（multipart，字段名 files）并自动匹配文档"""
    try:
        uploads = [f for f in request.files.getlist('files') if f and f.filename]
        if not uploads:
            return error_response('No report files uploaded', 400)
        reports = [{'file_name': f.filename, 'content': f.read()} for f in uploads]
        result = BulkReportOperations(get_admin_client()).match_reports(reports, g.user_id)
        return jsonify({'status': 'success', **result}), 200
    except Exception as e:
        logger.error(f"批量报告处理失败: {e}", exc_info=True)
        return error_response(str(e), 500)


@bulk_reports.route('/unmatched', methods=['GET'])
@require_roles(ROLE_ADMIN, ROLE_STAFF)
def list_unmatched():
    try:
        include_resolved = request.args.get('include_resolved', 'false').lower() == 'true'
        items = BulkReportOperations(get_admin_client()).list_unmatched(include_resolved)
        return jsonify({'status': 'success', 'reports': items}), 200
    except Exception as e:
        logger.error(f"获取未匹配报告失败: {e}")
        return error_response(str(e), 500)


@bulk_reports.route('/unmatched/<unmatched_id>/assign', methods=['POST'])
@require_roles(ROLE_ADMIN, ROLE_STAFF)
def assign_unmatched(unmatched_id):
    try:
        data = request.get_json() or {}
        if not data.get('document_id'):
            return error_response('document_id is required', 400)
        document = BulkReportOperations(get_admin_client()).assign_unmatched(
            unmatched_id, data['document_id'], g.user_id, data.get('report_type'))
        return jsonify({'status': 'success', 'document': document}), 200
    except WorkflowError as e:
        return workflow_error_response(e)
    except Exception as e:
        logger.error(f"指定未匹配报告失败: {e}")
        return error_response(str(e), 500)
