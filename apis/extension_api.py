from flask import Blueprint, jsonify, request, g
from datetime import datetime, timezone
from functools import wraps
import base64
import binascii
import logging
import re

from apis.auth_api import bearer_token, require_roles
from apis.document_api import parse_percentage
from apis.responses import error_response, workflow_error_response
from config import SUPABASE_CONFIG, DOCUMENT_CONFIG
from db.document_operations import DocumentOperations
from db.errors import WorkflowError
from db.extension_operations import ExtensionOperations, SlotLimitReachedError
from db.supabase_client import get_admin_client
from report_utils.report_reader import ReportReader
from schemas import DOCUMENT_COMPLETED, DOCUMENT_ERROR, REPORT_AI, REPORT_SIMILARITY, ROLE_SYSTEM

logger = logging.getLogger(__name__)

extension = Blueprint('extension', __name__, url_prefix='/extension-api')
extension_tokens = Blueprint('extension_tokens', __name__, url_prefix='/api/extension-tokens')


def require_extension_token(func):
    """校验扩展令牌，令牌记录写入 g.token"""
    @wraps(func)
    def wrapper(*args, **kwargs):
        record = ExtensionOperations(get_admin_client()).authenticate(bearer_token())
        if not record:
            return error_response('Invalid or expired token', 401)
        g.token = record
        return func(*args, **kwargs)
    return wrapper


def _log(action, document_id=None, status='success', error_message=None, metadata=None):
    ExtensionOperations(get_admin_client()).log_action(
        g.token['id'], action, document_id, status, error_message, metadata)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@extension.route('/pending', methods=['GET'])
@require_extension_token
def pending_documents():
    """待自动处理的 similarity_only 文档"""
    try:
        items = DocumentOperations(get_admin_client()).list_pending_for_extension()
        _log('get_pending', metadata={'count': len(items)})
        return jsonify({'success': True, 'documents': items}), 200
    except Exception as e:
        logger.error(f"获取待处理文档失败: {e}")
        _log('get_pending', status='error', error_message=str(e))
        return error_response(str(e), 500)


@extension.route('/download/<document_id>', methods=['GET'])
@require_extension_token
def download_document(document_id):
    """领取文档并返回1小时有效的下载链接"""
    try:
        doc_ops = DocumentOperations(get_admin_client())
        document = doc_ops.claim_document(document_id, g.token['user_id'], extra={
            'automation_status': 'processing',
            'automation_started_at': _now(),
            'automation_error': None,
        })
        attempts = (document.get('automation_attempt_count') or 0) + 1
        get_admin_client().table('documents').update({'automation_attempt_count': attempts}) \
            .eq('id', document_id).execute()

        signed_url = doc_ops.create_signed_url(document)
        if not signed_url:
            _log('download', document_id, 'error', 'Failed to create signed URL')
            return error_response('Failed to create download URL', 500)

        _log('download', document_id, metadata={'attempt': attempts})
        return jsonify({
            'success': True,
            'document': {
                'id': document['id'],
                'file_name': document.get('file_name'),
                'scan_type': document.get('scan_type'),
                'automation_attempt_count': attempts,
            },
            'signed_url': signed_url,
            'expires_in': DOCUMENT_CONFIG['signed_url_expires_in'],
        }), 200
    except WorkflowError as e:
        _log('download', document_id, 'error', str(e))
        return workflow_error_response(e)
    except Exception as e:
        logger.error(f"下载文档失败: {e}", exc_info=True)
        _log('download', document_id, 'error', str(e))
        return error_response(str(e), 500)


def _report_payload():
    """
    读取上传的报告，支持 multipart 和 JSON(base64) 两种格式

    Returns:
        tuple: (表单数据, {报告类型: (文件名, 内容)})
    """
    files = {}
    if request.is_json:
        data = request.get_json() or {}
        for kind, key in ((REPORT_SIMILARITY, 'report_base64'), (REPORT_AI, 'ai_report_base64')):
            if data.get(key):
                content = base64.b64decode(data[key], validate=True)
                files[kind] = (data.get('file_name' if kind == REPORT_SIMILARITY else 'ai_file_name')
                               or f'{kind}_report.pdf', content)
        return data, files

    data = request.form.to_dict()
    for kind, key in ((REPORT_SIMILARITY, 'report'), (REPORT_AI, 'ai_report')):
        upload = request.files.get(key)
        if upload and upload.filename:
            files[kind] = (upload.filename, upload.read())
    return data, files


@extension.route('/upload-report', methods=['POST'])
@require_extension_token
def upload_report():
    """上传自动化得到的报告并完成文档"""
    document_id = None
    try:
        data, files = _report_payload()
        document_id = data.get('document_id')
        if not document_id or REPORT_SIMILARITY not in files:
            return error_response('document_id and report are required', 400)

        supabase = get_admin_client()
        doc_ops = DocumentOperations(supabase)
        document = doc_ops.get_document(document_id)
        if not document:
            return error_response('Document not found', 404)
        if document.get('assigned_staff_id') not in (None, g.token['user_id']):
            return error_response('Document is assigned to someone else', 409)
        doc_ops.validate_update(document, DOCUMENT_COMPLETED, ROLE_SYSTEM)

        timestamp = int(datetime.now(timezone.utc).timestamp() * 1000)
        updates = {'automation_status': 'completed', 'automation_error': None}
        for kind, (file_name, content) in files.items():
            safe_name = re.sub(r'[^A-Za-z0-9._-]+', '_', file_name)
            path = f'{document_id}/{kind}_{timestamp}_{safe_name}'
            supabase.storage.from_(SUPABASE_CONFIG['reports_bucket_name']).upload(
                path=path, file=content, file_options={'content-type': 'application/pdf'})
            updates[f'{kind}_report_path'] = path

            percentage = parse_percentage(data.get(f'{kind}_percentage'))
            if percentage is None:
                reader = ReportReader(content=content)
                percentage = (reader.extract_similarity_percentage() if kind == REPORT_SIMILARITY
                              else reader.extract_ai_percentage())
            updates[f'{kind}_percentage'] = percentage

        document = doc_ops.update_status(document_id, DOCUMENT_COMPLETED, g.token['user_id'], ROLE_SYSTEM, updates)
        _log('upload_report', document_id, metadata={
            'similarity_percentage': updates.get('similarity_percentage'),
            'ai_percentage': updates.get('ai_percentage'),
        })
        return jsonify({'success': True, 'document': document}), 200
    except (ValueError, binascii.Error) as e:
        _log('upload_report', document_id, 'error', str(e))
        return error_response(str(e), 400)
    except WorkflowError as e:
        _log('upload_report', document_id, 'error', str(e))
        return workflow_error_response(e)
    except Exception as e:
        logger.error(f"上传报告失败: {e}", exc_info=True)
        _log('upload_report', document_id, 'error', str(e))
        return error_response(str(e), 500)


@extension.route('/heartbeat', methods=['POST'])
@require_extension_token
def heartbeat():
    try:
        data = request.get_json(silent=True) or {}
        ExtensionOperations(get_admin_client()).heartbeat(g.token['id'], data.get('browser_info'))
        return jsonify({'success': True, 'timestamp': _now()}), 200
    except Exception as e:
        logger.error(f"心跳更新失败: {e}")
        return error_response(str(e), 500)


@extension.route('/slots', methods=['GET'])
@require_extension_token
def slots():
    try:
        items = ExtensionOperations(get_admin_client()).list_slots()
        return jsonify({'success': True, 'slots': items}), 200
    except Exception as e:
        logger.error(f"获取槽位失败: {e}")
        return error_response(str(e), 500)


@extension.route('/slots/update-usage', methods=['POST'])
@require_extension_token
def update_slot_usage():
    try:
        data = request.get_json() or {}
        if not data.get('slot_id'):
            return error_response('slot_id is required', 400)
        slot = ExtensionOperations(get_admin_client()).update_slot_usage(
            data['slot_id'], int(data.get('increment', 1)))
        _log('update_slot_usage', metadata={'slot_id': data['slot_id'], 'current_usage': slot.get('current_usage')})
        return jsonify({'success': True, 'slot': slot}), 200
    except SlotLimitReachedError as e:
        return error_response(str(e), 409)
    except LookupError as e:
        return error_response(str(e), 404)
    except Exception as e:
        logger.error(f"更新槽位使用量失败: {e}")
        return error_response(str(e), 500)


@extension.route('/error', methods=['POST'])
@require_extension_token
def report_error():
    """自动化失败：文档进入error状态"""
    data = request.get_json(silent=True) or {}
    document_id = data.get('document_id')
    message = data.get('error_message') or 'Automation failed'
    try:
        if not document_id:
            return error_response('document_id is required', 400)
        DocumentOperations(get_admin_client()).update_status(
            document_id, DOCUMENT_ERROR, g.token['user_id'], ROLE_SYSTEM,
            updates={'automation_status': 'failed', 'automation_error': message},
            error_message=message,
        )
        _log('error', document_id, 'error', message)
        return jsonify({'success': True}), 200
    except WorkflowError as e:
        return workflow_error_response(e)
    except Exception as e:
        logger.error(f"记录自动化错误失败: {e}")
        return error_response(str(e), 500)


@extension_tokens.route('', methods=['POST'])
@require_roles()
def create_token():
    try:
        data = request.get_json(silent=True) or {}
        record = ExtensionOperations(get_admin_client()).create_token(
            g.user_id, data.get('name'), data.get('expires_at'))
        return jsonify({'status': 'success', 'token': record}), 201
    except Exception as e:
        logger.error(f"创建扩展令牌失败: {e}")
        return error_response(str(e), 500)


@extension_tokens.route('', methods=['GET'])
@require_roles()
def list_tokens():
    try:
        return jsonify({'status': 'success', 'tokens': ExtensionOperations(get_admin_client()).list_tokens(g.user_id)}), 200
    except Exception as e:
        logger.error(f"获取扩展令牌失败: {e}")
        return error_response(str(e), 500)


@extension_tokens.route('/<token_id>/revoke', methods=['POST'])
@require_roles()
def revoke_token(token_id):
    try:
        if not ExtensionOperations(get_admin_client()).revoke_token(g.user_id, token_id):
            return error_response('Token not found', 404)
        return jsonify({'status': 'success'}), 200
    except Exception as e:
        logger.error(f"停用扩展令牌失败: {e}")
        return error_response(str(e), 500)


@extension_tokens.route('/<token_id>', methods=['DELETE'])
@require_roles()
def delete_token(token_id):
    try:
        if not ExtensionOperations(get_admin_client()).delete_token(g.user_id, token_id):
            return error_response('Token not found', 404)
        return jsonify({'status': 'success'}), 200
    except Exception as e:
        logger.error(f"删除扩展令牌失败: {e}")
        return error_response(str(e), 500)
